"""
Inbound call admission.

Decides whether an inbound call may connect, based on the subscription,
credit balance and free concurrent lines of the account owning the dialed
number. The decision fails open: any internal fault connects the call.
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from uuid import UUID

from callcontrol.accounts.ledger import AdmitOutcome, LedgerStore
from callcontrol.accounts.models import Account, NotificationType
from callcontrol.alerts.notifier import LogNotifier, Notifier
from callcontrol.config import Settings, get_settings
from callcontrol.shared.clock import Clock, SystemClock
from callcontrol.shared.database import ensure_utc
from callcontrol.shared.logging import get_logger

logger = get_logger(__name__)

CREDITS_EXHAUSTED_MESSAGE = (
    "An incoming call was rejected because your call credits are exhausted. "
    "Please recharge to keep receiving calls."
)


class RejectReason(str, Enum):
    NOT_CONFIGURED = "not-configured"
    SUBSCRIPTION_EXPIRED = "subscription-expired"
    CREDITS_EXHAUSTED = "credits-exhausted"
    LINES_BUSY = "lines-busy"


@dataclass(frozen=True)
class AdmissionDecision:
    admitted: bool
    reason: RejectReason | None = None
    account_id: UUID | None = None
    fail_open: bool = False

    @classmethod
    def reject(cls, reason: RejectReason, account_id: UUID | None = None) -> "AdmissionDecision":
        return cls(admitted=False, reason=reason, account_id=account_id)


class AdmissionController:
    """Gatekeeper for inbound calls."""

    def __init__(
        self,
        ledger: LedgerStore,
        notifier: Notifier | None = None,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._ledger = ledger
        self._notifier = notifier or LogNotifier()
        self._settings = settings or get_settings()
        self._clock = clock or SystemClock()

    async def admit(
        self,
        call_id: str,
        calling_number: str | None,
        called_number: str | None,
    ) -> AdmissionDecision:
        """Admit or reject one inbound call.

        Args:
            call_id: Provider call id; the ActiveCall primary key.
            calling_number: Caller's number.
            called_number: Tenant's virtual number that was dialed.

        Returns:
            AdmissionDecision; ``fail_open`` is set when an internal error
            let the call through unchecked.
        """
        try:
            return await self._decide(call_id, calling_number, called_number)
        except Exception:
            logger.exception(
                "Admission check failed, connecting call",
                extra={"call_id": call_id, "from": calling_number, "to": called_number},
            )
            return AdmissionDecision(admitted=True, fail_open=True)

    async def _decide(
        self,
        call_id: str,
        calling_number: str | None,
        called_number: str | None,
    ) -> AdmissionDecision:
        account = await self._ledger.get_account_by_phone(called_number) if called_number else None
        if account is None or not account.is_active:
            logger.info("Inbound call to unassigned number", extra={"call_id": call_id, "to": called_number})
            return AdmissionDecision.reject(RejectReason.NOT_CONFIGURED)

        billable = await self._ledger.resolve_billable_account(account)
        if not billable.is_active:
            return AdmissionDecision.reject(RejectReason.NOT_CONFIGURED, account.id)

        now = self._clock.now()
        exempt = self._ledger.is_exempt(billable) or self._ledger.is_exempt(account)

        if not exempt:
            expiry = ensure_utc(billable.subscription_expiry)
            if expiry is not None and now > expiry:
                return self._rejected(call_id, RejectReason.SUBSCRIPTION_EXPIRED, account)
            if billable.credit_balance <= 0:
                await self._alert_credits_exhausted(billable)
                return self._rejected(call_id, RejectReason.CREDITS_EXHAUSTED, account)

        outcome = await self._ledger.try_admit(call_id, account.id, billable.id, exempt=exempt, now=now)
        if outcome.admitted:
            logger.info(
                "Inbound call admitted",
                extra={
                    "call_id": call_id,
                    "account_id": str(account.id),
                    "billable_account_id": str(billable.id),
                    "duplicate": outcome == AdmitOutcome.DUPLICATE,
                },
            )
            return AdmissionDecision(admitted=True, account_id=account.id)

        reason = RejectReason(outcome.value)
        if reason == RejectReason.CREDITS_EXHAUSTED:
            await self._alert_credits_exhausted(billable)
        return self._rejected(call_id, reason, account)

    def _rejected(self, call_id: str, reason: RejectReason, account: Account) -> AdmissionDecision:
        logger.info(
            "Inbound call rejected",
            extra={"call_id": call_id, "account_id": str(account.id), "reason": reason.value},
        )
        return AdmissionDecision.reject(reason, account.id)

    async def _alert_credits_exhausted(self, billable: Account) -> None:
        now = self._clock.now()
        cutoff = now - timedelta(minutes=self._settings.low_credit_cooldown_minutes)
        try:
            claimed = await self._ledger.claim_alert_slot(
                billable.id, "last_low_credit_alert_at", cutoff, now
            )
            if not claimed:
                return
            await self._ledger.append_notification(
                billable.id, NotificationType.CREDITS_EXHAUSTED, CREDITS_EXHAUSTED_MESSAGE
            )
            await self._notifier.send(billable, NotificationType.CREDITS_EXHAUSTED, CREDITS_EXHAUSTED_MESSAGE)
        except Exception:
            # The rejection stands even when the alert cannot be recorded.
            logger.exception("Credits-exhausted alert failed", extra={"account_id": str(billable.id)})
