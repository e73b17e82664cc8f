"""
Call lifecycle monitor.

Periodically reconciles every ActiveCall against the provider: terminal
calls are metered, billed once and released; live calls whose billable
account ran out of subscription or credit are terminated.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

from callcontrol.accounts.ledger import LedgerStore, UsageEntry
from callcontrol.accounts.models import Account, NotificationType
from callcontrol.alerts.notifier import LogNotifier, Notifier
from callcontrol.calls.billing import BillingRounding, billable_minutes, call_cost, elapsed_minutes
from callcontrol.calls.models import ActiveCall
from callcontrol.config import Settings, get_settings
from callcontrol.shared.clock import Clock, SystemClock
from callcontrol.shared.database import ensure_utc
from callcontrol.shared.logging import get_logger
from callcontrol.telephony.interface import (
    CallNotFoundError,
    CallStatus,
    CallStatusInfo,
    TelephonyProvider,
    TelephonyProviderError,
)

logger = get_logger(__name__)


@dataclass
class MonitorConfig:
    """Configuration for the call lifecycle monitor."""

    interval_seconds: float = 10.0
    max_zero_duration_rechecks: int = 6
    per_minute_rate: Decimal = Decimal("1")
    billing_rounding: BillingRounding = "ceil"
    low_balance_cooldown_minutes: int = 60
    enforce_limits_during_call: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "MonitorConfig":
        return cls(
            interval_seconds=settings.monitor_interval_seconds,
            max_zero_duration_rechecks=settings.max_zero_duration_rechecks,
            per_minute_rate=settings.per_minute_rate,
            billing_rounding=settings.billing_rounding,
            low_balance_cooldown_minutes=settings.low_balance_cooldown_minutes,
            enforce_limits_during_call=settings.enforce_limits_during_call,
        )


class ReconcileOutcome(str, Enum):
    """What one reconciliation did with a call."""

    UNTRACKED = "untracked"
    LIVE = "live"
    TERMINATED = "terminated"
    DEFERRED = "deferred"
    BILLED = "billed"
    ALREADY_BILLED = "already-billed"
    NOT_FOUND = "not-found"
    ERROR = "error"


class CallLifecycleMonitor:
    """Background reconciliation loop over active calls.

    The monitor is the only component that finalizes ActiveCall rows.
    """

    def __init__(
        self,
        ledger: LedgerStore,
        provider: TelephonyProvider,
        notifier: Notifier | None = None,
        config: MonitorConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._ledger = ledger
        self._provider = provider
        self._notifier = notifier or LogNotifier()
        self._config = config or MonitorConfig.from_settings(get_settings())
        self._clock = clock or SystemClock()

        self._zero_duration_checks: dict[str, int] = {}
        self._terminating: set[str] = set()

        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the monitor background task."""
        if self.running:
            logger.warning("Call monitor already running")
            return

        self._stop.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Call monitor started", extra={"interval_seconds": self._config.interval_seconds})

    async def stop(self) -> None:
        """Stop the monitor and wait for the current sweep to end."""
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Call monitor stopped")

    async def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Call monitor sweep failed")
            if await self._clock.sleep(self._config.interval_seconds, self._stop):
                break

    async def sweep_once(self) -> dict[ReconcileOutcome, int]:
        """Reconcile every active call once.

        Returns:
            Count of calls per outcome.
        """
        summary: dict[ReconcileOutcome, int] = {}
        active_calls = await self._ledger.list_active_calls()
        for active in active_calls:
            try:
                outcome = await self._reconcile(active)
            except Exception:
                logger.exception("Call reconciliation failed", extra={"call_id": active.call_id})
                outcome = ReconcileOutcome.ERROR
            summary[outcome] = summary.get(outcome, 0) + 1

        if active_calls:
            logger.info(
                "Call monitor sweep completed",
                extra={"active_calls": len(active_calls), **{k.value: v for k, v in summary.items()}},
            )
        return summary

    async def reconcile_call(self, call_id: str) -> ReconcileOutcome:
        """Reconcile one call out of band, e.g. on a provider status callback."""
        active = await self._ledger.get_active_call(call_id)
        if active is None:
            return ReconcileOutcome.UNTRACKED
        return await self._reconcile(active)

    async def _reconcile(self, active: ActiveCall) -> ReconcileOutcome:
        call_id = active.call_id
        try:
            info = await self._provider.get_call_status(call_id)
        except CallNotFoundError:
            logger.warning("Call unknown to provider, releasing line", extra={"call_id": call_id})
            self._forget(call_id)
            await self._ledger.delete_active_call(call_id)
            return ReconcileOutcome.NOT_FOUND
        except TelephonyProviderError as e:
            logger.warning(
                "Provider status check failed, will retry",
                extra={"call_id": call_id, "error_code": e.error_code, "error": str(e)},
            )
            return ReconcileOutcome.ERROR

        if not info.is_terminal:
            if self._config.enforce_limits_during_call and await self._enforce_limits(active):
                return ReconcileOutcome.TERMINATED
            return ReconcileOutcome.LIVE

        if info.status == CallStatus.COMPLETED and info.duration_seconds == 0:
            checks = self._zero_duration_checks.get(call_id, 0) + 1
            if checks <= self._config.max_zero_duration_rechecks:
                self._zero_duration_checks[call_id] = checks
                logger.info(
                    "Completed call reports no duration yet",
                    extra={"call_id": call_id, "check": checks},
                )
                return ReconcileOutcome.DEFERRED
            logger.warning("Duration never reported, billing zero", extra={"call_id": call_id})

        return await self._finalize(active, info)

    async def _finalize(self, active: ActiveCall, info: CallStatusInfo) -> ReconcileOutcome:
        self._forget(active.call_id)

        owner = await self._ledger.get_account(active.account_id)
        billable = await self._ledger.get_account(active.billable_account_id)
        exempt = any(acc is not None and self._ledger.is_exempt(acc) for acc in (owner, billable))

        minutes = billable_minutes(info.duration_seconds, self._config.billing_rounding)
        cost = Decimal("0") if exempt else call_cost(minutes, self._config.per_minute_rate)

        result = await self._ledger.finalize_call(
            UsageEntry(
                call_id=active.call_id,
                account_id=active.account_id,
                billed_account_id=active.billable_account_id,
                minutes_billed=minutes,
                credit_cost=cost,
                duration_seconds=info.duration_seconds,
                direction=active.direction.value,
                call_status=info.status.value,
                from_number=info.from_number,
                to_number=info.to_number,
                recording_url=info.recording_url,
            )
        )
        if not result.billed:
            logger.info("Call already billed, line released", extra={"call_id": active.call_id})
            return ReconcileOutcome.ALREADY_BILLED

        logger.info(
            "Call billed",
            extra={
                "call_id": active.call_id,
                "billed_account_id": str(active.billable_account_id),
                "status": info.status.value,
                "duration_seconds": info.duration_seconds,
                "minutes": str(minutes),
                "cost": str(cost),
                "balance_after": str(result.balance_after) if result.balance_after is not None else None,
            },
        )

        if billable is not None and result.balance_after is not None:
            if result.balance_after <= billable.low_balance_threshold:
                await self._alert_low_balance(billable, result.balance_after)
        return ReconcileOutcome.BILLED

    def _forget(self, call_id: str) -> None:
        self._zero_duration_checks.pop(call_id, None)
        self._terminating.discard(call_id)

    async def _enforce_limits(self, active: ActiveCall) -> bool:
        """Terminate a live call the billable account can no longer pay for.

        Returns True when a termination was requested on this pass.
        """
        call_id = active.call_id
        if call_id in self._terminating:
            return False

        now = self._clock.now()
        owner = await self._ledger.get_account(active.account_id)
        if owner is None:
            reason: str | None = "owner-missing"
        else:
            billable = await self._ledger.get_account(active.billable_account_id)
            reason = self._termination_reason(active, owner, billable, now)
        if reason is None:
            return False

        try:
            await self._provider.terminate_call(call_id)
        except CallNotFoundError:
            await self._ledger.delete_active_call(call_id)
            return False
        except TelephonyProviderError as e:
            logger.warning(
                "Call termination failed, will retry",
                extra={"call_id": call_id, "reason": reason, "error": str(e)},
            )
            return False

        self._terminating.add(call_id)
        logger.info("Live call terminated", extra={"call_id": call_id, "reason": reason})

        if owner is None:
            await self._ledger.delete_active_call(call_id)
            self._forget(call_id)
        return True

    def _termination_reason(
        self,
        active: ActiveCall,
        owner: Account,
        billable: Account | None,
        now: datetime,
    ) -> str | None:
        if billable is None or self._ledger.is_exempt(billable) or self._ledger.is_exempt(owner):
            return None

        expiry = ensure_utc(billable.subscription_expiry)
        if expiry is not None and now > expiry:
            return "subscription-expired"

        elapsed = (now - ensure_utc(active.start_time)).total_seconds()
        projected = billable.credit_balance - elapsed_minutes(elapsed) * self._config.per_minute_rate
        if projected <= 0:
            return "credits-exhausted"
        return None

    async def _alert_low_balance(self, billable: Account, balance: Decimal) -> None:
        now = self._clock.now()
        cutoff = now - timedelta(minutes=self._config.low_balance_cooldown_minutes)
        message = f"Your call credit balance is low: {balance} minutes remaining."
        try:
            if not await self._ledger.claim_alert_slot(billable.id, "last_low_balance_alert_at", cutoff, now):
                return
            await self._ledger.append_notification(billable.id, NotificationType.LOW_BALANCE, message)
            await self._notifier.send(billable, NotificationType.LOW_BALANCE, message)
        except Exception:
            # The call is already billed; only the alert is lost.
            logger.exception("Low-balance alert failed", extra={"account_id": str(billable.id)})
