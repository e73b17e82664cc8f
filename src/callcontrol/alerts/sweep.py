"""
Account alerting sweep.

Slow background loop raising low-balance and subscription-expired alerts,
at most once per account and alert type per cooldown window.
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta

from callcontrol.accounts.ledger import LedgerStore
from callcontrol.accounts.models import Account, NotificationType
from callcontrol.alerts.notifier import LogNotifier, Notifier
from callcontrol.config import Settings, get_settings
from callcontrol.shared.clock import Clock, SystemClock
from callcontrol.shared.database import ensure_utc
from callcontrol.shared.logging import get_logger

logger = get_logger(__name__)


@dataclass
class AlertSweepConfig:
    """Configuration for the alert sweep."""

    interval_seconds: float = 60.0
    cooldown_hours: int = 24

    @classmethod
    def from_settings(cls, settings: Settings) -> "AlertSweepConfig":
        return cls(
            interval_seconds=settings.alert_sweep_interval_seconds,
            cooldown_hours=settings.alert_cooldown_hours,
        )


class AccountAlertSweep:
    """Periodic low-balance and expiry alerting over billable accounts."""

    def __init__(
        self,
        ledger: LedgerStore,
        notifier: Notifier | None = None,
        config: AlertSweepConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._ledger = ledger
        self._notifier = notifier or LogNotifier()
        self._config = config or AlertSweepConfig.from_settings(get_settings())
        self._clock = clock or SystemClock()
        self._stop = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            logger.warning("Alert sweep already running")
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Alert sweep started", extra={"interval_seconds": self._config.interval_seconds})

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Alert sweep stopped")

    async def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Alert sweep iteration failed")
            if await self._clock.sleep(self._config.interval_seconds, self._stop):
                break

    async def sweep_once(self) -> dict[NotificationType, int]:
        """Check every billable account once.

        Returns:
            Number of alerts raised per type.
        """
        raised: dict[NotificationType, int] = {
            NotificationType.LOW_BALANCE: 0,
            NotificationType.SUBSCRIPTION_EXPIRED: 0,
        }
        for account in await self._ledger.list_billable_accounts():
            if self._ledger.is_exempt(account):
                continue
            try:
                for alert_type in await self._check_account(account):
                    raised[alert_type] += 1
            except Exception:
                logger.exception("Account alert check failed", extra={"account_id": str(account.id)})

        if any(raised.values()):
            logger.info("Alert sweep raised alerts", extra={k.value: v for k, v in raised.items()})
        return raised

    async def _check_account(self, account: Account) -> list[NotificationType]:
        now = self._clock.now()
        cutoff = now - timedelta(hours=self._config.cooldown_hours)
        raised: list[NotificationType] = []

        if account.credit_balance < account.low_balance_threshold:
            if await self._ledger.claim_alert_slot(account.id, "last_low_balance_alert_at", cutoff, now):
                await self._emit(
                    account,
                    NotificationType.LOW_BALANCE,
                    f"Your call credit balance is low: {account.credit_balance} minutes remaining. "
                    "Please recharge to avoid interruptions.",
                )
                raised.append(NotificationType.LOW_BALANCE)

        expiry = ensure_utc(account.subscription_expiry)
        if expiry is not None and now > expiry:
            if await self._ledger.claim_alert_slot(account.id, "last_expiry_alert_at", cutoff, now):
                await self._emit(
                    account,
                    NotificationType.SUBSCRIPTION_EXPIRED,
                    "Your subscription has expired. Please renew to keep making and receiving calls.",
                )
                raised.append(NotificationType.SUBSCRIPTION_EXPIRED)

        return raised

    async def _emit(self, account: Account, alert_type: NotificationType, message: str) -> None:
        await self._ledger.append_notification(account.id, alert_type, message)
        try:
            await self._notifier.send(account, alert_type, message)
        except Exception:
            logger.exception(
                "Alert delivery failed",
                extra={"account_id": str(account.id), "type": alert_type.value},
            )
