"""
Ledger store: accounts, active calls, usage records and notifications.

Every balance mutation is a single UPDATE executed in the transaction that
also holds the account row lock. Active-call slot checks are serialized per
billable account by an in-process lock plus ``SELECT ... FOR UPDATE``.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TypeVar
from uuid import UUID

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from callcontrol.accounts.models import Account, AccountRole, Notification, NotificationType
from callcontrol.calls.models import ActiveCall, CallDirection, UsageRecord
from callcontrol.config import Settings, get_settings
from callcontrol.shared.database import DatabaseManager, ensure_utc, utcnow
from callcontrol.shared.exceptions import LedgerConflict
from callcontrol.shared.logging import get_logger
from callcontrol.telephony.models import AgentTelephonyConfig

logger = get_logger(__name__)

T = TypeVar("T")

ALERT_FIELDS = frozenset(
    {"last_low_credit_alert_at", "last_low_balance_alert_at", "last_expiry_alert_at"}
)


class AdmitOutcome(str, Enum):
    """Result of the locked admission check."""

    ADMITTED = "admitted"
    DUPLICATE = "duplicate"
    NOT_CONFIGURED = "not-configured"
    SUBSCRIPTION_EXPIRED = "subscription-expired"
    CREDITS_EXHAUSTED = "credits-exhausted"
    LINES_BUSY = "lines-busy"

    @property
    def admitted(self) -> bool:
        return self in (AdmitOutcome.ADMITTED, AdmitOutcome.DUPLICATE)


@dataclass(frozen=True)
class UsageEntry:
    """Fields of one metering record."""

    call_id: str
    account_id: UUID
    billed_account_id: UUID
    minutes_billed: Decimal
    credit_cost: Decimal
    duration_seconds: int
    direction: str
    call_status: str
    from_number: str | None = None
    to_number: str | None = None
    recording_url: str | None = None


@dataclass(frozen=True)
class FinalizeResult:
    billed: bool
    balance_after: Decimal | None = None


class LedgerStore:
    """Durable account and call bookkeeping over an async SQLAlchemy session factory."""

    def __init__(self, db: DatabaseManager, settings: Settings | None = None) -> None:
        self._db = db
        self._settings = settings or get_settings()
        self._locks: dict[UUID, asyncio.Lock] = {}

    def _lock_for(self, account_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    def is_exempt(self, account: Account) -> bool:
        """Exempt accounts are never billed and skip credit and expiry checks."""
        if account.role == AccountRole.SUPER_ADMIN:
            return True
        return str(account.id) in self._settings.exempt_account_id_set

    async def _with_retries(
        self,
        account_id: UUID,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        attempts = self._settings.ledger_conflict_retries
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except OperationalError as e:
                logger.warning(
                    "Ledger write conflict",
                    extra={"account_id": str(account_id), "attempt": attempt, "error": str(e)},
                )
                if attempt < attempts:
                    await asyncio.sleep(0.05 * attempt)
        raise LedgerConflict(account_id, attempts)

    # Accounts

    async def get_account(self, account_id: UUID) -> Account | None:
        async with self._db.session() as session:
            return await session.get(Account, account_id)

    async def get_account_by_phone(self, phone_number: str) -> Account | None:
        stmt = select(Account).where(Account.phone_number == phone_number).limit(1)
        async with self._db.session() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def resolve_billable_account(self, account: Account) -> Account:
        """Return the account whose balance pays for `account`'s calls.

        A `user` account created by a parent bills the parent; every other
        account bills itself. A dangling parent reference falls back to self.
        """
        if not account.bills_to_parent:
            return account
        parent = await self.get_account(account.parent_id)  # type: ignore[arg-type]
        if parent is None:
            logger.warning(
                "Parent account missing, billing sub-user directly",
                extra={"account_id": str(account.id), "parent_id": str(account.parent_id)},
            )
            return account
        return parent

    async def list_billable_accounts(self) -> list[Account]:
        """Active accounts that carry their own balance."""
        stmt = (
            select(Account)
            .where(Account.is_active.is_(True))
            .where(or_(Account.role != AccountRole.USER, Account.parent_id.is_(None)))
            .order_by(Account.created_at)
        )
        async with self._db.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def adjust_balance(self, account_id: UUID, delta: Decimal) -> Decimal:
        """Add `delta` (negative to deduct) and return the new balance."""

        async def _apply() -> Decimal:
            async with self._lock_for(account_id):
                async with self._db.session() as session:
                    return await self._apply_delta(session, account_id, delta)

        return await self._with_retries(account_id, _apply)

    async def _apply_delta(self, session: AsyncSession, account_id: UUID, delta: Decimal) -> Decimal:
        await session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(credit_balance=Account.credit_balance + delta)
        )
        result = await session.execute(
            select(Account.credit_balance).where(Account.id == account_id)
        )
        return Decimal(result.scalar_one())

    async def get_agent_telephony_config(self, agent_id: str) -> AgentTelephonyConfig | None:
        async with self._db.session() as session:
            return await session.get(AgentTelephonyConfig, agent_id)

    # Active calls

    async def count_active_calls(self, billable_account_id: UUID) -> int:
        stmt = select(func.count()).select_from(ActiveCall).where(
            ActiveCall.billable_account_id == billable_account_id
        )
        async with self._db.session() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def insert_active_call(
        self,
        call_id: str,
        account_id: UUID,
        billable_account_id: UUID,
        direction: CallDirection,
        start_time: datetime | None = None,
    ) -> bool:
        """Register a call; returns False when the call id is already tracked."""
        try:
            async with self._db.session() as session:
                if await session.get(ActiveCall, call_id) is not None:
                    return False
                session.add(
                    ActiveCall(
                        call_id=call_id,
                        account_id=account_id,
                        billable_account_id=billable_account_id,
                        direction=direction,
                        start_time=start_time or utcnow(),
                    )
                )
        except IntegrityError:
            return False
        return True

    async def try_admit(
        self,
        call_id: str,
        account_id: UUID,
        billable_account_id: UUID,
        exempt: bool = False,
        now: datetime | None = None,
    ) -> AdmitOutcome:
        """Re-check the billable account and take a line slot in one transaction."""
        now = now or utcnow()
        async with self._lock_for(billable_account_id):
            async with self._db.session() as session:
                if await session.get(ActiveCall, call_id) is not None:
                    return AdmitOutcome.DUPLICATE

                result = await session.execute(
                    select(Account).where(Account.id == billable_account_id).with_for_update()
                )
                billable = result.scalar_one_or_none()
                if billable is None or not billable.is_active:
                    return AdmitOutcome.NOT_CONFIGURED

                if not exempt:
                    expiry = ensure_utc(billable.subscription_expiry)
                    if expiry is not None and now > expiry:
                        return AdmitOutcome.SUBSCRIPTION_EXPIRED
                    if billable.credit_balance <= 0:
                        return AdmitOutcome.CREDITS_EXHAUSTED

                count_result = await session.execute(
                    select(func.count())
                    .select_from(ActiveCall)
                    .where(ActiveCall.billable_account_id == billable_account_id)
                )
                if int(count_result.scalar_one()) >= billable.concurrent_line_limit:
                    return AdmitOutcome.LINES_BUSY

                session.add(
                    ActiveCall(
                        call_id=call_id,
                        account_id=account_id,
                        billable_account_id=billable_account_id,
                        direction=CallDirection.INBOUND,
                        start_time=now,
                    )
                )
        return AdmitOutcome.ADMITTED

    async def get_active_call(self, call_id: str) -> ActiveCall | None:
        async with self._db.session() as session:
            return await session.get(ActiveCall, call_id)

    async def delete_active_call(self, call_id: str) -> bool:
        async with self._db.session() as session:
            result = await session.execute(delete(ActiveCall).where(ActiveCall.call_id == call_id))
            return result.rowcount > 0

    async def list_active_calls(self) -> list[ActiveCall]:
        async with self._db.session() as session:
            result = await session.execute(select(ActiveCall).order_by(ActiveCall.start_time))
            return list(result.scalars().all())

    # Usage

    async def get_usage_record(self, call_id: str) -> UsageRecord | None:
        stmt = select(UsageRecord).where(UsageRecord.call_id == call_id)
        async with self._db.session() as session:
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def insert_usage_record_if_absent(self, entry: UsageEntry) -> bool:
        """Insert the record unless one exists for the call id."""
        try:
            async with self._db.session() as session:
                return await self._insert_usage(session, entry)
        except IntegrityError:
            return False

    async def _insert_usage(self, session: AsyncSession, entry: UsageEntry) -> bool:
        existing = await session.execute(
            select(UsageRecord.id).where(UsageRecord.call_id == entry.call_id)
        )
        if existing.scalar_one_or_none() is not None:
            return False
        session.add(
            UsageRecord(
                call_id=entry.call_id,
                account_id=entry.account_id,
                billed_account_id=entry.billed_account_id,
                minutes_billed=entry.minutes_billed,
                credit_cost=entry.credit_cost,
                duration_seconds=entry.duration_seconds,
                direction=entry.direction,
                from_number=entry.from_number,
                to_number=entry.to_number,
                call_status=entry.call_status,
                recording_url=entry.recording_url,
                timestamp=utcnow(),
            )
        )
        await session.flush()
        return True

    async def finalize_call(self, entry: UsageEntry) -> FinalizeResult:
        """Record usage, deduct the cost and release the line, all or nothing.

        A call that already has a usage record is only released; its balance
        is never touched twice.
        """
        account_id = entry.billed_account_id

        async def _finalize() -> FinalizeResult:
            async with self._lock_for(account_id):
                async with self._db.session() as session:
                    locked = await session.execute(
                        select(Account.id).where(Account.id == account_id).with_for_update()
                    )
                    record = entry
                    if locked.scalar_one_or_none() is None:
                        # Nobody left to charge; the call still leaves the active set.
                        logger.warning(
                            "Billed account no longer exists, recording call without charge",
                            extra={"call_id": entry.call_id, "account_id": str(account_id)},
                        )
                        record = replace(entry, credit_cost=Decimal("0"))
                    inserted = await self._insert_usage(session, record)
                    balance: Decimal | None = None
                    if inserted and record.credit_cost:
                        balance = await self._apply_delta(session, account_id, -record.credit_cost)
                    await session.execute(
                        delete(ActiveCall).where(ActiveCall.call_id == entry.call_id)
                    )
                    return FinalizeResult(billed=inserted, balance_after=balance)

        try:
            return await self._with_retries(account_id, _finalize)
        except IntegrityError:
            # Another writer recorded this call between our check and insert.
            await self.delete_active_call(entry.call_id)
            return FinalizeResult(billed=False)

    # Alerts and notifications

    async def claim_alert_slot(
        self,
        account_id: UUID,
        field: str,
        cutoff: datetime,
        now: datetime | None = None,
    ) -> bool:
        """Stamp `field` if it is unset or older than `cutoff`.

        Returns True for exactly one caller per cooldown window.
        """
        if field not in ALERT_FIELDS:
            raise ValueError(f"Unknown alert field: {field}")
        column = getattr(Account, field)
        stmt = (
            update(Account)
            .where(Account.id == account_id)
            .where(or_(column.is_(None), column < cutoff))
            .values({field: now or utcnow()})
        )
        async with self._db.session() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def append_notification(
        self,
        account_id: UUID,
        type: NotificationType,
        message: str,
    ) -> Notification:
        notification = Notification(
            account_id=account_id,
            type=type,
            message=message,
            is_read=False,
            created_at=utcnow(),
        )
        async with self._db.session() as session:
            session.add(notification)
        return notification

    async def list_notifications(
        self,
        account_id: UUID,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[Notification]:
        stmt = select(Notification).where(Notification.account_id == account_id)
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))
        stmt = stmt.order_by(Notification.created_at.desc()).limit(limit)
        async with self._db.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def mark_notifications_read(
        self,
        account_id: UUID,
        notification_id: UUID | None = None,
    ) -> int:
        """Mark one notification, or all of the account's, as read."""
        stmt = (
            update(Notification)
            .where(Notification.account_id == account_id)
            .where(Notification.is_read.is_(False))
        )
        if notification_id is not None:
            stmt = stmt.where(Notification.id == notification_id)
        async with self._db.session() as session:
            result = await session.execute(stmt.values(is_read=True))
            return result.rowcount
