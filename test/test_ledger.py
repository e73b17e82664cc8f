"""Tests for the ledger store against a SQLite database."""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import delete, func, select

from callcontrol.accounts.ledger import AdmitOutcome, LedgerStore, UsageEntry
from callcontrol.accounts.models import Account, AccountRole, NotificationType
from callcontrol.calls.models import CallDirection, UsageRecord
from callcontrol.config import Settings
from callcontrol.shared.database import DatabaseManager

from conftest import NOW


def _entry(call_id: str, account_id, cost: str = "3", minutes: str = "3") -> UsageEntry:
    return UsageEntry(
        call_id=call_id,
        account_id=account_id,
        billed_account_id=account_id,
        minutes_billed=Decimal(minutes),
        credit_cost=Decimal(cost),
        duration_seconds=150,
        direction="inbound",
        call_status="completed",
    )


async def _usage_count(db: DatabaseManager, call_id: str) -> int:
    async with db.session() as session:
        result = await session.execute(
            select(func.count()).select_from(UsageRecord).where(UsageRecord.call_id == call_id)
        )
        return int(result.scalar_one())


class TestAccounts:
    @pytest.mark.asyncio
    async def test_get_account_by_phone(self, ledger: LedgerStore, make_account) -> None:
        account = await make_account(phone_number="+911100000001")

        found = await ledger.get_account_by_phone("+911100000001")

        assert found is not None
        assert found.id == account.id
        assert await ledger.get_account_by_phone("+911100000999") is None

    @pytest.mark.asyncio
    async def test_sub_user_bills_parent(self, ledger: LedgerStore, make_account) -> None:
        parent = await make_account()
        child = await make_account(role=AccountRole.USER, parent_id=parent.id)

        billable = await ledger.resolve_billable_account(await ledger.get_account(child.id))

        assert billable.id == parent.id

    @pytest.mark.asyncio
    async def test_non_user_role_bills_itself(self, ledger: LedgerStore, make_account) -> None:
        parent = await make_account()
        manager = await make_account(role=AccountRole.MANAGER, parent_id=parent.id)

        billable = await ledger.resolve_billable_account(manager)

        assert billable.id == manager.id

    @pytest.mark.asyncio
    async def test_dangling_parent_bills_itself(self, ledger: LedgerStore, make_account) -> None:
        child = await make_account(role=AccountRole.USER, parent_id=uuid4())

        billable = await ledger.resolve_billable_account(child)

        assert billable.id == child.id

    @pytest.mark.asyncio
    async def test_exemption(self, db: DatabaseManager, make_account, tmp_path) -> None:
        super_admin = await make_account(role=AccountRole.SUPER_ADMIN)
        listed = await make_account()
        regular = await make_account()
        ledger = LedgerStore(db, Settings(exempt_account_ids=str(listed.id)))

        assert ledger.is_exempt(super_admin)
        assert ledger.is_exempt(listed)
        assert not ledger.is_exempt(regular)

    @pytest.mark.asyncio
    async def test_adjust_balance(self, ledger: LedgerStore, make_account) -> None:
        account = await make_account(credit_balance=Decimal("10"))

        assert await ledger.adjust_balance(account.id, Decimal("-2.5")) == Decimal("7.5")
        assert await ledger.adjust_balance(account.id, Decimal("5")) == Decimal("12.5")

    @pytest.mark.asyncio
    async def test_list_billable_accounts_skips_sub_users_and_inactive(
        self, ledger: LedgerStore, make_account
    ) -> None:
        parent = await make_account()
        await make_account(role=AccountRole.USER, parent_id=parent.id)
        await make_account(is_active=False)
        standalone_user = await make_account(role=AccountRole.USER)

        ids = {a.id for a in await ledger.list_billable_accounts()}

        assert ids == {parent.id, standalone_user.id}


class TestActiveCalls:
    @pytest.mark.asyncio
    async def test_insert_is_idempotent(self, ledger: LedgerStore, make_account) -> None:
        account = await make_account()

        first = await ledger.insert_active_call("C1", account.id, account.id, CallDirection.OUTBOUND)
        second = await ledger.insert_active_call("C1", account.id, account.id, CallDirection.OUTBOUND)

        assert first is True
        assert second is False
        assert await ledger.count_active_calls(account.id) == 1

    @pytest.mark.asyncio
    async def test_delete_active_call(self, ledger: LedgerStore, make_account) -> None:
        account = await make_account()
        await ledger.insert_active_call("C1", account.id, account.id, CallDirection.INBOUND)

        assert await ledger.delete_active_call("C1") is True
        assert await ledger.delete_active_call("C1") is False
        assert await ledger.list_active_calls() == []

    @pytest.mark.asyncio
    async def test_try_admit_respects_line_limit(self, ledger: LedgerStore, make_account) -> None:
        account = await make_account(concurrent_line_limit=2)

        outcomes = [await ledger.try_admit(f"C{i}", account.id, account.id, now=NOW) for i in range(3)]

        assert outcomes == [AdmitOutcome.ADMITTED, AdmitOutcome.ADMITTED, AdmitOutcome.LINES_BUSY]
        assert await ledger.count_active_calls(account.id) == 2

    @pytest.mark.asyncio
    async def test_try_admit_duplicate_call_id(self, ledger: LedgerStore, make_account) -> None:
        account = await make_account(concurrent_line_limit=1)

        await ledger.try_admit("C1", account.id, account.id, now=NOW)
        outcome = await ledger.try_admit("C1", account.id, account.id, now=NOW)

        assert outcome == AdmitOutcome.DUPLICATE
        assert outcome.admitted
        assert await ledger.count_active_calls(account.id) == 1

    @pytest.mark.asyncio
    async def test_try_admit_rechecks_expiry_and_credit(self, ledger: LedgerStore, make_account) -> None:
        expired = await make_account(subscription_expiry=NOW - timedelta(minutes=1))
        broke = await make_account(credit_balance=Decimal("0"))

        assert await ledger.try_admit("E1", expired.id, expired.id, now=NOW) == AdmitOutcome.SUBSCRIPTION_EXPIRED
        assert await ledger.try_admit("B1", broke.id, broke.id, now=NOW) == AdmitOutcome.CREDITS_EXHAUSTED
        assert await ledger.try_admit("B2", broke.id, broke.id, exempt=True, now=NOW) == AdmitOutcome.ADMITTED


class TestFinalize:
    @pytest.mark.asyncio
    async def test_finalize_bills_once(self, ledger: LedgerStore, db: DatabaseManager, make_account) -> None:
        account = await make_account(credit_balance=Decimal("10"))
        await ledger.insert_active_call("C1", account.id, account.id, CallDirection.INBOUND)

        first = await ledger.finalize_call(_entry("C1", account.id))
        await ledger.insert_active_call("C1", account.id, account.id, CallDirection.INBOUND)
        second = await ledger.finalize_call(_entry("C1", account.id))

        assert first.billed is True
        assert first.balance_after == Decimal("7")
        assert second.billed is False
        assert await _usage_count(db, "C1") == 1
        assert (await ledger.get_account(account.id)).credit_balance == Decimal("7")
        assert await ledger.get_active_call("C1") is None

    @pytest.mark.asyncio
    async def test_zero_cost_records_usage_without_deduction(
        self, ledger: LedgerStore, db: DatabaseManager, make_account
    ) -> None:
        account = await make_account(credit_balance=Decimal("10"))

        result = await ledger.finalize_call(_entry("C2", account.id, cost="0", minutes="0"))

        assert result.billed is True
        assert result.balance_after is None
        assert await _usage_count(db, "C2") == 1
        assert (await ledger.get_account(account.id)).credit_balance == Decimal("10")

    @pytest.mark.asyncio
    async def test_finalize_for_deleted_account_releases_line(
        self, ledger: LedgerStore, db: DatabaseManager, make_account
    ) -> None:
        account = await make_account(credit_balance=Decimal("10"))
        await ledger.insert_active_call("C9", account.id, account.id, CallDirection.INBOUND)
        async with db.session() as session:
            await session.execute(delete(Account).where(Account.id == account.id))

        result = await ledger.finalize_call(_entry("C9", account.id))

        assert result.billed is True
        assert result.balance_after is None
        assert (await ledger.get_usage_record("C9")).credit_cost == Decimal("0")
        assert await ledger.get_active_call("C9") is None

    @pytest.mark.asyncio
    async def test_insert_usage_record_if_absent(self, ledger: LedgerStore, make_account) -> None:
        account = await make_account()

        assert await ledger.insert_usage_record_if_absent(_entry("C3", account.id)) is True
        assert await ledger.insert_usage_record_if_absent(_entry("C3", account.id)) is False
        assert (await ledger.get_usage_record("C3")).minutes_billed == Decimal("3")


class TestAlertsAndNotifications:
    @pytest.mark.asyncio
    async def test_claim_alert_slot_cooldown(self, ledger: LedgerStore, make_account) -> None:
        account = await make_account()
        field = "last_low_balance_alert_at"
        cooldown = timedelta(hours=24)

        first = await ledger.claim_alert_slot(account.id, field, NOW - cooldown, NOW)
        later = NOW + timedelta(hours=1)
        second = await ledger.claim_alert_slot(account.id, field, later - cooldown, later)
        much_later = NOW + timedelta(hours=25)
        third = await ledger.claim_alert_slot(account.id, field, much_later - cooldown, much_later)

        assert (first, second, third) == (True, False, True)

    @pytest.mark.asyncio
    async def test_claim_alert_slot_rejects_unknown_field(self, ledger: LedgerStore, make_account) -> None:
        account = await make_account()
        with pytest.raises(ValueError):
            await ledger.claim_alert_slot(account.id, "credit_balance", NOW, NOW)

    @pytest.mark.asyncio
    async def test_notifications_roundtrip(self, ledger: LedgerStore, make_account) -> None:
        account = await make_account()
        first = await ledger.append_notification(account.id, NotificationType.LOW_BALANCE, "low")
        await ledger.append_notification(account.id, NotificationType.SUBSCRIPTION_EXPIRED, "expired")

        assert len(await ledger.list_notifications(account.id)) == 2
        assert await ledger.mark_notifications_read(account.id, first.id) == 1
        assert len(await ledger.list_notifications(account.id, unread_only=True)) == 1
        assert await ledger.mark_notifications_read(account.id) == 1
        assert await ledger.list_notifications(account.id, unread_only=True) == []

    @pytest.mark.asyncio
    async def test_mark_read_scoped_to_account(self, ledger: LedgerStore, make_account) -> None:
        owner = await make_account()
        other = await make_account()
        notification = await ledger.append_notification(owner.id, NotificationType.LOW_BALANCE, "low")

        assert await ledger.mark_notifications_read(other.id, notification.id) == 0
        assert len(await ledger.list_notifications(owner.id, unread_only=True)) == 1
