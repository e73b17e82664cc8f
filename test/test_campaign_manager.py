"""Tests for the campaign manager service."""

import asyncio
from collections.abc import AsyncGenerator
from datetime import timedelta
from decimal import Decimal
from types import SimpleNamespace
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio

from callcontrol.calls.models import CallDirection
from callcontrol.campaigns.dialer import DialerConfig
from callcontrol.campaigns.manager import CampaignManager, dedupe_contacts, interval_for_throttle
from callcontrol.campaigns.models import Campaign, CampaignStatus
from callcontrol.campaigns.repository import CampaignRepository
from callcontrol.campaigns.schemas import CampaignLaunchRequest
from callcontrol.shared.exceptions import (
    AccountNotFoundError,
    CampaignNotFoundError,
    ConfigurationError,
    InsufficientCreditsError,
    InvalidCampaignStateError,
)
from callcontrol.telephony.interface import CallStatusInfo
from callcontrol.telephony.mock_adapter import MockTelephonyAdapter

from conftest import NOW


class GatedProvider(MockTelephonyAdapter):
    """Mock whose status polls block until the gate opens."""

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        super().__init__()

    async def get_call_status(self, call_id: str) -> CallStatusInfo:
        await self.gate.wait()
        return self.get_call_status_sync(call_id)


@pytest.fixture
def repository(db) -> CampaignRepository:
    return CampaignRepository(db)


@pytest_asyncio.fixture
async def manager(repository, ledger, provider, settings, clock) -> AsyncGenerator[CampaignManager, None]:
    manager = CampaignManager(
        repository,
        ledger,
        provider,
        settings=settings,
        dialer_config=DialerConfig(poll_interval_seconds=5, idle_sleep_seconds=2),
        clock=clock,
    )
    yield manager
    await manager.shutdown(timeout=5)


def _request(account, numbers: list[str], **overrides: Any) -> CampaignLaunchRequest:
    fields: dict[str, Any] = {
        "name": "Spring outreach",
        "account_id": account.id,
        "agent_id": "agent-1",
        "contacts": [{"number": n, "first_name": f"c{i}"} for i, n in enumerate(numbers)],
        "call_interval_sec": 0,
    }
    fields.update(overrides)
    return CampaignLaunchRequest(**fields)


def test_interval_for_throttle() -> None:
    assert interval_for_throttle(1) == 60
    assert interval_for_throttle(6) == 10
    assert interval_for_throttle(30) == 5
    assert interval_for_throttle(600) == 5


def test_dedupe_contacts_keeps_first() -> None:
    contacts = [{"number": "+911", "first_name": "a"}, {"number": "+912"}, {"number": "+911", "first_name": "b"}]
    assert dedupe_contacts(contacts) == [{"number": "+911", "first_name": "a"}, {"number": "+912"}]


class TestLaunch:
    @pytest.mark.asyncio
    async def test_launch_dials_every_contact(
        self, manager, repository, ledger, provider, make_account, make_agent
    ) -> None:
        account = await make_account()
        await make_agent(account)

        campaign = await manager.launch(
            _request(account, ["+911", "+912", "+911", "+913"], concurrent_lines=1)
        )
        assert await manager.wait(campaign.id) == CampaignStatus.COMPLETED

        stored = await repository.get(campaign.id)
        assert stored.status == CampaignStatus.COMPLETED
        assert stored.total_contacts == 3
        assert stored.completed_calls == 3
        assert stored.caller_id == "+918000000001"
        assert stored.flow_ref == "12345"
        assert [p["to_number"] for p in provider.placed] == ["+911", "+912", "+913"]

        active = await ledger.list_active_calls()
        assert {a.call_id for a in active} == {p["call_id"] for p in provider.placed}
        assert {a.direction for a in active} == {CallDirection.OUTBOUND}

    @pytest.mark.asyncio
    async def test_lines_capped_and_throttle_applied(self, manager, repository, make_account, make_agent) -> None:
        account = await make_account()
        await make_agent(account)

        campaign = await manager.launch(_request(account, ["+911"], concurrent_lines=10, throttle_cpm=6))
        await manager.wait(campaign.id)

        stored = await repository.get(campaign.id)
        assert stored.concurrent_lines == 2
        assert stored.call_interval_sec == 10

    @pytest.mark.asyncio
    async def test_unknown_account(self, manager, make_account) -> None:
        request = _request(SimpleNamespace(id=uuid4()), ["+911"])

        with pytest.raises(AccountNotFoundError):
            await manager.launch(request)

    @pytest.mark.asyncio
    async def test_exhausted_credits_refused(self, manager, make_account, make_agent) -> None:
        account = await make_account(credit_balance=Decimal("0"))
        await make_agent(account)

        with pytest.raises(InsufficientCreditsError):
            await manager.launch(_request(account, ["+911"]))

    @pytest.mark.asyncio
    async def test_expired_subscription_refused(self, manager, make_account, make_agent) -> None:
        account = await make_account(subscription_expiry=NOW - timedelta(days=1))
        await make_agent(account)

        with pytest.raises(InsufficientCreditsError):
            await manager.launch(_request(account, ["+911"]))

    @pytest.mark.asyncio
    async def test_missing_agent_configuration(self, manager, make_account, make_agent) -> None:
        account = await make_account()
        await make_agent(account, agent_id="agent-2", app_id=None)

        with pytest.raises(ConfigurationError):
            await manager.launch(_request(account, ["+911"]))
        with pytest.raises(ConfigurationError):
            await manager.launch(_request(account, ["+911"], agent_id="agent-2"))


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_pause_then_resume_dials_remaining(
        self, repository, ledger, settings, clock, make_account, make_agent
    ) -> None:
        provider = GatedProvider()
        manager = CampaignManager(
            repository,
            ledger,
            provider,
            settings=settings,
            dialer_config=DialerConfig(poll_interval_seconds=5, idle_sleep_seconds=2),
            clock=clock,
        )
        account = await make_account()
        await make_agent(account)
        campaign = await manager.launch(_request(account, ["+911", "+912", "+913"], concurrent_lines=1))
        while not provider.placed:
            await asyncio.sleep(0)

        paused = await manager.pause(campaign.id)
        assert paused.status == CampaignStatus.PAUSED
        with pytest.raises(InvalidCampaignStateError):
            await manager.resume(campaign.id)

        provider.gate.set()
        assert await manager.wait(campaign.id) == CampaignStatus.PAUSED
        assert [p["to_number"] for p in provider.placed] == ["+911"]

        resumed = await manager.resume(campaign.id)
        assert resumed.status == CampaignStatus.IN_PROGRESS
        assert await manager.wait(campaign.id) == CampaignStatus.COMPLETED

        assert [p["to_number"] for p in provider.placed] == ["+911", "+912", "+913"]
        stored = await repository.get(campaign.id)
        assert stored.completed_calls == 3
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_resume_skips_completed_contacts(
        self, manager, repository, provider, make_account
    ) -> None:
        account = await make_account()
        await repository.create(
            Campaign(
                id="cmp_resume",
                name="Half done",
                account_id=account.id,
                status=CampaignStatus.PAUSED,
                total_contacts=3,
                caller_id="+918000000001",
                flow_ref="12345",
                concurrent_lines=1,
                call_interval_sec=0,
                contacts=[{"number": "+911"}, {"number": "+912"}, {"number": "+913"}],
                call_results=[
                    {"number": "+911", "first_name": "", "status": "completed", "attempt": 0},
                    {"number": "+912", "first_name": "", "status": "failed", "attempt": 0},
                ],
            )
        )

        await manager.resume("cmp_resume")
        await manager.wait("cmp_resume")

        assert [p["to_number"] for p in provider.placed] == ["+912", "+913"]
        details = await manager.call_details("cmp_resume")
        assert [d["status"] for d in details] == ["completed", "completed", "completed"]

    @pytest.mark.asyncio
    async def test_resume_with_nothing_left_completes(self, manager, repository, provider, make_account) -> None:
        account = await make_account()
        await repository.create(
            Campaign(
                id="cmp_done",
                name="Done",
                account_id=account.id,
                status=CampaignStatus.FAILED,
                caller_id="+918000000001",
                flow_ref="12345",
                contacts=[{"number": "+911"}],
                call_results=[{"number": "+911", "status": "completed"}],
            )
        )

        campaign = await manager.resume("cmp_done")

        assert campaign.status == CampaignStatus.COMPLETED
        assert provider.placed == []

    @pytest.mark.asyncio
    async def test_resume_of_running_campaign_rejected(self, manager, repository, make_account) -> None:
        account = await make_account()
        await repository.create(
            Campaign(
                id="cmp_live",
                name="Live",
                account_id=account.id,
                status=CampaignStatus.IN_PROGRESS,
                caller_id="+918000000001",
                flow_ref="12345",
                contacts=[{"number": "+911"}],
            )
        )

        with pytest.raises(InvalidCampaignStateError):
            await manager.resume("cmp_live")

    @pytest.mark.asyncio
    async def test_pause_completed_campaign_rejected(self, manager, repository, make_account) -> None:
        account = await make_account()
        await repository.create(
            Campaign(
                id="cmp_over",
                name="Over",
                account_id=account.id,
                status=CampaignStatus.COMPLETED,
                caller_id="+918000000001",
                flow_ref="12345",
                contacts=[],
            )
        )

        with pytest.raises(InvalidCampaignStateError):
            await manager.pause("cmp_over")


class TestQueries:
    @pytest.mark.asyncio
    async def test_call_details_marks_undialed_pending(self, manager, repository, make_account) -> None:
        account = await make_account()
        await repository.create(
            Campaign(
                id="cmp_partial",
                name="Partial",
                account_id=account.id,
                status=CampaignStatus.PAUSED,
                caller_id="+918000000001",
                flow_ref="12345",
                contacts=[{"number": "+911", "first_name": "A"}, {"number": "+912", "first_name": "B"}],
                call_results=[{"number": "+911", "first_name": "A", "status": "failed", "attempt": 1}],
            )
        )

        details = await manager.call_details("cmp_partial")

        assert details == [
            {"number": "+911", "first_name": "A", "status": "failed", "attempt": 1},
            {"number": "+912", "first_name": "B", "status": "pending"},
        ]

    @pytest.mark.asyncio
    async def test_list_filters_by_account_and_status(self, manager, repository, make_account) -> None:
        first = await make_account()
        second = await make_account()
        for campaign_id, account, status in [
            ("cmp_a", first, CampaignStatus.PAUSED),
            ("cmp_b", first, CampaignStatus.COMPLETED),
            ("cmp_c", second, CampaignStatus.PAUSED),
        ]:
            await repository.create(
                Campaign(
                    id=campaign_id,
                    name=campaign_id,
                    account_id=account.id,
                    status=status,
                    caller_id="+918000000001",
                    flow_ref="12345",
                    contacts=[],
                )
            )

        items, total = await manager.list(account_id=first.id)
        assert total == 2
        assert {c.id for c in items} == {"cmp_a", "cmp_b"}

        items, total = await manager.list(status=CampaignStatus.PAUSED)
        assert {c.id for c in items} == {"cmp_a", "cmp_c"}

    @pytest.mark.asyncio
    async def test_delete(self, manager, repository, make_account) -> None:
        account = await make_account()
        await repository.create(
            Campaign(
                id="cmp_gone",
                name="Gone",
                account_id=account.id,
                status=CampaignStatus.PAUSED,
                caller_id="+918000000001",
                flow_ref="12345",
                contacts=[],
            )
        )

        await manager.delete("cmp_gone")

        with pytest.raises(CampaignNotFoundError):
            await manager.get("cmp_gone")
        with pytest.raises(CampaignNotFoundError):
            await manager.delete("cmp_gone")
