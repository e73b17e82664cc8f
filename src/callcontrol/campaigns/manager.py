"""
Campaign manager: launch, pause, resume and delete campaigns.

Holds the handle (CampaignRun plus its asyncio task) of every campaign
running in this process.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Sequence
from typing import Any
from uuid import UUID, uuid4

from callcontrol.accounts.ledger import LedgerStore
from callcontrol.accounts.models import Account
from callcontrol.campaigns.dialer import (
    AttemptState,
    CampaignDialer,
    CampaignPlan,
    CampaignRun,
    DialerConfig,
)
from callcontrol.campaigns.models import RESUMABLE_STATUSES, Campaign, CampaignStatus
from callcontrol.campaigns.repository import CampaignRepository
from callcontrol.campaigns.schemas import CampaignLaunchRequest
from callcontrol.config import Settings, get_settings
from callcontrol.shared.clock import Clock, SystemClock
from callcontrol.shared.database import ensure_utc
from callcontrol.shared.exceptions import (
    AccountNotFoundError,
    CampaignNotFoundError,
    ConfigurationError,
    InsufficientCreditsError,
    InvalidCampaignStateError,
)
from callcontrol.shared.logging import get_logger
from callcontrol.telephony.interface import TelephonyProvider

logger = get_logger(__name__)

MIN_THROTTLED_INTERVAL_SEC = 5
PENDING_STATUS = "pending"


def interval_for_throttle(calls_per_minute: int) -> int:
    """Seconds between first attempts for a calls-per-minute throttle."""
    return max(MIN_THROTTLED_INTERVAL_SEC, math.ceil(60 / calls_per_minute))


def dedupe_contacts(contacts: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    """Drop repeated numbers, keeping the first occurrence."""
    seen: set[str] = set()
    unique: list[dict[str, Any]] = []
    for contact in contacts:
        number = contact["number"]
        if number in seen:
            continue
        seen.add(number)
        unique.append(contact)
    return unique


class CampaignManager:
    """Service layer over the campaign repository and the running dialers."""

    def __init__(
        self,
        repository: CampaignRepository,
        ledger: LedgerStore,
        provider: TelephonyProvider,
        settings: Settings | None = None,
        dialer_config: DialerConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._repository = repository
        self._ledger = ledger
        self._provider = provider
        self._settings = settings or get_settings()
        self._dialer_config = dialer_config or DialerConfig.from_settings(self._settings)
        self._clock = clock or SystemClock()
        self._runs: dict[str, CampaignRun] = {}
        self._tasks: dict[str, asyncio.Task[CampaignStatus]] = {}

    def is_running(self, campaign_id: str) -> bool:
        task = self._tasks.get(campaign_id)
        return task is not None and not task.done()

    def get_run(self, campaign_id: str) -> CampaignRun | None:
        return self._runs.get(campaign_id)

    async def wait(self, campaign_id: str) -> CampaignStatus | None:
        """Wait for a campaign's dialer to finish; None if it is not running."""
        task = self._tasks.get(campaign_id)
        if task is None:
            return None
        return await task

    async def get(self, campaign_id: str) -> Campaign:
        campaign = await self._repository.get(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(campaign_id)
        return campaign

    async def list(
        self,
        account_id: UUID | None = None,
        status: CampaignStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[Sequence[Campaign], int]:
        return await self._repository.list(account_id=account_id, status=status, limit=limit, offset=offset)

    async def _billable_account(self, account_id: UUID) -> Account:
        """Resolve and vet the account that pays for the campaign's calls."""
        account = await self._ledger.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        billable = await self._ledger.resolve_billable_account(account)

        if not account.is_active or not billable.is_active:
            raise InsufficientCreditsError(
                "Account is deactivated",
                {"account_id": str(account_id)},
            )
        if self._ledger.is_exempt(billable) or self._ledger.is_exempt(account):
            return billable

        expiry = ensure_utc(billable.subscription_expiry)
        if expiry is not None and self._clock.now() > expiry:
            raise InsufficientCreditsError(
                "Your subscription has expired. Please renew.",
                {"account_id": str(billable.id)},
            )
        if billable.credit_balance <= 0:
            raise InsufficientCreditsError(
                "Your call credits are exhausted. Please recharge.",
                {"account_id": str(billable.id), "balance": str(billable.credit_balance)},
            )
        return billable

    async def launch(self, request: CampaignLaunchRequest) -> Campaign:
        """Validate, persist and start a new campaign."""
        billable = await self._billable_account(request.account_id)

        agent_config = await self._ledger.get_agent_telephony_config(request.agent_id)
        if agent_config is None or not agent_config.exophone or not agent_config.app_id:
            raise ConfigurationError(
                "Agent telephony not configured",
                {"agent_id": request.agent_id},
            )

        contacts = dedupe_contacts([c.model_dump() for c in request.contacts])

        if request.throttle_cpm:
            call_interval_sec = interval_for_throttle(request.throttle_cpm)
        elif request.call_interval_sec is not None:
            call_interval_sec = request.call_interval_sec
        else:
            call_interval_sec = self._settings.campaign_default_call_interval_sec

        max_lines = self._settings.campaign_max_lines
        concurrent_lines = min(request.concurrent_lines or max_lines, max_lines)

        campaign = Campaign(
            id=f"cmp_{uuid4().hex}",
            name=request.name,
            account_id=request.account_id,
            agent_id=request.agent_id,
            status=CampaignStatus.IN_PROGRESS,
            total_contacts=len(contacts),
            completed_calls=0,
            failed_calls=0,
            call_interval_sec=call_interval_sec,
            concurrent_lines=concurrent_lines,
            caller_id=agent_config.exophone,
            flow_ref=agent_config.app_id,
            contacts=contacts,
            call_results=[],
            max_retries=request.max_retries,
            retry_interval_minutes=request.retry_interval_minutes,
            daily_start_time=request.daily_start_time,
            daily_end_time=request.daily_end_time,
        )
        campaign = await self._repository.create(campaign)

        logger.info(
            "Campaign launched",
            extra={
                "campaign_id": campaign.id,
                "account_id": str(request.account_id),
                "contacts": len(contacts),
                "lines": concurrent_lines,
                "call_interval_sec": call_interval_sec,
            },
        )
        self._start(campaign, contacts, billable.id)
        return campaign

    def _start(
        self,
        campaign: Campaign,
        contacts: list[dict[str, Any]],
        billable_account_id: UUID,
        previous_results: list[dict[str, Any]] | None = None,
    ) -> None:
        plan = CampaignPlan(
            campaign_id=campaign.id,
            account_id=campaign.account_id,
            billable_account_id=billable_account_id,
            caller_id=campaign.caller_id,
            flow_ref=campaign.flow_ref,
            concurrent_lines=campaign.concurrent_lines,
            call_interval_sec=campaign.call_interval_sec,
            max_retries=campaign.max_retries,
            retry_interval_minutes=campaign.retry_interval_minutes,
            daily_start_time=campaign.daily_start_time,
            daily_end_time=campaign.daily_end_time,
        )
        run = CampaignRun(plan, contacts, previous_results)
        dialer = CampaignDialer(
            run,
            self._provider,
            self._repository,
            registry=self._ledger,
            config=self._dialer_config,
            clock=self._clock,
        )
        self._runs[campaign.id] = run
        task = asyncio.create_task(dialer.run(), name=f"campaign-{campaign.id}")
        self._tasks[campaign.id] = task
        task.add_done_callback(lambda t, cid=campaign.id: self._release(cid, t))

    def _release(self, campaign_id: str, task: asyncio.Task[CampaignStatus]) -> None:
        if self._tasks.get(campaign_id) is task:
            self._tasks.pop(campaign_id, None)
            self._runs.pop(campaign_id, None)

    async def pause(self, campaign_id: str) -> Campaign:
        """Stop dispatching new calls; in-flight calls finish on their own."""
        campaign = await self.get(campaign_id)
        if campaign.status not in (CampaignStatus.IN_PROGRESS, CampaignStatus.PAUSED_DAILY):
            raise InvalidCampaignStateError(campaign_id, campaign.status, "pause")

        run = self._runs.get(campaign_id)
        if run is not None:
            run.abort.set()
        await self._repository.set_status(campaign_id, CampaignStatus.PAUSED)
        logger.info("Campaign paused", extra={"campaign_id": campaign_id})
        return await self.get(campaign_id)

    async def resume(self, campaign_id: str) -> Campaign:
        """Restart dialing for contacts whose last result is not a success."""
        campaign = await self.get(campaign_id)
        if campaign.status not in RESUMABLE_STATUSES:
            raise InvalidCampaignStateError(campaign_id, campaign.status, "resume")
        if self.is_running(campaign_id):
            # Still draining in-flight calls from the pause.
            raise InvalidCampaignStateError(campaign_id, campaign.status, "resume while calls are in flight")

        billable = await self._billable_account(campaign.account_id)

        results = list(campaign.call_results or [])
        done = {r["number"] for r in results if r.get("status") == AttemptState.COMPLETED.value}
        remaining = [c for c in campaign.contacts if c["number"] not in done]

        if not remaining:
            await self._repository.set_status(campaign_id, CampaignStatus.COMPLETED)
            return await self.get(campaign_id)

        await self._repository.set_status(campaign_id, CampaignStatus.IN_PROGRESS)
        campaign = await self.get(campaign_id)
        logger.info(
            "Campaign resumed",
            extra={"campaign_id": campaign_id, "remaining": len(remaining)},
        )
        self._start(campaign, remaining, billable.id, previous_results=results)
        return campaign

    async def delete(self, campaign_id: str) -> None:
        await self.get(campaign_id)
        run = self._runs.get(campaign_id)
        if run is not None:
            run.abort.set()
        await self._repository.delete(campaign_id)
        logger.info("Campaign deleted", extra={"campaign_id": campaign_id})

    async def call_details(self, campaign_id: str) -> list[dict[str, Any]]:
        """Contacts in launch order joined with their last result."""
        campaign = await self.get(campaign_id)
        run = self._runs.get(campaign_id)
        results = run.results if run is not None else {
            r["number"]: r for r in (campaign.call_results or []) if r.get("number")
        }
        details: list[dict[str, Any]] = []
        for contact in campaign.contacts:
            result = results.get(contact["number"])
            if result is None:
                result = {
                    "number": contact["number"],
                    "first_name": contact.get("first_name") or "",
                    "status": PENDING_STATUS,
                }
            details.append(dict(result))
        return details

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Abort every running campaign and wait briefly for in-flight calls."""
        for run in self._runs.values():
            run.abort.set()
        tasks = list(self._tasks.values())
        if not tasks:
            return
        _, still_running = await asyncio.wait(tasks, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
        logger.info("Campaign manager stopped", extra={"cancelled": len(still_running)})
