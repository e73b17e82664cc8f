"""
Campaign dialer.

One CampaignDialer drives one CampaignRun: it dispatches call attempts under
the campaign's line budget, polls each call to a terminal status, schedules
retries and honors the daily calling window. Progress is persisted after
every attempt state change.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

from callcontrol.calls.models import CallDirection
from callcontrol.campaigns.models import CampaignStatus
from callcontrol.campaigns.repository import CampaignStore
from callcontrol.campaigns.schedule import DailyWindow
from callcontrol.config import Settings, get_settings
from callcontrol.shared.clock import Clock, SystemClock
from callcontrol.shared.logging import bind_log_context, get_logger
from callcontrol.telephony.interface import (
    CallStatus,
    CallStatusInfo,
    TelephonyProvider,
    TelephonyProviderError,
)

logger = get_logger(__name__)

TIMEOUT_STATUS = "timeout"


@dataclass
class DialerConfig:
    """Timing knobs of the dialer loop."""

    poll_interval_seconds: float = 5.0
    max_wait_seconds: float = 300.0
    final_duration_grace_seconds: float = 3.0
    idle_sleep_seconds: float = 2.0
    daily_pause_chunk_seconds: float = 60.0
    registration_attempts: int = 3
    registration_retry_seconds: float = 1.0
    timezone: str = "UTC"

    @classmethod
    def from_settings(cls, settings: Settings) -> "DialerConfig":
        return cls(
            poll_interval_seconds=settings.campaign_poll_interval_seconds,
            max_wait_seconds=settings.campaign_max_wait_seconds,
            final_duration_grace_seconds=settings.campaign_final_duration_grace_seconds,
            idle_sleep_seconds=settings.campaign_idle_sleep_seconds,
            daily_pause_chunk_seconds=settings.campaign_daily_pause_chunk_seconds,
            timezone=settings.campaign_timezone,
        )


class AttemptState(str, Enum):
    QUEUED = "queued"
    DIALING = "dialing"
    COMPLETED = "completed"
    RETRY_SCHEDULED = "retry-scheduled"
    FAILED = "failed"


class ActiveCallRegistry(Protocol):
    """Where placed calls are registered so they get metered."""

    async def insert_active_call(
        self,
        call_id: str,
        account_id: UUID,
        billable_account_id: UUID,
        direction: CallDirection,
        start_time: datetime | None = None,
    ) -> bool:
        ...


@dataclass(frozen=True)
class CampaignPlan:
    """Immutable parameters of one campaign run."""

    campaign_id: str
    account_id: UUID
    billable_account_id: UUID
    caller_id: str
    flow_ref: str
    concurrent_lines: int = 1
    call_interval_sec: int = 10
    max_retries: int = 0
    retry_interval_minutes: int = 10
    daily_start_time: str | None = None
    daily_end_time: str | None = None


@dataclass
class CallAttempt:
    number: str
    first_name: str = ""
    attempt: int = 0
    retry_at: datetime | None = None


@dataclass
class DialOutcome:
    success: bool
    provider_status: str
    call_id: str | None = None
    duration_seconds: int = 0
    error: str | None = None


class CampaignRun:
    """Mutable state of one running campaign, owned by its dialer task."""

    def __init__(
        self,
        plan: CampaignPlan,
        contacts: list[dict[str, Any]],
        previous_results: list[dict[str, Any]] | None = None,
    ) -> None:
        self.plan = plan
        self.abort = asyncio.Event()
        self.pending: deque[CallAttempt] = deque(
            CallAttempt(number=c["number"], first_name=c.get("first_name") or "") for c in contacts
        )
        self.retry_hold: list[CallAttempt] = []
        self.active_lines = 0
        self.peak_lines = 0
        self.next_first_attempt_at: datetime | None = None
        self.status = CampaignStatus.IN_PROGRESS
        self.tasks: set[asyncio.Task[None]] = set()
        # Keyed by number; replacing a key keeps its position.
        self.results: dict[str, dict[str, Any]] = {
            r["number"]: dict(r) for r in (previous_results or []) if r.get("number")
        }

    @property
    def drained(self) -> bool:
        return not self.pending and not self.retry_hold and self.active_lines == 0

    @property
    def has_work(self) -> bool:
        return bool(self.pending or self.retry_hold)

    def result_list(self) -> list[dict[str, Any]]:
        return list(self.results.values())

    def counts(self) -> tuple[int, int]:
        """Completed and finally-failed contacts, derived from the results."""
        completed = sum(1 for r in self.results.values() if r.get("status") == AttemptState.COMPLETED.value)
        failed = sum(1 for r in self.results.values() if r.get("status") == AttemptState.FAILED.value)
        return completed, failed


class CampaignDialer:
    """Scheduler loop of one campaign.

    In-flight attempts always run to a terminal status, even after abort.
    """

    def __init__(
        self,
        run: CampaignRun,
        provider: TelephonyProvider,
        store: CampaignStore,
        registry: ActiveCallRegistry | None = None,
        config: DialerConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._run = run
        self._plan = run.plan
        self._provider = provider
        self._store = store
        self._registry = registry
        self._config = config or DialerConfig.from_settings(get_settings())
        self._clock = clock or SystemClock()
        self._window = DailyWindow.from_strings(
            self._plan.daily_start_time,
            self._plan.daily_end_time,
            self._config.timezone,
        )

    @property
    def run_state(self) -> CampaignRun:
        return self._run

    async def run(self) -> CampaignStatus:
        """Drive the campaign until drained or aborted and persist the final status."""
        bind_log_context(campaign_id=self._plan.campaign_id)
        logger.info(
            "Campaign dialer started",
            extra={
                "campaign_id": self._plan.campaign_id,
                "pending": len(self._run.pending),
                "lines": self._plan.concurrent_lines,
                "call_interval_sec": self._plan.call_interval_sec,
                "max_retries": self._plan.max_retries,
            },
        )
        try:
            status = await self._loop()
        except Exception:
            logger.exception("Campaign dialer failed", extra={"campaign_id": self._plan.campaign_id})
            status = CampaignStatus.FAILED

        await self._wait_in_flight()
        self._run.status = status
        await self._persist(status)
        completed, failed = self._run.counts()
        logger.info(
            "Campaign dialer finished",
            extra={
                "campaign_id": self._plan.campaign_id,
                "status": status.value,
                "completed": completed,
                "failed": failed,
            },
        )
        return status

    async def _loop(self) -> CampaignStatus:
        run = self._run
        while True:
            if run.abort.is_set():
                await self._wait_in_flight()
                return CampaignStatus.PAUSED

            if run.drained:
                return CampaignStatus.COMPLETED

            now = self._clock.now()
            if run.has_work and self._window is not None:
                resume_at = self._window.resume_at(now)
                if resume_at is not None:
                    await self._pause_until(resume_at)
                    continue

            self._promote_due_retries(now)

            if run.active_lines < self._plan.concurrent_lines:
                attempt = self._next_ready(now)
                if attempt is not None:
                    self._dispatch(attempt, now)
                    continue

            await self._clock.sleep(self._config.idle_sleep_seconds, run.abort)

    def _promote_due_retries(self, now: datetime) -> None:
        run = self._run
        due = sorted(
            (a for a in run.retry_hold if a.retry_at is not None and a.retry_at <= now),
            key=lambda a: a.retry_at,  # type: ignore[arg-type, return-value]
        )
        for attempt in due:
            run.retry_hold.remove(attempt)
            run.pending.append(attempt)

    def _next_ready(self, now: datetime) -> CallAttempt | None:
        """First pending attempt allowed to dial now; retries skip the pacing gate."""
        run = self._run
        paced = run.next_first_attempt_at is not None and now < run.next_first_attempt_at
        for attempt in run.pending:
            if attempt.attempt > 0 or not paced:
                run.pending.remove(attempt)
                return attempt
        return None

    def _dispatch(self, attempt: CallAttempt, now: datetime) -> None:
        run = self._run
        run.active_lines += 1
        run.peak_lines = max(run.peak_lines, run.active_lines)
        if attempt.attempt == 0:
            run.next_first_attempt_at = now + timedelta(seconds=self._plan.call_interval_sec)

        self._record(attempt, AttemptState.DIALING)
        logger.info(
            "Line acquired",
            extra={
                "campaign_id": self._plan.campaign_id,
                "number": attempt.number,
                "attempt": attempt.attempt,
                "active_lines": run.active_lines,
            },
        )
        task = asyncio.create_task(self._attempt(attempt))
        run.tasks.add(task)
        task.add_done_callback(run.tasks.discard)

    async def _attempt(self, attempt: CallAttempt) -> None:
        try:
            await self._persist()
            try:
                outcome = await self._dial(attempt)
            except Exception as e:
                logger.exception(
                    "Call attempt failed unexpectedly",
                    extra={"campaign_id": self._plan.campaign_id, "number": attempt.number},
                )
                outcome = DialOutcome(success=False, provider_status=CallStatus.FAILED.value, error=str(e))
            self._settle(attempt, outcome)
        finally:
            self._run.active_lines -= 1
        await self._persist()

    async def _dial(self, attempt: CallAttempt) -> DialOutcome:
        try:
            call_id = await self._provider.place_call(
                self._plan.caller_id,
                attempt.number,
                self._plan.flow_ref,
                custom_field=attempt.first_name or None,
            )
        except TelephonyProviderError as e:
            logger.warning(
                "Call placement failed",
                extra={"campaign_id": self._plan.campaign_id, "number": attempt.number, "error": str(e)},
            )
            return DialOutcome(success=False, provider_status=CallStatus.FAILED.value, error=str(e))

        self._record(attempt, AttemptState.DIALING, call_id=call_id)
        if not await self._register(call_id):
            # An unregistered call would never be billed.
            await self._hang_up(call_id)
            return DialOutcome(
                success=False,
                provider_status=CallStatus.FAILED.value,
                call_id=call_id,
                error="call could not be registered for billing",
            )

        info = await self._poll_until_terminal(call_id)
        if info is None:
            logger.info(
                "Call status wait timed out, counting as completed",
                extra={"campaign_id": self._plan.campaign_id, "call_id": call_id},
            )
            return DialOutcome(success=True, provider_status=TIMEOUT_STATUS, call_id=call_id)

        return DialOutcome(
            success=info.status == CallStatus.COMPLETED,
            provider_status=info.status.value,
            call_id=call_id,
            duration_seconds=info.duration_seconds,
        )

    async def _register(self, call_id: str) -> bool:
        """Record the placed call as active; False once every attempt failed."""
        if self._registry is None:
            return True
        attempts = max(1, self._config.registration_attempts)
        for attempt in range(1, attempts + 1):
            try:
                await self._registry.insert_active_call(
                    call_id,
                    self._plan.account_id,
                    self._plan.billable_account_id,
                    CallDirection.OUTBOUND,
                    self._clock.now(),
                )
                return True
            except Exception:
                logger.exception(
                    "Active call registration failed",
                    extra={"call_id": call_id, "attempt": attempt},
                )
            if attempt < attempts:
                await self._clock.sleep(self._config.registration_retry_seconds)
        return False

    async def _hang_up(self, call_id: str) -> None:
        try:
            await self._provider.terminate_call(call_id)
        except TelephonyProviderError as e:
            logger.error(
                "Unregistered call could not be terminated",
                extra={"campaign_id": self._plan.campaign_id, "call_id": call_id, "error": str(e)},
            )
            return
        logger.warning(
            "Unregistered call terminated",
            extra={"campaign_id": self._plan.campaign_id, "call_id": call_id},
        )

    async def _fetch_status(self, call_id: str) -> CallStatusInfo | None:
        try:
            return await self._provider.get_call_status(call_id)
        except TelephonyProviderError as e:
            logger.warning("Call status poll failed", extra={"call_id": call_id, "error": str(e)})
            return None

    async def _poll_until_terminal(self, call_id: str) -> CallStatusInfo | None:
        """Poll until terminal; None when the wait limit elapses first."""
        started = self._clock.now()
        while True:
            await self._clock.sleep(self._config.poll_interval_seconds)

            info = await self._fetch_status(call_id)
            if info is not None and info.is_terminal:
                if info.duration_seconds == 0 and self._config.final_duration_grace_seconds > 0:
                    # Duration can lag the terminal status by a few seconds.
                    await self._clock.sleep(self._config.final_duration_grace_seconds)
                    refreshed = await self._fetch_status(call_id)
                    if refreshed is not None and refreshed.is_terminal:
                        info = refreshed
                return info

            if (self._clock.now() - started).total_seconds() >= self._config.max_wait_seconds:
                return None

    def _settle(self, attempt: CallAttempt, outcome: DialOutcome) -> None:
        if outcome.success:
            self._record(attempt, AttemptState.COMPLETED, **self._outcome_fields(outcome))
            return

        if attempt.attempt < self._plan.max_retries:
            retry_at = self._clock.now() + timedelta(minutes=self._plan.retry_interval_minutes)
            self._run.retry_hold.append(
                CallAttempt(
                    number=attempt.number,
                    first_name=attempt.first_name,
                    attempt=attempt.attempt + 1,
                    retry_at=retry_at,
                )
            )
            self._record(
                attempt,
                AttemptState.RETRY_SCHEDULED,
                retry_at=retry_at,
                **self._outcome_fields(outcome),
            )
            logger.info(
                "Retry scheduled",
                extra={
                    "campaign_id": self._plan.campaign_id,
                    "number": attempt.number,
                    "attempt": attempt.attempt + 1,
                    "retry_at": retry_at.isoformat(),
                },
            )
            return

        self._record(attempt, AttemptState.FAILED, **self._outcome_fields(outcome))

    @staticmethod
    def _outcome_fields(outcome: DialOutcome) -> dict[str, Any]:
        return {
            "call_id": outcome.call_id,
            "provider_status": outcome.provider_status,
            "duration_seconds": outcome.duration_seconds,
            "error": outcome.error,
        }

    def _record(
        self,
        attempt: CallAttempt,
        state: AttemptState,
        call_id: str | None = None,
        provider_status: str | None = None,
        duration_seconds: int = 0,
        error: str | None = None,
        retry_at: datetime | None = None,
    ) -> None:
        self._run.results[attempt.number] = {
            "number": attempt.number,
            "first_name": attempt.first_name,
            "status": state.value,
            "attempt": attempt.attempt,
            "call_id": call_id,
            "provider_status": provider_status,
            "duration_seconds": duration_seconds,
            "error": error,
            "retry_at": retry_at.isoformat() if retry_at else None,
            "updated_at": self._clock.now().isoformat(),
        }

    async def _pause_until(self, resume_at: datetime) -> None:
        run = self._run
        run.status = CampaignStatus.PAUSED_DAILY
        await self._persist(CampaignStatus.PAUSED_DAILY)
        logger.info(
            "Outside daily window, pausing",
            extra={"campaign_id": self._plan.campaign_id, "resume_at": resume_at.isoformat()},
        )

        while not run.abort.is_set():
            remaining = (resume_at - self._clock.now()).total_seconds()
            if remaining <= 0:
                break
            if await self._clock.sleep(min(self._config.daily_pause_chunk_seconds, remaining), run.abort):
                break

        if not run.abort.is_set():
            run.status = CampaignStatus.IN_PROGRESS
            await self._set_status(CampaignStatus.IN_PROGRESS)
            logger.info("Daily window reopened", extra={"campaign_id": self._plan.campaign_id})

    async def _wait_in_flight(self) -> None:
        if self._run.tasks:
            await asyncio.gather(*list(self._run.tasks), return_exceptions=True)

    async def _persist(self, status: CampaignStatus | None = None) -> None:
        completed, failed = self._run.counts()
        try:
            await self._store.save_progress(
                self._plan.campaign_id,
                self._run.result_list(),
                completed,
                failed,
                status=status,
            )
        except Exception:
            logger.exception("Campaign progress save failed", extra={"campaign_id": self._plan.campaign_id})

    async def _set_status(self, status: CampaignStatus) -> None:
        try:
            await self._store.set_status(self._plan.campaign_id, status)
        except Exception:
            logger.exception("Campaign status save failed", extra={"campaign_id": self._plan.campaign_id})
