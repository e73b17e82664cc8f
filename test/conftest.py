"""
Pytest configuration and shared fixtures.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio

from callcontrol.accounts.ledger import LedgerStore
from callcontrol.accounts.models import Account, AccountRole, NotificationType
from callcontrol.calls.models import CallDirection
from callcontrol.config import Settings
from callcontrol.shared.database import DatabaseManager
from callcontrol.telephony.mock_adapter import MockTelephonyAdapter
from callcontrol.telephony.models import AgentTelephonyConfig

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Virtual time: every sleep advances the clock instead of waiting."""

    def __init__(self, start: datetime = NOW) -> None:
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)

    async def sleep(self, seconds: float, stop: asyncio.Event | None = None) -> bool:
        if stop is not None and stop.is_set():
            return True
        self.sleeps.append(seconds)
        self.advance(max(seconds, 0))
        await asyncio.sleep(0)
        return stop is not None and stop.is_set()


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[Any, NotificationType, str]] = []

    async def send(self, account: Account, type: NotificationType, message: str) -> None:
        self.sent.append((account.id, type, message))


class FailingNotifier:
    async def send(self, account: Account, type: NotificationType, message: str) -> None:
        raise RuntimeError("delivery down")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        per_minute_rate=Decimal("1"),
        billing_rounding="ceil",
        exempt_account_ids="",
        max_zero_duration_rechecks=2,
        campaign_max_lines=2,
        campaign_timezone="UTC",
    )


@pytest_asyncio.fixture
async def db(settings: Settings) -> AsyncGenerator[DatabaseManager, None]:
    manager = DatabaseManager(settings.database_url)
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def ledger(db: DatabaseManager, settings: Settings) -> LedgerStore:
    return LedgerStore(db, settings)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def provider() -> MockTelephonyAdapter:
    return MockTelephonyAdapter()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def make_account(db: DatabaseManager) -> Callable[..., Awaitable[Account]]:
    async def _make(**overrides: Any) -> Account:
        fields: dict[str, Any] = {
            "id": uuid4(),
            "email": f"{uuid4().hex[:10]}@example.com",
            "role": AccountRole.ADMIN,
            "phone_number": None,
            "is_active": True,
            "credit_balance": Decimal("100"),
            "subscription_expiry": NOW + timedelta(days=30),
            "concurrent_line_limit": 2,
            "low_balance_threshold": Decimal("50"),
        }
        fields.update(overrides)
        account = Account(**fields)
        async with db.session() as session:
            session.add(account)
        return account

    return _make


@pytest.fixture
def make_agent(db: DatabaseManager) -> Callable[..., Awaitable[AgentTelephonyConfig]]:
    async def _make(account: Account, agent_id: str = "agent-1", **overrides: Any) -> AgentTelephonyConfig:
        fields: dict[str, Any] = {
            "agent_id": agent_id,
            "account_id": account.id,
            "exophone": "+918000000001",
            "app_id": "12345",
        }
        fields.update(overrides)
        config = AgentTelephonyConfig(**fields)
        async with db.session() as session:
            session.add(config)
        return config

    return _make


@pytest.fixture
def start_call(ledger: LedgerStore) -> Callable[..., Awaitable[str]]:
    """Register an active call directly, bypassing admission."""

    async def _start(
        account: Account,
        call_id: str | None = None,
        billable: Account | None = None,
        started_at: datetime = NOW,
        direction: CallDirection = CallDirection.INBOUND,
    ) -> str:
        call_id = call_id or f"CALL_{uuid4().hex[:8]}"
        await ledger.insert_active_call(
            call_id,
            account.id,
            (billable or account).id,
            direction,
            started_at,
        )
        return call_id

    return _start
