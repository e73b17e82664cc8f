"""
Wall clock with interruptible sleeps.

Background loops take a Clock so tests can drive them on virtual time.
"""

import asyncio
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""
        ...

    async def sleep(self, seconds: float, stop: asyncio.Event | None = None) -> bool:
        """Sleep up to `seconds`; return True if `stop` was set before the delay elapsed."""
        ...


class SystemClock:
    """Real time clock backed by the running event loop."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float, stop: asyncio.Event | None = None) -> bool:
        if stop is None:
            await asyncio.sleep(max(seconds, 0))
            return False
        if stop.is_set():
            return True
        try:
            await asyncio.wait_for(stop.wait(), timeout=max(seconds, 0))
            return True
        except asyncio.TimeoutError:
            return False
