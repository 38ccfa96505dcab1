"""Time source for schedule and retry waits.

Per-attempt timeouts never go through the clock; they use the event
loop's monotonic timer so that a fake clock cannot stall them.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Union

from .cancellation import CancellationToken


class Clock:
    """Base clock. Subclasses implement ``now`` and ``sleep_until``."""

    def now(self) -> datetime:
        raise NotImplementedError

    async def sleep_until(self, deadline: datetime, token: CancellationToken) -> bool:
        """Wait for ``deadline``. Returns False if ``token`` fired first."""
        raise NotImplementedError

    async def sleep(self, delay: Union[float, timedelta], token: CancellationToken) -> bool:
        if not isinstance(delay, timedelta):
            delay = timedelta(seconds=delay)
        return await self.sleep_until(self.now() + delay, token)


class SystemClock(Clock):
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep_until(self, deadline: datetime, token: CancellationToken) -> bool:
        # The loop timer is monotonic; keep waiting until the wall clock agrees
        while not token.is_cancelled:
            delay = (deadline - self.now()).total_seconds()
            if delay <= 0:
                return True
            try:
                await asyncio.wait_for(token.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue
            return False
        return False


__all__ = ["Clock", "SystemClock"]
