"""
Test helpers for code that runs workers.

``FakeClock`` lets periodic, cron and retry waits be driven
deterministically::

    clock = FakeClock()
    host = WorkerHost(clock=clock)
    host.add_periodic_worker(timedelta(minutes=1), job)
    await host.start()
    await advance_time(clock, timedelta(minutes=5))
    await host.stop()
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from .cancellation import CancellationToken
from .clock import Clock

DEFAULT_START = datetime(2025, 1, 1, tzinfo=timezone.utc)


class FakeClock(Clock):
    """Manually advanced clock. Sleepers wake once ``now >= deadline``."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or DEFAULT_START
        self._sleepers: List[Tuple[datetime, asyncio.Future]] = []

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> None:
        self._now += delta
        due = [s for s in self._sleepers if s[0] <= self._now]
        self._sleepers = [s for s in self._sleepers if s[0] > self._now]
        for _, future in due:
            if not future.done():
                future.set_result(True)

    async def sleep_until(self, deadline: datetime, token: CancellationToken) -> bool:
        if token.is_cancelled:
            return False
        if deadline <= self._now:
            return True

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        entry = (deadline, future)
        self._sleepers.append(entry)

        def on_cancel() -> None:
            if not future.done():
                future.set_result(False)

        unregister = token.register(lambda: loop.call_soon_threadsafe(on_cancel))
        try:
            return await future
        finally:
            unregister()
            if entry in self._sleepers:
                self._sleepers.remove(entry)


async def advance_time(
    clock: FakeClock,
    amount: timedelta,
    steps: int = 10,
    settle: float = 0.01,
) -> None:
    """Advance ``clock`` by ``amount`` in ``steps`` increments.

    Sleeps ``settle`` seconds of real time after each step so that woken
    workers can run to completion before time moves on.
    """
    step = amount / steps
    for _ in range(steps):
        clock.advance(step)
        await asyncio.sleep(settle)


__all__ = ["FakeClock", "advance_time", "DEFAULT_START"]
