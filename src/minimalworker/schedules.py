"""
Schedules for periodic and cron workers.

Cron expressions are standard 5-field crontab strings, parsed and evaluated
with APScheduler's ``CronTrigger``:

    "*/5 * * * *"   every 5 minutes
    "0 6 * * *"     every day at 06:00
    "0 3 * * 1-5"   weekdays at 03:00
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from apscheduler.triggers.cron import CronTrigger

from .cancellation import CancellationToken
from .clock import Clock
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# Smallest datetime step; used to express "strictly after"
_EPSILON = timedelta(microseconds=1)


def parse_cron(expression: str, tz: str = "UTC") -> CronTrigger:
    """Parse a crontab expression, raising ConfigurationError when invalid."""
    try:
        return CronTrigger.from_crontab(expression, timezone=tz)
    except (ValueError, LookupError, TypeError) as e:
        raise ConfigurationError(
            f"Invalid cron expression '{expression}': {e}", "cron_expression"
        ) from e


class CronSchedule:
    """Computes occurrences of a cron expression."""

    def __init__(self, trigger: CronTrigger, expression: str = ""):
        self.trigger = trigger
        self.expression = expression

    @classmethod
    def from_expression(cls, expression: str, tz: str = "UTC") -> "CronSchedule":
        return cls(parse_cron(expression, tz), expression)

    def next_after(self, moment: datetime) -> Optional[datetime]:
        """First occurrence strictly after ``moment`` (UTC), or None if exhausted."""
        fire_time = self.trigger.get_next_fire_time(None, moment + _EPSILON)
        if fire_time is None:
            return None
        return fire_time.astimezone(timezone.utc)

    async def wait_for_next(
        self,
        clock: Clock,
        token: CancellationToken,
        after: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """Sleep until the next occurrence. Returns it, or None on shutdown.

        ``after`` is the occurrence that last fired; the next one is always
        later than it, even when the clock reads slightly behind.
        """
        moment = clock.now()
        if after is not None and after > moment:
            moment = after
        occurrence = self.next_after(moment)
        if occurrence is None:
            logger.warning(f"Cron expression '{self.expression}' has no future occurrences")
            await token.wait()
            return None
        logger.debug(f"Next cron occurrence for '{self.expression}': {occurrence.isoformat()}")
        if not await clock.sleep_until(occurrence, token):
            return None
        return occurrence


class PeriodicTimer:
    """Fixed-interval ticks at ``start + k * interval``.

    A tick fires strictly after its interval has elapsed. Ticks are consumed
    one at a time: when an invocation overruns, the next tick fires once
    immediately and the timer then realigns instead of bursting.
    """

    def __init__(self, interval: timedelta, clock: Clock):
        if interval <= timedelta(0):
            raise ConfigurationError(f"interval must be greater than zero, got {interval}", "interval")
        self.interval = interval
        self._clock = clock
        self._due: Optional[datetime] = None

    def start(self) -> None:
        self._due = self._clock.now() + self.interval

    @property
    def next_due(self) -> Optional[datetime]:
        return self._due

    async def wait_for_next_tick(self, token: CancellationToken) -> bool:
        """Wait for the next tick. Returns False when ``token`` is cancelled."""
        if self._due is None:
            self.start()
        if not await self._clock.sleep_until(self._due + _EPSILON, token):
            return False

        now = self._clock.now()
        self._due += self.interval
        if self._due <= now:
            missed = (now - self._due) // self.interval + 1
            self._due += missed * self.interval
        return True


__all__ = ["CronSchedule", "PeriodicTimer", "parse_cron"]
