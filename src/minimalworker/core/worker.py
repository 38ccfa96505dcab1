"""
Worker scheduler loops.

One loop per registration, all running concurrently on the host's event loop:

    continuous  one scope for the worker lifetime, callback invoked exactly once
    periodic    fresh scope per tick, next tick waits for the previous one
    cron        fresh scope per occurrence, next occurrence computed after completion
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from ..cancellation import CancellationToken
from ..clock import Clock
from ..schedules import CronSchedule, PeriodicTimer
from .registry import WorkerKind, WorkerRegistration
from .resilience import ResilientExecutor, Verdict
from .scopes import open_scope
from .telemetry import WorkerTelemetry

logger = logging.getLogger(__name__)

FatalCallback = Callable[[WorkerRegistration, BaseException], None]


class WorkerLoop:
    """Drives one registration from start until shutdown or termination."""

    def __init__(
        self,
        registration: WorkerRegistration,
        provider: Any,
        executor: ResilientExecutor,
        clock: Clock,
        shutdown: CancellationToken,
        telemetry: WorkerTelemetry,
        on_fatal: FatalCallback,
    ):
        self.registration = registration
        self._provider = provider
        self._executor = executor
        self._clock = clock
        self._shutdown = shutdown
        self._telemetry = telemetry
        self._on_fatal = on_fatal
        self.invocations = 0

        # The first periodic interval is measured from host start
        self._timer: Optional[PeriodicTimer] = None
        if registration.kind is WorkerKind.PERIODIC:
            self._timer = PeriodicTimer(registration.interval, clock)
            self._timer.start()

    @property
    def name(self) -> str:
        return self.registration.display_name

    async def run(self) -> None:
        kind = self.registration.kind
        logger.info(f"Starting {kind.value} worker '{self.name}'")
        try:
            if kind is WorkerKind.CONTINUOUS:
                await self._run_continuous()
            elif kind is WorkerKind.PERIODIC:
                await self._run_periodic()
            else:
                await self._run_cron()
        finally:
            logger.info(f"Worker '{self.name}' stopped after {self.invocations} invocation(s)")

    async def _run_continuous(self) -> None:
        if self._shutdown.is_cancelled:
            return
        async with open_scope(self._provider, self.name) as scope:
            self.invocations += 1
            result = await self._executor.run(self.registration, scope, None)
        self._after(result)

    async def _run_periodic(self) -> None:
        while not self._shutdown.is_cancelled:
            if not await self._timer.wait_for_next_tick(self._shutdown):
                break
            logger.debug(f"Periodic tick for worker '{self.name}'")
            if not await self._trigger():
                break

    async def _run_cron(self) -> None:
        schedule = CronSchedule(self.registration.cron_trigger, self.registration.cron_expression)
        occurrence = None
        while not self._shutdown.is_cancelled:
            occurrence = await schedule.wait_for_next(self._clock, self._shutdown, after=occurrence)
            if occurrence is None:
                break
            logger.debug(f"Cron occurrence {occurrence.isoformat()} for worker '{self.name}'")
            if not await self._trigger():
                break

    async def _trigger(self) -> bool:
        """Run one logical invocation in a fresh scope. Returns False to stop the loop."""
        iteration = self._telemetry.next_iteration(self.registration)
        async with open_scope(self._provider, self.name) as scope:
            self.invocations += 1
            result = await self._executor.run(self.registration, scope, iteration)
        return self._after(result)

    def _after(self, result) -> bool:
        if result.verdict is Verdict.FATAL:
            self._on_fatal(self.registration, result.fatal_error)
            return False
        return result.verdict is Verdict.CONTINUE


__all__ = ["WorkerLoop"]
