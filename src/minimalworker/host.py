"""
Worker host.

Composition root tying together the registry, the service provider, the
clock, telemetry and one scheduler loop per registration.

Usage:
    host = WorkerHost(services)
    host.add_periodic_worker(timedelta(minutes=5), sync_orders).with_name("sync-orders")
    await host.run()
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Any, Callable, Dict, List, Optional

from .cancellation import CancellationToken
from .clock import Clock, SystemClock
from .config import WorkerSettings, get_settings
from .core.registry import Duration, WorkerBuilder, WorkerRegistration, WorkerRegistry
from .core.resilience import ResilientExecutor
from .core.telemetry import WorkerTelemetry
from .core.validation import validate_dependencies
from .core.worker import WorkerLoop
from .errors import DependencyValidationError, ExecutionError
from .services import ServiceCollection

logger = logging.getLogger(__name__)


class WorkerHost:
    """Runs registered workers under a managed lifecycle.

    Args:
        services: a ``ServiceCollection``, a built provider, or None for an
            empty container; a provider passed in stays open after ``stop()``
        settings: host settings (default: loaded from the environment)
        clock: time source for schedules and retry delays
        telemetry: tracer/meter wrapper (default: global OpenTelemetry providers)
    """

    def __init__(
        self,
        services: Any = None,
        settings: Optional[WorkerSettings] = None,
        clock: Optional[Clock] = None,
        telemetry: Optional[WorkerTelemetry] = None,
    ):
        self.settings = settings or get_settings()
        if services is None:
            services = ServiceCollection()
        # Only a provider built here is owned, and closed, by the host
        self._owns_provider = isinstance(services, ServiceCollection)
        self.provider = services.build() if self._owns_provider else services
        self.clock = clock or SystemClock()
        self.telemetry = telemetry or WorkerTelemetry(self.settings.telemetry_name)
        self.registry = WorkerRegistry(cron_timezone=self.settings.cron_timezone)

        self._shutdown = CancellationToken()
        self._loops: List[WorkerLoop] = []
        self._tasks: Dict[int, asyncio.Task] = {}
        self._started = False
        self._stopped = False
        self._fatal_error: Optional[BaseException] = None
        self._exit_code: Optional[int] = None

    # -- registration ---------------------------------------------------

    def add_continuous_worker(self, callback: Callable[..., Any]) -> WorkerBuilder:
        return self.registry.register_continuous(callback)

    def add_periodic_worker(self, interval: Duration, callback: Callable[..., Any]) -> WorkerBuilder:
        return self.registry.register_periodic(interval, callback)

    def add_cron_worker(self, cron_expression: str, callback: Callable[..., Any]) -> WorkerBuilder:
        return self.registry.register_cron(cron_expression, callback)

    # -- state ----------------------------------------------------------

    @property
    def shutdown_token(self) -> CancellationToken:
        return self._shutdown

    @property
    def loops(self) -> List[WorkerLoop]:
        return list(self._loops)

    @property
    def fatal_error(self) -> Optional[BaseException]:
        """The error that brought the host down, if any."""
        return self._fatal_error

    @property
    def exit_code(self) -> Optional[int]:
        """Process exit status: None while running, 0 after a clean stop."""
        return self._exit_code

    # -- lifecycle ------------------------------------------------------

    async def start(self) -> None:
        """Validate dependencies, then start one loop per registration.

        Raises:
            DependencyValidationError: if any worker dependency cannot be
                resolved; no worker has run at that point.
        """
        if self._started:
            raise RuntimeError("WorkerHost has already been started")
        self._started = True

        registrations = self.registry.freeze()
        try:
            await validate_dependencies(registrations, self.provider)
        except DependencyValidationError as e:
            logger.critical(f"FATAL: {e}")
            self._fail(e)
            raise

        executor = ResilientExecutor(
            self._shutdown,
            self.clock,
            self.telemetry,
            cancellation_grace=self.settings.cancellation_grace,
        )
        for registration in registrations:
            worker_loop = WorkerLoop(
                registration,
                self.provider,
                executor,
                self.clock,
                self._shutdown,
                self.telemetry,
                on_fatal=self._on_worker_fatal,
            )
            task = asyncio.create_task(worker_loop.run(), name=f"worker:{registration.display_name}")
            task.add_done_callback(self._on_loop_done)
            self._loops.append(worker_loop)
            self._tasks[registration.id] = task

        logger.info(f"Worker host '{self.settings.service_name}' started {len(self._tasks)} worker(s)")

    async def stop(self) -> None:
        """Signal shutdown, wait for loops, then dispose a provider the host built."""
        if self._stopped:
            return
        self._stopped = True
        self._shutdown.cancel()

        tasks = list(self._tasks.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.settings.shutdown_timeout)
            if pending:
                logger.warning(
                    f"{len(pending)} worker(s) did not stop within "
                    f"{self.settings.shutdown_timeout:g}s; cancelling them"
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        if self._owns_provider:
            await self.provider.aclose()

        if self._exit_code is None:
            self._exit_code = 0
        logger.info(f"Worker host '{self.settings.service_name}' stopped")

    async def wait_for_shutdown(self) -> None:
        """Wait until shutdown is requested by a signal, ``stop()`` or a fatal error."""
        await self._shutdown.wait()

    async def run(self) -> None:
        """Start, wait for SIGINT/SIGTERM or a fatal error, then stop.

        On a fatal error the process exits with ``fatal_exit_code``, or the
        error is re-raised when ``exit_on_fatal`` is False.
        """
        loop = asyncio.get_running_loop()
        installed = self._install_signal_handlers(loop)
        try:
            await self.start()
            await self.wait_for_shutdown()
        except DependencyValidationError:
            if not self.settings.exit_on_fatal:
                raise
        finally:
            await self.stop()
            for sig in installed:
                loop.remove_signal_handler(sig)

        if self._fatal_error is not None:
            if self.settings.exit_on_fatal:
                logger.critical(f"FATAL: exiting with status {self._exit_code}")
                sys.exit(self._exit_code)
            raise self._fatal_error

    async def __aenter__(self) -> "WorkerHost":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # -- internals ------------------------------------------------------

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> List[int]:
        installed = []

        def _shutdown_handler():
            logger.info("Shutdown signal received, stopping workers...")
            self._shutdown.cancel()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _shutdown_handler)
            except (NotImplementedError, RuntimeError) as e:
                logger.debug(f"Signal handler for {sig!r} not installed: {e}")
                continue
            installed.append(sig)
        return installed

    def _on_worker_fatal(self, registration: WorkerRegistration, error: BaseException) -> None:
        cause = error.__cause__ or error
        logger.critical(
            f"FATAL: worker '{registration.display_name}' (id={registration.id}) failed without "
            f"an error handler: {type(cause).__name__}: {cause}",
            exc_info=(type(cause), cause, cause.__traceback__),
        )
        self._fail(error)

    def _on_loop_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            name = task.get_name().split(":", 1)[-1]
            logger.critical(f"FATAL: scheduler loop of worker '{name}' crashed: {error!r}")
            fatal = ExecutionError(name, error)
            fatal.__cause__ = error
            self._fail(fatal)

    def _fail(self, error: BaseException) -> None:
        if self._fatal_error is None:
            self._fatal_error = error
            self._exit_code = self.settings.fatal_exit_code
        self._shutdown.cancel()


__all__ = ["WorkerHost"]
