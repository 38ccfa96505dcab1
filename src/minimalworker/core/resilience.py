"""
Resilience policy: timeout, retry and outcome classification.

One logical invocation runs up to ``retry_policy.max_attempts`` attempts.
Each attempt gets a token linked from the host shutdown token and, when a
timeout is configured, a per-attempt timer. The classification step looks
at *which* source fired, not just whether the callback saw cancellation:

    completed                          -> SUCCESS
    cancelled by the timeout timer     -> TIMED_OUT  (never retried)
    cancelled by host shutdown         -> SHUTDOWN   (handler not called)
    anything else, including a
    cancellation the callback raised
    for its own reasons                -> FAILED     (retryable)
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Optional

from ..cancellation import CancellationToken
from ..clock import Clock
from ..errors import ExecutionError, OperationCancelled, WorkerTimeoutError
from .binding import call_handler
from .registry import WorkerRegistration
from .telemetry import WorkerTelemetry

logger = logging.getLogger(__name__)


class Outcome(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SHUTDOWN = "shutdown"


@dataclass
class AttemptResult:
    """Classified result of a single attempt."""

    outcome: Outcome
    attempt: int
    error: Optional[BaseException] = None


class Verdict(str, enum.Enum):
    """What the scheduler loop does after a logical invocation."""

    CONTINUE = "continue"  # success, or failure reported to the error handler
    STOP = "stop"  # host is shutting down
    FATAL = "fatal"  # failure without an error handler


@dataclass
class InvocationResult:
    verdict: Verdict
    last: AttemptResult
    fatal_error: Optional[BaseException] = None


def _is_cancellation(error: Optional[BaseException]) -> bool:
    return isinstance(error, (asyncio.CancelledError, OperationCancelled))


def _consume_result(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


class ResilientExecutor:
    """Runs logical invocations of a worker under its timeout/retry policy."""

    def __init__(
        self,
        shutdown: CancellationToken,
        clock: Clock,
        telemetry: WorkerTelemetry,
        cancellation_grace: float = 5.0,
    ):
        self._shutdown = shutdown
        self._clock = clock
        self._telemetry = telemetry
        self._grace = cancellation_grace

    async def run(
        self,
        registration: WorkerRegistration,
        scope: Any,
        iteration: Optional[int] = None,
    ) -> InvocationResult:
        """Run one logical invocation, retrying within the same scope."""
        policy = registration.retry_policy
        max_attempts = policy.max_attempts if policy else 1
        attempt = 1

        while True:
            recorder = self._telemetry.start_attempt(registration, iteration, attempt)
            result = AttemptResult(Outcome.FAILED, attempt)
            will_retry = False
            try:
                result = await self.attempt(registration, scope, attempt, recorder)
                will_retry = result.outcome is Outcome.FAILED and attempt < max_attempts
            finally:
                recorder.finish(result, terminal=not will_retry)

            if result.outcome is Outcome.SUCCESS:
                self._telemetry.record_logical_outcome(registration, succeeded=True)
                if attempt > 1:
                    logger.info(f"Worker '{registration.display_name}' succeeded on attempt {attempt}")
                return InvocationResult(Verdict.CONTINUE, result)

            if result.outcome is Outcome.SHUTDOWN:
                logger.debug(f"Worker '{registration.display_name}' cancelled by host shutdown")
                return InvocationResult(Verdict.STOP, result)

            if will_retry:
                logger.warning(
                    f"Worker '{registration.display_name}' attempt {attempt}/{max_attempts} failed: "
                    f"{type(result.error).__name__}: {result.error}. "
                    f"Retrying in {policy.delay.total_seconds():g}s"
                )
                if not await self._clock.sleep(policy.delay, self._shutdown):
                    return InvocationResult(Verdict.STOP, AttemptResult(Outcome.SHUTDOWN, attempt))
                attempt += 1
                continue

            self._telemetry.record_logical_outcome(registration, succeeded=False)
            return await self._report(registration, result)

    async def attempt(
        self,
        registration: WorkerRegistration,
        scope: Any,
        attempt: int,
        recorder: Any = None,
    ) -> AttemptResult:
        """Invoke the callback once and classify the outcome."""
        if self._shutdown.is_cancelled:
            return AttemptResult(Outcome.SHUTDOWN, attempt)

        loop = asyncio.get_running_loop()
        timeout_token: Optional[CancellationToken] = None
        timer = None
        if registration.timeout is not None:
            timeout_token = CancellationToken()
            timer = loop.call_later(registration.timeout.total_seconds(), timeout_token.cancel)
        signal = CancellationToken.linked(self._shutdown, timeout_token)

        if recorder is not None:
            with recorder.activate():
                task = asyncio.ensure_future(registration.invoker(scope, signal))
        else:
            task = asyncio.ensure_future(registration.invoker(scope, signal))
        waiter = asyncio.ensure_future(signal.wait())
        abandoned = False
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
            if task not in done:
                # A worker thread cannot be interrupted; it only sees the token
                thread_bound = not registration.invoker.is_async
                if not thread_bound:
                    task.cancel()
                done, _ = await asyncio.wait({task}, timeout=self._grace)
                if task not in done or thread_bound:
                    # A thread that returns after the signal still counts as interrupted
                    abandoned = True
                    task.add_done_callback(_consume_result)
                if task not in done:
                    if thread_bound:
                        task.cancel()
                        logger.warning(
                            f"Worker '{registration.display_name}' ignored cancellation for "
                            f"{self._grace:g}s; abandoning it while its worker thread keeps "
                            f"running, so the next invocation may overlap it"
                        )
                    else:
                        logger.warning(
                            f"Worker '{registration.display_name}' did not stop within "
                            f"{self._grace:g}s of cancellation; abandoning it"
                        )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
            if timer is not None:
                timer.cancel()
            signal.close()

        return self._classify(registration, task, attempt, timeout_token, abandoned)

    def _classify(
        self,
        registration: WorkerRegistration,
        task: asyncio.Future,
        attempt: int,
        timeout_token: Optional[CancellationToken],
        abandoned: bool,
    ) -> AttemptResult:
        if abandoned:
            error: Optional[BaseException] = asyncio.CancelledError()
        elif task.cancelled():
            error = asyncio.CancelledError()
        else:
            error = task.exception()

        if error is None:
            return AttemptResult(Outcome.SUCCESS, attempt)

        if _is_cancellation(error):
            if self._shutdown.is_cancelled:
                return AttemptResult(Outcome.SHUTDOWN, attempt, error)
            if timeout_token is not None and timeout_token.is_cancelled:
                timeout_error = WorkerTimeoutError(
                    registration.display_name, registration.timeout.total_seconds()
                )
                timeout_error.__cause__ = error
                return AttemptResult(Outcome.TIMED_OUT, attempt, timeout_error)

        return AttemptResult(Outcome.FAILED, attempt, error)

    async def _report(self, registration: WorkerRegistration, result: AttemptResult) -> InvocationResult:
        """Hand a terminal failure to the error handler, or escalate it."""
        error = result.error
        handler = registration.error_handler
        if handler is None:
            fatal = ExecutionError(registration.display_name, error)
            fatal.__cause__ = error
            return InvocationResult(Verdict.FATAL, result, fatal_error=fatal)

        logger.error(
            f"Worker '{registration.display_name}' failed after {result.attempt} attempt(s): "
            f"{type(error).__name__}: {error}"
        )
        try:
            await call_handler(handler, error)
        except Exception as e:
            logger.error(
                f"Error handler of worker '{registration.display_name}' raised "
                f"{type(e).__name__}: {e}",
                exc_info=True,
            )
        return InvocationResult(Verdict.CONTINUE, result)


__all__ = [
    "AttemptResult",
    "InvocationResult",
    "Outcome",
    "ResilientExecutor",
    "Verdict",
]
