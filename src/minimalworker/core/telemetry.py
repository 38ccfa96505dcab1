"""
Worker telemetry.

Every invocation attempt is wrapped in a ``worker.execute`` span and
recorded on the following instruments:

    worker.executions            counter, +1 per terminal attempt
    worker.errors                counter, +1 per terminal failure (tag exception.type)
    worker.duration              histogram, milliseconds
    worker.active                gauge, 1 while an attempt is in flight
    worker.consecutive_failures  gauge, reset on success
    worker.last_success_time     gauge, unix seconds of the last success

Providers default to the globally configured ones; tests inject SDK
providers with in-memory exporters.

Attempts that are retried are not counted; their spans still carry the
error. Spans end OK on success and ERROR otherwise, including attempts
cancelled by host shutdown.
"""

from __future__ import annotations

import contextlib
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Iterable, Iterator, Optional

from opentelemetry import metrics, trace
from opentelemetry.metrics import CallbackOptions, Observation
from opentelemetry.trace import Status, StatusCode

from .registry import WorkerKind, WorkerRegistration

if TYPE_CHECKING:
    from .resilience import AttemptResult

SPAN_NAME = "worker.execute"

ATTR_ID = "worker.id"
ATTR_NAME = "worker.name"
ATTR_TYPE = "worker.type"
ATTR_ITERATION = "worker.iteration"
ATTR_SCHEDULE = "worker.schedule"
ATTR_ATTEMPT = "worker.attempt"
ATTR_EXCEPTION_TYPE = "exception.type"


def worker_attributes(registration: WorkerRegistration) -> Dict[str, object]:
    return {
        ATTR_ID: registration.id,
        ATTR_NAME: registration.display_name,
        ATTR_TYPE: registration.kind.value,
    }


@dataclass
class _WorkerState:
    registration: WorkerRegistration
    active: int = 0
    iterations: int = 0
    consecutive_failures: int = 0
    last_success: Optional[float] = None


class WorkerTelemetry:
    """Tracer, instruments and per-worker gauge state."""

    def __init__(
        self,
        name: str = "minimalworker",
        tracer_provider: Optional[trace.TracerProvider] = None,
        meter_provider: Optional[metrics.MeterProvider] = None,
    ):
        self._tracer = trace.get_tracer(name, tracer_provider=tracer_provider)
        meter = metrics.get_meter(name, meter_provider=meter_provider)

        self._executions = meter.create_counter(
            "worker.executions", unit="1", description="Worker invocations, counted once per terminal attempt"
        )
        self._errors = meter.create_counter(
            "worker.errors", unit="1", description="Terminal worker failures"
        )
        self._duration = meter.create_histogram(
            "worker.duration", unit="ms", description="Worker invocation duration"
        )
        meter.create_observable_gauge(
            "worker.active",
            callbacks=[self._observe_active],
            unit="1",
            description="1 while a worker invocation is in flight",
        )
        meter.create_observable_gauge(
            "worker.consecutive_failures",
            callbacks=[self._observe_failures],
            unit="1",
            description="Terminal failures since the last success",
        )
        meter.create_observable_gauge(
            "worker.last_success_time",
            callbacks=[self._observe_last_success],
            unit="s",
            description="Unix time of the last successful invocation",
        )

        self._states: Dict[int, _WorkerState] = {}
        self._lock = threading.Lock()

    def _state(self, registration: WorkerRegistration) -> _WorkerState:
        # Caller holds the lock
        state = self._states.get(registration.id)
        if state is None:
            state = self._states[registration.id] = _WorkerState(registration)
        return state

    def next_iteration(self, registration: WorkerRegistration) -> int:
        """Monotonic per-worker trigger counter, starting at 1."""
        with self._lock:
            state = self._state(registration)
            state.iterations += 1
            return state.iterations

    def start_attempt(
        self,
        registration: WorkerRegistration,
        iteration: Optional[int],
        attempt: int,
    ) -> "AttemptTelemetry":
        with self._lock:
            self._state(registration).active += 1
        return AttemptTelemetry(self, registration, iteration, attempt)

    def record_logical_outcome(self, registration: WorkerRegistration, succeeded: bool) -> None:
        """Update the failure-streak and last-success gauges."""
        with self._lock:
            state = self._state(registration)
            if succeeded:
                state.consecutive_failures = 0
                state.last_success = time.time()
            else:
                state.consecutive_failures += 1

    def _finish_attempt(
        self,
        registration: WorkerRegistration,
        elapsed_ms: float,
        terminal: bool,
        error_type: Optional[str],
    ) -> None:
        attributes = worker_attributes(registration)
        if terminal:
            self._executions.add(1, attributes)
        self._duration.record(elapsed_ms, attributes)
        if error_type is not None:
            self._errors.add(1, {**attributes, ATTR_EXCEPTION_TYPE: error_type})
        with self._lock:
            state = self._state(registration)
            state.active = max(0, state.active - 1)

    def snapshot(self, registration: WorkerRegistration) -> Dict[str, object]:
        """Current gauge values for one worker."""
        with self._lock:
            state = self._state(registration)
            return {
                "active": state.active > 0,
                "iterations": state.iterations,
                "consecutive_failures": state.consecutive_failures,
                "last_success": state.last_success,
            }

    def _observe(self, value_of) -> Iterable[Observation]:
        with self._lock:
            states = list(self._states.values())
        for state in states:
            value = value_of(state)
            if value is not None:
                yield Observation(value, worker_attributes(state.registration))

    def _observe_active(self, options: CallbackOptions) -> Iterable[Observation]:
        return list(self._observe(lambda s: 1 if s.active > 0 else 0))

    def _observe_failures(self, options: CallbackOptions) -> Iterable[Observation]:
        return list(self._observe(lambda s: s.consecutive_failures))

    def _observe_last_success(self, options: CallbackOptions) -> Iterable[Observation]:
        return list(self._observe(lambda s: s.last_success))


class AttemptTelemetry:
    """Span and timing for one invocation attempt."""

    def __init__(
        self,
        telemetry: WorkerTelemetry,
        registration: WorkerRegistration,
        iteration: Optional[int],
        attempt: int,
    ):
        self._telemetry = telemetry
        self._registration = registration
        attributes = worker_attributes(registration)
        attributes[ATTR_ATTEMPT] = attempt
        if registration.kind is not WorkerKind.CONTINUOUS:
            attributes[ATTR_SCHEDULE] = registration.schedule
            if iteration is not None:
                attributes[ATTR_ITERATION] = iteration
        self.span = telemetry._tracer.start_span(SPAN_NAME, attributes=attributes)
        self._started = time.perf_counter()
        self._finished = False

    @contextlib.contextmanager
    def activate(self) -> Iterator[trace.Span]:
        """Make the attempt span current so tasks created inside inherit it."""
        with trace.use_span(self.span, end_on_exit=False):
            yield self.span

    def finish(self, result: "AttemptResult", terminal: bool) -> None:
        from .resilience import Outcome

        if self._finished:
            return
        self._finished = True
        elapsed_ms = (time.perf_counter() - self._started) * 1000.0

        error_type = None
        if result.outcome is Outcome.SUCCESS:
            self.span.set_status(Status(StatusCode.OK))
        elif result.outcome in (Outcome.FAILED, Outcome.TIMED_OUT) and result.error is not None:
            exception_type = type(result.error).__name__
            self.span.set_attribute(ATTR_EXCEPTION_TYPE, exception_type)
            self.span.record_exception(result.error)
            self.span.set_status(Status(StatusCode.ERROR, str(result.error)))
            if terminal:
                error_type = exception_type
        elif result.outcome is Outcome.SHUTDOWN:
            self.span.set_status(Status(StatusCode.ERROR, "cancelled by host shutdown"))
        else:
            # The engine itself was interrupted mid-attempt
            self.span.set_status(Status(StatusCode.ERROR, "attempt interrupted"))
        self.span.end()
        self._telemetry._finish_attempt(self._registration, elapsed_ms, terminal, error_type)


__all__ = [
    "SPAN_NAME",
    "AttemptTelemetry",
    "WorkerTelemetry",
    "worker_attributes",
]
