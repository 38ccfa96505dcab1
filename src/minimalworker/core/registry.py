"""
Worker Registration Registry.

Handles registration of background workers before the host starts.
Registrations are append-only and guarded by a lock; the host freezes the
registry when it starts.
"""

from __future__ import annotations

import enum
import itertools
import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, List, Optional, Union

from ..errors import ConfigurationError
from ..schedules import parse_cron
from .binding import Invoker, bind_callback

logger = logging.getLogger(__name__)

Duration = Union[timedelta, int, float]
ErrorHandler = Callable[[BaseException], Any]

# Process-wide so ids stay unique across registries
_ids = itertools.count(1)
_ids_lock = threading.Lock()


def _next_id() -> int:
    with _ids_lock:
        return next(_ids)


def to_timedelta(value: Duration, param: str) -> timedelta:
    """Normalize a duration argument and require it to be positive."""
    if isinstance(value, bool) or not isinstance(value, (timedelta, int, float)):
        raise ConfigurationError(f"{param} must be a timedelta or seconds, got {value!r}", param)
    delta = value if isinstance(value, timedelta) else timedelta(seconds=value)
    if delta <= timedelta(0):
        raise ConfigurationError(f"{param} must be greater than zero, got {delta}", param)
    return delta


class WorkerKind(str, enum.Enum):
    CONTINUOUS = "continuous"
    PERIODIC = "periodic"
    CRON = "cron"


@dataclass(frozen=True)
class RetryPolicy:
    """Re-invocation policy for retryable failures."""

    max_attempts: int
    delay: timedelta


@dataclass
class WorkerRegistration:
    """Configuration for a registered worker."""

    id: int
    kind: WorkerKind
    invoker: Invoker
    interval: Optional[timedelta] = None
    cron_expression: Optional[str] = None
    cron_trigger: Any = None
    name: Optional[str] = None
    error_handler: Optional[ErrorHandler] = None
    timeout: Optional[timedelta] = None
    retry_policy: Optional[RetryPolicy] = None

    @property
    def display_name(self) -> str:
        return self.name if self.name is not None else f"worker-{self.id}"

    @property
    def schedule(self) -> Optional[str]:
        """Schedule value as reported in telemetry."""
        if self.kind is WorkerKind.PERIODIC:
            return str(self.interval)
        if self.kind is WorkerKind.CRON:
            return self.cron_expression
        return None

    @property
    def callback(self) -> Callable[..., Any]:
        return self.invoker.callback


class WorkerBuilder:
    """Fluent configuration of one registration; repeated calls overwrite."""

    def __init__(self, registry: "WorkerRegistry", registration: WorkerRegistration):
        self._registry = registry
        self._registration = registration

    @property
    def registration(self) -> WorkerRegistration:
        return self._registration

    def with_name(self, name: str) -> "WorkerBuilder":
        self._registry.ensure_mutable()
        self._registration.name = name
        return self

    def with_error_handler(self, handler: ErrorHandler) -> "WorkerBuilder":
        if not callable(handler):
            raise ConfigurationError(f"Error handler must be callable, got {handler!r}", "handler")
        self._registry.ensure_mutable()
        self._registration.error_handler = handler
        return self

    def with_timeout(self, timeout: Duration) -> "WorkerBuilder":
        delta = to_timedelta(timeout, "timeout")
        self._registry.ensure_mutable()
        self._registration.timeout = delta
        return self

    def with_retry(self, max_attempts: int = 3, delay: Duration = timedelta(seconds=1)) -> "WorkerBuilder":
        if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
            raise ConfigurationError(
                f"max_attempts must be an integer >= 1, got {max_attempts!r}", "max_attempts"
            )
        policy = RetryPolicy(max_attempts=max_attempts, delay=to_timedelta(delay, "delay"))
        self._registry.ensure_mutable()
        self._registration.retry_policy = policy
        return self

    def __repr__(self) -> str:
        reg = self._registration
        return f"<WorkerBuilder {reg.display_name} ({reg.kind.value})>"


class WorkerRegistry:
    """Registry for background workers.

    Workers register with:
    - kind: continuous, periodic or cron
    - schedule: interval or cron expression (validated eagerly)
    - callback: function whose annotated parameters are resolved per scope
    """

    def __init__(self, cron_timezone: str = "UTC"):
        self._registrations: List[WorkerRegistration] = []
        self._lock = threading.Lock()
        self._frozen = False
        self._cron_timezone = cron_timezone

    @property
    def frozen(self) -> bool:
        return self._frozen

    def ensure_mutable(self) -> None:
        if self._frozen:
            raise ConfigurationError("Workers cannot be registered or changed after the host has started")

    def register_continuous(self, callback: Callable[..., Any]) -> WorkerBuilder:
        """Register a worker invoked exactly once when the host starts."""
        return self._register(WorkerKind.CONTINUOUS, callback)

    def register_periodic(self, interval: Duration, callback: Callable[..., Any]) -> WorkerBuilder:
        """Register a worker invoked every ``interval``, never overlapping itself."""
        delta = to_timedelta(interval, "interval")
        return self._register(WorkerKind.PERIODIC, callback, interval=delta)

    def register_cron(self, cron_expression: str, callback: Callable[..., Any]) -> WorkerBuilder:
        """Register a worker invoked at each occurrence of a 5-field cron expression."""
        if cron_expression is None or not str(cron_expression).strip():
            raise ConfigurationError("cron_expression must not be empty", "cron_expression")
        expression = str(cron_expression).strip()
        trigger = parse_cron(expression, self._cron_timezone)
        return self._register(
            WorkerKind.CRON, callback, cron_expression=expression, cron_trigger=trigger
        )

    def _register(self, kind: WorkerKind, callback: Callable[..., Any], **schedule: Any) -> WorkerBuilder:
        invoker = bind_callback(callback)
        with self._lock:
            self.ensure_mutable()
            registration = WorkerRegistration(id=_next_id(), kind=kind, invoker=invoker, **schedule)
            self._registrations.append(registration)
        logger.info(
            f"Registered {kind.value} worker: {registration.display_name}"
            + (f" (schedule={registration.schedule})" if registration.schedule else "")
        )
        return WorkerBuilder(self, registration)

    def get(self, worker_id: int) -> Optional[WorkerRegistration]:
        """Get a registration by id."""
        with self._lock:
            return next((r for r in self._registrations if r.id == worker_id), None)

    def get_all(self) -> List[WorkerRegistration]:
        """Get all registrations, ordered by id."""
        with self._lock:
            return sorted(self._registrations, key=lambda r: r.id)

    def freeze(self) -> List[WorkerRegistration]:
        """Stop accepting changes and return the final registrations."""
        with self._lock:
            self._frozen = True
            return sorted(self._registrations, key=lambda r: r.id)

    def clear(self) -> None:
        """Drop every registration. Intended for test isolation only."""
        with self._lock:
            self._registrations.clear()
            self._frozen = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._registrations)


__all__ = [
    "Duration",
    "ErrorHandler",
    "RetryPolicy",
    "WorkerBuilder",
    "WorkerKind",
    "WorkerRegistration",
    "WorkerRegistry",
    "to_timedelta",
]
