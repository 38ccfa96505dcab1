"""
MinimalWorker Core - worker execution engine.

Provides:
- WorkerRegistry / WorkerBuilder: registration store and fluent configuration
- ResilientExecutor: timeout, retry and outcome classification
- WorkerLoop: continuous, periodic and cron scheduler loops
- WorkerTelemetry: spans and metrics per invocation attempt
"""

from .binding import Invoker, bind_callback
from .registry import RetryPolicy, WorkerBuilder, WorkerKind, WorkerRegistration, WorkerRegistry
from .resilience import AttemptResult, Outcome, ResilientExecutor, Verdict
from .telemetry import WorkerTelemetry
from .validation import validate_dependencies
from .worker import WorkerLoop

__all__ = [
    "AttemptResult",
    "Invoker",
    "Outcome",
    "ResilientExecutor",
    "RetryPolicy",
    "Verdict",
    "WorkerBuilder",
    "WorkerKind",
    "WorkerLoop",
    "WorkerRegistration",
    "WorkerRegistry",
    "WorkerTelemetry",
    "bind_callback",
    "validate_dependencies",
]
