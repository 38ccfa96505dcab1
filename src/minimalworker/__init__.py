"""
MinimalWorker - background worker execution engine.

Provides:
- WorkerHost: registers workers and runs them under a managed lifecycle
- Continuous, periodic and cron workers with per-run dependency scopes
- Timeout and retry policies, error handlers, fail-fast dependency validation
- OpenTelemetry spans and metrics per invocation

Usage:
    from minimalworker import CancellationToken, ServiceCollection, WorkerHost

    services = ServiceCollection()
    services.add_scoped(OrderRepository)

    host = WorkerHost(services)
    host.add_periodic_worker(timedelta(minutes=5), sync_orders) \\
        .with_name("sync-orders") \\
        .with_timeout(timedelta(seconds=30)) \\
        .with_retry(max_attempts=3, delay=timedelta(seconds=2)) \\
        .with_error_handler(report_failure)

    await host.run()
"""

__version__ = "0.1.0"

from .cancellation import CancellationToken
from .clock import Clock, SystemClock
from .config import WorkerSettings, configure_logging, get_settings
from .core import (
    Outcome,
    RetryPolicy,
    WorkerBuilder,
    WorkerKind,
    WorkerRegistration,
    WorkerRegistry,
    WorkerTelemetry,
)
from .errors import (
    ConfigurationError,
    DependencyValidationError,
    ExecutionError,
    OperationCancelled,
    ResolutionError,
    WorkerError,
    WorkerTimeoutError,
)
from .host import WorkerHost
from .services import ServiceCollection, ServiceProvider, ServiceScope

__all__ = [
    "__version__",
    # Host
    "WorkerHost",
    "WorkerBuilder",
    "WorkerRegistry",
    "WorkerRegistration",
    "WorkerKind",
    "RetryPolicy",
    "Outcome",
    # Runtime
    "CancellationToken",
    "Clock",
    "SystemClock",
    "WorkerTelemetry",
    # Services
    "ServiceCollection",
    "ServiceProvider",
    "ServiceScope",
    # Config
    "WorkerSettings",
    "configure_logging",
    "get_settings",
    # Errors
    "WorkerError",
    "ConfigurationError",
    "DependencyValidationError",
    "ExecutionError",
    "WorkerTimeoutError",
    "OperationCancelled",
    "ResolutionError",
]
