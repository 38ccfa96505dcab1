"""
Error taxonomy for MinimalWorker.

Configuration errors surface synchronously at registration time,
dependency validation errors abort startup, and execution/timeout errors
stay local to the worker that raised them unless no error handler is set.
"""

from __future__ import annotations

from typing import Any, Optional


class WorkerError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(WorkerError, ValueError):
    """Invalid registration argument (interval, cron expression, retry, timeout)."""

    def __init__(self, message: str, param: Optional[str] = None):
        super().__init__(message)
        self.param = param


class DependencyValidationError(WorkerError):
    """A worker declares a dependency the container cannot resolve."""

    def __init__(self, worker_name: str, dependency: Any, cause: Optional[BaseException] = None):
        type_name = getattr(dependency, "__qualname__", None) or repr(dependency)
        super().__init__(
            f"Worker '{worker_name}' depends on {type_name}, which could not be resolved"
            + (f": {cause}" if cause else "")
        )
        self.worker_name = worker_name
        self.dependency = dependency


class ExecutionError(WorkerError):
    """Terminal failure of a worker that has no error handler."""

    def __init__(self, worker_name: str, cause: BaseException):
        super().__init__(
            f"Worker '{worker_name}' failed with unhandled "
            f"{type(cause).__name__}: {cause}"
        )
        self.worker_name = worker_name


class WorkerTimeoutError(WorkerError, TimeoutError):
    """An attempt exceeded its configured deadline."""

    def __init__(self, worker_name: str, timeout: float):
        super().__init__(f"Worker '{worker_name}' timed out after {timeout:g}s")
        self.worker_name = worker_name
        self.timeout = timeout


class OperationCancelled(WorkerError):
    """Raised by ``CancellationToken.raise_if_cancelled()``."""


class ResolutionError(WorkerError, LookupError):
    """No service is registered for the requested type."""

    def __init__(self, service_type: Any, message: Optional[str] = None):
        type_name = getattr(service_type, "__qualname__", None) or repr(service_type)
        super().__init__(message or f"No service registered for type {type_name}")
        self.service_type = service_type


__all__ = [
    "WorkerError",
    "ConfigurationError",
    "DependencyValidationError",
    "ExecutionError",
    "WorkerTimeoutError",
    "OperationCancelled",
    "ResolutionError",
]
