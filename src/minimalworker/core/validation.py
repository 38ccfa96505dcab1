"""
Startup dependency validation.

Runs once before any worker executes: every declared dependency of every
registration is resolved in a throwaway scope. The first failure aborts
startup.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from ..errors import DependencyValidationError
from .registry import WorkerRegistration
from .scopes import open_scope

logger = logging.getLogger(__name__)


async def validate_dependencies(registrations: Iterable[WorkerRegistration], provider: Any) -> None:
    """Resolve every dependency of every worker.

    Raises:
        DependencyValidationError: naming the worker and the unresolved type.
    """
    checked = 0
    for registration in registrations:
        async with open_scope(provider, registration.display_name) as scope:
            for dependency in registration.invoker.dependency_types:
                try:
                    scope.resolve(dependency)
                except Exception as e:
                    raise DependencyValidationError(registration.display_name, dependency, e) from e
        checked += 1
    logger.debug(f"Validated dependencies of {checked} worker(s)")


__all__ = ["validate_dependencies"]
