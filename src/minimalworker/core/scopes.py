"""Scope manager: one resolution scope per worker lifetime or per trigger."""

from __future__ import annotations

import contextlib
import logging
from typing import Any, AsyncIterator

logger = logging.getLogger(__name__)


@contextlib.asynccontextmanager
async def open_scope(provider: Any, owner: str = "") -> AsyncIterator[Any]:
    """Create a scope from ``provider`` and dispose it on every exit path."""
    scope = provider.create_scope()
    try:
        yield scope
    finally:
        try:
            await scope.aclose()
        except Exception as e:
            logger.error(f"Failed to dispose scope of worker '{owner}': {e}", exc_info=True)
