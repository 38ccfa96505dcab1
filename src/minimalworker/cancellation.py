"""Cooperative cancellation signal shared between the engine and callbacks.

A token is one-shot and thread-safe: coroutines await it, synchronous
callbacks running on worker threads poll it or block on ``wait_sync``.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Callable, List, Optional

from .errors import OperationCancelled


class CancellationToken:
    """One-shot cancellation signal."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self._detach: List[Callable[[], None]] = []

    @classmethod
    def linked(cls, *parents: Optional["CancellationToken"]) -> "CancellationToken":
        """Create a token cancelled as soon as any parent is cancelled."""
        child = cls()
        for parent in parents:
            if parent is None:
                continue
            child._detach.append(parent.register(child.cancel))
        return child

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run ``callback`` on cancellation; returns a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def unregister() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return unregister
        callback()
        return lambda: None

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("Operation was cancelled")

    def wait_sync(self, timeout: Optional[float] = None) -> bool:
        """Block the calling thread until cancelled or ``timeout`` elapses."""
        return self._event.wait(timeout)

    async def wait(self) -> None:
        """Suspend until the token is cancelled."""
        if self._event.is_set():
            return
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def wake() -> None:
            if not future.done():
                future.set_result(None)

        unregister = self.register(lambda: loop.call_soon_threadsafe(wake))
        try:
            await future
        finally:
            unregister()

    def close(self) -> None:
        """Detach from parent tokens."""
        for detach in self._detach:
            detach()
        self._detach.clear()

    def __repr__(self) -> str:
        return f"<CancellationToken cancelled={self.is_cancelled}>"


__all__ = ["CancellationToken"]
