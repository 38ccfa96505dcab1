"""
Service container.

A small dependency-resolution container with singleton, scoped and
transient lifetimes. The worker engine only relies on the
``create_scope()`` / ``resolve()`` / ``aclose()`` contract, so another
container exposing the same methods can be passed to ``WorkerHost``.

Usage:
    services = ServiceCollection()
    services.add_singleton(Settings, Settings())
    services.add_scoped(Session, lambda: Session(engine))
    services.add_transient(Clock)

    provider = services.build()
    scope = provider.create_scope()
    session = scope.resolve(Session)
    await scope.aclose()
"""

from __future__ import annotations

import enum
import inspect
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .core.binding import analyze_parameters
from .errors import ConfigurationError, ResolutionError

logger = logging.getLogger(__name__)


class Lifetime(str, enum.Enum):
    SINGLETON = "singleton"
    SCOPED = "scoped"
    TRANSIENT = "transient"


@dataclass
class ServiceDescriptor:
    """How to build one service type."""

    service_type: Any
    lifetime: Lifetime
    factory: Optional[Callable[..., Any]] = None
    instance: Any = None
    has_instance: bool = False


class ServiceCollection:
    """Mutable set of service registrations; last registration wins."""

    def __init__(self):
        self._descriptors: Dict[Any, ServiceDescriptor] = {}

    def add_singleton(self, service_type: Any, factory_or_instance: Any = None) -> "ServiceCollection":
        """Register a shared instance, or a factory called once on first use."""
        if factory_or_instance is None:
            return self._add(service_type, Lifetime.SINGLETON, service_type)
        is_instance = isinstance(service_type, type) and isinstance(factory_or_instance, service_type)
        if callable(factory_or_instance) and not is_instance:
            return self._add(service_type, Lifetime.SINGLETON, factory_or_instance)
        self._descriptors[service_type] = ServiceDescriptor(
            service_type=service_type,
            lifetime=Lifetime.SINGLETON,
            instance=factory_or_instance,
            has_instance=True,
        )
        return self

    def add_scoped(self, service_type: Any, factory: Optional[Callable[..., Any]] = None) -> "ServiceCollection":
        return self._add(service_type, Lifetime.SCOPED, factory or service_type)

    def add_transient(self, service_type: Any, factory: Optional[Callable[..., Any]] = None) -> "ServiceCollection":
        return self._add(service_type, Lifetime.TRANSIENT, factory or service_type)

    def _add(self, service_type: Any, lifetime: Lifetime, factory: Callable[..., Any]) -> "ServiceCollection":
        if not callable(factory):
            raise ConfigurationError(f"Factory for {service_type!r} is not callable", "factory")
        self._descriptors[service_type] = ServiceDescriptor(
            service_type=service_type, lifetime=lifetime, factory=factory
        )
        return self

    def __contains__(self, service_type: Any) -> bool:
        return service_type in self._descriptors

    def build(self) -> "ServiceProvider":
        return ServiceProvider(dict(self._descriptors))


class ServiceProvider:
    """Root provider: owns singletons and creates scopes."""

    def __init__(self, descriptors: Dict[Any, ServiceDescriptor]):
        self._descriptors = descriptors
        self._singletons: Dict[Any, Any] = {}
        self._owned: List[Any] = []
        self._lock = threading.RLock()

    def is_registered(self, service_type: Any) -> bool:
        return service_type in self._descriptors

    def descriptor(self, service_type: Any) -> ServiceDescriptor:
        try:
            return self._descriptors[service_type]
        except KeyError:
            raise ResolutionError(service_type) from None

    def create_scope(self) -> "ServiceScope":
        return ServiceScope(self)

    def get_singleton(self, descriptor: ServiceDescriptor, scope: "ServiceScope") -> Any:
        if descriptor.has_instance:
            return descriptor.instance
        with self._lock:
            if descriptor.service_type not in self._singletons:
                instance = scope.construct(descriptor.factory)
                self._singletons[descriptor.service_type] = instance
                self._owned.append(instance)
            return self._singletons[descriptor.service_type]

    async def aclose(self) -> None:
        """Dispose singletons created by this provider."""
        with self._lock:
            owned, self._owned = self._owned, []
            self._singletons.clear()
        await dispose_all(owned)


class ServiceScope:
    """A resolution boundary whose scoped/transient instances are disposed together."""

    def __init__(self, provider: ServiceProvider):
        self._provider = provider
        self._scoped: Dict[Any, Any] = {}
        self._owned: List[Any] = []
        self._resolving: List[Any] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def resolve(self, service_type: Any) -> Any:
        if self._closed:
            raise RuntimeError("Cannot resolve from a disposed scope")
        descriptor = self._provider.descriptor(service_type)
        if service_type in self._resolving:
            chain = " -> ".join(getattr(t, "__qualname__", repr(t)) for t in self._resolving)
            raise ResolutionError(service_type, f"Circular dependency detected: {chain}")

        self._resolving.append(service_type)
        try:
            if descriptor.lifetime is Lifetime.SINGLETON:
                return self._provider.get_singleton(descriptor, self)
            if descriptor.lifetime is Lifetime.SCOPED:
                if service_type not in self._scoped:
                    instance = self.construct(descriptor.factory)
                    self._scoped[service_type] = instance
                    self._owned.append(instance)
                return self._scoped[service_type]
            instance = self.construct(descriptor.factory)
            self._owned.append(instance)
            return instance
        finally:
            self._resolving.pop()

    def construct(self, factory: Callable[..., Any]) -> Any:
        """Call ``factory`` with its annotated parameters resolved from this scope."""
        dependencies, _ = analyze_parameters(factory, allow_token=False)
        kwargs = {p.name: self.resolve(p.annotation) for p in dependencies}
        return factory(**kwargs)

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        owned, self._owned = self._owned, []
        self._scoped.clear()
        await dispose_all(owned)

    async def __aenter__(self) -> "ServiceScope":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


async def dispose_all(instances: List[Any]) -> None:
    """Dispose instances in reverse creation order, logging failures."""
    for instance in reversed(instances):
        try:
            aclose = getattr(instance, "aclose", None)
            if aclose is not None and callable(aclose):
                result = aclose()
                if inspect.isawaitable(result):
                    await result
                continue
            close = getattr(instance, "close", None)
            if close is not None and callable(close):
                result = close()
                if inspect.isawaitable(result):
                    await result
        except Exception as e:
            logger.error(f"Failed to dispose {type(instance).__name__}: {e}", exc_info=True)


__all__ = [
    "Lifetime",
    "ServiceDescriptor",
    "ServiceCollection",
    "ServiceProvider",
    "ServiceScope",
]
