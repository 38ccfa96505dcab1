"""
Callback binding.

Worker callbacks declare their dependencies as annotated parameters::

    async def sync_orders(repo: OrderRepository, token: CancellationToken):
        ...

The signature is analysed once, at registration time, into an ``Invoker``
so the engine only ever calls ``await invoker(scope, token)``.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import typing
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..cancellation import CancellationToken
from ..errors import ConfigurationError


@dataclass(frozen=True)
class Parameter:
    """A callback parameter resolved from a scope."""

    name: str
    annotation: Any


def _unwrap(func: Callable) -> Callable:
    while isinstance(func, functools.partial):
        func = func.func
    return func


def is_async_callable(func: Callable) -> bool:
    target = _unwrap(func)
    if inspect.iscoroutinefunction(target):
        return True
    call = getattr(target, "__call__", None)
    return not inspect.isfunction(target) and inspect.iscoroutinefunction(call)


def analyze_parameters(
    func: Callable,
    *,
    allow_token: bool = True,
) -> Tuple[List[Parameter], Optional[str]]:
    """Split a callable's parameters into dependencies and the token slot.

    Raises ConfigurationError for parameters that cannot be resolved by type.
    """
    try:
        signature = inspect.signature(func)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Cannot inspect signature of {func!r}: {e}", "callback") from e

    target = func.__init__ if inspect.isclass(func) else _unwrap(func)
    try:
        hints = typing.get_type_hints(target)
    except Exception:
        # Unresolvable forward references fall back to raw annotations
        hints = {}

    dependencies: List[Parameter] = []
    token_param: Optional[str] = None
    for param in signature.parameters.values():
        if param.kind in (param.VAR_POSITIONAL, param.VAR_KEYWORD):
            continue
        annotation = hints.get(param.name, param.annotation)
        if annotation is CancellationToken:
            if not allow_token:
                raise ConfigurationError(
                    f"{func!r} cannot take a CancellationToken parameter", "callback"
                )
            if token_param is not None:
                raise ConfigurationError(
                    f"{func!r} declares more than one CancellationToken parameter", "callback"
                )
            token_param = param.name
            continue
        if annotation is param.empty:
            if param.default is not param.empty:
                continue
            raise ConfigurationError(
                f"Parameter '{param.name}' of {func!r} has no type annotation to resolve",
                "callback",
            )
        dependencies.append(Parameter(name=param.name, annotation=annotation))
    return dependencies, token_param


@dataclass
class Invoker:
    """A callback bound to its dependency list."""

    callback: Callable[..., Any]
    dependencies: List[Parameter] = field(default_factory=list)
    token_param: Optional[str] = None
    is_async: bool = False

    @property
    def dependency_types(self) -> List[Any]:
        return [p.annotation for p in self.dependencies]

    def resolve_arguments(self, scope: Any, token: CancellationToken) -> Dict[str, Any]:
        kwargs = {p.name: scope.resolve(p.annotation) for p in self.dependencies}
        if self.token_param is not None:
            kwargs[self.token_param] = token
        return kwargs

    async def __call__(self, scope: Any, token: CancellationToken) -> Any:
        kwargs = self.resolve_arguments(scope, token)
        if self.is_async:
            return await self.callback(**kwargs)

        result = await asyncio.to_thread(functools.partial(self.callback, **kwargs))
        if inspect.isawaitable(result):
            result = await result
        return result


def bind_callback(callback: Callable[..., Any]) -> Invoker:
    """Analyse ``callback`` and return its uniform invoker."""
    if not callable(callback):
        raise ConfigurationError(f"Worker callback must be callable, got {callback!r}", "callback")
    dependencies, token_param = analyze_parameters(callback)
    return Invoker(
        callback=callback,
        dependencies=dependencies,
        token_param=token_param,
        is_async=is_async_callable(callback),
    )


async def call_handler(handler: Callable[[BaseException], Any], error: BaseException) -> None:
    """Invoke a sync or async error handler."""
    result = handler(error)
    if inspect.isawaitable(result):
        await typing.cast(Awaitable[Any], result)


__all__ = [
    "Parameter",
    "Invoker",
    "analyze_parameters",
    "bind_callback",
    "call_handler",
    "is_async_callable",
]
