"""
Collaborator interfaces consumed by the provisioning core.

Providers and probes may be implemented with sync or async methods; sync
methods are offloaded to the shared I/O pool so they never block the loop.
"""
from __future__ import annotations
import inspect
from typing import Any, Callable, Dict, Optional, Protocol, Union, runtime_checkable

from ..concurrency.executors import run_io


@runtime_checkable
class Provider(Protocol):
    """
    Idempotent resource operations against the real world.

    ``apply`` returns the provider-assigned identifiers and outputs of the
    resource. Raise TransientProviderError for failures that are safe to
    retry; any other exception is terminal for the resource.
    """

    def apply(
        self,
        resource_type: str,
        attributes: Dict[str, Any],
        prior_identifiers: Dict[str, Any],
    ) -> Dict[str, Any]: ...

    def destroy(self, resource_type: str, identifiers: Dict[str, Any]) -> None: ...


@runtime_checkable
class ReadinessProbe(Protocol):
    """Side-effect-free readiness check, safe to call repeatedly."""

    def probe(self, resource_type: str, identifiers: Dict[str, Any]) -> bool: ...


ProbeLike = Union[ReadinessProbe, Callable[[str, Dict[str, Any]], Any]]


async def call_maybe_async(func: Callable[..., Any], *args: Any) -> Any:
    """Await ``func(*args)`` whether ``func`` is a coroutine function or not."""
    if inspect.iscoroutinefunction(func):
        return await func(*args)
    result = await run_io(func, *args)
    if inspect.isawaitable(result):
        return await result
    return result


async def provider_apply(
    provider: Provider,
    resource_type: str,
    attributes: Dict[str, Any],
    prior_identifiers: Dict[str, Any],
) -> Dict[str, Any]:
    identifiers = await call_maybe_async(provider.apply, resource_type, attributes, prior_identifiers)
    return dict(identifiers or {})


async def provider_destroy(provider: Provider, resource_type: str, identifiers: Dict[str, Any]) -> None:
    await call_maybe_async(provider.destroy, resource_type, identifiers)


async def invoke_probe(probe: ProbeLike, resource_type: str, identifiers: Dict[str, Any]) -> bool:
    """Run a probe object or a plain predicate and coerce the result to bool."""
    func: Optional[Callable[..., Any]] = getattr(probe, "probe", None)
    if func is None:
        func = probe
    return bool(await call_maybe_async(func, resource_type, identifiers))
