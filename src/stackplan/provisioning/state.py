"""
Committed state: the durable record of what was last applied successfully.

The StateRecorder is the only writer. Plans diff against the snapshot it
hands out, never against in-memory assumptions of the executor.
"""
from __future__ import annotations
import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional, Protocol, TYPE_CHECKING

if TYPE_CHECKING:
    from .plan import Operation

logger = logging.getLogger(__name__)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ResourceState:
    """
    Last successfully applied state of one resource.

    Attributes:
        name: Logical name
        resource_type: Provider-owned type name
        attributes: Encoded desired attributes that were applied
        identifiers: Provider-assigned identifiers and outputs
        dependencies: Names this resource depended on when applied
        ready: Whether the readiness gate resolved to Ready after the last apply
    """
    name: str
    resource_type: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    identifiers: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)
    ready: bool = True
    created_at: str = field(default_factory=_utcnow)
    updated_at: str = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "resource_type": self.resource_type,
            "attributes": copy.deepcopy(self.attributes),
            "identifiers": copy.deepcopy(self.identifiers),
            "dependencies": list(self.dependencies),
            "ready": self.ready,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ResourceState":
        return cls(
            name=data["name"],
            resource_type=data["resource_type"],
            attributes=dict(data.get("attributes") or {}),
            identifiers=dict(data.get("identifiers") or {}),
            dependencies=list(data.get("dependencies") or []),
            ready=bool(data.get("ready", True)),
            created_at=data.get("created_at") or _utcnow(),
            updated_at=data.get("updated_at") or _utcnow(),
        )


class CommittedState(Mapping[str, ResourceState]):
    """Immutable snapshot of committed resource state, keyed by logical name."""

    def __init__(self, resources: Optional[Mapping[str, ResourceState]] = None):
        self._resources: Dict[str, ResourceState] = {
            name: ResourceState.from_dict(state.to_dict())
            for name, state in (resources or {}).items()
        }

    def __getitem__(self, name: str) -> ResourceState:
        return self._resources[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._resources)

    def __len__(self) -> int:
        return len(self._resources)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {name: state.to_dict() for name, state in self._resources.items()}

    @classmethod
    def empty(cls) -> "CommittedState":
        return cls()

    def __repr__(self) -> str:
        return f"CommittedState(resources={list(self._resources)})"


class StateBackend(Protocol):
    """
    Durable storage for committed state.

    ``put`` and ``delete`` must be durable before they return.
    """
    async def load(self) -> Dict[str, ResourceState]: ...
    async def put(self, state: ResourceState) -> None: ...
    async def delete(self, name: str) -> None: ...


class InMemoryStateBackend:
    """Process-local backend; durable only for the lifetime of the object."""

    def __init__(self, initial: Optional[Mapping[str, ResourceState]] = None):
        self._data: Dict[str, Dict[str, Any]] = {
            name: state.to_dict() for name, state in (initial or {}).items()
        }

    async def load(self) -> Dict[str, ResourceState]:
        return {name: ResourceState.from_dict(doc) for name, doc in self._data.items()}

    async def put(self, state: ResourceState) -> None:
        self._data[state.name] = state.to_dict()

    async def delete(self, name: str) -> None:
        self._data.pop(name, None)


class StateRecorder:
    """
    Owns committed state across passes.

    Writes are serialized per logical name and reach the backend before the
    in-memory view is updated, so nothing observes a commit that is not durable.
    """

    def __init__(self, backend: Optional[StateBackend] = None):
        self.backend: StateBackend = backend if backend is not None else InMemoryStateBackend()
        self._resources: Dict[str, ResourceState] = {}
        self._loaded = False
        self._locks: Dict[str, asyncio.Lock] = {}
        self._locks_loop: Optional[asyncio.AbstractEventLoop] = None

    def _lock_for(self, name: str) -> asyncio.Lock:
        # asyncio locks bind to one loop; each asyncio.run() gets fresh ones
        loop = asyncio.get_running_loop()
        if loop is not self._locks_loop:
            self._locks = {}
            self._locks_loop = loop
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    async def load(self) -> CommittedState:
        """(Re)load committed state from the backend."""
        self._resources = await self.backend.load()
        self._loaded = True
        logger.info(f"[STATE] Loaded {len(self._resources)} committed resources")
        return self.snapshot()

    async def ensure_loaded(self) -> None:
        if not self._loaded:
            await self.load()

    def snapshot(self) -> CommittedState:
        return CommittedState(self._resources)

    def get(self, name: str) -> Optional[ResourceState]:
        return self._resources.get(name)

    async def commit(
        self,
        operation: "Operation",
        identifiers: Optional[Dict[str, Any]] = None,
        ready: bool = True,
    ) -> Optional[ResourceState]:
        """
        Commit the outcome of one successful operation.

        Called exactly once per successful apply or destroy, before the
        executor releases any dependent.
        """
        # import lazily to avoid circulars
        from .plan import OperationKind

        if operation.kind is OperationKind.DESTROY:
            await self.commit_destroyed(operation.name)
            return None
        return await self.commit_applied(
            operation.name,
            operation.resource_type,
            operation.attributes,
            identifiers or {},
            sorted(operation.dependencies),
            ready,
        )

    async def commit_applied(
        self,
        name: str,
        resource_type: str,
        attributes: Dict[str, Any],
        identifiers: Dict[str, Any],
        dependencies: List[str],
        ready: bool,
    ) -> ResourceState:
        """Record a successful create or update."""
        async with self._lock_for(name):
            prior = self._resources.get(name)
            state = ResourceState(
                name=name,
                resource_type=resource_type,
                attributes=copy.deepcopy(attributes),
                identifiers=dict(identifiers or {}),
                dependencies=sorted(dependencies),
                ready=ready,
                created_at=prior.created_at if prior else _utcnow(),
            )
            await self.backend.put(state)
            self._resources[name] = state
            logger.info(f"[STATE] Committed {resource_type}.{name} (ready={ready})")
            return state

    async def commit_destroyed(self, name: str) -> None:
        """Record a successful destroy; no identifiers of the resource are kept."""
        async with self._lock_for(name):
            await self.backend.delete(name)
            self._resources.pop(name, None)
            logger.info(f"[STATE] Removed {name}")

    async def mark_ready(self, name: str) -> None:
        async with self._lock_for(name):
            state = self._resources.get(name)
            if state is None or state.ready:
                return
            updated = ResourceState.from_dict(state.to_dict())
            updated.ready = True
            updated.updated_at = _utcnow()
            await self.backend.put(updated)
            self._resources[name] = updated
            logger.debug(f"[STATE] Marked {name} ready")
