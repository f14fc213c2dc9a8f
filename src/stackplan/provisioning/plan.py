"""
Plan and Operation: the ordered outcome of diffing desired against committed state.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, List, Optional

from .descriptor import ReadinessPolicy, ResourceDescriptor
from .state import ResourceState


class OperationKind(Enum):
    """What the executor has to do with a resource."""
    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"
    NOOP = "noop"


@dataclass
class Operation:
    """
    A single planned operation.

    Attributes:
        name: Logical resource name (also the operation key)
        resource_type: Provider-owned type name
        kind: Create / Update / Destroy / NoOp
        attributes: Encoded desired attributes (prior attributes for Destroy)
        descriptor: The desired descriptor; None for Destroy
        prior: Committed state before this pass, if any
        depends_on: Operation names that must finish before this one starts
        dependencies: Resource names this resource depends on, recorded in state
        readiness: Effective readiness policy gating dependents
        await_readiness: For NoOp operations, re-run only the readiness gate
    """
    name: str
    resource_type: str
    kind: OperationKind
    attributes: Dict[str, Any] = field(default_factory=dict)
    descriptor: Optional[ResourceDescriptor] = None
    prior: Optional[ResourceState] = None
    depends_on: FrozenSet[str] = field(default_factory=frozenset)
    dependencies: FrozenSet[str] = field(default_factory=frozenset)
    readiness: Optional[ReadinessPolicy] = None
    await_readiness: bool = False

    def __post_init__(self):
        if not isinstance(self.depends_on, frozenset):
            self.depends_on = frozenset(self.depends_on)
        if not isinstance(self.dependencies, frozenset):
            self.dependencies = frozenset(self.dependencies)

    @property
    def is_change(self) -> bool:
        return self.kind is not OperationKind.NOOP

    @property
    def prior_identifiers(self) -> Dict[str, Any]:
        return dict(self.prior.identifiers) if self.prior else {}

    def __repr__(self) -> str:
        return (
            f"Operation({self.kind.value} {self.resource_type}.{self.name}, "
            f"depends_on={sorted(self.depends_on)})"
        )


@dataclass
class Plan:
    """
    Ordered operations for one reconciliation pass.

    Operations are in topological order over ``depends_on``. Destroys of
    removed resources lead, in reverse dependency order, except where a
    declared resource still pointing at them must be updated first.
    """
    operations: List[Operation] = field(default_factory=list)
    _index: Dict[str, Operation] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        self._index = {}
        for op in self.operations:
            if op.name in self._index:
                raise ValueError(f"Operation for {op.name!r} planned twice")
            self._index[op.name] = op

    def get(self, name: str) -> Optional[Operation]:
        return self._index.get(name)

    @property
    def changes(self) -> List[Operation]:
        """Operations that require a provider call, in plan order."""
        return [op for op in self.operations if op.is_change]

    @property
    def has_changes(self) -> bool:
        return any(op.is_change for op in self.operations)

    @property
    def order(self) -> List[str]:
        return [op.name for op in self.operations]

    def of_kind(self, kind: OperationKind) -> List[Operation]:
        return [op for op in self.operations if op.kind is kind]

    def summary(self) -> Dict[str, int]:
        counts = {kind.value: 0 for kind in OperationKind}
        for op in self.operations:
            counts[op.kind.value] += 1
        return counts

    def __iter__(self) -> Iterator[Operation]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    def __repr__(self) -> str:
        summary = ", ".join(f"{k}={v}" for k, v in self.summary().items() if v)
        return f"Plan({summary or 'empty'})"
