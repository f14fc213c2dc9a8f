"""
ResourceDescriptor: Declared desired state for one resource instance.

This module defines descriptors, the tagged Reference type used to express
"this attribute comes from another resource's output", and the readiness
policies a resource can declare.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterator, Mapping, Optional, Set, Union, TYPE_CHECKING

if TYPE_CHECKING:
    from .provider import ReadinessProbe

REF_TAG = "$ref"


@dataclass(frozen=True)
class Reference:
    """
    Structured pointer to another resource's output.

    Placing a Reference anywhere inside a descriptor's attributes creates an
    implicit dependency edge on ``resource``.
    """
    resource: str
    output: str

    def to_dict(self) -> Dict[str, Any]:
        return {REF_TAG: {"resource": self.resource, "output": self.output}}

    def __str__(self) -> str:
        return f"{self.resource}.{self.output}"


def ref(resource: str, output: str = "id") -> Reference:
    """Shorthand for ``Reference(resource, output)``."""
    return Reference(resource=resource, output=output)


class ReadinessKind(Enum):
    """How a resource signals that it is usable by dependents."""
    NONE = "none"
    FIXED_DELAY = "fixed_delay"
    POLL_UNTIL = "poll_until"


@dataclass(frozen=True)
class FixedDelay:
    """Succeeds unconditionally once ``duration`` seconds have elapsed."""
    duration: float

    kind = ReadinessKind.FIXED_DELAY

    def __post_init__(self):
        if self.duration < 0:
            raise ValueError(f"duration must be >= 0, got {self.duration}")


@dataclass(frozen=True)
class PollUntil:
    """
    Invokes a readiness probe every ``interval`` seconds until it returns
    True or ``timeout`` seconds have elapsed.

    ``probe`` overrides the engine-wide probe for this resource only.
    """
    interval: float
    timeout: Optional[float] = None
    probe: Optional["ReadinessProbe"] = field(default=None, compare=False)

    kind = ReadinessKind.POLL_UNTIL

    def __post_init__(self):
        if self.interval <= 0:
            raise ValueError(f"interval must be > 0, got {self.interval}")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {self.timeout}")


ReadinessPolicy = Union[FixedDelay, PollUntil]


@dataclass
class ResourceDescriptor:
    """
    Declared desired state for one resource.

    Attributes:
        resource_type: Provider-owned type name (e.g. "network", "helm_release")
        name: Logical name, unique within a descriptor store
        attributes: Opaque desired attribute mapping; may contain References
        depends_on: Explicit ordering hints (logical names)
        readiness: Optional readiness policy gating dependents
    """
    resource_type: str
    name: str
    attributes: Dict[str, Any] = field(default_factory=dict)
    depends_on: FrozenSet[str] = field(default_factory=frozenset)
    readiness: Optional[ReadinessPolicy] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("ResourceDescriptor.name must not be empty")
        if not self.resource_type:
            raise ValueError(f"Resource {self.name!r} has no resource_type")
        if not isinstance(self.depends_on, frozenset):
            self.depends_on = frozenset(self.depends_on)

    @property
    def identity(self) -> str:
        return f"{self.resource_type}.{self.name}"

    def references(self) -> Set[Reference]:
        """All References found in the attribute mapping."""
        return set(iter_references(self.attributes))

    def dependencies(self) -> FrozenSet[str]:
        """Explicit hints unioned with names inferred from References."""
        inferred = {r.resource for r in iter_references(self.attributes)}
        return self.depends_on | frozenset(inferred)

    def encoded_attributes(self) -> Dict[str, Any]:
        return encode_attributes(self.attributes)

    def __repr__(self) -> str:
        return (
            f"ResourceDescriptor(type={self.resource_type!r}, "
            f"name={self.name!r}, "
            f"depends_on={set(self.dependencies())}, "
            f"readiness={self.readiness!r})"
        )


def resource(
    resource_type: str,
    name: str,
    *,
    depends_on: Optional[Set[str]] = None,
    readiness: Optional[ReadinessPolicy] = None,
    **attributes: Any,
) -> ResourceDescriptor:
    """
    Build a ResourceDescriptor from keyword attributes.

    Example:
        cluster = resource(
            "gke_cluster", "cluster",
            network=ref("network", "self_link"),
            location="us-central1",
        )
    """
    return ResourceDescriptor(
        resource_type=resource_type,
        name=name,
        attributes=dict(attributes),
        depends_on=frozenset(depends_on or set()),
        readiness=readiness,
    )


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every Reference nested inside dicts, lists, tuples and sets."""
    if isinstance(value, Reference):
        yield value
    elif isinstance(value, Mapping):
        for item in value.values():
            yield from iter_references(item)
    elif isinstance(value, (list, tuple, set, frozenset)):
        for item in value:
            yield from iter_references(item)


def encode_attributes(value: Any) -> Any:
    """
    Convert an attribute mapping into its canonical, JSON-compatible form.

    References become ``{"$ref": {...}}`` objects, tuples become lists and
    sets become sorted lists, so that structural equality is stable across
    passes and storage backends.
    """
    if isinstance(value, Reference):
        return value.to_dict()
    if isinstance(value, Mapping):
        return {str(k): encode_attributes(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_attributes(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted((encode_attributes(v) for v in value), key=repr)
    return value


def resolve_references(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Replace every Reference with ``lookup(reference)``; other values are copied."""
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, Mapping):
        return {k: resolve_references(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_references(v, lookup) for v in value]
    if isinstance(value, tuple):
        return tuple(resolve_references(v, lookup) for v in value)
    return value
