from __future__ import annotations
import json
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import BaseModel, field_validator, model_validator

from .descriptor import REF_TAG, FixedDelay, PollUntil, ReadinessPolicy, Reference, ResourceDescriptor

# ---- Declaration documents ------------------------------------------------------
# A document is {"resources": [...]}; inside attributes, {"$ref": "name.output"}
# (or the encoded {"$ref": {"resource": ..., "output": ...}}) becomes a Reference.


class ReadinessSchema(BaseModel):
    kind: Literal["none", "fixed_delay", "poll_until"] = "none"
    duration: Optional[float] = None
    interval: Optional[float] = None
    timeout: Optional[float] = None

    @field_validator("kind", mode="before")
    @classmethod
    def _normalize_kind(cls, v):
        if v is None:
            return "none"
        s = str(v).strip().lower().replace("-", "_")
        # accept a few common authoring shortcuts
        if s in {"delay", "sleep", "fixed"}:
            return "fixed_delay"
        if s in {"poll", "probe"}:
            return "poll_until"
        return s

    @model_validator(mode="after")
    def _require_parameters(self):
        if self.kind == "fixed_delay" and self.duration is None:
            raise ValueError("fixed_delay readiness requires 'duration'")
        if self.kind == "poll_until" and self.interval is None:
            raise ValueError("poll_until readiness requires 'interval'")
        return self

    def to_policy(self) -> Optional[ReadinessPolicy]:
        if self.kind == "fixed_delay":
            return FixedDelay(duration=self.duration)
        if self.kind == "poll_until":
            return PollUntil(interval=self.interval, timeout=self.timeout)
        return None


class ResourceSchema(BaseModel):
    """One declared resource. 'type' and 'resource_type' are both accepted."""
    type: str
    name: str
    attributes: Dict[str, Any] = {}
    depends_on: List[str] = []
    readiness: Optional[ReadinessSchema] = None

    @model_validator(mode="before")
    @classmethod
    def _fold_type_alias(cls, data):
        if isinstance(data, dict) and "type" not in data and "resource_type" in data:
            data = dict(data)
            data["type"] = data.pop("resource_type")
        return data

    def to_descriptor(self) -> ResourceDescriptor:
        return ResourceDescriptor(
            resource_type=self.type,
            name=self.name,
            attributes=decode_references(self.attributes),
            depends_on=frozenset(self.depends_on),
            readiness=self.readiness.to_policy() if self.readiness else None,
        )


class StackSchema(BaseModel):
    resources: List[ResourceSchema] = []


def decode_references(value: Any) -> Any:
    """Turn ``{"$ref": ...}`` objects back into Reference values."""
    if isinstance(value, dict):
        if set(value) == {REF_TAG}:
            target = value[REF_TAG]
            if isinstance(target, str):
                resource, sep, output = target.partition(".")
                if not sep or not resource or not output:
                    raise ValueError(f"Malformed reference {target!r}; expected 'resource.output'")
                return Reference(resource=resource, output=output)
            if isinstance(target, dict):
                if not target.get("resource") or not target.get("output"):
                    raise ValueError(f"Malformed reference {target!r}; expected 'resource' and 'output'")
                return Reference(resource=target["resource"], output=target["output"])
            raise ValueError(f"Malformed reference {target!r}")
        return {k: decode_references(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_references(v) for v in value]
    return value


def load_descriptors(document: Union[Dict[str, Any], List[Dict[str, Any]]]) -> List[ResourceDescriptor]:
    """
    Parse a declaration document into descriptors, in declaration order.

    Raises pydantic.ValidationError for structurally invalid documents.
    """
    if isinstance(document, list):
        document = {"resources": document}
    stack = StackSchema.model_validate(document)
    return [r.to_descriptor() for r in stack.resources]


def load_descriptors_from_file(path: Union[str, Path]) -> List[ResourceDescriptor]:
    """Load descriptors from a JSON declaration file."""
    with open(path, "r", encoding="utf-8") as fh:
        return load_descriptors(json.load(fh))
