"""
DescriptorStore: Holds the declared desired state for every resource.
"""
from __future__ import annotations
import logging
from typing import Dict, Iterable, Iterator, List, Optional

from .descriptor import ResourceDescriptor
from .errors import DuplicateDeclaration

logger = logging.getLogger(__name__)


class DescriptorStore:
    """
    In-memory store of resource descriptors keyed by logical name.

    Declaration order is preserved and used to break ties when ordering
    independent resources. Replacing a descriptor keeps its original position.
    """

    def __init__(self, descriptors: Optional[Iterable[ResourceDescriptor]] = None):
        self._descriptors: Dict[str, ResourceDescriptor] = {}
        if descriptors:
            self.extend(descriptors)

    def put(self, descriptor: ResourceDescriptor) -> None:
        """
        Store a descriptor, replacing any existing one with the same name.

        Raises:
            DuplicateDeclaration: If the name is already declared with a
                different resource type.
        """
        existing = self._descriptors.get(descriptor.name)
        if existing is not None and existing.resource_type != descriptor.resource_type:
            raise DuplicateDeclaration(
                descriptor.name, existing.resource_type, descriptor.resource_type
            )
        if existing is not None:
            logger.debug(f"Replacing descriptor {descriptor.identity}")
        self._descriptors[descriptor.name] = descriptor

    def extend(self, descriptors: Iterable[ResourceDescriptor]) -> None:
        for descriptor in descriptors:
            self.put(descriptor)

    def get(self, name: str) -> Optional[ResourceDescriptor]:
        return self._descriptors.get(name)

    def remove(self, name: str) -> Optional[ResourceDescriptor]:
        """Drop a descriptor from the desired set; returns it if it existed."""
        return self._descriptors.pop(name, None)

    def all(self) -> List[ResourceDescriptor]:
        """Current descriptors in declaration order."""
        return list(self._descriptors.values())

    def names(self) -> List[str]:
        return list(self._descriptors)

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors

    def __iter__(self) -> Iterator[ResourceDescriptor]:
        return iter(self.all())

    def __len__(self) -> int:
        return len(self._descriptors)

    def __repr__(self) -> str:
        return f"DescriptorStore(resources={self.names()})"
