"""
Planner: Diffs desired descriptors against committed state.

This module provides the Planner class that takes a validated dependency
graph plus the last committed state and produces an ordered Plan.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from .descriptor import ReadinessPolicy, ResourceDescriptor
from .errors import CycleDetected, InvalidTransition
from .graph import DependencyGraph, build_graph, topological_sort
from .plan import Operation, OperationKind, Plan
from .state import CommittedState, ResourceState
from .store import DescriptorStore

logger = logging.getLogger(__name__)

DescriptorSource = Union[DependencyGraph, DescriptorStore, Iterable[ResourceDescriptor]]


class Planner:
    """
    Planner turns desired state plus committed state into a Plan.

    The planner:
    1. Builds and validates the dependency graph (cycles, unresolved references)
    2. Classifies each resource as Create / Update / NoOp / Destroy
    3. Orders destroys in reverse dependency order, after any declared
       resource that still points at them has been updated
    4. Orders all operations topologically, destroys first on ties
    """

    def __init__(self, type_policies: Optional[Mapping[str, ReadinessPolicy]] = None):
        """
        Initialize the planner.

        Args:
            type_policies: Default readiness policy per resource type, used when
                a descriptor does not declare its own
        """
        self.type_policies: Dict[str, ReadinessPolicy] = dict(type_policies or {})

    def create_plan(
        self,
        descriptors: DescriptorSource,
        committed_state: Optional[Mapping[str, ResourceState]] = None,
    ) -> Plan:
        """
        Create a plan for one reconciliation pass.

        Raises:
            DeclarationError: If the declarations are invalid
            InvalidTransition: If a name changes resource type between passes, or
                destroys and updates would have to wait on each other
        """
        graph = descriptors if isinstance(descriptors, DependencyGraph) else build_graph(descriptors)
        committed = committed_state if committed_state is not None else CommittedState.empty()

        self._validate_transitions(graph, committed)

        removed = [name for name in committed if name not in graph.descriptors]
        destroys = self._plan_destroys(removed, committed)
        # removed resource -> desired resources it depended on
        blocked_by_destroy: Dict[str, set] = {}
        for name in removed:
            for dep in committed[name].dependencies:
                blocked_by_destroy.setdefault(dep, set()).add(name)

        operations: List[Operation] = []
        for name in graph.topological_order():
            descriptor = graph.descriptors[name]
            prior = committed.get(name)
            operations.append(self._plan_resource(
                descriptor,
                prior,
                depends_on=set(graph.dependencies_of(name)) | blocked_by_destroy.get(name, set()),
                dependencies=graph.dependencies_of(name),
            ))

            # a removed resource outlives every declared resource still pointing at it
            if prior is not None:
                for dep in prior.dependencies:
                    if dep in destroys:
                        destroys[dep].depends_on = destroys[dep].depends_on | {name}

        plan = Plan(operations=self._order_operations(list(destroys.values()) + operations))
        self._log_plan_summary(plan)
        return plan

    def effective_readiness(self, descriptor: ResourceDescriptor) -> Optional[ReadinessPolicy]:
        if descriptor.readiness is not None:
            return descriptor.readiness
        return self.type_policies.get(descriptor.resource_type)

    def _validate_transitions(self, graph: DependencyGraph, committed: Mapping[str, ResourceState]) -> None:
        for name, descriptor in graph.descriptors.items():
            prior = committed.get(name)
            if prior is not None and prior.resource_type != descriptor.resource_type:
                raise InvalidTransition(
                    name,
                    f"committed as {prior.resource_type!r} but declared as "
                    f"{descriptor.resource_type!r}; it would need to be destroyed "
                    f"and created in the same pass",
                )

    def _plan_resource(
        self,
        descriptor: ResourceDescriptor,
        prior: Optional[ResourceState],
        depends_on: set,
        dependencies: Iterable[str],
    ) -> Operation:
        desired = descriptor.encoded_attributes()
        readiness = self.effective_readiness(descriptor)

        if prior is None:
            kind = OperationKind.CREATE
        elif prior.attributes == desired:
            kind = OperationKind.NOOP
        else:
            kind = OperationKind.UPDATE

        await_readiness = (
            kind is OperationKind.NOOP
            and readiness is not None
            and prior is not None
            and not prior.ready
        )

        return Operation(
            name=descriptor.name,
            resource_type=descriptor.resource_type,
            kind=kind,
            attributes=desired,
            descriptor=descriptor,
            prior=prior,
            depends_on=frozenset(depends_on),
            dependencies=frozenset(dependencies),
            readiness=readiness,
            await_readiness=await_readiness,
        )

    def _plan_destroys(self, removed: List[str], committed: Mapping[str, ResourceState]) -> Dict[str, Operation]:
        """
        Plan destroys of resources no longer declared.

        A resource is destroyed only after every removed resource that
        depended on it has been destroyed.
        """
        if not removed:
            return {}

        removed_set = set(removed)
        # destroy(X) waits for destroy(Y) whenever Y depended on X
        waits_for: Dict[str, set] = {name: set() for name in removed}
        for name in removed:
            for dep in committed[name].dependencies:
                if dep in removed_set:
                    waits_for[dep].add(name)

        destroys: Dict[str, Operation] = {}
        for name in topological_sort(removed, waits_for):
            prior = committed[name]
            destroys[name] = Operation(
                name=name,
                resource_type=prior.resource_type,
                kind=OperationKind.DESTROY,
                attributes=dict(prior.attributes),
                prior=prior,
                depends_on=frozenset(waits_for[name]),
                dependencies=frozenset(prior.dependencies),
            )
        return destroys

    def _order_operations(self, operations: List[Operation]) -> List[Operation]:
        """
        Order all operations topologically over ``depends_on``.

        Destroys are listed first, so they lead the plan unless a declared
        resource that still points at them has to change first.
        """
        by_name = {op.name: op for op in operations}
        try:
            order = topological_sort(list(by_name), {op.name: op.depends_on for op in operations})
        except CycleDetected as e:
            raise InvalidTransition(
                e.path[0],
                f"destroys and updates wait on each other ({' -> '.join(e.path)}); "
                f"remove the stale references in one pass and the resources in the next",
            ) from e
        return [by_name[name] for name in order]

    def _log_plan_summary(self, plan: Plan) -> None:
        """Log a summary of the plan for debugging."""
        logger.info(f"Created plan: {plan.summary()}")
        for level_idx, level_ops in enumerate(self.compute_execution_levels(plan)):
            names = [f"{op.kind.value}:{op.name}" for op in level_ops]
            logger.debug(f"  Level {level_idx}: {len(level_ops)} operations can run in parallel: {names}")

    def compute_execution_levels(self, plan: Plan) -> List[List[Operation]]:
        """
        Compute execution levels (waves) over the operations that need a
        provider call. NoOp operations count as already satisfied.
        """
        levels: List[List[Operation]] = []
        op_to_level: Dict[str, int] = {}

        for op in plan.operations:
            deps = [plan.get(d) for d in op.depends_on]
            dep_levels = [op_to_level[d.name] for d in deps if d is not None and d.name in op_to_level]
            if not op.is_change and not op.await_readiness:
                continue
            level = max(dep_levels, default=-1) + 1
            op_to_level[op.name] = level
            while len(levels) <= level:
                levels.append([])
            levels[level].append(op)

        return levels

    def analyze_parallelism(self, plan: Plan) -> Dict[str, Any]:
        """
        Analyze parallelism opportunities in the plan.

        Returns:
            Dict with total_operations, max_parallel, levels, bottlenecks
            (operations with 3 or more dependents) and avg_operations_per_level.
        """
        levels = self.compute_execution_levels(plan)
        scheduled = [op for level in levels for op in level]
        max_parallel = max((len(level) for level in levels), default=0)

        dependents_count = {op.name: 0 for op in scheduled}
        for op in scheduled:
            for dep in op.depends_on:
                if dep in dependents_count:
                    dependents_count[dep] += 1

        bottlenecks = [name for name, count in dependents_count.items() if count >= 3]

        return {
            "total_operations": len(scheduled),
            "max_parallel": max_parallel,
            "levels": len(levels),
            "bottlenecks": bottlenecks,
            "avg_operations_per_level": len(scheduled) / len(levels) if levels else 0,
        }


def build_plan(
    descriptors: DescriptorSource,
    committed_state: Optional[Mapping[str, ResourceState]] = None,
    type_policies: Optional[Mapping[str, ReadinessPolicy]] = None,
) -> Plan:
    """Functional shortcut for ``Planner(type_policies).create_plan(...)``."""
    return Planner(type_policies).create_plan(descriptors, committed_state)
