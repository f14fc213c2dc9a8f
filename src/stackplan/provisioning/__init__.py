"""
provisioning: Dependency-ordered resource provisioning.

This package takes resource declarations with explicit and implicit
dependencies and drives them to their desired state:
- Descriptors with tagged References to other resources' outputs
- Dependency graph construction with cycle and reference validation
- Diffing against committed state into Create / Update / Destroy / NoOp
- Concurrent execution across independent branches, retries with backoff
- Readiness gating (fixed delay or polling) before dependents start
- Durable committed state recorded before any dependent is released

Core Components:
- ResourceDescriptor / DescriptorStore: Declared desired state
- build_graph / DependencyGraph: Validated DAG
- Planner / Plan / Operation: Ordered diff against CommittedState
- Executor / PassResult / ExecutionRecord: Applies plans
- ReadinessGate: FixedDelay and PollUntil policies
- StateRecorder / CommittedState: Committed state across passes
- ProvisioningEngine / run_pass(): High-level entry points

Example:
    >>> from stackplan.provisioning import resource, ref, PollUntil, run_pass
    >>> import asyncio
    >>>
    >>> stack = [
    ...     resource("network", "network", cidr="10.10.0.0/16"),
    ...     resource(
    ...         "kubernetes_cluster", "cluster",
    ...         network=ref("network", "self_link"),  # implicit dependency
    ...     ),
    ...     resource(
    ...         "helm_release", "controller",
    ...         cluster=ref("cluster", "endpoint"),
    ...         readiness=PollUntil(interval=5.0, timeout=120.0),
    ...     ),
    ... ]
    >>>
    >>> result = asyncio.run(run_pass(stack, provider, probe=probe))
    >>> print(result.status)  # PassStatus.SUCCEEDED
"""

from .descriptor import (
    ResourceDescriptor,
    Reference,
    ReadinessKind,
    ReadinessPolicy,
    FixedDelay,
    PollUntil,
    resource,
    ref,
)

from .errors import (
    ProvisioningError,
    DeclarationError,
    DuplicateDeclaration,
    UnresolvedReference,
    CycleDetected,
    InvalidTransition,
    TransientProviderError,
    OperationFailure,
    ReadinessTimeout,
    ExecutionError,
    ConfigurationError,
)

from .store import DescriptorStore

from .graph import (
    DependencyGraph,
    build_graph,
)

from .state import (
    ResourceState,
    CommittedState,
    StateBackend,
    InMemoryStateBackend,
    StateRecorder,
)

from .plan import (
    Operation,
    OperationKind,
    Plan,
)

from .planner import (
    Planner,
    build_plan,
)

from .provider import (
    Provider,
    ReadinessProbe,
)

from .readiness import (
    ReadinessGate,
    ReadinessOutcome,
    ReadinessStatus,
)

from .executor import (
    Executor,
    ExecutionRecord,
    ExecutionStatus,
    PassResult,
    PassStatus,
)

from .engine import (
    ProvisioningEngine,
    run_pass,
    run_pass_sync,
)

from .loader import (
    load_descriptors,
    load_descriptors_from_file,
)

__all__ = [
    # Declarations
    "ResourceDescriptor",
    "Reference",
    "ReadinessKind",
    "ReadinessPolicy",
    "FixedDelay",
    "PollUntil",
    "resource",
    "ref",
    "DescriptorStore",
    "load_descriptors",
    "load_descriptors_from_file",
    # Errors
    "ProvisioningError",
    "DeclarationError",
    "DuplicateDeclaration",
    "UnresolvedReference",
    "CycleDetected",
    "InvalidTransition",
    "TransientProviderError",
    "OperationFailure",
    "ReadinessTimeout",
    "ExecutionError",
    "ConfigurationError",
    # Graph and planning
    "DependencyGraph",
    "build_graph",
    "Operation",
    "OperationKind",
    "Plan",
    "Planner",
    "build_plan",
    # State
    "ResourceState",
    "CommittedState",
    "StateBackend",
    "InMemoryStateBackend",
    "StateRecorder",
    # Collaborators
    "Provider",
    "ReadinessProbe",
    # Execution
    "ReadinessGate",
    "ReadinessOutcome",
    "ReadinessStatus",
    "Executor",
    "ExecutionRecord",
    "ExecutionStatus",
    "PassResult",
    "PassStatus",
    # High-level API
    "ProvisioningEngine",
    "run_pass",
    "run_pass_sync",
]
