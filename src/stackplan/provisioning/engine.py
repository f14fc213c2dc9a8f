"""
High-level entry points for reconciliation passes.

This module provides ProvisioningEngine, which wires the planner, executor,
readiness gate and state recorder together, and the ``run_pass()`` helpers
that run one full plan+execute cycle.
"""
from __future__ import annotations
import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional

from ..config import EngineConfig
from .descriptor import ReadinessPolicy
from .executor import Executor, PassResult, PassStatus
from .plan import Plan
from .planner import DescriptorSource, Planner
from .provider import ProbeLike, Provider
from .readiness import ReadinessGate
from .state import CommittedState, InMemoryStateBackend, StateBackend, StateRecorder

logger = logging.getLogger(__name__)


class ProvisioningEngine:
    """
    Plans and applies resource declarations against an injected state backend.

    Example:
        engine = ProvisioningEngine(provider, JsonFileStateBackend("state.json"), probe=probe)
        plan = await engine.plan(descriptors)
        result = await engine.execute(plan)
    """

    def __init__(
        self,
        provider: Provider,
        backend: Optional[StateBackend] = None,
        probe: Optional[ProbeLike] = None,
        config: Optional[EngineConfig] = None,
        type_policies: Optional[Mapping[str, ReadinessPolicy]] = None,
    ):
        """
        Initialize the engine.

        Args:
            provider: Provider collaborator performing the real operations
            backend: Durable committed-state storage (in-memory if omitted)
            probe: Readiness probe for PollUntil policies without their own
            config: Engine configuration (defaults to EngineConfig.from_env())
            type_policies: Default readiness policy per resource type
        """
        self.provider = provider
        self.config = config or EngineConfig.from_env()
        self.recorder = StateRecorder(backend if backend is not None else InMemoryStateBackend())
        self.gate = ReadinessGate(probe=probe, default_timeout=self.config.readiness_timeout)
        self.planner = Planner(type_policies)
        self._executor: Optional[Executor] = None
        self._last_trace: List[Dict[str, Any]] = []

    async def plan(self, descriptors: DescriptorSource) -> Plan:
        """Diff the descriptors against freshly loaded committed state."""
        committed = await self.recorder.load()
        return self.planner.create_plan(descriptors, committed)

    async def execute(self, plan: Plan) -> PassResult:
        """Apply a plan; per-resource outcomes are reported on the result."""
        executor = Executor(self.provider, self.recorder, gate=self.gate, config=self.config)
        self._executor = executor
        try:
            result = await executor.apply(plan)
        finally:
            self._last_trace = executor.get_trace()
            self._executor = None

        if self.config.enable_tracing:
            _log_trace_summary(self._last_trace, error=not result.ok)
        return result

    async def reconcile(self, descriptors: DescriptorSource) -> PassResult:
        """One reconciliation pass: plan, then execute."""
        plan = await self.plan(descriptors)
        if not plan.has_changes and not any(op.await_readiness for op in plan):
            logger.info("No changes. Committed state matches declarations.")
        return await self.execute(plan)

    async def current_state(self) -> CommittedState:
        """Snapshot of committed state for inspection or audit."""
        await self.recorder.ensure_loaded()
        return self.recorder.snapshot()

    def cancel(self) -> None:
        """Stop the running pass from starting new operations."""
        if self._executor is not None:
            self._executor.cancel()

    def get_trace(self) -> List[Dict[str, Any]]:
        """Trace of the last executed pass."""
        return list(self._last_trace)


async def run_pass(
    descriptors: DescriptorSource,
    provider: Provider,
    backend: Optional[StateBackend] = None,
    probe: Optional[ProbeLike] = None,
    config: Optional[EngineConfig] = None,
    type_policies: Optional[Mapping[str, ReadinessPolicy]] = None,
    plan_only: bool = False,
) -> PassResult:
    """
    High-level entry point to plan and apply declarations in one pass.

    Args:
        descriptors: Descriptors, a DescriptorStore or a built DependencyGraph
        provider: Provider collaborator
        backend: Committed-state backend
        probe: Default readiness probe
        config: Engine configuration
        type_policies: Default readiness policy per resource type
        plan_only: If True, only plan and return an empty successful result

    Raises:
        DeclarationError: If the declarations are invalid (before any provider call)
    """
    engine = ProvisioningEngine(provider, backend, probe=probe, config=config, type_policies=type_policies)
    plan = await engine.plan(descriptors)

    analysis = engine.planner.analyze_parallelism(plan)
    logger.info(
        f"Plan analysis: {analysis['total_operations']} operations, "
        f"{analysis['levels']} execution levels, "
        f"max {analysis['max_parallel']} parallel operations"
    )
    if analysis['bottlenecks']:
        logger.warning(f"Bottleneck resources (>=3 dependents): {analysis['bottlenecks']}")

    if plan_only:
        logger.info("Planning complete (plan_only=True)")
        return PassResult(status=PassStatus.SUCCEEDED)

    return await engine.execute(plan)


def run_pass_sync(
    descriptors: DescriptorSource,
    provider: Provider,
    backend: Optional[StateBackend] = None,
    **kwargs
) -> PassResult:
    """
    Synchronous wrapper for run_pass().

    Useful when calling from synchronous code.
    """
    return asyncio.run(run_pass(descriptors, provider, backend, **kwargs))


def _log_trace_summary(trace: List[Dict[str, Any]], error: bool = False) -> None:
    """Log a summary of the execution trace."""
    if not trace:
        return

    total_resources = len({entry['resource'] for entry in trace})
    total_attempts = len(trace)
    retries = sum(1 for entry in trace if entry.get('retry', False))
    failures = sum(1 for entry in trace if not entry['success'])

    durations = [entry['duration'] for entry in trace if entry.get('duration')]
    total_time = sum(durations) if durations else 0
    avg_time = total_time / len(durations) if durations else 0

    level = logging.ERROR if error else logging.INFO
    logger.log(
        level,
        f"Execution trace summary: {total_resources} resources, {total_attempts} provider calls, "
        f"{retries} retries, {failures} failed calls, "
        f"total time {total_time:.2f}s, avg {avg_time:.2f}s/call"
    )

    if durations:
        slowest = sorted(
            [entry for entry in trace if entry.get('duration')],
            key=lambda e: e['duration'],
            reverse=True
        )
        logger.debug("Slowest provider calls:")
        for entry in slowest[:5]:
            logger.debug(
                f"  {entry['resource']} ({entry['kind']}): {entry['duration']:.2f}s"
            )
