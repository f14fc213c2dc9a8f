"""
Executor: Applies plans with async concurrency and partial-failure isolation.

This module provides the Executor class that executes plans with:
- A task per operation, started as soon as its dependencies are applied and ready
- A bounded number of concurrent provider calls
- Timeouts and exponential-backoff retries for transient provider errors
- Readiness gating before dependents are released
- Per-resource outcome records and a structured execution trace
"""
from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Set

from ..config import EngineConfig
from .descriptor import Reference, resolve_references
from .errors import ExecutionError, OperationFailure, ReadinessTimeout, TransientProviderError
from .plan import Operation, OperationKind, Plan
from .provider import Provider, provider_apply, provider_destroy
from .readiness import ReadinessGate, ReadinessOutcome
from .state import StateRecorder

logger = logging.getLogger(__name__)


class ExecutionStatus(Enum):
    """Status of one operation within a pass."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    NOOP = "noop"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


@dataclass
class ExecutionRecord:
    """Outcome of one planned operation."""
    name: str
    resource_type: str
    kind: OperationKind
    status: ExecutionStatus = ExecutionStatus.PENDING
    error: Optional[BaseException] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    attempts: int = 0
    readiness: Optional[ReadinessOutcome] = None
    identifiers: Dict[str, Any] = field(default_factory=dict)
    blocked_by: Optional[str] = None
    wave: Optional[int] = None

    @property
    def duration(self) -> Optional[float]:
        """Get execution duration in seconds."""
        if self.started_at is not None and self.finished_at is not None:
            return self.finished_at - self.started_at
        return None

    @property
    def success(self) -> bool:
        return self.status in (ExecutionStatus.SUCCEEDED, ExecutionStatus.NOOP)

    @property
    def terminal_failure(self) -> bool:
        return self.status in (ExecutionStatus.FAILED, ExecutionStatus.TIMED_OUT)


class PassStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class PassResult:
    """Aggregated outcome of one reconciliation pass, in plan order."""
    status: PassStatus
    records: List[ExecutionRecord] = field(default_factory=list)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def ok(self) -> bool:
        return self.status is PassStatus.SUCCEEDED

    def by_name(self) -> Dict[str, ExecutionRecord]:
        return {record.name: record for record in self.records}

    def get(self, name: str) -> Optional[ExecutionRecord]:
        return self.by_name().get(name)

    def with_status(self, *statuses: ExecutionStatus) -> List[str]:
        return [r.name for r in self.records if r.status in statuses]

    @property
    def succeeded(self) -> List[str]:
        return self.with_status(ExecutionStatus.SUCCEEDED)

    @property
    def failed(self) -> List[str]:
        return self.with_status(ExecutionStatus.FAILED, ExecutionStatus.TIMED_OUT)

    @property
    def skipped(self) -> List[str]:
        return self.with_status(ExecutionStatus.SKIPPED)

    @property
    def cancelled(self) -> List[str]:
        return self.with_status(ExecutionStatus.CANCELLED)

    def __iter__(self) -> Iterator[ExecutionRecord]:
        return iter(self.records)

    def __len__(self) -> int:
        return len(self.records)


class Executor:
    """
    Executes plans with async concurrency and per-resource failure isolation.

    Features:
    - Starts each operation once every operation it depends on has been
      applied, committed and (if gated) reported ready
    - Bounds concurrent provider calls with a semaphore
    - Retries transient provider errors and call timeouts with backoff
    - Skips every dependent of a failed operation; independent branches continue
    - Stops launching new operations on cancel(); in-flight ones finish

    One Executor runs one pass.
    """

    def __init__(
        self,
        provider: Provider,
        recorder: StateRecorder,
        gate: Optional[ReadinessGate] = None,
        config: Optional[EngineConfig] = None,
    ):
        """
        Initialize the executor.

        Args:
            provider: Provider collaborator performing the real operations
            recorder: StateRecorder that owns committed state
            gate: ReadinessGate resolving readiness policies
            config: Retry, timeout and parallelism settings
        """
        self.provider = provider
        self.recorder = recorder
        self.config = config or EngineConfig()
        self.gate = gate or ReadinessGate(default_timeout=self.config.readiness_timeout)

        self._semaphore = asyncio.Semaphore(self.config.max_parallelism)
        self._cancelled = asyncio.Event()
        self._records: Dict[str, ExecutionRecord] = {}
        self._trace: List[Dict[str, Any]] = []

    def cancel(self) -> None:
        """Stop issuing new operations; operations already running finish."""
        if not self._cancelled.is_set():
            logger.warning("[EXEC] Cancellation requested, no new operations will start")
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    async def apply(self, plan: Plan) -> PassResult:
        """
        Apply a plan.

        Returns:
            PassResult with one ExecutionRecord per planned operation. Failures
            are reported on the records, never raised.

        Raises:
            ExecutionError: If the scheduler cannot make progress
        """
        logger.info(f"Starting execution of {plan!r}")
        started = time.time()
        await self.recorder.ensure_loaded()

        self._records = {
            op.name: ExecutionRecord(name=op.name, resource_type=op.resource_type, kind=op.kind)
            for op in plan.operations
        }

        await self._execute_plan_concurrent(plan)

        records = [self._records[op.name] for op in plan.operations]
        if any(r.status in (ExecutionStatus.FAILED, ExecutionStatus.TIMED_OUT, ExecutionStatus.SKIPPED)
               for r in records):
            status = PassStatus.FAILED
        elif any(r.status is ExecutionStatus.CANCELLED for r in records):
            status = PassStatus.CANCELLED
        else:
            status = PassStatus.SUCCEEDED

        result = PassResult(status=status, records=records, started_at=started, finished_at=time.time())
        log = logger.info if result.ok else logger.error
        log(
            f"Pass {status.value}: {len(result.succeeded)} applied, {len(result.failed)} failed, "
            f"{len(result.skipped)} skipped, {len(result.cancelled)} cancelled"
        )
        return result

    async def _execute_plan_concurrent(self, plan: Plan) -> None:
        """
        Launch operations as their dependencies complete.

        Each operation's wave is one more than the deepest wave it waits on;
        unrelated branches never wait for each other.
        """
        order = {op.name: i for i, op in enumerate(plan.operations)}
        remaining: Dict[str, Set[str]] = {
            op.name: {d for d in op.depends_on if d in order} for op in plan.operations
        }
        dependents: Dict[str, Set[str]] = {op.name: set() for op in plan.operations}
        for name, deps in remaining.items():
            for dep in deps:
                dependents[dep].add(name)

        waves: Dict[str, int] = {}
        ready: List[str] = [op.name for op in plan.operations if not remaining[op.name]]
        running: Dict[asyncio.Task, str] = {}

        def release(name: str) -> None:
            for dependent in sorted(dependents[name], key=order.get):
                remaining[dependent].discard(name)
                waves[dependent] = max(waves.get(dependent, 0), waves[name] + 1)
                if not remaining[dependent] and self._records[dependent].status is ExecutionStatus.PENDING:
                    ready.append(dependent)

        def block(name: str) -> None:
            to_visit = list(dependents[name])
            while to_visit:
                current = to_visit.pop()
                record = self._records[current]
                if record.status is not ExecutionStatus.PENDING:
                    continue
                record.status = ExecutionStatus.SKIPPED
                record.blocked_by = name
                logger.warning(f"[EXEC] Skipping {current}: depends on failed {name}")
                to_visit.extend(dependents[current])

        try:
            while True:
                while ready and not self.cancelled:
                    ready.sort(key=order.get)
                    name = ready.pop(0)
                    op = plan.get(name)
                    record = self._records[name]
                    record.wave = waves.setdefault(name, 0)

                    if op.kind is OperationKind.NOOP and not op.await_readiness:
                        record.status = ExecutionStatus.NOOP
                        record.identifiers = op.prior_identifiers
                        release(name)
                        continue

                    logger.debug(f"[EXEC] Launching {op.kind.value} {name} in wave {record.wave}")
                    record.status = ExecutionStatus.RUNNING
                    task = asyncio.create_task(self._execute_operation(op))
                    running[task] = name

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    name = running.pop(task)
                    if task.exception() is not None:
                        record = self._records[name]
                        record.status = ExecutionStatus.FAILED
                        record.error = task.exception()
                        record.finished_at = time.time()
                    if self._records[name].success:
                        release(name)
                    else:
                        block(name)
        except asyncio.CancelledError:
            # let in-flight provider calls finish before propagating
            self.cancel()
            if running:
                await asyncio.wait(running)
            raise

        pending = [n for n, r in self._records.items() if r.status is ExecutionStatus.PENDING]
        if pending and self.cancelled:
            for name in pending:
                self._records[name].status = ExecutionStatus.CANCELLED
            logger.warning(f"[EXEC] Cancelled before start: {sorted(pending, key=order.get)}")
        elif pending:
            raise ExecutionError(
                f"Deadlock detected: {len(pending)} operations pending but none ready. "
                f"Pending: {pending}"
            )

    async def _execute_operation(self, op: Operation) -> None:
        """Run one operation to a terminal record status; never raises provider errors."""
        record = self._records[op.name]
        record.started_at = time.time()
        logger.info(f"[EXEC] Starting {op.kind.value} of {op.resource_type}.{op.name}")

        try:
            if op.kind is OperationKind.DESTROY:
                await self._call_with_retries(
                    op, lambda: provider_destroy(self.provider, op.resource_type, op.prior_identifiers)
                )
                await self.recorder.commit(op)
                record.status = ExecutionStatus.SUCCEEDED

            elif op.kind is OperationKind.NOOP:
                # committed earlier but never confirmed ready
                record.identifiers = op.prior_identifiers
                await self._await_readiness(op, record.identifiers)
                await self.recorder.mark_ready(op.name)
                record.status = ExecutionStatus.NOOP

            else:
                attributes = self._resolve_attributes(op)
                identifiers = await self._call_with_retries(
                    op,
                    lambda: provider_apply(self.provider, op.resource_type, attributes, op.prior_identifiers),
                )
                record.identifiers = identifiers
                # committed before readiness so a crash never re-issues a Create
                await self.recorder.commit(op, identifiers, ready=op.readiness is None)
                if op.readiness is not None:
                    await self._await_readiness(op, identifiers)
                    await self.recorder.mark_ready(op.name)
                record.status = ExecutionStatus.SUCCEEDED

            logger.info(f"[EXEC] {op.kind.value} of {op.name} {record.status.value}")

        except ReadinessTimeout as e:
            record.status = ExecutionStatus.TIMED_OUT
            record.error = e
            logger.error(f"[EXEC] {e}")
        except OperationFailure as e:
            record.status = (
                ExecutionStatus.TIMED_OUT if isinstance(e.cause, asyncio.TimeoutError) else ExecutionStatus.FAILED
            )
            record.error = e
            logger.error(f"[EXEC] {e}")
        except Exception as e:
            record.status = ExecutionStatus.FAILED
            record.error = OperationFailure(op.name, f"{type(e).__name__}: {e}", e)
            logger.exception(f"[EXEC] {op.kind.value} of {op.name} failed")
        finally:
            record.finished_at = time.time()

    async def _call_with_retries(self, op: Operation, call: Callable[[], Awaitable[Any]]) -> Any:
        """
        Invoke a provider call with a per-call timeout and bounded retries.

        Only TransientProviderError and call timeouts are retried.
        """
        record = self._records[op.name]
        max_attempts = self.config.max_attempts
        timeout = self.config.operation_timeout

        for attempt in range(1, max_attempts + 1):
            record.attempts = attempt
            logger.debug(f"[EXEC] {op.name} attempt {attempt}/{max_attempts}")
            start = time.time()

            try:
                async with self._semaphore:
                    if timeout:
                        result = await asyncio.wait_for(call(), timeout=timeout)
                    else:
                        result = await call()
                self._trace_attempt(op, attempt, start, success=True)
                return result

            except (asyncio.TimeoutError, TransientProviderError) as e:
                transient = "timed out" if isinstance(e, asyncio.TimeoutError) else f"transient error: {e}"
                if attempt < max_attempts:
                    delay = self.config.backoff_delay(attempt)
                    logger.warning(
                        f"[EXEC] {op.name} {transient} (attempt {attempt}/{max_attempts}), "
                        f"retrying in {delay:.2f}s"
                    )
                    self._trace_attempt(op, attempt, start, success=False, retry=True, error=e)
                    await asyncio.sleep(delay)
                    continue
                self._trace_attempt(op, attempt, start, success=False, error=e)
                raise OperationFailure(op.name, f"provider call {transient} after {attempt} attempts", e) from e

            except Exception as e:
                self._trace_attempt(op, attempt, start, success=False, error=e)
                raise OperationFailure(op.name, f"provider call failed: {e}", e) from e

        raise ExecutionError(f"{op.name}: retry loop exited without a result")

    def _resolve_attributes(self, op: Operation) -> Dict[str, Any]:
        """
        Replace References with the committed outputs of the referenced resources.

        Dependencies are committed before this operation starts, so a missing
        output means the provider never returned it.
        """
        if op.descriptor is None:
            return dict(op.attributes)

        def lookup(reference: Reference) -> Any:
            state = self.recorder.get(reference.resource)
            if state is None or reference.output not in state.identifiers:
                raise OperationFailure(op.name, f"reference {reference} is not available")
            return state.identifiers[reference.output]

        return resolve_references(op.descriptor.attributes, lookup)

    async def _await_readiness(self, op: Operation, identifiers: Dict[str, Any]) -> ReadinessOutcome:
        record = self._records[op.name]
        outcome = await self.gate.await_ready(op.name, op.resource_type, identifiers, op.readiness)
        record.readiness = outcome
        if not outcome.ready:
            raise ReadinessTimeout(op.name, outcome.timeout or 0.0, outcome.last_probe_result)
        return outcome

    def _trace_attempt(
        self,
        op: Operation,
        attempt: int,
        start: float,
        success: bool,
        retry: bool = False,
        error: Optional[BaseException] = None,
    ) -> None:
        """Record a provider call attempt in the trace."""
        if not self.config.enable_tracing:
            return

        entry = {
            "resource": op.name,
            "resource_type": op.resource_type,
            "kind": op.kind.value,
            "attempt": attempt,
            "success": success,
            "retry": retry,
            "duration": time.time() - start,
            "timestamp": datetime.now().isoformat(),
        }
        if error is not None:
            entry["error"] = str(error) or type(error).__name__
        self._trace.append(entry)

    def get_trace(self) -> List[Dict[str, Any]]:
        """Get the execution trace."""
        return self._trace.copy()

    def get_results(self) -> Dict[str, ExecutionRecord]:
        """Get all execution records."""
        return self._records.copy()
