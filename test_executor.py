"""
Tests for plan execution: ordering, readiness gating, retries, partial
failure isolation, cancellation and the commit-before-release invariant.

Coroutines are driven with asyncio.run() so no pytest plugin is needed.
"""
import asyncio
import threading
import time

import pytest

from stackplan import EngineConfig
from stackplan.provisioning import (
    CycleDetected,
    ExecutionStatus,
    FixedDelay,
    OperationKind,
    PassStatus,
    PollUntil,
    ProvisioningEngine,
    ReadinessTimeout,
    ref,
    resource,
    run_pass,
)
from stackplan.provisioning.examples import FakeCloud, autoscaling_stack


def fast_config(**overrides):
    values = dict(
        max_parallelism=8,
        max_attempts=3,
        backoff_base=0.0,
        backoff_max=0.0,
        operation_timeout=5.0,
        readiness_timeout=2.0,
    )
    values.update(overrides)
    return EngineConfig(**values)


def fast_stack(**kwargs):
    kwargs.setdefault("controller_readiness", PollUntil(interval=0.01, timeout=2.0))
    return autoscaling_stack(**kwargs)


class RecordingProvider:
    """Async provider that tracks concurrency and can be told to block or fail."""

    def __init__(self, delay=0.0):
        self.delay = delay
        self.applied = []
        self.destroyed = []
        self.active = 0
        self.max_active = 0
        self.gates = {}
        self.started = {}

    async def apply(self, resource_type, attributes, prior_identifiers):
        name = attributes.get("label", resource_type)
        self.started.setdefault(name, asyncio.Event()).set()
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if name in self.gates:
                await self.gates[name].wait()
            await asyncio.sleep(self.delay)
            self.applied.append(name)
            return {"id": f"{name}-id"}
        finally:
            self.active -= 1

    async def destroy(self, resource_type, identifiers):
        self.destroyed.append(identifiers["id"])


# =============================================================================
# Ordering and readiness
# =============================================================================

def test_scenario_workload_waits_for_controller_readiness():
    cloud = FakeCloud(slow_types={"helm_release": 3})
    engine = ProvisioningEngine(cloud, probe=cloud, config=fast_config())

    async def scenario():
        plan = await engine.plan(fast_stack())
        assert plan.order == [
            "network", "cluster", "autoscaler-binding", "autoscaler-controller", "queue-workload",
        ]
        return await engine.execute(plan)

    result = asyncio.run(scenario())

    assert result.status is PassStatus.SUCCEEDED
    assert cloud.applied_types() == [
        "network", "kubernetes_cluster", "iam_role_binding", "helm_release", "kubernetes_manifest",
    ]
    ready_probe = cloud.calls.index(("probe", "helm_release", True))
    workload_apply = next(
        i for i, c in enumerate(cloud.calls) if c[0] == "apply" and c[1] == "kubernetes_manifest"
    )
    assert ready_probe < workload_apply
    assert [c for c in cloud.calls if c[0] == "probe"] == [
        ("probe", "helm_release", False),
        ("probe", "helm_release", False),
        ("probe", "helm_release", False),
        ("probe", "helm_release", True),
    ]

    controller = result.get("autoscaler-controller")
    assert controller.readiness.ready
    assert controller.readiness.probes == 4
    assert [result.get(n).wave for n in ("network", "cluster", "autoscaler-binding")] == [0, 1, 2]


def test_second_pass_is_all_noop():
    cloud = FakeCloud()
    engine = ProvisioningEngine(cloud, probe=cloud, config=fast_config())

    async def scenario():
        first = await engine.reconcile(fast_stack())
        plan = await engine.plan(fast_stack())
        second = await engine.execute(plan)
        return first, plan, second

    first, plan, second = asyncio.run(scenario())
    assert first.ok
    assert [op.kind for op in plan] == [OperationKind.NOOP] * 5
    assert all(r.status is ExecutionStatus.NOOP for r in second)
    assert len(cloud.applied_types()) == 5


def test_references_resolved_from_committed_outputs():
    cloud = FakeCloud()
    engine = ProvisioningEngine(cloud, probe=cloud, config=fast_config())
    asyncio.run(engine.reconcile(fast_stack()))

    applies = {c[1]: c[2] for c in cloud.calls if c[0] == "apply"}
    network_link = applies["kubernetes_cluster"]["network"]
    assert network_link.startswith("projects/demo/network/")
    assert applies["kubernetes_manifest"]["controller"].endswith("-release")

    state = asyncio.run(engine.current_state())
    # committed attributes keep the declared reference, not the resolved value
    assert state["cluster"].attributes["network"] == {
        "$ref": {"resource": "network", "output": "self_link"}
    }
    assert state["cluster"].identifiers["self_link"].startswith("projects/demo/")


def test_readiness_timeout_blocks_dependents():
    cloud = FakeCloud(slow_types={"helm_release": 10_000})
    engine = ProvisioningEngine(cloud, probe=cloud, config=fast_config())
    stack = fast_stack(controller_readiness=PollUntil(interval=0.01, timeout=0.1))

    result = asyncio.run(engine.reconcile(stack))

    assert result.status is PassStatus.FAILED
    controller = result.get("autoscaler-controller")
    assert controller.status is ExecutionStatus.TIMED_OUT
    assert isinstance(controller.error, ReadinessTimeout)
    assert controller.error.last_probe_result is False
    assert controller.readiness.probes >= 2

    workload = result.get("queue-workload")
    assert workload.status is ExecutionStatus.SKIPPED
    assert workload.blocked_by == "autoscaler-controller"
    assert "kubernetes_manifest" not in cloud.applied_types()

    # the controller exists, so it is committed but not ready
    state = asyncio.run(engine.current_state())
    assert state["autoscaler-controller"].ready is False
    assert "queue-workload" not in state


def test_unready_resource_is_gated_again_on_next_pass():
    cloud = FakeCloud(slow_types={"helm_release": 10_000})
    engine = ProvisioningEngine(cloud, probe=cloud, config=fast_config())
    stack = fast_stack(controller_readiness=PollUntil(interval=0.01, timeout=0.05))

    async def scenario():
        await engine.reconcile(stack)
        cloud.slow_types["helm_release"] = 0
        return await engine.reconcile(stack)

    result = asyncio.run(scenario())
    assert result.ok
    assert result.get("autoscaler-controller").status is ExecutionStatus.NOOP
    assert result.get("autoscaler-controller").readiness.ready
    assert result.get("queue-workload").status is ExecutionStatus.SUCCEEDED
    assert cloud.applied_types().count("helm_release") == 1
    assert asyncio.run(engine.current_state())["autoscaler-controller"].ready


def test_fixed_delay_gates_dependents():
    cloud = FakeCloud()
    engine = ProvisioningEngine(cloud, config=fast_config())
    stack = fast_stack(controller_readiness=FixedDelay(0.1))

    start = time.monotonic()
    result = asyncio.run(engine.reconcile(stack))
    assert result.ok
    assert time.monotonic() - start >= 0.09
    assert result.get("autoscaler-controller").readiness.elapsed >= 0.09
    assert not [c for c in cloud.calls if c[0] == "probe"]


# =============================================================================
# Failures and retries
# =============================================================================

def test_failure_skips_dependents_but_not_independent_branches():
    cloud = FakeCloud(fail_types={"bucket"})
    stack = [
        resource("bucket", "b"),
        resource("vm", "a", source=ref("b", "id")),
        resource("vm", "a2", depends_on={"a"}),
        resource("network", "c"),
    ]
    engine = ProvisioningEngine(cloud, config=fast_config())
    result = asyncio.run(engine.reconcile(stack))

    assert result.status is PassStatus.FAILED
    assert result.get("b").status is ExecutionStatus.FAILED
    assert result.get("b").attempts == 1
    assert result.skipped == ["a", "a2"]
    assert result.get("a2").blocked_by == "b"
    assert result.get("c").status is ExecutionStatus.SUCCEEDED
    assert "vm" not in cloud.applied_types()

    state = asyncio.run(engine.current_state())
    assert list(state) == ["c"]


def test_transient_errors_are_retried():
    cloud = FakeCloud(flaky={"network": 2})
    engine = ProvisioningEngine(cloud, config=fast_config(max_attempts=3))
    result = asyncio.run(engine.reconcile([resource("network", "net")]))

    assert result.ok
    assert result.get("net").attempts == 3
    trace = engine.get_trace()
    assert [e["retry"] for e in trace] == [True, True, False]
    assert trace[-1]["success"]


def test_transient_errors_exhaust_attempts():
    cloud = FakeCloud(flaky={"network": 10})
    engine = ProvisioningEngine(cloud, config=fast_config(max_attempts=2))
    result = asyncio.run(engine.reconcile([resource("network", "net")]))

    record = result.get("net")
    assert record.status is ExecutionStatus.FAILED
    assert record.attempts == 2
    assert "after 2 attempts" in str(record.error)


def test_provider_call_timeout():
    class SlowProvider:
        async def apply(self, resource_type, attributes, prior_identifiers):
            await asyncio.sleep(1.0)
            return {"id": "late"}

        async def destroy(self, resource_type, identifiers):
            pass

    engine = ProvisioningEngine(SlowProvider(), config=fast_config(operation_timeout=0.02, max_attempts=2))
    result = asyncio.run(engine.reconcile([resource("network", "net")]))
    assert result.get("net").status is ExecutionStatus.TIMED_OUT
    assert result.get("net").attempts == 2


def test_sync_call_timeout_never_overlaps_its_retry():
    class BlockingProvider:
        def __init__(self):
            self.lock = threading.Lock()
            self.active = 0
            self.max_active = 0
            self.calls = 0

        def apply(self, resource_type, attributes, prior_identifiers):
            with self.lock:
                self.calls += 1
                self.active += 1
                self.max_active = max(self.max_active, self.active)
            try:
                time.sleep(0.3)
                return {"id": "late"}
            finally:
                with self.lock:
                    self.active -= 1

        def destroy(self, resource_type, identifiers):
            pass

    provider = BlockingProvider()
    engine = ProvisioningEngine(provider, config=fast_config(operation_timeout=0.1, max_attempts=3))
    result = asyncio.run(engine.reconcile([resource("network", "net")]))

    record = result.get("net")
    assert record.status is ExecutionStatus.TIMED_OUT
    assert record.attempts == 3
    assert provider.calls == 3
    assert provider.max_active == 1
    assert provider.active == 0


def test_cycle_fails_before_any_provider_call():
    cloud = FakeCloud()
    stack = [
        resource("vm", "a", x=ref("b", "id")),
        resource("vm", "b", x=ref("a", "id")),
        resource("network", "c"),
    ]
    with pytest.raises(CycleDetected):
        asyncio.run(run_pass(stack, cloud, config=fast_config()))
    assert cloud.calls == []


# =============================================================================
# Concurrency
# =============================================================================

def test_independent_branches_run_concurrently():
    provider = RecordingProvider(delay=0.05)
    stack = [resource("bucket", f"b{i}", label=f"b{i}") for i in range(4)]
    engine = ProvisioningEngine(provider, config=fast_config())
    result = asyncio.run(engine.reconcile(stack))
    assert result.ok
    assert provider.max_active == 4


def test_max_parallelism_bounds_provider_calls():
    provider = RecordingProvider(delay=0.02)
    stack = [resource("bucket", f"b{i}", label=f"b{i}") for i in range(4)]
    engine = ProvisioningEngine(provider, config=fast_config(max_parallelism=1))
    result = asyncio.run(engine.reconcile(stack))
    assert result.ok
    assert provider.max_active == 1


def test_slow_readiness_does_not_block_unrelated_branch():
    cloud = FakeCloud(slow_types={"helm_release": 5})
    stack = [
        resource("helm_release", "ctrl", readiness=PollUntil(interval=0.02, timeout=2.0)),
        resource("kubernetes_manifest", "app", depends_on={"ctrl"}),
        resource("network", "net"),
        resource("vm", "vm", net=ref("net", "id")),
    ]
    engine = ProvisioningEngine(cloud, probe=cloud, config=fast_config())
    result = asyncio.run(engine.reconcile(stack))

    assert result.ok
    applies = [c[1] for c in cloud.calls if c[0] == "apply"]
    # vm depends only on net, so it is applied while ctrl is still polling
    assert applies.index("vm") < applies.index("kubernetes_manifest")


def test_dependency_committed_before_dependent_starts():
    seen = {}

    class CheckingProvider:
        def __init__(self):
            self.engine = None

        async def apply(self, resource_type, attributes, prior_identifiers):
            if resource_type == "vm":
                seen["network_committed"] = "net" in self.engine.recorder.snapshot()
            return {"id": resource_type}

        async def destroy(self, resource_type, identifiers):
            pass

    provider = CheckingProvider()
    engine = ProvisioningEngine(provider, config=fast_config())
    provider.engine = engine
    asyncio.run(engine.reconcile([resource("network", "net"), resource("vm", "vm", net=ref("net", "id"))]))
    assert seen == {"network_committed": True}


def test_cancel_lets_in_flight_finish_and_skips_the_rest():
    provider = RecordingProvider()
    stack = [
        resource("network", "first", label="first"),
        resource("vm", "second", label="second", net=ref("first", "id")),
        resource("vm", "third", label="third", depends_on={"second"}),
    ]
    engine = ProvisioningEngine(provider, config=fast_config())

    async def scenario():
        provider.gates["first"] = asyncio.Event()
        provider.started["first"] = asyncio.Event()
        task = asyncio.create_task(engine.reconcile(stack))
        await provider.started["first"].wait()
        engine.cancel()
        provider.gates["first"].set()
        return await task

    result = asyncio.run(scenario())
    assert result.status is PassStatus.CANCELLED
    assert result.get("first").status is ExecutionStatus.SUCCEEDED
    assert result.cancelled == ["second", "third"]
    assert provider.applied == ["first"]


# =============================================================================
# Destroy
# =============================================================================

def test_removed_resources_destroyed_dependents_first():
    cloud = FakeCloud()
    engine = ProvisioningEngine(cloud, probe=cloud, config=fast_config())
    stack = fast_stack()

    async def scenario():
        await engine.reconcile(stack)
        keep = [d for d in stack if d.name in {"network", "cluster"}]
        return await engine.reconcile(keep)

    result = asyncio.run(scenario())
    assert result.ok
    destroyed = [c[1] for c in cloud.calls if c[0] == "destroy"]
    assert destroyed == ["kubernetes_manifest", "helm_release", "iam_role_binding"]
    assert list(asyncio.run(engine.current_state())) == ["network", "cluster"]


def test_destroy_waits_for_update_that_drops_the_reference():
    cloud = FakeCloud()
    engine = ProvisioningEngine(cloud, config=fast_config())

    async def scenario():
        await engine.reconcile([
            resource("bucket", "old"),
            resource("vm", "app", src=ref("old", "id")),
        ])
        return await engine.reconcile([resource("vm", "app", src="static")])

    result = asyncio.run(scenario())
    assert result.ok
    second_pass = [(c[0], c[1]) for c in cloud.calls[2:]]
    assert second_pass == [("apply", "vm"), ("destroy", "bucket")]
    assert asyncio.run(engine.current_state())["app"].dependencies == []


def test_engine_reused_across_event_loops():
    cloud = FakeCloud()
    engine = ProvisioningEngine(cloud, config=fast_config())
    stack = [resource("bucket", f"b{i}", size=1) for i in range(6)]

    assert asyncio.run(engine.reconcile(stack)).ok
    stack[0] = resource("bucket", "b0", size=2)
    result = asyncio.run(engine.reconcile(stack))

    assert result.ok
    assert result.succeeded == ["b0"]
    assert asyncio.run(engine.current_state())["b0"].attributes == {"size": 2}
