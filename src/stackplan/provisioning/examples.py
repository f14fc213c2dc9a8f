"""
Examples demonstrating the provisioning engine.

The stack mirrors a typical queue-driven autoscaling deployment: a network,
a managed Kubernetes cluster on it, an IAM role binding for the autoscaler,
the autoscaler controller installed from a chart, and the queue-consuming
workload it scales. The cloud itself is an in-memory fake.
"""
import asyncio
import itertools
import logging
import threading
from typing import Any, Dict, List, Optional

from .descriptor import FixedDelay, PollUntil, ReadinessPolicy, ResourceDescriptor, ref, resource
from .engine import ProvisioningEngine
from .errors import TransientProviderError


# =============================================================================
# Example stack
# =============================================================================

def autoscaling_stack(
    controller_readiness: Optional[ReadinessPolicy] = None,
    cluster_version: str = "1.29",
    workload_replicas: int = 1,
) -> List[ResourceDescriptor]:
    """Declarations for the queue-backed autoscaling stack, in declaration order."""
    if controller_readiness is None:
        controller_readiness = PollUntil(interval=5.0, timeout=120.0)

    return [
        resource(
            "network", "network",
            cidr="10.10.0.0/16",
            region="us-central1",
        ),
        resource(
            "kubernetes_cluster", "cluster",
            network=ref("network", "self_link"),
            version=cluster_version,
            node_pools=[{"name": "default", "machine_type": "e2-standard-4", "min": 1, "max": 3}],
        ),
        resource(
            "iam_role_binding", "autoscaler-binding",
            cluster=ref("cluster", "id"),
            role="roles/storage.objectViewer",
            member="serviceAccount:autoscaler",
        ),
        resource(
            "helm_release", "autoscaler-controller",
            depends_on={"autoscaler-binding"},
            readiness=controller_readiness,
            cluster=ref("cluster", "endpoint"),
            chart="keda",
            namespace="keda",
        ),
        resource(
            "kubernetes_manifest", "queue-workload",
            cluster=ref("cluster", "endpoint"),
            controller=ref("autoscaler-controller", "release"),
            queue="gs://jobs-queue",
            replicas=workload_replicas,
        ),
    ]


# =============================================================================
# In-memory cloud
# =============================================================================

class FakeCloud:
    """
    A fake provider and readiness probe.

    Resources of a type listed in ``slow_types`` only report ready after
    ``ready_after`` probes. ``fail_types`` fail terminally, ``flaky`` maps a
    resource type to the number of transient errors raised before success.
    """

    def __init__(
        self,
        slow_types: Optional[Dict[str, int]] = None,
        fail_types: Optional[set] = None,
        flaky: Optional[Dict[str, int]] = None,
    ):
        self.slow_types = dict(slow_types or {})
        self.fail_types = set(fail_types or ())
        self.flaky = dict(flaky or {})
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.calls: List[tuple] = []
        self._probes: Dict[str, int] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def apply(self, resource_type: str, attributes: Dict[str, Any], prior_identifiers: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self.calls.append(("apply", resource_type, dict(attributes)))
            if self.flaky.get(resource_type, 0) > 0:
                self.flaky[resource_type] -= 1
                raise TransientProviderError(f"{resource_type}: rate limited")
            if resource_type in self.fail_types:
                raise RuntimeError(f"{resource_type}: quota exceeded")

            rid = prior_identifiers.get("id") or f"{resource_type}-{next(self._ids)}"
            identifiers = {
                "id": rid,
                "self_link": f"projects/demo/{resource_type}/{rid}",
                "endpoint": f"https://{rid}.example.internal",
                "release": f"{rid}-release",
            }
            self.resources[rid] = {"type": resource_type, "attributes": dict(attributes)}
            self._probes[rid] = 0
            return identifiers

    def destroy(self, resource_type: str, identifiers: Dict[str, Any]) -> None:
        with self._lock:
            self.calls.append(("destroy", resource_type, dict(identifiers)))
            self.resources.pop(identifiers.get("id"), None)

    def probe(self, resource_type: str, identifiers: Dict[str, Any]) -> bool:
        with self._lock:
            rid = identifiers.get("id")
            self._probes[rid] = self._probes.get(rid, 0) + 1
            needed = self.slow_types.get(resource_type, 0)
            ready = rid in self.resources and self._probes[rid] > needed
            self.calls.append(("probe", resource_type, ready))
            return ready

    def applied_types(self) -> List[str]:
        return [c[1] for c in self.calls if c[0] == "apply"]


# =============================================================================
# Demo
# =============================================================================

async def demo() -> None:
    cloud = FakeCloud(slow_types={"helm_release": 2})
    engine = ProvisioningEngine(cloud, probe=cloud)
    stack = autoscaling_stack(controller_readiness=PollUntil(interval=0.2, timeout=5.0))

    plan = await engine.plan(stack)
    print(f"Plan: {plan!r}")
    for op in plan:
        print(f"  {op.kind.value:8} {op.resource_type}.{op.name}")

    result = await engine.execute(plan)
    print(f"Pass {result.status.value}")
    for record in result:
        print(f"  {record.name:24} {record.status.value:10} wave={record.wave}")

    # second pass converges to all-NoOp
    plan = await engine.plan(stack)
    print(f"Re-plan: {plan!r}")

    # the original declarations used a flat post-install wait for the controller
    flat = autoscaling_stack(controller_readiness=FixedDelay(0.5), workload_replicas=2)
    result = await engine.reconcile(flat)
    print(f"Scale-up pass {result.status.value}: {result.succeeded}")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(demo())
