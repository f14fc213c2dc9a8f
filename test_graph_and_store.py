"""
Tests for the descriptor store and the dependency graph builder.
"""
import pytest

from stackplan.provisioning import (
    CycleDetected,
    DescriptorStore,
    DuplicateDeclaration,
    Operation,
    OperationKind,
    UnresolvedReference,
    build_graph,
    ref,
    resource,
)
from stackplan.provisioning.descriptor import encode_attributes, iter_references


def test_store_put_replaces_same_name_and_keeps_position():
    store = DescriptorStore()
    store.put(resource("network", "net", cidr="10.0.0.0/16"))
    store.put(resource("bucket", "queue"))
    store.put(resource("network", "net", cidr="10.1.0.0/16"))

    assert store.names() == ["net", "queue"]
    assert store.get("net").attributes["cidr"] == "10.1.0.0/16"
    assert len(store) == 2
    assert "queue" in store


def test_store_rejects_conflicting_type():
    store = DescriptorStore([resource("network", "net")])
    with pytest.raises(DuplicateDeclaration) as exc:
        store.put(resource("bucket", "net"))
    assert exc.value.existing_type == "network"
    assert exc.value.new_type == "bucket"


def test_store_remove():
    store = DescriptorStore([resource("network", "net"), resource("bucket", "b")])
    removed = store.remove("net")
    assert removed.resource_type == "network"
    assert store.names() == ["b"]
    assert store.remove("missing") is None


def test_references_found_in_nested_structures():
    attrs = {
        "network": ref("net", "self_link"),
        "pools": [{"subnet": ref("subnet", "id")}, ("x", ref("sa", "email"))],
        "label": "net.self_link",  # plain strings never count as references
    }
    found = {str(r) for r in iter_references(attrs)}
    assert found == {"net.self_link", "subnet.id", "sa.email"}

    encoded = encode_attributes(attrs)
    assert encoded["network"] == {"$ref": {"resource": "net", "output": "self_link"}}
    assert encoded["pools"][1] == ["x", {"$ref": {"resource": "sa", "output": "email"}}]


def test_edges_inferred_from_references_and_hints():
    graph = build_graph([
        resource("network", "net"),
        resource("kubernetes_cluster", "cluster", network=ref("net", "self_link")),
        resource("helm_release", "controller", depends_on={"binding"}, cluster=ref("cluster", "endpoint")),
        resource("iam_role_binding", "binding", cluster=ref("cluster", "id")),
    ])
    assert graph.edge_set() == {
        ("cluster", "net"),
        ("controller", "binding"),
        ("controller", "cluster"),
        ("binding", "cluster"),
    }
    assert graph.dependents_of("cluster") == {"controller", "binding"}
    assert graph.transitive_dependents("net") == {"cluster", "controller", "binding"}


def test_edge_set_is_independent_of_declaration_order():
    decls = [
        resource("network", "net"),
        resource("kubernetes_cluster", "cluster", network=ref("net", "id")),
        resource("kubernetes_manifest", "app", cluster=ref("cluster", "endpoint"), depends_on={"net"}),
    ]
    forward = build_graph(decls)
    backward = build_graph(list(reversed(decls)))
    assert forward.edge_set() == backward.edge_set()
    assert backward.topological_order() == ["net", "cluster", "app"]


def test_unresolved_reference():
    with pytest.raises(UnresolvedReference) as exc:
        build_graph([resource("kubernetes_cluster", "cluster", network=ref("net", "id"))])
    assert exc.value.source == "cluster"
    assert exc.value.target == "net"


def test_unresolved_explicit_hint():
    with pytest.raises(UnresolvedReference):
        build_graph([resource("bucket", "b", depends_on={"ghost"})])


def test_cycle_detected_with_path():
    with pytest.raises(CycleDetected) as exc:
        build_graph([
            resource("a", "a", x=ref("c", "id")),
            resource("b", "b", x=ref("a", "id")),
            resource("c", "c", x=ref("b", "id")),
        ])
    path = exc.value.path
    assert path[0] == path[-1]
    assert set(path) == {"a", "b", "c"}
    assert len(path) == 4


def test_self_reference_is_a_cycle():
    with pytest.raises(CycleDetected) as exc:
        build_graph([resource("a", "a", x=ref("a", "id"))])
    assert exc.value.path == ["a", "a"]


def test_topological_ties_follow_declaration_order():
    graph = build_graph([
        resource("bucket", "zeta"),
        resource("bucket", "alpha"),
        resource("network", "net"),
        resource("vm", "vm", net=ref("net", "id")),
    ])
    assert graph.topological_order() == ["zeta", "alpha", "net", "vm"]
    assert graph.waves() == [["zeta", "alpha", "net"], ["vm"]]


def test_depends_on_hints_are_normalized_to_frozensets():
    descriptor = resource("vm", "vm", depends_on=["net", "net"])
    assert descriptor.depends_on == frozenset({"net"})

    op = Operation(name="vm", resource_type="vm", kind=OperationKind.CREATE, depends_on=["net"], dependencies=("net",))
    assert isinstance(op.depends_on, frozenset)
    assert isinstance(op.dependencies, frozenset)
