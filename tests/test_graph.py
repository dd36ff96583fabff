import pytest

from sgp import db
from sgp.graph import ProvisioningError, Resource, ResourceGraph, StateProvider, build_resource_graph
from sgp.iam import execution_identity, public_invoker
from sgp.network import default_connector, default_fabric
from sgp.registry import repositories_for
from sgp.topology import build_default_unit


def _graph(cfg, public=True):
    unit = build_default_unit(cfg, "demo")
    fabric = default_fabric(cfg)
    return build_resource_graph(
        cfg,
        unit,
        fabric,
        default_connector(fabric),
        execution_identity(cfg, "demo"),
        repositories_for(cfg),
        public_invoker("demo") if public else None,
    )


def test_apply_order_respects_dependencies(cfg):
    g = _graph(cfg)
    order = [r.id for r in g.apply_order()]
    for r in g:
        for dep in r.depends_on:
            assert order.index(dep) < order.index(r.id), (dep, r.id)
    assert order[-1] == "binding/demo/invoker"
    assert order.index("nat/sgp-network-nat") > order.index("subnet/sgp-subnet")
    assert order.index("unit/demo") > order.index("connector/sgp-connector")
    assert order.index("unit/demo") > order.index("repository/sgp-api-repo")


def test_graph_without_public_invoker(cfg):
    ids = {r.id for r in _graph(cfg, public=False)}
    assert "binding/demo/invoker" not in ids
    assert "binding/sgp-demo/operator" in ids


def test_apply_records_state_and_is_idempotent(cfg):
    g = _graph(cfg)
    applied = g.apply(StateProvider())
    assert len(applied) == len(g)
    g.apply(StateProvider())
    rows = db.list_resources()
    assert len(rows) == len(g)
    unit = next(r for r in rows if r["id"] == "unit/demo")
    assert unit["attributes"]["identity"] == "sgp-demo@demo-project.iam.gserviceaccount.com"
    assert "s3cr3t-value" not in str(unit["attributes"])


def test_naming_conflict(cfg):
    db.upsert_resource("network/sgp-network", "subnet", [], {})
    with pytest.raises(ProvisioningError, match="Naming conflict"):
        _graph(cfg).apply(StateProvider())


def test_cycle_is_rejected():
    g = ResourceGraph()
    g.add(Resource("a", "x", depends_on=("b",)))
    g.add(Resource("b", "x", depends_on=("a",)))
    with pytest.raises(ProvisioningError, match="cycle"):
        g.apply_order()


def test_undeclared_dependency_is_rejected():
    g = ResourceGraph()
    g.add(Resource("a", "x", depends_on=("missing",)))
    with pytest.raises(ProvisioningError):
        g.apply_order()


def test_conflicting_redeclaration_is_rejected():
    g = ResourceGraph()
    g.add(Resource("a", "x", {"v": 1}))
    g.add(Resource("a", "x", {"v": 1}))
    with pytest.raises(ProvisioningError):
        g.add(Resource("a", "x", {"v": 2}))


def test_apply_stops_at_first_failure():
    g = ResourceGraph()
    g.add(Resource("a", "x"))
    g.add(Resource("b", "x", depends_on=("a",)))
    g.add(Resource("c", "x", depends_on=("b",)))
    seen = []

    class Flaky:
        def apply(self, resource):
            seen.append(resource.id)
            if resource.id == "b":
                raise RuntimeError("quota exceeded")

    with pytest.raises(ProvisioningError, match="quota exceeded"):
        g.apply(Flaky())
    assert seen == ["a", "b"]
