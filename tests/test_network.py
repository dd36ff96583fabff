import pytest

from sgp.network import (
    Connector,
    EgressPolicy,
    FabricBuilder,
    FabricError,
    FirewallRule,
    NetworkFabric,
    Subnet,
    default_connector,
    default_fabric,
    egress_allowed,
    nat_covers,
    validate_connector,
    validate_fabric,
)


def test_default_fabric(cfg):
    fabric = default_fabric(cfg)
    assert fabric.name == "sgp-network"
    assert fabric.region == "europe-west1"
    assert [s.cidr for s in fabric.subnets] == ["10.8.0.0/28"]
    assert fabric.router == "sgp-network-router"
    assert fabric.nat is not None and fabric.nat.router == fabric.router
    assert fabric.firewall[0].direction == "EGRESS"


def test_nat_covers_every_subnet(cfg):
    fabric = (
        FabricBuilder("net", cfg.region)
        .add_subnet("a", "10.0.0.0/24")
        .add_subnet("b", "10.0.1.0/24")
        .with_router()
        .with_nat()
        .with_egress_firewall()
        .build()
    )
    assert all(nat_covers(fabric, s) for s in fabric.subnets)
    assert not nat_covers(fabric, Subnet("other", "10.9.0.0/24", cfg.region))


def test_egress_only_on_web_ports(cfg):
    fabric = default_fabric(cfg)
    subnet = fabric.subnets[0]
    assert egress_allowed(fabric, subnet, 80)
    assert egress_allowed(fabric, subnet, 443)
    assert not egress_allowed(fabric, subnet, 22)


def test_no_egress_without_nat(cfg):
    fabric = FabricBuilder("net", cfg.region).add_subnet("a", "10.0.0.0/24").with_egress_firewall().build()
    assert not egress_allowed(fabric, fabric.subnets[0], 443)


def test_overlapping_subnets_rejected(cfg):
    b = FabricBuilder("net", cfg.region).add_subnet("a", "10.0.0.0/24")
    with pytest.raises(FabricError):
        b.add_subnet("b", "10.0.0.128/25")


def test_invalid_cidr_rejected(cfg):
    with pytest.raises(FabricError):
        FabricBuilder("net", cfg.region).add_subnet("a", "10.0.0.1/24")


def test_nat_requires_router(cfg):
    with pytest.raises(FabricError):
        FabricBuilder("net", cfg.region).add_subnet("a", "10.0.0.0/24").with_nat()


def test_fabric_without_subnets_rejected(cfg):
    with pytest.raises(FabricError):
        FabricBuilder("net", cfg.region).build()


def test_ingress_firewall_rules_rejected(cfg):
    fabric = NetworkFabric(
        name="net",
        region=cfg.region,
        subnets=(Subnet("a", "10.0.0.0/24", cfg.region),),
        firewall=(FirewallRule("in", direction="INGRESS"),),
    )
    with pytest.raises(FabricError):
        validate_fabric(fabric)


def test_connector_binds_to_existing_subnet(cfg):
    fabric = default_fabric(cfg)
    connector = default_connector(fabric)
    assert connector.subnet == "sgp-subnet"
    assert (connector.min_instances, connector.max_instances) == (2, 3)
    assert connector.egress == EgressPolicy.ALL_TRAFFIC
    validate_connector(fabric, connector)

    with pytest.raises(FabricError):
        validate_connector(fabric, Connector("c", "missing"))
    with pytest.raises(FabricError):
        validate_connector(fabric, Connector("c", "sgp-subnet", min_instances=4, max_instances=3))
