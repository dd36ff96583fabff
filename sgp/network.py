"""Private network fabric for a service unit.

One network, its subnets, a router and a NAT binding that covers every
subnet and every IP range, so containers get egress without public IPs.
Firewall rules here only govern egress; ingress is the unit's own policy.
"""
from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from enum import Enum

from .settings import DeployConfig, settings

logger = logging.getLogger(__name__)

EGRESS_PORTS = (80, 443)


class FabricError(ValueError):
    pass


class EgressPolicy(str, Enum):
    ALL_TRAFFIC = "all-traffic"
    PRIVATE_RANGES_ONLY = "private-ranges-only"


@dataclass(frozen=True)
class Subnet:
    name: str
    cidr: str
    region: str

    @property
    def network(self) -> ipaddress.IPv4Network | ipaddress.IPv6Network:
        try:
            return ipaddress.ip_network(self.cidr, strict=True)
        except ValueError as e:
            raise FabricError(f"Invalid CIDR for subnet {self.name}: {e}") from e


@dataclass(frozen=True)
class NatConfig:
    name: str
    router: str
    covers_all_subnets: bool = True
    all_ip_ranges: bool = True


@dataclass(frozen=True)
class FirewallRule:
    name: str
    ports: tuple[int, ...] = EGRESS_PORTS
    protocol: str = "tcp"
    direction: str = "EGRESS"
    destination_ranges: tuple[str, ...] = ("0.0.0.0/0",)


@dataclass(frozen=True)
class NetworkFabric:
    name: str
    region: str
    subnets: tuple[Subnet, ...] = ()
    router: str | None = None
    nat: NatConfig | None = None
    firewall: tuple[FirewallRule, ...] = ()

    def subnet(self, name: str) -> Subnet:
        for s in self.subnets:
            if s.name == name:
                return s
        raise FabricError(f"Network {self.name} has no subnet {name!r}")


@dataclass(frozen=True)
class Connector:
    """Binds a unit to one subnet. Scales independently of the unit."""

    name: str
    subnet: str
    min_instances: int = 2
    max_instances: int = 3
    egress: EgressPolicy = EgressPolicy.ALL_TRAFFIC


class FabricBuilder:
    """Builder for the unit's network fabric."""

    def __init__(self, name: str, region: str):
        self.name = name
        self.region = region
        self._subnets: list[Subnet] = []
        self._router: str | None = None
        self._nat: NatConfig | None = None
        self._firewall: list[FirewallRule] = []

    def add_subnet(self, name: str, cidr: str) -> "FabricBuilder":
        subnet = Subnet(name=name, cidr=cidr, region=self.region)
        new = subnet.network
        for existing in self._subnets:
            if existing.network.overlaps(new):
                raise FabricError(f"Subnet {name} ({cidr}) overlaps {existing.name} ({existing.cidr})")
        self._subnets.append(subnet)
        logger.info(f"Declared subnet {name} {cidr} in network {self.name}")
        return self

    def with_router(self) -> "FabricBuilder":
        self._router = f"{self.name}-router"
        return self

    def with_nat(self) -> "FabricBuilder":
        if not self._router:
            raise FabricError("A router must be declared before NAT")
        self._nat = NatConfig(name=f"{self.name}-nat", router=self._router)
        return self

    def with_egress_firewall(self, ports: tuple[int, ...] = EGRESS_PORTS) -> "FabricBuilder":
        self._firewall.append(FirewallRule(name=f"{self.name}-allow-egress", ports=tuple(ports)))
        return self

    def build(self) -> NetworkFabric:
        fabric = NetworkFabric(
            name=self.name,
            region=self.region,
            subnets=tuple(self._subnets),
            router=self._router,
            nat=self._nat,
            firewall=tuple(self._firewall),
        )
        validate_fabric(fabric)
        return fabric


def validate_fabric(fabric: NetworkFabric) -> None:
    if not fabric.subnets:
        raise FabricError(f"Network {fabric.name} has no subnets")
    seen: list[Subnet] = []
    for s in fabric.subnets:
        for other in seen:
            if other.name == s.name:
                raise FabricError(f"Duplicate subnet name {s.name}")
            if other.network.overlaps(s.network):
                raise FabricError(f"Subnet {s.name} ({s.cidr}) overlaps {other.name} ({other.cidr})")
        seen.append(s)
    for rule in fabric.firewall:
        if rule.direction != "EGRESS":
            raise FabricError("Ingress is controlled by the unit's ingress policy, not by firewall rules")
    if fabric.nat is not None and fabric.nat.router != fabric.router:
        raise FabricError("NAT must be bound to the fabric's router")


def validate_connector(fabric: NetworkFabric, connector: Connector) -> None:
    fabric.subnet(connector.subnet)
    if connector.min_instances < 0:
        raise FabricError("Connector min_instances must be >= 0")
    if connector.max_instances < max(1, connector.min_instances):
        raise FabricError("Connector max_instances must be >= max(1, min_instances)")


def nat_covers(fabric: NetworkFabric, subnet: Subnet) -> bool:
    nat = fabric.nat
    if nat is None or subnet not in fabric.subnets:
        return False
    return nat.covers_all_subnets and nat.all_ip_ranges


def egress_allowed(fabric: NetworkFabric, subnet: Subnet, port: int) -> bool:
    if not nat_covers(fabric, subnet):
        return False
    return any(port in rule.ports for rule in fabric.firewall)


def default_fabric(cfg: DeployConfig, cidr: str = "10.8.0.0/28") -> NetworkFabric:
    name = f"{settings.app_name}-network"
    return (
        FabricBuilder(name, cfg.region)
        .add_subnet(f"{settings.app_name}-subnet", cidr)
        .with_router()
        .with_nat()
        .with_egress_firewall()
        .build()
    )


def default_connector(fabric: NetworkFabric) -> Connector:
    return Connector(name=f"{settings.app_name}-connector", subnet=fabric.subnets[0].name)
