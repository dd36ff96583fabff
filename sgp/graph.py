"""Declarative resource graph.

Each resource names the resources it depends on; ``apply`` walks them in
topological order and stops at the first failure.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from graphlib import CycleError, TopologicalSorter
from typing import Any, Callable, Protocol

from . import db
from .iam import ExecutionIdentity, InvokerBinding
from .network import Connector, NetworkFabric, validate_connector, validate_fabric
from .registry import RegistryRepository
from .settings import DeployConfig
from .topology import ServiceUnit, describe

logger = logging.getLogger(__name__)


class ProvisioningError(RuntimeError):
    pass


# Applied only once a revision is promoted, so state describes what serves.
SERVING_KINDS = frozenset({"service-unit", "invoker-binding"})


@dataclass(frozen=True)
class Resource:
    id: str
    kind: str
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()


class Provider(Protocol):
    def apply(self, resource: Resource) -> None: ...


class StateProvider:
    """Records resources in the local state store.

    Re-applying an identical resource is a no-op; reusing an id for a
    different kind is a naming conflict.
    """

    def apply(self, resource: Resource) -> None:
        existing = db.get_resource(resource.id)
        if existing is not None and existing.kind != resource.kind:
            raise ProvisioningError(
                f"Naming conflict: '{resource.id}' already exists as {existing.kind}, not {resource.kind}"
            )
        db.upsert_resource(resource.id, resource.kind, list(resource.depends_on), resource.attributes)


class ResourceGraph:
    def __init__(self) -> None:
        self._resources: dict[str, Resource] = {}

    def add(self, resource: Resource) -> Resource:
        existing = self._resources.get(resource.id)
        if existing is not None and existing != resource:
            raise ProvisioningError(f"Resource '{resource.id}' declared twice with different definitions")
        self._resources[resource.id] = resource
        return resource

    def get(self, resource_id: str) -> Resource:
        return self._resources[resource_id]

    def __len__(self) -> int:
        return len(self._resources)

    def __iter__(self):
        return iter(self._resources.values())

    def apply_order(self) -> list[Resource]:
        ts: TopologicalSorter[str] = TopologicalSorter()
        for r in self._resources.values():
            for dep in r.depends_on:
                if dep not in self._resources:
                    raise ProvisioningError(f"'{r.id}' depends on undeclared resource '{dep}'")
            ts.add(r.id, *r.depends_on)
        try:
            return [self._resources[rid] for rid in ts.static_order()]
        except CycleError as e:
            raise ProvisioningError(f"Dependency cycle: {e.args[1]}") from e

    def apply(self, provider: Provider, include: Callable[[Resource], bool] | None = None) -> list[str]:
        """Apply resources in dependency order.

        With ``include``, only the matching resources are applied; their
        dependencies must already exist.
        """
        applied: list[str] = []
        for r in self.apply_order():
            if include is not None and not include(r):
                continue
            try:
                provider.apply(r)
            except ProvisioningError:
                raise
            except Exception as e:
                raise ProvisioningError(f"Failed to apply {r.kind} '{r.id}': {type(e).__name__}: {e}") from e
            applied.append(r.id)
            logger.info(f"Applied {r.kind} {r.id}")
        return applied


def build_resource_graph(
    cfg: DeployConfig,
    unit: ServiceUnit,
    fabric: NetworkFabric,
    connector: Connector,
    identity: ExecutionIdentity,
    repositories: list[RegistryRepository],
    invoker: InvokerBinding | None = None,
) -> ResourceGraph:
    validate_fabric(fabric)
    validate_connector(fabric, connector)

    g = ResourceGraph()
    network_id = f"network/{fabric.name}"
    g.add(Resource(network_id, "network", {"name": fabric.name, "project": cfg.project}))
    subnet_ids = []
    for s in fabric.subnets:
        sid = f"subnet/{s.name}"
        subnet_ids.append(sid)
        g.add(Resource(sid, "subnet", asdict(s), (network_id,)))
    if fabric.router:
        router_id = f"router/{fabric.router}"
        g.add(Resource(router_id, "router", {"name": fabric.router, "region": fabric.region}, (network_id,)))
        if fabric.nat:
            g.add(Resource(f"nat/{fabric.nat.name}", "nat", asdict(fabric.nat), (router_id, *subnet_ids)))
    for rule in fabric.firewall:
        g.add(Resource(f"firewall/{rule.name}", "firewall", asdict(rule), (network_id,)))

    connector_id = f"connector/{connector.name}"
    g.add(
        Resource(
            connector_id,
            "connector",
            {**asdict(connector), "egress": connector.egress.value},
            (f"subnet/{connector.subnet}",),
        )
    )

    repo_ids = []
    for repo in repositories:
        rid = f"repository/{repo.repository_id}"
        repo_ids.append(rid)
        g.add(Resource(rid, "repository", {**asdict(repo), "path": repo.path}))

    identity_id = f"identity/{identity.account_id}"
    g.add(Resource(identity_id, "identity", {"email": identity.email, "project": identity.project}))
    binding_id = f"binding/{identity.account_id}/operator"
    g.add(Resource(binding_id, "role-binding", {"member": identity.email, "roles": list(identity.roles)}, (identity_id,)))

    unit_id = f"unit/{unit.name}"
    g.add(
        Resource(
            unit_id,
            "service-unit",
            {**describe(unit), "identity": identity.email, "connector": connector.name},
            (connector_id, binding_id, *repo_ids),
        )
    )
    if invoker is not None:
        g.add(Resource(f"binding/{unit.name}/invoker", "invoker-binding", asdict(invoker), (unit_id,)))
    return g
