from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Protocol

from . import db
from .docker_ops import ContainerRef, DockerBackend, container_http_base, container_name
from .graph import SERVING_KINDS, ProvisioningError, Provider, StateProvider, build_resource_graph
from .health import Prober, UnitHealth, run_probe, unit_health, wait_until_ready
from .iam import account_id_for, execution_identity, public_invoker
from .network import Connector, NetworkFabric, default_connector, default_fabric
from .registry import repositories_for
from .runtime import InstanceTarget, RuntimeState
from .settings import REDACTED, DeployConfig
from .topology import ContainerSpec, Role, ServiceUnit, clamp_instances, describe, start_order, unit_from_description, validate_unit, with_version


class DeployFailed(RuntimeError):
    def __init__(self, message: str, revision: int | None = None, health: UnitHealth | None = None):
        super().__init__(message)
        self.revision = revision
        self.health = health


class UnknownUnit(KeyError):
    pass


class ContainerBackend(Protocol):
    def run_container(
        self,
        unit: str,
        revision: int,
        ordinal: int,
        spec: ContainerSpec,
        extra_env: dict[str, str] | None = None,
    ) -> ContainerRef: ...

    def remove_container(self, container_id: str, force: bool = True) -> None: ...

    def container_is_running(self, container_id: str) -> bool: ...


@dataclass
class DeployResult:
    unit: str
    revision: int
    version: str
    state: str
    health: dict[str, Any] = field(default_factory=dict)
    images: dict[str, str] = field(default_factory=dict)


def redactor(cfg: DeployConfig | None, unit: ServiceUnit) -> Callable[[str], str]:
    """Build a function that masks every secret known to ``cfg`` and ``unit``."""
    secrets = list(unit.sensitive_values())
    if cfg is not None:
        secrets.extend(cfg.secrets())

    def _redact(text: str) -> str:
        for value in secrets:
            if value:
                text = text.replace(value, REDACTED)
        return text

    return _redact


def group_hosts(unit: ServiceUnit, revision: int, ordinal: int) -> dict[Role, str]:
    return {c.role: container_name(unit.name, revision, ordinal, c.role.value) for c in unit.containers}


def proxy_upstream_env(unit: ServiceUnit, hosts: dict[Role, str]) -> dict[str, str]:
    return {
        "SGP_UPSTREAM_API": container_http_base(hosts[Role.API], unit.container(Role.API).port),
        "SGP_UPSTREAM_WEB": container_http_base(hosts[Role.WEB], unit.container(Role.WEB).port),
        "LISTEN_PORT": str(unit.external_port),
    }


def start_group(backend: ContainerBackend, unit: ServiceUnit, revision: int, ordinal: int) -> dict[Role, str]:
    """Start one complete instance group in dependency order.

    The proxy is started whether or not api and web are ready yet; readiness
    only gates the health report.
    """
    hosts = group_hosts(unit, revision, ordinal)
    for spec in start_order(unit):
        extra = proxy_upstream_env(unit, hosts) if spec.role == Role.PROXY else None
        ref = backend.run_container(unit.name, revision, ordinal, spec, extra_env=extra)
        db.insert_instance(revision, ordinal, spec.role.value, ref.id, ref.name, status="starting")
    return hosts


def remove_group(backend: ContainerBackend, runtime: RuntimeState, revision: int, ordinal: int | None = None) -> None:
    for inst in db.list_instances(revision):
        if ordinal is not None and inst.ordinal != ordinal:
            continue
        backend.remove_container(inst.container_id, force=True)
        db.delete_instance(inst.container_id)
        runtime.probes.forget(inst.container_name)


def proxy_target(unit: ServiceUnit, revision: int, ordinal: int) -> InstanceTarget:
    hosts = group_hosts(unit, revision, ordinal)
    return InstanceTarget(
        unit=unit.name,
        revision=revision,
        ordinal=ordinal,
        base_url=container_http_base(hosts[Role.PROXY], unit.external_port),
    )


class Deployer:
    """Creates, replaces and tears down service units.

    A new revision only takes traffic once every startup probe of its first
    instance group has passed; until then the previous revision keeps
    serving. Further instances are brought up by the reconciler.
    """

    def __init__(
        self,
        runtime: RuntimeState,
        backend: ContainerBackend | None = None,
        prober: Prober = run_probe,
        provider: Provider | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.runtime = runtime
        self.backend = backend or DockerBackend()
        self.prober = prober
        self.provider = provider or StateProvider()
        self.sleep = sleep

    def deploy(
        self,
        cfg: DeployConfig,
        unit: ServiceUnit,
        fabric: NetworkFabric | None = None,
        connector: Connector | None = None,
        public: bool = True,
    ) -> DeployResult:
        validate_unit(unit)
        redact = redactor(cfg, unit)

        fabric = fabric or default_fabric(cfg)
        connector = connector or default_connector(fabric)
        graph = build_resource_graph(
            cfg,
            unit,
            fabric,
            connector,
            execution_identity(cfg, unit.name),
            repositories_for(cfg),
            public_invoker(unit.name) if public else None,
        )
        try:
            graph.apply(self.provider, lambda r: r.kind not in SERVING_KINDS)
        except ProvisioningError as e:
            msg = redact(f"Provisioning failed: {e}")
            db.log_event("ERROR", msg, unit_name=unit.name)
            raise ProvisioningError(msg) from None

        row = db.get_unit(unit.name)
        if row is None:
            row = db.upsert_unit(
                unit.name, cfg.project, unit.region, unit.ingress.value, unit.min_instances, unit.max_instances, public
            )
        rev = db.insert_revision(row.id, unit.version, describe(unit))
        self.runtime.remember_spec(rev.id, unit)
        db.log_event("INFO", f"Deploying revision {rev.id} at version {unit.version}", unit_name=unit.name, revision=rev.id)

        try:
            hosts = start_group(self.backend, unit, rev.id, 0)
        except Exception as e:
            self._fail(rev.id, redact(f"Could not start containers: {type(e).__name__}: {e}"), unit.name)
            raise DeployFailed(redact(f"Could not start containers: {e}"), revision=rev.id) from None

        health = wait_until_ready(unit, hosts, self.prober, self.runtime.probes, self.sleep)
        for host in hosts.values():
            db.update_instance_status_by_name(host, self.runtime.probes.get(host).state)
        if not health.healthy:
            failing = ", ".join(k for k, v in health.containers.items() if v != "ready")
            msg = redact(f"Startup probes failed ({failing}); revision {rev.id} not promoted")
            self._fail(rev.id, msg, unit.name)
            raise DeployFailed(msg, revision=rev.id, health=health)

        try:
            graph.apply(self.provider, lambda r: r.kind in SERVING_KINDS)
        except ProvisioningError as e:
            msg = redact(f"Provisioning failed: {e}")
            self._fail(rev.id, msg, unit.name)
            raise ProvisioningError(msg) from None
        if not public:
            db.delete_resources(f"binding/{unit.name}/invoker")

        self._promote(cfg, unit, row.serving_revision_id, rev.id, public)
        self.runtime.set_health(unit.name, health)
        return DeployResult(
            unit=unit.name,
            revision=rev.id,
            version=unit.version,
            state="serving",
            health=health.as_dict(),
            images={c.role.value: c.image for c in unit.containers},
        )

    def redeploy(self, cfg: DeployConfig, name: str, version: str, public: bool | None = None) -> DeployResult:
        """Deploy the serving spec again with api and web moved to ``version``.

        The public invocation grant is kept as it is unless ``public`` is given.
        """
        unit = self.serving_unit(name, cfg)
        row = db.get_unit(name)
        if public is None:
            public = row.is_public if row is not None else False
        return self.deploy(replace(cfg, version=version), with_version(unit, version), public=public)

    def serving_unit(self, name: str, cfg: DeployConfig | None = None) -> ServiceUnit:
        row = db.get_unit(name)
        if row is None or row.state != "active" or row.serving_revision_id is None:
            raise UnknownUnit(name)
        unit = self.runtime.get_spec(row.serving_revision_id)
        if unit is None:
            rev = db.get_revision(row.serving_revision_id)
            if rev is None:
                raise UnknownUnit(name)
            secrets = {"SECRET_KEY": cfg.secret_key.get_secret_value()} if cfg else None
            unit = unit_from_description(rev.spec, secrets)
            self.runtime.remember_spec(rev.id, unit)
        return unit

    def scale(self, name: str, instances: int) -> int:
        row = db.get_unit(name)
        if row is None or row.state != "active":
            raise UnknownUnit(name)
        desired = max(1, max(row.min_instances, min(row.max_instances, int(instances))))
        db.set_desired_instances(row.id, desired)
        db.log_event("INFO", f"Desired instances set to {desired}", unit_name=name)
        return desired

    def teardown(self, name: str) -> None:
        row = db.get_unit(name)
        if row is None or row.state != "active":
            raise UnknownUnit(name)
        for rev in db.list_revisions(row.id):
            remove_group(self.backend, self.runtime, rev.id)
            if rev.state in {"serving", "pending"}:
                db.set_revision_state(rev.id, "retired")
        db.set_serving_revision(row.id, None)
        db.set_unit_state(row.id, "destroyed")
        account_id = account_id_for(name)
        db.delete_resources(
            f"unit/{name}",
            f"binding/{name}/invoker",
            f"binding/{account_id}/operator",
            f"identity/{account_id}",
        )
        self.runtime.drop_unit(name)
        db.log_event("INFO", "Unit torn down", unit_name=name)

    def _fail(self, revision: int, message: str, unit_name: str) -> None:
        remove_group(self.backend, self.runtime, revision)
        db.set_revision_state(revision, "failed")
        db.log_event("ERROR", message, unit_name=unit_name, revision=revision)

    def _promote(
        self, cfg: DeployConfig, unit: ServiceUnit, previous: int | None, revision: int, public: bool
    ) -> None:
        row = db.upsert_unit(
            unit.name, cfg.project, unit.region, unit.ingress.value, unit.min_instances, unit.max_instances, public
        )
        db.set_serving_revision(row.id, revision)
        db.set_revision_state(revision, "serving")
        self.runtime.set_targets(unit.name, [proxy_target(unit, revision, 0)])
        db.log_event("INFO", f"Revision {revision} is serving", unit_name=unit.name, revision=revision)

        if previous is not None and previous != revision:
            remove_group(self.backend, self.runtime, previous)
            db.set_revision_state(previous, "retired")
            db.log_event("INFO", f"Revision {previous} retired", unit_name=unit.name, revision=previous)


def clamp_desired(unit: ServiceUnit, desired: int) -> int:
    return max(1, clamp_instances(unit, desired))


def group_health(unit: ServiceUnit, runtime: RuntimeState, revision: int, ordinal: int) -> UnitHealth:
    return unit_health(unit, runtime.probes, group_hosts(unit, revision, ordinal))
