from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from graphlib import CycleError, TopologicalSorter
from typing import Any, Mapping

from .registry import ImageRef, image_ref
from .settings import REDACTED, DeployConfig, settings


UNIT_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,48}$")
MEMORY_RE = re.compile(r"^(\d+)(Ki|Mi|Gi)$")
_MEMORY_UNITS = {"Ki": 1024, "Mi": 1024**2, "Gi": 1024**3}


class TopologyError(ValueError):
    pass


class Role(str, Enum):
    PROXY = "proxy"
    API = "api"
    WEB = "web"


class IngressPolicy(str, Enum):
    ALL = "all"
    INTERNAL_ONLY = "internal-only"
    LOAD_BALANCER_ONLY = "load-balancer-only"


# Fixed container ports per role. The proxy's port is the unit's only external port.
DEFAULT_PORTS = {Role.PROXY: 80, Role.API: 1337, Role.WEB: 3000}


@dataclass(frozen=True)
class StartupProbe:
    protocol: str = "tcp"  # tcp|http
    port: int = 0
    path: str = "/"
    timeout_s: int = settings.probe_timeout_s
    period_s: int = settings.probe_period_s
    failure_threshold: int = settings.probe_failure_threshold

    def __post_init__(self) -> None:
        if self.protocol not in {"tcp", "http"}:
            raise TopologyError(f"Unsupported probe protocol {self.protocol!r}")
        if self.timeout_s < 1 or self.period_s < 1 or self.failure_threshold < 1:
            raise TopologyError("Probe timeout, period and failure threshold must be >= 1")
        if self.protocol == "http" and not self.path.startswith("/"):
            raise TopologyError("HTTP probe path must start with '/'")


@dataclass(frozen=True)
class Resources:
    cpu: float = 1.0
    memory: str = "512Mi"

    def __post_init__(self) -> None:
        if self.cpu <= 0:
            raise TopologyError("cpu limit must be positive")
        if not MEMORY_RE.match(self.memory):
            raise TopologyError(f"Invalid memory limit {self.memory!r} (use e.g. 512Mi, 1Gi)")

    @property
    def memory_bytes(self) -> int:
        m = MEMORY_RE.match(self.memory)
        if m is None:
            raise TopologyError(f"Invalid memory limit {self.memory!r}")
        return int(m.group(1)) * _MEMORY_UNITS[m.group(2)]

    @property
    def nano_cpus(self) -> int:
        return int(self.cpu * 1_000_000_000)


@dataclass(frozen=True)
class EnvVar:
    name: str
    value: str
    sensitive: bool = False

    def __repr__(self) -> str:
        shown = REDACTED if self.sensitive else self.value
        return f"EnvVar(name={self.name!r}, value={shown!r}, sensitive={self.sensitive})"


@dataclass(frozen=True)
class ContainerSpec:
    name: str
    role: Role
    image: str
    port: int
    resources: Resources = field(default_factory=Resources)
    env: tuple[EnvVar, ...] = ()
    probe: StartupProbe | None = None
    depends_on: tuple[Role, ...] = ()

    def environment(self) -> dict[str, str]:
        return {e.name: e.value for e in self.env}

    def sensitive_values(self) -> list[str]:
        return [e.value for e in self.env if e.sensitive and e.value]

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "role": self.role.value,
            "image": self.image,
            "port": self.port,
            "resources": {"cpu": self.resources.cpu, "memory": self.resources.memory},
            "env": [
                {"name": e.name, "value": REDACTED if e.sensitive else e.value, "sensitive": e.sensitive}
                for e in self.env
            ],
            "probe": None
            if self.probe is None
            else {
                "protocol": self.probe.protocol,
                "port": self.probe.port,
                "path": self.probe.path,
                "timeout_s": self.probe.timeout_s,
                "period_s": self.probe.period_s,
                "failure_threshold": self.probe.failure_threshold,
            },
            "depends_on": [r.value for r in self.depends_on],
        }


@dataclass(frozen=True)
class ServiceUnit:
    name: str
    region: str
    containers: tuple[ContainerSpec, ...]
    ingress: IngressPolicy = IngressPolicy.ALL
    min_instances: int = 0
    max_instances: int = 10
    external_port: int = DEFAULT_PORTS[Role.PROXY]

    def container(self, role: Role) -> ContainerSpec:
        for c in self.containers:
            if c.role == role:
                return c
        raise TopologyError(f"Unit '{self.name}' has no {role.value} container")

    @property
    def version(self) -> str:
        """Version the api and web containers are pinned to."""
        return ImageRef.parse(self.container(Role.API).image).version

    def sensitive_values(self) -> list[str]:
        out: list[str] = []
        for c in self.containers:
            out.extend(c.sensitive_values())
        return out


def validate_unit(unit: ServiceUnit) -> None:
    if not UNIT_NAME_RE.match(unit.name):
        raise TopologyError("Invalid unit name. Use lowercase letters/numbers and hyphen, starting with a letter (max 49 chars).")
    if unit.min_instances < 0:
        raise TopologyError("min_instances must be >= 0")
    if unit.max_instances < max(1, unit.min_instances):
        raise TopologyError("max_instances must be >= max(1, min_instances)")

    roles = [c.role for c in unit.containers]
    if sorted(r.value for r in roles) != sorted(r.value for r in Role):
        raise TopologyError("A unit needs exactly one proxy, one api and one web container")

    names = [c.name for c in unit.containers]
    if len(set(names)) != len(names):
        raise TopologyError("Container names must be unique within a unit")

    ports = [c.port for c in unit.containers]
    if len(set(ports)) != len(ports):
        raise TopologyError(f"Container ports must be unique within a unit, got {ports}")
    for c in unit.containers:
        if not 1 <= c.port <= 65535:
            raise TopologyError(f"Invalid port {c.port} on {c.name}")
        if c.probe is not None and c.probe.port != c.port:
            raise TopologyError(f"Startup probe of {c.name} must target its declared port {c.port}")
        for dep in c.depends_on:
            if dep == c.role:
                raise TopologyError(f"{c.name} cannot depend on itself")

    proxy = unit.container(Role.PROXY)
    if proxy.port != unit.external_port:
        raise TopologyError(f"The proxy must expose the unit's external port {unit.external_port}")
    if set(proxy.depends_on) != {Role.API, Role.WEB}:
        raise TopologyError("The proxy must depend on api and web")

    start_order(unit)


def start_order(unit: ServiceUnit) -> list[ContainerSpec]:
    """Containers ordered so that every dependency starts first."""
    ts: TopologicalSorter[Role] = TopologicalSorter()
    for c in unit.containers:
        ts.add(c.role, *c.depends_on)
    try:
        order = list(ts.static_order())
    except CycleError as e:
        raise TopologyError(f"Container dependencies form a cycle: {e.args[1]}") from e
    by_role = {c.role: c for c in unit.containers}
    return [by_role[r] for r in order if r in by_role]


def _probe(port: int, protocol: str = "tcp", path: str = "/") -> StartupProbe:
    return StartupProbe(protocol=protocol, port=port, path=path)


def build_default_unit(
    cfg: DeployConfig,
    name: str,
    ingress: IngressPolicy = IngressPolicy.ALL,
    min_instances: int = 0,
    max_instances: int = 10,
) -> ServiceUnit:
    """The standard proxy + api + web unit.

    api and web are pinned to ``cfg.version``; the proxy follows the stable tag.
    """
    api_port = DEFAULT_PORTS[Role.API]
    web_port = DEFAULT_PORTS[Role.WEB]
    proxy_port = DEFAULT_PORTS[Role.PROXY]

    api = ContainerSpec(
        name=f"{name}-api",
        role=Role.API,
        image=str(image_ref(cfg, Role.API.value, cfg.version)),
        port=api_port,
        env=(
            EnvVar("PORT", str(api_port)),
            EnvVar("MODE", cfg.mode),
            EnvVar("SECRET_KEY", cfg.secret_key.get_secret_value(), sensitive=True),
            EnvVar("LOG_LEVEL", cfg.log_level),
            EnvVar("WEB_API_CORS_ALLOW_ORIGINS", cfg.cors_allow_origins),
        ),
        probe=_probe(api_port),
    )
    web = ContainerSpec(
        name=f"{name}-web",
        role=Role.WEB,
        image=str(image_ref(cfg, Role.WEB.value, cfg.version)),
        port=web_port,
        env=(EnvVar("PORT", str(web_port)),),
        probe=_probe(web_port),
    )
    proxy = ContainerSpec(
        name=f"{name}-proxy",
        role=Role.PROXY,
        image=str(image_ref(cfg, Role.PROXY.value, settings.proxy_tag)),
        port=proxy_port,
        probe=_probe(proxy_port),
        depends_on=(Role.API, Role.WEB),
    )
    unit = ServiceUnit(
        name=name,
        region=cfg.region,
        containers=(proxy, api, web),
        ingress=ingress,
        min_instances=min_instances,
        max_instances=max_instances,
        external_port=proxy_port,
    )
    validate_unit(unit)
    return unit


def _replace_image(unit: ServiceUnit, role: Role, image: str) -> ServiceUnit:
    containers = tuple(replace(c, image=image) if c.role == role else c for c in unit.containers)
    return replace(unit, containers=containers)


def with_version(unit: ServiceUnit, version: str) -> ServiceUnit:
    """Re-pin api and web to ``version``. The proxy image is left alone."""
    out = unit
    for role in (Role.API, Role.WEB):
        ref = ImageRef.parse(unit.container(role).image).with_version(version)
        out = _replace_image(out, role, str(ref))
    return out


def with_proxy_image(unit: ServiceUnit, image: str) -> ServiceUnit:
    ImageRef.parse(image)
    return _replace_image(unit, Role.PROXY, image)


def clamp_instances(unit: ServiceUnit, n: int) -> int:
    return max(unit.min_instances, min(unit.max_instances, int(n)))


def describe(unit: ServiceUnit) -> dict[str, Any]:
    return {
        "name": unit.name,
        "region": unit.region,
        "ingress": unit.ingress.value,
        "min_instances": unit.min_instances,
        "max_instances": unit.max_instances,
        "external_port": unit.external_port,
        "containers": [c.describe() for c in unit.containers],
    }


def _sensitive_from_env(name: str) -> str:
    return os.getenv(f"SGP_{name}", "")


def unit_from_description(data: Mapping[str, Any], secrets: Mapping[str, str] | None = None) -> ServiceUnit:
    """Rebuild a unit from ``describe()`` output.

    Sensitive values are never stored, so they are resolved again from
    ``secrets`` or from ``SGP_<NAME>`` environment variables.
    """
    secrets = secrets or {}
    containers = []
    for c in data["containers"]:
        env = tuple(
            EnvVar(
                e["name"],
                (secrets.get(e["name"]) or _sensitive_from_env(e["name"])) if e["sensitive"] else e["value"],
                sensitive=e["sensitive"],
            )
            for e in c["env"]
        )
        probe = StartupProbe(**c["probe"]) if c.get("probe") else None
        containers.append(
            ContainerSpec(
                name=c["name"],
                role=Role(c["role"]),
                image=c["image"],
                port=int(c["port"]),
                resources=Resources(**c["resources"]),
                env=env,
                probe=probe,
                depends_on=tuple(Role(r) for r in c["depends_on"]),
            )
        )
    return ServiceUnit(
        name=data["name"],
        region=data["region"],
        containers=tuple(containers),
        ingress=IngressPolicy(data["ingress"]),
        min_instances=int(data["min_instances"]),
        max_instances=int(data["max_instances"]),
        external_port=int(data["external_port"]),
    )
