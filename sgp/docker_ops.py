from __future__ import annotations

import re
from dataclasses import dataclass

import docker
from docker.errors import DockerException, NotFound

from .db import log_event
from .settings import settings
from .topology import ContainerSpec


CONTAINER_NAME_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]{0,127}$")


def validate_container_name(name: str) -> None:
    if not CONTAINER_NAME_RE.match(name):
        raise ValueError(f"Invalid container name {name!r}.")


def container_name(unit: str, revision: int, ordinal: int, role: str) -> str:
    return f"{settings.app_name}-{unit}-r{revision}-{ordinal}-{role}"


def container_http_base(name: str, port: int) -> str:
    """HTTP base URL usable from within the same docker network."""
    return f"http://{name}:{int(port)}"


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str


class DockerBackend:
    """Runs unit containers on the local Docker daemon.

    Containers are labeled so they can be re-discovered after a restart.
    The platform restart policy is ``on-failure``: a container killed for
    exceeding its memory limit is restarted on its own.
    """

    def _client(self) -> docker.DockerClient:
        return docker.from_env()

    def available(self) -> bool:
        try:
            self._client().ping()
            return True
        except DockerException:
            return False

    def ensure_network(self) -> None:
        c = self._client()
        try:
            c.networks.get(settings.docker_network)
        except NotFound:
            c.networks.create(settings.docker_network, driver="bridge")
            log_event("INFO", f"Created docker network '{settings.docker_network}'.")

    def run_container(
        self,
        unit: str,
        revision: int,
        ordinal: int,
        spec: ContainerSpec,
        extra_env: dict[str, str] | None = None,
    ) -> ContainerRef:
        name = container_name(unit, revision, ordinal, spec.role.value)
        validate_container_name(name)
        if not self.available():
            raise RuntimeError("Docker is not available. Start Docker Desktop / docker daemon and try again.")
        self.ensure_network()

        env = {**spec.environment(), **(extra_env or {})}
        labels: dict[str, str] = {
            "sgp.unit": unit,
            "sgp.revision": str(revision),
            "sgp.ordinal": str(ordinal),
            "sgp.role": spec.role.value,
        }
        container = self._client().containers.run(
            spec.image,
            detach=True,
            name=name,
            environment=env,
            network=settings.docker_network,
            labels=labels,
            mem_limit=spec.resources.memory_bytes,
            nano_cpus=spec.resources.nano_cpus,
            restart_policy={"Name": "on-failure", "MaximumRetryCount": 5},
        )
        # Image and name only; the environment may carry secrets.
        log_event("INFO", f"Started container {name} from image {spec.image}", unit_name=unit, revision=revision)
        return ContainerRef(id=container.id, name=name)

    def remove_container(self, container_id: str, force: bool = True) -> None:
        try:
            self._client().containers.get(container_id).remove(force=force)
        except NotFound:
            return

    def container_is_running(self, container_id: str) -> bool:
        try:
            cont = self._client().containers.get(container_id)
            cont.reload()
            return cont.status in {"running", "restarting"}
        except NotFound:
            return False

    def build_image(self, context_dir: str, tag: str, dockerfile: str = "Dockerfile") -> str:
        """Build ``context_dir`` as ``tag`` and return the image id."""
        image, _logs = self._client().images.build(path=context_dir, dockerfile=dockerfile, tag=tag, rm=True)
        return image.id

    def push_image(self, tag: str) -> str:
        """Push ``tag`` and return the registry digest."""
        repository, _, version = tag.rpartition(":")
        digest = ""
        for line in self._client().images.push(repository, tag=version, stream=True, decode=True):
            if "error" in line:
                raise RuntimeError(f"Push of {tag} failed: {line['error']}")
            aux = line.get("aux") or {}
            if aux.get("Digest"):
                digest = aux["Digest"]
        if not digest:
            raise RuntimeError(f"Push of {tag} returned no digest")
        return digest
