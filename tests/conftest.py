from dataclasses import replace

import pytest
from pydantic import SecretStr

import sgp.settings as settings_mod
from sgp import db
from sgp.deploy import Deployer
from sgp.docker_ops import ContainerRef, container_name
from sgp.health import ProbeResult
from sgp.runtime import RuntimeState
from sgp.settings import DeployConfig

SECRET = "s3cr3t-value"


class FakeBackend:
    """In-memory stand-in for the docker daemon."""

    def __init__(self):
        self.containers = {}
        self.started = []
        self.fail_on = None
        self._n = 0

    def run_container(self, unit, revision, ordinal, spec, extra_env=None):
        if self.fail_on and self.fail_on(spec):
            raise RuntimeError(f"could not start {spec.name} with env {spec.environment()}")
        self._n += 1
        cid = f"cid-{self._n}"
        name = container_name(unit, revision, ordinal, spec.role.value)
        self.containers[cid] = {
            "name": name,
            "image": spec.image,
            "env": {**spec.environment(), **(extra_env or {})},
            "running": True,
        }
        self.started.append(name)
        return ContainerRef(id=cid, name=name)

    def remove_container(self, container_id, force=True):
        self.containers.pop(container_id, None)

    def container_is_running(self, container_id):
        return self.containers.get(container_id, {}).get("running", False)

    def names(self):
        return sorted(c["name"] for c in self.containers.values())

    def kill(self, name):
        for c in self.containers.values():
            if c["name"] == name:
                c["running"] = False


class FakeProber:
    """Probe results by container name; any host containing a string in ``failing`` fails."""

    def __init__(self):
        self.failing = set()
        self.calls = []

    def __call__(self, probe, host):
        self.calls.append(host)
        if any(f in host for f in self.failing):
            return ProbeResult(False, "Connect failed")
        return ProbeResult(True, "Port open", 0.5)


@pytest.fixture(autouse=True)
def tmp_db(tmp_path, monkeypatch):
    monkeypatch.setattr(settings_mod, "settings", replace(settings_mod.settings, db_path=str(tmp_path / "sgp.db")))
    db.init_db()
    yield


@pytest.fixture
def cfg():
    return DeployConfig(project="demo-project", region="europe-west1", version="v1", secret_key=SecretStr(SECRET))


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def prober():
    return FakeProber()


@pytest.fixture
def runtime():
    return RuntimeState()


@pytest.fixture
def deployer(runtime, backend, prober):
    return Deployer(runtime, backend=backend, prober=prober, sleep=lambda s: None)
