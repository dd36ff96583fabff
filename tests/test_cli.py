import json

import cli
from test_pipeline import FakeBuilder


class _Resp:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload

    @property
    def ok(self):
        return self.status_code < 400

    @property
    def text(self):
        return json.dumps(self._payload)

    def json(self):
        return self._payload

    def raise_for_status(self):
        if not self.ok:
            raise cli.requests.HTTPError(f"HTTP {self.status_code}")


def test_build_defaults_to_latest(monkeypatch, capsys):
    builder = FakeBuilder()
    monkeypatch.setattr(cli, "DockerBackend", lambda: builder)
    assert cli.main(["build", "demo-project", "europe-west1"]) == 0
    refs = json.loads(capsys.readouterr().out)
    assert refs["api"].endswith("/sgp-api:latest")
    assert refs["web"].endswith("/sgp-web:latest")
    assert len(builder.pushed) == 3


def test_second_default_build_exits_non_zero_without_pushing(monkeypatch, capsys):
    builder = FakeBuilder()
    monkeypatch.setattr(cli, "DockerBackend", lambda: builder)
    assert cli.main(["build", "demo-project", "europe-west1"]) == 0
    capsys.readouterr()

    assert cli.main(["build", "demo-project", "europe-west1"]) == 1
    assert "already points at" in capsys.readouterr().err
    assert len(builder.pushed) == 3


def test_build_failure_exits_non_zero(monkeypatch, capsys):
    monkeypatch.setattr(cli, "DockerBackend", lambda: FakeBuilder(fail_role="web"))
    assert cli.main(["build", "demo-project", "europe-west1", "v2"]) == 1
    assert "build failed" in capsys.readouterr().err


def test_build_rejects_bad_version(monkeypatch):
    monkeypatch.setattr(cli, "DockerBackend", lambda: FakeBuilder())
    assert cli.main(["build", "demo-project", "europe-west1", "not a tag"]) == 1


def test_secret_is_not_echoed_on_failure(monkeypatch, capsys):
    monkeypatch.setenv("SGP_SECRET_KEY", "hunter2-secret")

    class Leaky(FakeBuilder):
        def build_image(self, context_dir, tag, dockerfile="Dockerfile"):
            raise RuntimeError("build arg SECRET_KEY=hunter2-secret rejected")

    monkeypatch.setattr(cli, "DockerBackend", lambda: Leaky())
    assert cli.main(["build", "demo-project", "europe-west1", "v1"]) == 1
    out = capsys.readouterr()
    assert "hunter2-secret" not in out.err + out.out


def test_pipeline_deploys_fresh_version(monkeypatch, capsys):
    builder = FakeBuilder()
    posted = []

    def fake_post(url, json=None, timeout=None):
        posted.append((url, json))
        return _Resp(200, {"state": "serving"})

    monkeypatch.setattr(cli, "DockerBackend", lambda: builder)
    monkeypatch.setattr(cli.requests, "post", fake_post)
    assert cli.main(["pipeline", "demo-project", "europe-west1", "v3", "--name", "demo"]) == 0
    assert posted == [
        (
            "http://localhost:8000/units",
            {"name": "demo", "project": "demo-project", "region": "europe-west1", "version": "v3"},
        )
    ]


def test_pipeline_propagates_deploy_failure(monkeypatch):
    monkeypatch.setattr(cli, "DockerBackend", lambda: FakeBuilder())
    monkeypatch.setattr(cli.requests, "post", lambda url, json=None, timeout=None: _Resp(503, {"detail": "probe"}))
    assert cli.main(["pipeline", "demo-project", "europe-west1", "v3", "--name", "demo"]) == 1


def test_deploy_exit_code_follows_api(monkeypatch):
    monkeypatch.setattr(cli.requests, "post", lambda url, json=None, timeout=None: _Resp(409, {"detail": "conflict"}))
    assert cli.main(["deploy", "--name", "demo", "--project", "p", "--region", "r"]) == 1
    monkeypatch.setattr(cli.requests, "post", lambda url, json=None, timeout=None: _Resp(200, {"state": "serving"}))
    assert cli.main(["deploy", "--name", "demo", "--project", "p", "--region", "r", "--version", "v1"]) == 0
