import importlib.util
import os

import httpx
import pytest
from fastapi.testclient import TestClient

from sgp.proxy import create_app
from sgp.routing import default_route_table
from sgp.topology import Role

SECRET = "s3cr3t-value"


def _import_main_module(project_root):
    """Import main.py as a module without requiring it to be installed as a package."""
    main_path = os.path.join(project_root, "main.py")
    spec = importlib.util.spec_from_file_location("sgp_control_main", main_path)
    mod = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(mod)  # type: ignore[attr-defined]
    return mod


def _upstream(request: httpx.Request) -> httpx.Response:
    service = "api" if request.url.host.endswith("-api") else "web"
    return httpx.Response(200, json={"service": service, "path": request.url.path})


@pytest.fixture
def main(monkeypatch, backend, prober):
    monkeypatch.setenv("SGP_SECRET_KEY", SECRET)
    project_root = os.path.dirname(os.path.dirname(__file__))
    mod = _import_main_module(project_root)

    # No background reconciliation, no docker.
    monkeypatch.setattr(mod.reconciler, "start", lambda: None)
    mod.deployer.backend = backend
    mod.deployer.prober = prober
    mod.deployer.sleep = lambda s: None

    # Every instance proxy is the real proxy app in front of fake api/web upstreams.
    proxy = create_app(
        default_route_table(),
        {Role.API: "http://unit-api:1337", Role.WEB: "http://unit-web:3000"},
        transport=httpx.MockTransport(_upstream),
    )
    mod.app.state.transport = httpx.ASGITransport(app=proxy)
    return mod


def _deploy(client, **extra):
    payload = {"name": "demo", "project": "demo-project", "region": "europe-west1", "version": "v1", **extra}
    return client.post("/units", json=payload)


def test_health(main):
    with TestClient(main.app) as client:
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json() == {"status": "healthy"}


def test_deploy_route_and_ingress_all(main):
    with TestClient(main.app) as client:
        r = _deploy(client)
        assert r.status_code == 200, r.text
        body = r.json()
        assert body["state"] == "serving"
        assert set(body["health"]["containers"].values()) == {"ready"}

        r = client.get("/units/demo/health")
        assert r.status_code == 200
        assert r.json()["healthy"] is True

        r = client.get("/u/demo/api/health")
        assert r.status_code == 200
        assert r.json() == {"service": "api", "path": "/api/health"}
        assert r.headers["access-control-allow-origin"] == "*"

        r = client.get("/u/demo/")
        assert r.status_code == 200
        assert r.json() == {"service": "web", "path": "/"}


def test_internal_only_rejects_external_callers(main):
    with TestClient(main.app) as client:
        assert _deploy(client, ingress="internal-only").status_code == 200
        r = client.get("/u/demo/api/health")
        assert r.status_code == 403
        assert "internal-only" in r.json()["detail"]


def test_public_unit_answers_anonymous_callers(main):
    with TestClient(main.app) as client:
        assert _deploy(client).status_code == 200
        assert client.get("/u/demo/").status_code == 200
        assert client.get("/units").json()[0]["public"] is True
        ids = {r["id"] for r in client.get("/resources").json()}
        assert "binding/demo/invoker" in ids


def test_private_unit_refuses_anonymous_external_callers(main):
    with TestClient(main.app) as client:
        assert _deploy(client, public=False).status_code == 200
        r = client.get("/u/demo/api/health")
        assert r.status_code == 403
        assert "unauthenticated" in r.json()["detail"]
        assert client.get("/units").json()[0]["public"] is False
        ids = {r["id"] for r in client.get("/resources").json()}
        assert "binding/demo/invoker" not in ids


def test_redeploying_a_private_unit_keeps_it_private(main):
    with TestClient(main.app) as client:
        _deploy(client, public=False)
        r = client.post("/units/demo/redeploy", json={"version": "v2"})
        assert r.status_code == 200, r.text
        assert client.get("/u/demo/").status_code == 403
        ids = {r["id"] for r in client.get("/resources").json()}
        assert "binding/demo/invoker" not in ids


def test_redeploy_can_make_a_public_unit_private(main):
    with TestClient(main.app) as client:
        _deploy(client)
        r = client.post("/units/demo/redeploy", json={"version": "v2", "public": False})
        assert r.status_code == 200, r.text
        assert client.get("/u/demo/").status_code == 403
        ids = {r["id"] for r in client.get("/resources").json()}
        assert "binding/demo/invoker" not in ids


def test_failed_redeploy_keeps_resources_at_the_serving_revision(main):
    with TestClient(main.app) as client:
        _deploy(client)
        main.deployer.prober.failing = {"-api"}
        assert client.post("/units/demo/redeploy", json={"version": "v2"}).status_code == 503
        unit = next(r for r in client.get("/resources").json() if r["id"] == "unit/demo")
        images = [c["image"] for c in unit["attributes"]["containers"] if c["role"] in ("api", "web")]
        assert images and all(i.endswith(":v1") for i in images)


def test_failed_probe_is_503_and_not_serving(main):
    main.deployer.prober.failing = {"-web"}
    with TestClient(main.app) as client:
        r = _deploy(client)
        assert r.status_code == 503
        assert r.json()["detail"]["health"]["containers"]["web"] == "failed"
        assert client.get("/u/demo/").status_code == 404
        assert client.get("/units/demo/health").status_code == 503


def test_redeploy_changes_only_api_and_web(main):
    with TestClient(main.app) as client:
        first = _deploy(client).json()
        r = client.post("/units/demo/redeploy", json={"version": "v2"})
        assert r.status_code == 200, r.text
        second = r.json()
        assert second["images"]["proxy"] == first["images"]["proxy"]
        assert second["images"]["api"].endswith(":v2")
        assert second["images"]["web"].endswith(":v2")

        spec = client.get("/units/demo").json()
        assert spec["serving_revision"] == second["revision"]
        states = {rev["id"]: rev["state"] for rev in spec["revisions"]}
        assert states[first["revision"]] == "retired"


def test_secret_is_never_returned(main):
    with TestClient(main.app) as client:
        _deploy(client)
        for path in ("/units/demo", "/resources", "/events?limit=1000"):
            r = client.get(path)
            assert r.status_code == 200
            assert SECRET not in r.text, path


def test_bad_requests(main):
    with TestClient(main.app) as client:
        assert _deploy(client, version="bad tag").status_code == 400
        assert _deploy(client, name="Bad_Name").status_code == 400
        assert client.get("/units/nope").status_code == 404
        assert client.post("/units/nope/redeploy", json={"version": "v2"}).status_code == 404
        assert client.get("/u/nope/").status_code == 404


def test_scale_routing_and_teardown(main):
    with TestClient(main.app) as client:
        _deploy(client, max_instances=3)
        r = client.post("/units/demo/scale", json={"instances": 7})
        assert r.json() == {"unit": "demo", "desired_instances": 3}

        conf = client.get("/units/demo/routing").text
        assert "location /api {" in conf
        assert "location / {" in conf
        assert "Access-Control-Allow-Origin" in conf

        assert [u["name"] for u in client.get("/units").json()] == ["demo"]
        assert client.delete("/units/demo").json() == {"unit": "demo", "state": "destroyed"}
        assert client.get("/units").json() == []
        assert client.get("/u/demo/").status_code == 404
