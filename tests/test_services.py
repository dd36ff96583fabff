from fastapi.testclient import TestClient

from services.api.app import app as api_app
from services.web.app import app as web_app


def test_api_health_is_under_api_prefix():
    client = TestClient(api_app)
    r = client.get("/api/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"
    assert r.json()["service"] == "api"


def test_api_version():
    r = TestClient(api_app).get("/api/version")
    assert r.status_code == 200
    assert set(r.json()) == {"version", "mode"}


def test_web_root_and_health():
    client = TestClient(web_app)
    r = client.get("/")
    assert r.status_code == 200
    assert "<html" in r.text.lower()

    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["service"] == "web"
