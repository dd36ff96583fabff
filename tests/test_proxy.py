import httpx
import pytest
from fastapi.testclient import TestClient

from sgp.proxy import create_app
from sgp.routing import RouteRule, RouteTable, default_route_table
from sgp.topology import Role

UPSTREAMS = {Role.API: "http://api:1337", Role.WEB: "http://web:3000"}


def _echo(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "host": request.url.host,
            "path": request.url.path,
            "query": request.url.query.decode(),
            "real_ip": request.headers.get("x-real-ip"),
            "forwarded_for": request.headers.get("x-forwarded-for"),
            "proto": request.headers.get("x-forwarded-proto"),
        },
    )


def _client(handler, table=None):
    app = create_app(table or default_route_table(), UPSTREAMS, transport=httpx.MockTransport(handler))
    return TestClient(app)


def test_api_prefix_goes_to_api_with_cors():
    r = _client(_echo).get("/api/users?limit=5")
    assert r.status_code == 200
    body = r.json()
    assert body["host"] == "api"
    assert body["path"] == "/api/users"
    assert body["query"] == "limit=5"
    assert r.headers["access-control-allow-origin"] == "*"
    assert "GET, POST, OPTIONS" in r.headers["access-control-allow-methods"]
    assert "Authorization" in r.headers["access-control-allow-headers"]


def test_everything_else_goes_to_web_without_cors():
    r = _client(_echo).get("/about")
    assert r.status_code == 200
    assert r.json()["host"] == "web"
    assert "access-control-allow-origin" not in r.headers


def test_forwarded_headers_are_set():
    r = _client(_echo).get("/", headers={"x-forwarded-for": "203.0.113.9"})
    body = r.json()
    assert body["real_ip"] == "testclient"
    assert body["forwarded_for"] == "203.0.113.9, testclient"
    assert body["proto"] == "http"


def test_preflight_is_answered_without_upstream():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200)

    r = _client(handler).options("/api/login")
    assert r.status_code == 204
    assert r.headers["access-control-allow-origin"] == "*"
    assert calls == []


def test_options_on_web_is_forwarded():
    r = _client(_echo).options("/")
    assert r.status_code == 200
    assert r.json()["host"] == "web"


def test_upstream_unreachable_is_502_and_not_cached():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    r = _client(handler).get("/api/health")
    assert r.status_code == 502
    assert r.headers["cache-control"] == "no-store"
    # CORS headers are attached to error responses too.
    assert r.headers["access-control-allow-origin"] == "*"


def test_upstream_timeout_is_504():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    r = _client(handler).get("/")
    assert r.status_code == 504
    assert r.headers["cache-control"] == "no-store"


def test_upstream_status_is_passed_through():
    r = _client(lambda request: httpx.Response(500, text="boom")).get("/api/fail")
    assert r.status_code == 500
    assert r.text == "boom"


def test_create_app_requires_every_upstream():
    with pytest.raises(ValueError):
        create_app(default_route_table(), {Role.WEB: "http://web:3000"})


def test_invalid_table_is_rejected():
    with pytest.raises(ValueError):
        create_app(RouteTable(rules=(RouteRule("/api", Role.API),)), UPSTREAMS)
