"""In-unit reverse proxy.

Every request is matched against the route table and forwarded to the
upstream container by its internal address. One upstream per role: no
retries, no fallback, no caching of failures.
"""
from __future__ import annotations

import os
from typing import Mapping

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from .routing import RouteTable, default_route_table
from .settings import settings
from .topology import DEFAULT_PORTS, Role


HOP_BY_HOP = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]


class GatewayError(Exception):
    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


def gateway_error_response(e: GatewayError) -> JSONResponse:
    return JSONResponse({"detail": e.detail}, status_code=e.status_code, headers={"Cache-Control": "no-store"})


async def forward(request: Request, base_url: str, client: httpx.AsyncClient, path: str | None = None) -> Response:
    """Send ``request`` to ``base_url`` keeping the path and standard proxy headers."""
    url = base_url.rstrip("/") + (path if path is not None else request.url.path)
    if request.url.query:
        url += "?" + request.url.query

    headers = {k: v for k, v in request.headers.items() if k.lower() not in HOP_BY_HOP | {"content-length"}}
    client_ip = request.client.host if request.client else ""
    prior = request.headers.get("x-forwarded-for")
    headers["x-real-ip"] = client_ip
    headers["x-forwarded-for"] = f"{prior}, {client_ip}" if prior else client_ip
    headers["x-forwarded-proto"] = request.headers.get("x-forwarded-proto", request.url.scheme)

    body = await request.body()
    try:
        resp = await client.request(request.method, url, headers=headers, content=body)
    except httpx.TimeoutException as e:
        raise GatewayError(504, f"Upstream timed out: {type(e).__name__}") from e
    except httpx.TransportError as e:
        raise GatewayError(502, f"Upstream unreachable: {type(e).__name__}") from e

    out_headers = {
        k: v
        for k, v in resp.headers.items()
        if k.lower() not in HOP_BY_HOP | {"content-length", "content-encoding"}
    }
    return Response(content=resp.content, status_code=resp.status_code, headers=out_headers)


def create_app(
    table: RouteTable,
    upstreams: Mapping[Role, str],
    timeout_s: float = settings.gateway_timeout_s,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    table.validate()
    missing = {r.upstream for r in table.rules} - set(upstreams)
    if missing:
        raise ValueError(f"No upstream address for: {sorted(r.value for r in missing)}")

    app = FastAPI(title="sgp proxy", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.table = table

    @app.api_route("/{path:path}", methods=METHODS)
    async def dispatch(request: Request, path: str) -> Response:
        rule = table.match(request.url.path)
        if rule is None:
            return JSONResponse({"detail": "No route for path"}, status_code=404)

        policy = rule.headers
        if policy is not None and policy.answer_preflight and request.method == "OPTIONS":
            return Response(status_code=204, headers=policy.as_dict())

        try:
            async with httpx.AsyncClient(timeout=timeout_s, transport=transport, follow_redirects=False) as client:
                resp = await forward(request, upstreams[rule.upstream], client)
        except GatewayError as e:
            resp = gateway_error_response(e)

        if policy is not None:
            resp.headers.update(policy.as_dict())
        return resp

    return app


def upstreams_from_env() -> dict[Role, str]:
    return {
        Role.API: os.getenv("SGP_UPSTREAM_API", f"http://localhost:{DEFAULT_PORTS[Role.API]}"),
        Role.WEB: os.getenv("SGP_UPSTREAM_WEB", f"http://localhost:{DEFAULT_PORTS[Role.WEB]}"),
    }


def create_app_from_env() -> FastAPI:
    """Factory the proxy image runs: ``uvicorn --factory sgp.proxy:create_app_from_env``."""
    return create_app(default_route_table(), upstreams_from_env())
