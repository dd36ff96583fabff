from __future__ import annotations

from dataclasses import asdict

import httpx
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from sgp import db
from sgp.api_models import DeployRequest, RedeployRequest, ScaleRequest
from sgp.deploy import Deployer, DeployFailed, UnknownUnit, group_health, group_hosts
from sgp.entrypoint import NoHealthyInstances, admits, classify_client, invocation_allowed, select_instance
from sgp.graph import ProvisioningError
from sgp.proxy import METHODS, GatewayError, forward, gateway_error_response
from sgp.reconciler import Reconciler
from sgp.registry import ImmutableTagError
from sgp.routing import default_route_table, render_nginx_conf, routing_variables_from_env
from sgp.runtime import RuntimeState
from sgp.settings import DeployConfig, settings
from sgp.topology import IngressPolicy, Role, build_default_unit, describe

app = FastAPI(title="Service Group Provisioner")
app.state.transport = None  # httpx transport for the entrypoint; tests swap in a MockTransport

runtime = RuntimeState()
deployer = Deployer(runtime)
reconciler = Reconciler(runtime, deployer.backend, deployer.prober)


@app.on_event("startup")
def startup() -> None:
    db.init_db()
    if settings.reconciler_enabled:
        reconciler.start()


@app.on_event("shutdown")
def shutdown() -> None:
    reconciler.stop()


def _unit_or_404(name: str) -> db.UnitRow:
    row = db.get_unit(name)
    if row is None or row.state != "active":
        raise HTTPException(status_code=404, detail=f"Unknown unit '{name}'")
    return row


def _deploy_error(e: Exception) -> HTTPException:
    if isinstance(e, DeployFailed):
        detail = {"message": str(e), "revision": e.revision}
        if e.health is not None:
            detail["health"] = e.health.as_dict()
        return HTTPException(status_code=503, detail=detail)
    if isinstance(e, (ProvisioningError, ImmutableTagError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, UnknownUnit):
        return HTTPException(status_code=404, detail=f"Unknown unit {e}")
    return HTTPException(status_code=400, detail=str(e))


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "healthy"}


@app.get("/units")
def list_units() -> list[dict]:
    return [
        {
            "name": u.name,
            "region": u.region,
            "ingress": u.ingress,
            "serving_revision": u.serving_revision_id,
            "desired_instances": u.desired_instances,
            "public": u.is_public,
        }
        for u in db.list_units()
    ]


@app.post("/units")
def deploy_unit(req: DeployRequest) -> dict:
    try:
        cfg = DeployConfig.from_env(req.project, req.region, req.version)
        unit = build_default_unit(
            cfg, req.name, ingress=req.ingress, min_instances=req.min_instances, max_instances=req.max_instances
        )
        result = deployer.deploy(cfg, unit, public=req.public)
    except (ValueError, ProvisioningError, ImmutableTagError, DeployFailed) as e:
        raise _deploy_error(e) from None
    return asdict(result)


@app.get("/units/{name}")
def get_unit(name: str) -> dict:
    row = _unit_or_404(name)
    try:
        unit = deployer.serving_unit(name)
    except UnknownUnit:
        raise HTTPException(status_code=404, detail=f"Unit '{name}' has no serving revision") from None
    revisions = [{"id": r.id, "version": r.version, "state": r.state} for r in db.list_revisions(row.id)]
    return {"spec": describe(unit), "serving_revision": row.serving_revision_id, "revisions": revisions}


@app.get("/units/{name}/health")
def get_unit_health(name: str) -> JSONResponse:
    row = _unit_or_404(name)
    if row.serving_revision_id is None:
        return JSONResponse({"healthy": False, "state": "absent", "containers": {}}, status_code=503)
    h = runtime.get_health(name)
    if h is None:
        h = group_health(deployer.serving_unit(name), runtime, row.serving_revision_id, 0)
    return JSONResponse(h.as_dict(), status_code=200 if h.healthy else 503)


@app.post("/units/{name}/redeploy")
def redeploy_unit(name: str, req: RedeployRequest) -> dict:
    row = _unit_or_404(name)
    try:
        cfg = DeployConfig.from_env(row.project, row.region, req.version)
        result = deployer.redeploy(cfg, name, req.version, public=req.public)
    except (ValueError, ProvisioningError, ImmutableTagError, DeployFailed, UnknownUnit) as e:
        raise _deploy_error(e) from None
    return asdict(result)


@app.post("/units/{name}/scale")
def scale_unit(name: str, req: ScaleRequest) -> dict:
    _unit_or_404(name)
    desired = deployer.scale(name, req.instances)
    return {"unit": name, "desired_instances": desired}


@app.delete("/units/{name}")
def teardown_unit(name: str) -> dict:
    _unit_or_404(name)
    deployer.teardown(name)
    return {"unit": name, "state": "destroyed"}


@app.get("/units/{name}/routing", response_class=PlainTextResponse)
def unit_routing(name: str) -> str:
    row = _unit_or_404(name)
    if row.serving_revision_id is None:
        raise HTTPException(status_code=404, detail=f"Unit '{name}' has no serving revision")
    unit = deployer.serving_unit(name)
    hosts = group_hosts(unit, row.serving_revision_id, 0)
    upstreams = {
        Role.API: f"http://{hosts[Role.API]}:{unit.container(Role.API).port}",
        Role.WEB: f"http://{hosts[Role.WEB]}:{unit.container(Role.WEB).port}",
    }
    variables = routing_variables_from_env()
    return render_nginx_conf(
        default_route_table(),
        listen_port=unit.external_port,
        server_name=variables["server_name"],
        upstreams=upstreams,
        acme_challenge_block=variables["acme_challenge_block"],
        https_block=variables["https_block"],
    )


@app.get("/resources")
def resources() -> list[dict]:
    return db.list_resources()


@app.get("/events")
def events(limit: int = 100) -> list[dict]:
    return db.latest_events(limit=max(1, min(limit, 1000)))


@app.api_route("/u/{name}/{path:path}", methods=METHODS)
async def entrypoint(name: str, path: str, request: Request) -> Response:
    """Single network entrypoint: ingress policy first, then a healthy instance's proxy."""
    row = db.get_unit(name)
    if row is None or row.state != "active" or row.serving_revision_id is None:
        return JSONResponse({"detail": f"Unknown unit '{name}'"}, status_code=404)

    traffic = classify_client(request.client.host if request.client else None, settings.lb_source_ranges)
    if not admits(IngressPolicy(row.ingress), traffic):
        return JSONResponse({"detail": f"Ingress policy '{row.ingress}' rejects {traffic.value} traffic"}, status_code=403)
    if not invocation_allowed(row.is_public, traffic):
        return JSONResponse({"detail": f"Unit '{name}' does not allow unauthenticated invocation"}, status_code=403)

    try:
        target = select_instance(name, runtime)
    except NoHealthyInstances as e:
        return JSONResponse({"detail": str(e)}, status_code=503)

    try:
        async with httpx.AsyncClient(
            timeout=settings.gateway_timeout_s, transport=app.state.transport, follow_redirects=False
        ) as client:
            return await forward(request, target.base_url, client, path="/" + path)
    except GatewayError as e:
        return gateway_error_response(e)
