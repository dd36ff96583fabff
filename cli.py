from __future__ import annotations

import argparse
import json
import sys

import requests
from docker.errors import DockerException

from sgp import db
from sgp.docker_ops import DockerBackend
from sgp.pipeline import BUILD_ORDER, build_and_push, run_pipeline
from sgp.registry import ensure_tag_unused, image_ref
from sgp.settings import DeployConfig, settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _build_config(args: argparse.Namespace) -> DeployConfig:
    return DeployConfig.from_env(args.project_id, args.region, args.version)


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Service Group Provisioner CLI")
    p.add_argument("--api", default="http://localhost:8000", help="Control API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_build = sub.add_parser("build", help="Build and push the proxy, api and web images")
    s_build.add_argument("project_id")
    s_build.add_argument("region")
    s_build.add_argument("version", nargs="?", default="latest")
    s_build.add_argument("--role", choices=BUILD_ORDER, help="Build a single image only")

    s_pipe = sub.add_parser("pipeline", help="Build all images, then deploy the fresh version")
    s_pipe.add_argument("project_id")
    s_pipe.add_argument("region")
    s_pipe.add_argument("version", nargs="?", default="latest")
    s_pipe.add_argument("--name", required=True, help="Unit name")

    s_dep = sub.add_parser("deploy", help="Deploy a unit at a version")
    s_dep.add_argument("--name", required=True)
    s_dep.add_argument("--project", required=True)
    s_dep.add_argument("--region", required=True)
    s_dep.add_argument("--version", default="latest")
    s_dep.add_argument("--ingress", default="all", choices=["all", "internal-only", "load-balancer-only"])
    s_dep.add_argument("--min-instances", type=int, default=0)
    s_dep.add_argument("--max-instances", type=int, default=10)
    s_dep.add_argument("--private", action="store_true", help="Do not grant anonymous invocation")

    sub.add_parser("units", help="List units")

    s_ev = sub.add_parser("events", help="Show events")
    s_ev.add_argument("--limit", type=int, default=20)

    s_rt = sub.add_parser("routing", help="Print the rendered proxy config of a unit")
    s_rt.add_argument("name")

    s_scale = sub.add_parser("scale", help="Set the desired instance count")
    s_scale.add_argument("name")
    s_scale.add_argument("instances", type=int)

    s_down = sub.add_parser("teardown", help="Destroy a unit")
    s_down.add_argument("name")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd in {"build", "pipeline"}:
        db.init_db()
        try:
            cfg = _build_config(args)
        except ValueError as e:
            print(f"{args.cmd} failed: {e}", file=sys.stderr)
            return 1
        backend = DockerBackend()

    if args.cmd == "build":
        try:
            roles = [args.role] if args.role else list(BUILD_ORDER)
            versions = {role: settings.proxy_tag if role == "proxy" else cfg.version for role in roles}
            for role, version in versions.items():
                ensure_tag_unused(image_ref(cfg, role, version))
            refs = {role: build_and_push(cfg, role, version, backend) for role, version in versions.items()}
        except (DockerException, RuntimeError, ValueError) as e:
            # Build output may echo build args; never print secrets.
            print(cfg.redact(f"build failed: {e}"), file=sys.stderr)
            return 1
        _print(refs)
        return 0

    if args.cmd == "pipeline":

        def _deploy(version: str, refs: dict[str, str]) -> None:
            payload = {"name": args.name, "project": args.project_id, "region": args.region, "version": version}
            r = requests.post(f"{base}/units", json=payload, timeout=600)
            _print(r.json())
            r.raise_for_status()

        try:
            refs = run_pipeline(cfg, backend, _deploy)
        except (DockerException, RuntimeError, ValueError, requests.RequestException) as e:
            print(cfg.redact(f"pipeline failed: {e}"), file=sys.stderr)
            return 1
        _print(refs)
        return 0

    if args.cmd == "deploy":
        payload = {
            "name": args.name,
            "project": args.project,
            "region": args.region,
            "version": args.version,
            "ingress": args.ingress,
            "min_instances": args.min_instances,
            "max_instances": args.max_instances,
            "public": not args.private,
        }
        r = requests.post(f"{base}/units", json=payload, timeout=600)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "units":
        _print(requests.get(f"{base}/units", timeout=10).json())
        return 0

    if args.cmd == "events":
        _print(requests.get(f"{base}/events", params={"limit": args.limit}, timeout=10).json())
        return 0

    if args.cmd == "routing":
        r = requests.get(f"{base}/units/{args.name}/routing", timeout=10)
        print(r.text)
        return 0 if r.ok else 1

    if args.cmd == "scale":
        r = requests.post(f"{base}/units/{args.name}/scale", json={"instances": args.instances}, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "teardown":
        r = requests.delete(f"{base}/units/{args.name}", timeout=60)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
