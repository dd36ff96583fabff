"""Reverse-proxy rule set.

Rules are evaluated in declared order and the first matching prefix wins.
There is exactly one ``/`` rule and it sends everything else to web.

The ACME challenge and HTTPS blocks are opaque text: they are substituted
into the rendered config by name and never parsed here.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from string import Template
from typing import Mapping

from .topology import Role


class RoutingError(ValueError):
    pass


@dataclass(frozen=True)
class HeaderPolicy:
    name: str
    headers: tuple[tuple[str, str], ...] = ()
    answer_preflight: bool = False

    def as_dict(self) -> dict[str, str]:
        return dict(self.headers)


CORS_ALLOWED_HEADERS = (
    "DNT,User-Agent,X-Requested-With,If-Modified-Since,Cache-Control,"
    "Content-Type,Range,Authorization,X-OpenRouter-API-Token"
)

CORS_POLICY = HeaderPolicy(
    name="cors",
    headers=(
        ("Access-Control-Allow-Origin", "*"),
        ("Access-Control-Allow-Methods", "GET, POST, OPTIONS"),
        ("Access-Control-Allow-Headers", CORS_ALLOWED_HEADERS),
    ),
    answer_preflight=True,
)


@dataclass(frozen=True)
class RouteRule:
    prefix: str
    upstream: Role
    headers: HeaderPolicy | None = None

    def matches(self, path: str) -> bool:
        return path.startswith(self.prefix)


@dataclass(frozen=True)
class RouteTable:
    rules: tuple[RouteRule, ...] = field(default_factory=tuple)

    def validate(self) -> None:
        if not self.rules:
            raise RoutingError("Route table is empty")
        for r in self.rules:
            if not r.prefix.startswith("/"):
                raise RoutingError(f"Route prefix must start with '/': {r.prefix!r}")
            if r.upstream == Role.PROXY:
                raise RoutingError("The proxy cannot route to itself")
        prefixes = [r.prefix for r in self.rules]
        duplicates = sorted({p for p in prefixes if prefixes.count(p) > 1})
        if duplicates:
            raise RoutingError(f"Duplicate route prefixes: {', '.join(duplicates)}")
        catch_all = [r for r in self.rules if r.prefix == "/"]
        if len(catch_all) != 1:
            raise RoutingError(f"Exactly one catch-all '/' rule is required, found {len(catch_all)}")
        if catch_all[0].upstream != Role.WEB:
            raise RoutingError("The catch-all '/' rule must route to web")

    def match(self, path: str) -> RouteRule | None:
        for rule in self.rules:
            if rule.matches(path):
                return rule
        return None


def default_route_table() -> RouteTable:
    table = RouteTable(
        rules=(
            RouteRule(prefix="/api", upstream=Role.API, headers=CORS_POLICY),
            RouteRule(prefix="/", upstream=Role.WEB),
        )
    )
    table.validate()
    return table


NGINX_TEMPLATE = Template(
    """\
server {
    listen ${listen_port};
    server_name ${server_name};

${acme_challenge_block}
${locations}
}

${https_block}
"""
)

LOCATION_TEMPLATE = Template(
    """\
    location ${prefix} {
        proxy_pass ${upstream};
        proxy_set_header Host $$host;
        proxy_set_header X-Real-IP $$remote_addr;
        proxy_set_header X-Forwarded-For $$proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $$scheme;
        proxy_next_upstream off;
        proxy_no_cache 1;
${header_lines}    }
"""
)


def _render_location(rule: RouteRule, upstreams: Mapping[Role, str]) -> str:
    try:
        upstream = upstreams[rule.upstream]
    except KeyError:
        raise RoutingError(f"No upstream address for role '{rule.upstream.value}'") from None
    lines = ""
    if rule.headers is not None:
        for name, value in rule.headers.headers:
            lines += f"        add_header '{name}' '{value}' always;\n"
        if rule.headers.answer_preflight:
            lines += "        if ($request_method = 'OPTIONS') {\n            return 204;\n        }\n"
    return LOCATION_TEMPLATE.substitute(prefix=rule.prefix, upstream=upstream, header_lines=lines)


def render_nginx_conf(
    table: RouteTable,
    listen_port: int,
    server_name: str,
    upstreams: Mapping[Role, str],
    acme_challenge_block: str = "",
    https_block: str = "",
) -> str:
    """Render the proxy config.

    nginx picks the longest matching prefix while this table promises
    first-match. The two agree unless an earlier rule shadows a later,
    longer one, and such a table is rejected.
    """
    table.validate()
    if _first_match_differs(table):
        raise RoutingError("A rule is shadowed by an earlier, shorter prefix and can never match")
    locations = "\n".join(_render_location(r, upstreams) for r in table.rules)
    return NGINX_TEMPLATE.substitute(
        listen_port=int(listen_port),
        server_name=server_name or "_",
        acme_challenge_block=acme_challenge_block or "",
        locations=locations,
        https_block=https_block or "",
    )


def _first_match_differs(table: RouteTable) -> bool:
    """True when a later, longer prefix is shadowed by an earlier, shorter one."""
    for i, earlier in enumerate(table.rules):
        for later in table.rules[i + 1 :]:
            if later.prefix.startswith(earlier.prefix) and later.prefix != earlier.prefix:
                return True
    return False


def routing_variables_from_env() -> dict[str, str]:
    return {
        "listen_port": os.getenv("LISTEN_PORT", "80"),
        "server_name": os.getenv("SERVER_NAME", "_"),
        "acme_challenge_block": os.getenv("ACME_CHALLENGE_BLOCK", ""),
        "https_block": os.getenv("HTTPS_BLOCK", ""),
    }
