from __future__ import annotations

import socket
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Mapping

import httpx

from .topology import ContainerSpec, Role, ServiceUnit, StartupProbe


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    message: str
    latency_ms: float | None = None


def check_http(url: str, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    """Call a startup/health endpoint.

    Any 2xx or 3xx answer counts as ready.
    Returns (is_ready, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if 200 <= resp.status_code < 400:
            return True, f"HTTP {resp.status_code}", latency_ms
        return False, f"HTTP {resp.status_code}", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return False, f"Error: {type(e).__name__}: {e}", latency_ms


def check_tcp(host: str, port: int, timeout_s: float = 2.0) -> tuple[bool, str, float | None]:
    start = time.time()
    try:
        with socket.create_connection((host, int(port)), timeout=timeout_s):
            pass
        return True, "Port open", round((time.time() - start) * 1000.0, 2)
    except OSError as e:
        return False, f"Connect failed: {e}", round((time.time() - start) * 1000.0, 2)


def run_probe(probe: StartupProbe, host: str) -> ProbeResult:
    if probe.protocol == "http":
        ok, msg, latency = check_http(f"http://{host}:{probe.port}{probe.path}", timeout_s=probe.timeout_s)
    else:
        ok, msg, latency = check_tcp(host, probe.port, timeout_s=probe.timeout_s)
    return ProbeResult(ok=ok, message=msg, latency_ms=latency)


Prober = Callable[[StartupProbe, str], ProbeResult]


@dataclass
class ContainerProbeState:
    state: str = "starting"  # starting|ready|failed
    failures: int = 0
    message: str = ""


class ProbeTracker:
    """Consecutive-failure bookkeeping per container, keyed by container name."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._states: dict[str, ContainerProbeState] = {}

    def record(self, key: str, result: ProbeResult, failure_threshold: int) -> ContainerProbeState:
        with self._lock:
            st = self._states.setdefault(key, ContainerProbeState())
            st.message = result.message
            if result.ok:
                st.state = "ready"
                st.failures = 0
            else:
                st.failures += 1
                st.state = "failed" if st.failures >= max(1, failure_threshold) else "starting"
            return ContainerProbeState(st.state, st.failures, st.message)

    def get(self, key: str) -> ContainerProbeState:
        with self._lock:
            st = self._states.get(key)
            return ContainerProbeState(st.state, st.failures, st.message) if st else ContainerProbeState()

    def forget(self, key: str) -> None:
        with self._lock:
            self._states.pop(key, None)


@dataclass(frozen=True)
class UnitHealth:
    healthy: bool
    state: str  # ready|starting|failed
    containers: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {"healthy": self.healthy, "state": self.state, "containers": dict(self.containers)}


def unit_health(unit: ServiceUnit, tracker: ProbeTracker, hosts: Mapping[Role, str]) -> UnitHealth:
    """Unit-level health: healthy only when every container is ready.

    A single failing probe makes the unit unhealthy even before its
    threshold is reached; the threshold decides when it counts as failed.
    """
    states = {c.role.value: tracker.get(hosts[c.role]).state for c in unit.containers}
    if all(s == "ready" for s in states.values()):
        return UnitHealth(True, "ready", states)
    if any(s == "failed" for s in states.values()):
        return UnitHealth(False, "failed", states)
    return UnitHealth(False, "starting", states)


def probe_container(c: ContainerSpec, host: str, prober: Prober, tracker: ProbeTracker) -> ContainerProbeState:
    if c.probe is None:
        return tracker.record(host, ProbeResult(True, "No startup probe"), 1)
    return tracker.record(host, prober(c.probe, host), c.probe.failure_threshold)


def wait_until_ready(
    unit: ServiceUnit,
    hosts: Mapping[Role, str],
    prober: Prober = run_probe,
    tracker: ProbeTracker | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> UnitHealth:
    """Drive startup probes until all containers are ready or one has failed."""
    tracker = tracker or ProbeTracker()
    periods = [c.probe.period_s for c in unit.containers if c.probe is not None] or [1]
    period = min(periods)
    while True:
        for c in unit.containers:
            if tracker.get(hosts[c.role]).state != "ready":
                probe_container(c, hosts[c.role], prober, tracker)
        health = unit_health(unit, tracker, hosts)
        if health.state != "starting":
            return health
        sleep(period)
