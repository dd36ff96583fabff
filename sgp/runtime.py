from __future__ import annotations

from dataclasses import dataclass
from threading import Lock

from .health import ProbeTracker, UnitHealth
from .topology import ServiceUnit


@dataclass(frozen=True)
class InstanceTarget:
    """One complete, healthy instance group reachable through its proxy."""

    unit: str
    revision: int
    ordinal: int
    base_url: str


class RuntimeState:
    """In-memory state for reconciliation and the network entrypoint."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.probes = ProbeTracker()
        self.targets: dict[str, list[InstanceTarget]] = {}  # unit -> healthy instance groups
        self.rr_index: dict[str, int] = {}  # key -> idx
        self.specs: dict[int, ServiceUnit] = {}  # revision id -> unit with secrets resolved
        self.last_health: dict[str, UnitHealth] = {}  # unit -> last reported health

    def set_targets(self, unit: str, targets: list[InstanceTarget]) -> None:
        with self.lock:
            self.targets[unit] = targets

    def get_targets(self, unit: str) -> list[InstanceTarget]:
        with self.lock:
            return list(self.targets.get(unit, []))

    def drop_unit(self, unit: str) -> None:
        with self.lock:
            self.targets.pop(unit, None)
            self.last_health.pop(unit, None)

    def next_index(self, key: str, n: int) -> int:
        with self.lock:
            if n <= 0:
                return 0
            i = self.rr_index.get(key, 0) % n
            self.rr_index[key] = (i + 1) % n
            return i

    def remember_spec(self, revision_id: int, unit: ServiceUnit) -> None:
        with self.lock:
            self.specs[revision_id] = unit

    def get_spec(self, revision_id: int) -> ServiceUnit | None:
        with self.lock:
            return self.specs.get(revision_id)

    def set_health(self, unit: str, health: UnitHealth) -> UnitHealth | None:
        """Store the latest unit health and return the previous one."""
        with self.lock:
            prev = self.last_health.get(unit)
            self.last_health[unit] = health
            return prev

    def get_health(self, unit: str) -> UnitHealth | None:
        with self.lock:
            return self.last_health.get(unit)
