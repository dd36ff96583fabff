from __future__ import annotations

import time
from collections import defaultdict
from threading import Thread

from . import db
from .alerts import send_email, unit_alert
from .db import InstanceRow, UnitRow
from .deploy import ContainerBackend, clamp_desired, group_health, proxy_target, redactor, remove_group, start_group
from .health import Prober, UnitHealth, probe_container, run_probe
from .runtime import RuntimeState
from .settings import settings
from .topology import ServiceUnit, unit_from_description


class Reconciler:
    """Keeps every serving revision at its desired number of instance groups.

    An instance group is the whole proxy + api + web set; groups are added,
    removed and replaced as a unit, never container by container.
    """

    def __init__(self, runtime: RuntimeState, backend: ContainerBackend, prober: Prober = run_probe):
        self.runtime = runtime
        self.backend = backend
        self.prober = prober
        self._stop = False
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop = False
        self._thr = Thread(target=self._loop, daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop = True

    def _loop(self) -> None:
        db.log_event("INFO", "Reconciler started")
        while not self._stop:
            try:
                self.tick()
            except Exception as e:
                db.log_event("ERROR", f"Reconciler tick failed: {type(e).__name__}: {e}")
            time.sleep(max(1, settings.poll_interval_s))

    def tick(self) -> None:
        for row in db.list_units():
            rev = row.serving_revision_id
            if rev is None:
                continue
            unit = self._spec(rev)
            if unit is None:
                continue
            try:
                self._ensure_groups(row, unit, rev)
                self._probe_and_heal(unit, rev)
                self._rebuild_targets(unit, rev)
            except Exception as e:
                # Container errors can echo the environment.
                redact = redactor(None, unit)
                db.log_event(
                    "ERROR",
                    redact(f"Reconcile failed: {type(e).__name__}: {e}"),
                    unit_name=unit.name,
                    revision=rev,
                )

    def _spec(self, revision_id: int) -> ServiceUnit | None:
        unit = self.runtime.get_spec(revision_id)
        if unit is None:
            rev = db.get_revision(revision_id)
            if rev is None:
                return None
            unit = unit_from_description(rev.spec)
            self.runtime.remember_spec(revision_id, unit)
        return unit

    def _groups(self, revision_id: int) -> dict[int, list[InstanceRow]]:
        groups: dict[int, list[InstanceRow]] = defaultdict(list)
        for inst in db.list_instances(revision_id):
            groups[inst.ordinal].append(inst)
        return groups

    def _ensure_groups(self, row: UnitRow, unit: ServiceUnit, rev: int) -> None:
        desired = clamp_desired(unit, row.desired_instances)
        groups = self._groups(rev)

        # A group with a missing container is replaced as a whole.
        for ordinal, members in list(groups.items()):
            complete = len(members) == len(unit.containers)
            if complete and all(self.backend.container_is_running(m.container_id) for m in members):
                continue
            db.log_event("WARN", f"Instance group {ordinal} lost a container; replacing group", unit_name=unit.name, revision=rev)
            remove_group(self.backend, self.runtime, rev, ordinal)
            del groups[ordinal]
            if ordinal < desired:
                start_group(self.backend, unit, rev, ordinal)
                db.bump_restart_count(rev, ordinal)
                groups[ordinal] = self._groups(rev)[ordinal]

        # Scale in from the highest ordinal.
        for ordinal in sorted(groups, reverse=True):
            if ordinal >= desired:
                remove_group(self.backend, self.runtime, rev, ordinal)
                db.log_event("INFO", f"Scaled in instance group {ordinal}", unit_name=unit.name, revision=rev)

        for ordinal in range(desired):
            if ordinal not in groups:
                start_group(self.backend, unit, rev, ordinal)
                db.log_event("INFO", f"Scaled out instance group {ordinal}", unit_name=unit.name, revision=rev)

    def _probe_and_heal(self, unit: ServiceUnit, rev: int) -> None:
        by_role = {c.role.value: c for c in unit.containers}
        for ordinal, members in self._groups(rev).items():
            failed = False
            for inst in members:
                st = probe_container(by_role[inst.role], inst.container_name, self.prober, self.runtime.probes)
                db.update_instance_status(inst.container_id, st.state)
                failed = failed or st.state == "failed"
            if failed:
                db.log_event(
                    "ERROR",
                    f"Self-healing: replacing instance group {ordinal} after failed probes",
                    unit_name=unit.name,
                    revision=rev,
                )
                remove_group(self.backend, self.runtime, rev, ordinal)
                start_group(self.backend, unit, rev, ordinal)
                db.bump_restart_count(rev, ordinal)

    def _rebuild_targets(self, unit: ServiceUnit, rev: int) -> None:
        ordinals = sorted(self._groups(rev))
        healths = {o: group_health(unit, self.runtime, rev, o) for o in ordinals}
        self.runtime.set_targets(unit.name, [proxy_target(unit, rev, o) for o in ordinals if healths[o].healthy])

        if not healths:
            return
        # Report the worst group: the unit is healthy only when all of them are.
        worst = min(healths.values(), key=lambda h: {"failed": 0, "starting": 1, "ready": 2}[h.state])
        prev = self.runtime.set_health(unit.name, worst)
        if prev is None or prev.healthy == worst.healthy:
            return
        if worst.healthy:
            db.log_event("INFO", "Unit recovered", unit_name=unit.name, revision=rev)
        else:
            db.log_event("WARN", f"Unit became unhealthy: {worst.containers}", unit_name=unit.name, revision=rev)
        self._maybe_email(unit, rev, worst)

    def _maybe_email(self, unit: ServiceUnit, revision: int, health: UnitHealth) -> None:
        if not settings.enable_email:
            return
        send_email(*unit_alert(unit, revision, health))
