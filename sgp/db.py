from __future__ import annotations

import json
import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

from . import settings as settings_mod

logger = logging.getLogger("sgp.events")


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    A bind-mounted path that did not exist is created by Docker as a
    directory; in that case the DB file goes inside it.
    """

    p = os.path.abspath(settings_mod.settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "sgp.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS units (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              name TEXT NOT NULL UNIQUE,
              project TEXT NOT NULL,
              region TEXT NOT NULL,
              ingress TEXT NOT NULL,
              min_instances INTEGER NOT NULL,
              max_instances INTEGER NOT NULL,
              desired_instances INTEGER NOT NULL,
              serving_revision_id INTEGER,
              state TEXT NOT NULL, -- active|destroyed
              created_at TEXT NOT NULL,
              public INTEGER NOT NULL DEFAULT 1 -- anonymous invocation granted
            );

            CREATE TABLE IF NOT EXISTS revisions (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              unit_id INTEGER NOT NULL,
              version TEXT NOT NULL,
              spec_json TEXT NOT NULL,
              state TEXT NOT NULL, -- pending|serving|failed|retired
              created_at TEXT NOT NULL,
              FOREIGN KEY(unit_id) REFERENCES units(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS instances (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              revision_id INTEGER NOT NULL,
              ordinal INTEGER NOT NULL,
              role TEXT NOT NULL,
              container_id TEXT NOT NULL,
              container_name TEXT NOT NULL,
              status TEXT NOT NULL, -- starting|ready|failed
              restart_count INTEGER NOT NULL DEFAULT 0,
              created_at TEXT NOT NULL,
              FOREIGN KEY(revision_id) REFERENCES revisions(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS resources (
              id TEXT PRIMARY KEY,
              kind TEXT NOT NULL,
              depends_on TEXT NOT NULL,
              attributes TEXT NOT NULL,
              updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS image_tags (
              repository TEXT NOT NULL,
              tag TEXT NOT NULL,
              digest TEXT NOT NULL,
              created_at TEXT NOT NULL,
              PRIMARY KEY(repository, tag)
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              unit_name TEXT,
              revision INTEGER,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_instances_revision_id ON instances(revision_id);
            """
        )


def log_event(level: str, message: str, unit_name: str | None = None, revision: int | None = None) -> None:
    level = level.upper()
    lvl = getattr(logging, level, logging.INFO)
    logger.log(lvl if isinstance(lvl, int) else logging.INFO, message)
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, unit_name, revision, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level, unit_name, revision, message),
        )


@dataclass(frozen=True)
class UnitRow:
    id: int
    name: str
    project: str
    region: str
    ingress: str
    min_instances: int
    max_instances: int
    desired_instances: int
    serving_revision_id: int | None
    state: str
    created_at: str
    public: int = 1

    @property
    def is_public(self) -> bool:
        return bool(self.public)


@dataclass(frozen=True)
class RevisionRow:
    id: int
    unit_id: int
    version: str
    spec_json: str
    state: str
    created_at: str

    @property
    def spec(self) -> dict[str, Any]:
        return json.loads(self.spec_json)


@dataclass(frozen=True)
class InstanceRow:
    id: int
    revision_id: int
    ordinal: int
    role: str
    container_id: str
    container_name: str
    status: str
    restart_count: int
    created_at: str


@dataclass(frozen=True)
class ResourceRow:
    id: str
    kind: str
    depends_on: str
    attributes: str
    updated_at: str


def _rows_to_dataclass(rows: Iterable[sqlite3.Row], cls: Any) -> list[Any]:
    out: list[Any] = []
    for r in rows:
        out.append(cls(**dict(r)))
    return out


def upsert_unit(
    name: str,
    project: str,
    region: str,
    ingress: str,
    min_instances: int,
    max_instances: int,
    public: bool = True,
) -> UnitRow:
    desired = max(1, min_instances)
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO units (name, project, region, ingress, min_instances, max_instances, desired_instances, state, created_at, public)
            VALUES (?, ?, ?, ?, ?, ?, ?, 'active', ?, ?)
            ON CONFLICT(name) DO UPDATE SET
              project=excluded.project,
              region=excluded.region,
              ingress=excluded.ingress,
              min_instances=excluded.min_instances,
              max_instances=excluded.max_instances,
              desired_instances=MAX(excluded.min_instances, MIN(units.desired_instances, excluded.max_instances), 1),
              state='active',
              public=excluded.public
            """,
            (name, project, region, ingress, min_instances, max_instances, desired, utc_now(), int(public)),
        )
        row = conn.execute("SELECT * FROM units WHERE name=?", (name,)).fetchone()
        return UnitRow(**dict(row))


def get_unit(name: str) -> UnitRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM units WHERE name=?", (name,)).fetchone()
        return UnitRow(**dict(row)) if row else None


def list_units(include_destroyed: bool = False) -> list[UnitRow]:
    with connect() as conn:
        if include_destroyed:
            rows = conn.execute("SELECT * FROM units ORDER BY name").fetchall()
        else:
            rows = conn.execute("SELECT * FROM units WHERE state='active' ORDER BY name").fetchall()
        return _rows_to_dataclass(rows, UnitRow)


def set_unit_state(unit_id: int, state: str) -> None:
    with connect() as conn:
        conn.execute("UPDATE units SET state=? WHERE id=?", (state, unit_id))


def set_serving_revision(unit_id: int, revision_id: int | None) -> None:
    with connect() as conn:
        conn.execute("UPDATE units SET serving_revision_id=? WHERE id=?", (revision_id, unit_id))


def set_desired_instances(unit_id: int, desired: int) -> None:
    with connect() as conn:
        conn.execute("UPDATE units SET desired_instances=? WHERE id=?", (desired, unit_id))


def insert_revision(unit_id: int, version: str, spec: dict[str, Any]) -> RevisionRow:
    with connect() as conn:
        cur = conn.execute(
            "INSERT INTO revisions (unit_id, version, spec_json, state, created_at) VALUES (?, ?, ?, 'pending', ?)",
            (unit_id, version, json.dumps(spec, sort_keys=True), utc_now()),
        )
        row = conn.execute("SELECT * FROM revisions WHERE id=?", (cur.lastrowid,)).fetchone()
        return RevisionRow(**dict(row))


def get_revision(revision_id: int) -> RevisionRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM revisions WHERE id=?", (revision_id,)).fetchone()
        return RevisionRow(**dict(row)) if row else None


def list_revisions(unit_id: int) -> list[RevisionRow]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM revisions WHERE unit_id=? ORDER BY id DESC", (unit_id,)).fetchall()
        return _rows_to_dataclass(rows, RevisionRow)


def set_revision_state(revision_id: int, state: str) -> None:
    with connect() as conn:
        conn.execute("UPDATE revisions SET state=? WHERE id=?", (state, revision_id))


def list_instances(revision_id: int) -> list[InstanceRow]:
    with connect() as conn:
        rows = conn.execute(
            "SELECT * FROM instances WHERE revision_id=? ORDER BY ordinal, id", (revision_id,)
        ).fetchall()
        return _rows_to_dataclass(rows, InstanceRow)


def insert_instance(
    revision_id: int, ordinal: int, role: str, container_id: str, container_name: str, status: str
) -> InstanceRow:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO instances (revision_id, ordinal, role, container_id, container_name, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (revision_id, ordinal, role, container_id, container_name, status, utc_now()),
        )
        row = conn.execute("SELECT * FROM instances WHERE container_id=?", (container_id,)).fetchone()
        return InstanceRow(**dict(row))


def update_instance_status(container_id: str, status: str) -> None:
    with connect() as conn:
        conn.execute("UPDATE instances SET status=? WHERE container_id=?", (status, container_id))


def update_instance_status_by_name(container_name: str, status: str) -> None:
    with connect() as conn:
        conn.execute("UPDATE instances SET status=? WHERE container_name=?", (status, container_name))


def bump_restart_count(revision_id: int, ordinal: int) -> None:
    with connect() as conn:
        conn.execute(
            "UPDATE instances SET restart_count=restart_count+1 WHERE revision_id=? AND ordinal=?",
            (revision_id, ordinal),
        )


def delete_instance(container_id: str) -> None:
    with connect() as conn:
        conn.execute("DELETE FROM instances WHERE container_id=?", (container_id,))


def get_resource(resource_id: str) -> ResourceRow | None:
    with connect() as conn:
        row = conn.execute("SELECT * FROM resources WHERE id=?", (resource_id,)).fetchone()
        return ResourceRow(**dict(row)) if row else None


def upsert_resource(resource_id: str, kind: str, depends_on: list[str], attributes: dict[str, Any]) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO resources (id, kind, depends_on, attributes, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
              depends_on=excluded.depends_on,
              attributes=excluded.attributes,
              updated_at=excluded.updated_at
            """,
            (resource_id, kind, json.dumps(depends_on), json.dumps(attributes, sort_keys=True), utc_now()),
        )


def delete_resources(*resource_ids: str) -> None:
    with connect() as conn:
        conn.executemany("DELETE FROM resources WHERE id=?", [(rid,) for rid in resource_ids])


def list_resources() -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM resources ORDER BY kind, id").fetchall()
        out = []
        for r in rows:
            d = dict(r)
            d["depends_on"] = json.loads(d["depends_on"])
            d["attributes"] = json.loads(d["attributes"])
            out.append(d)
        return out


def get_image_digest(repository: str, tag: str) -> str | None:
    with connect() as conn:
        row = conn.execute(
            "SELECT digest FROM image_tags WHERE repository=? AND tag=?", (repository, tag)
        ).fetchone()
        return row["digest"] if row else None


def insert_image_tag(repository: str, tag: str, digest: str) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT OR IGNORE INTO image_tags (repository, tag, digest, created_at) VALUES (?, ?, ?, ?)",
            (repository, tag, digest, utc_now()),
        )


def move_image_tag(repository: str, tag: str, digest: str) -> None:
    with connect() as conn:
        conn.execute(
            "UPDATE image_tags SET digest=?, created_at=? WHERE repository=? AND tag=?",
            (digest, utc_now(), repository, tag),
        )


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
