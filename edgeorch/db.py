from __future__ import annotations

import os
import sqlite3
from datetime import datetime, timezone
from typing import Any

from .models import TargetState, state_hash
from .settings import settings


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path(path: str | None = None) -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (docker creates one for a missing
    bind-mounted file), the DB file is placed inside it.
    """

    p = os.path.abspath(path or settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "edgeorch.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect(path: str | None = None) -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(path: str | None = None) -> None:
    """Create tables if they do not exist."""
    with connect(path) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS snapshots (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              type TEXT NOT NULL, -- target
              state TEXT NOT NULL,
              state_hash TEXT NOT NULL,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              event TEXT,
              service_name TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_snapshots_type ON snapshots(type);
            """
        )


def log_event(
    level: str,
    message: str,
    event: str | None = None,
    service_name: str | None = None,
    path: str | None = None,
) -> None:
    with connect(path) as conn:
        conn.execute(
            "INSERT INTO events (ts, level, event, service_name, message) VALUES (?, ?, ?, ?, ?)",
            (utc_now(), level.upper(), event, service_name, message),
        )


def latest_events(limit: int = 100, path: str | None = None) -> list[dict[str, Any]]:
    with connect(path) as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


def last_target_hash(path: str | None = None) -> str | None:
    with connect(path) as conn:
        row = conn.execute(
            "SELECT state_hash FROM snapshots WHERE type='target' ORDER BY id DESC LIMIT 1"
        ).fetchone()
        return row["state_hash"] if row else None


def save_target_state(state: TargetState, path: str | None = None) -> bool:
    """Persist the target state; returns False if it equals the stored one."""
    h = state_hash(state)
    if h == last_target_hash(path):
        return False
    with connect(path) as conn:
        conn.execute("DELETE FROM snapshots WHERE type='target'")
        conn.execute(
            "INSERT INTO snapshots (type, state, state_hash, created_at) VALUES ('target', ?, ?, ?)",
            (state.model_dump_json(by_alias=True), h, utc_now()),
        )
    return True


def load_target_state(path: str | None = None) -> TargetState | None:
    with connect(path) as conn:
        row = conn.execute(
            "SELECT state FROM snapshots WHERE type='target' ORDER BY id DESC LIMIT 1"
        ).fetchone()
    if not row:
        return None
    return TargetState.model_validate_json(row["state"])
