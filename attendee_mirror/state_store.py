from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from attendee_mirror.models import NEXT_SYNC_TOKEN_KEY


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS sync_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_at TEXT NOT NULL,
    trigger TEXT NOT NULL,
    status TEXT NOT NULL,
    message TEXT,
    duration_ms INTEGER NOT NULL DEFAULT 0,
    changes_applied INTEGER NOT NULL DEFAULT 0,
    failures INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS audit_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER,
    created_at TEXT NOT NULL,
    calendar_id TEXT NOT NULL,
    event_id TEXT NOT NULL,
    action TEXT NOT NULL,
    details_json TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS app_meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    """SQLite file holding run history, the audit trail and small key/value settings."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        with self._lock, self._connect() as conn:
            conn.executescript(SCHEMA_SQL)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _write(self, sql: str, params: tuple[Any, ...]) -> sqlite3.Cursor:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor

    def _read(self, sql: str, params: tuple[Any, ...]) -> list[sqlite3.Row]:
        with self._lock, self._connect() as conn:
            return conn.execute(sql, params).fetchall()

    def start_sync_run(self, *, trigger: str, message: str = "running") -> int:
        cursor = self._write(
            "INSERT INTO sync_runs(run_at, trigger, status, message) VALUES (?, ?, 'running', ?)",
            (_utc_now(), trigger, message),
        )
        return int(cursor.lastrowid)

    def finish_sync_run(
        self,
        *,
        run_id: int,
        status: str,
        message: str,
        duration_ms: int,
        changes_applied: int,
        failures: int,
    ) -> None:
        self._write(
            """
            UPDATE sync_runs
            SET status = ?, message = ?, duration_ms = ?, changes_applied = ?, failures = ?
            WHERE id = ?
            """,
            (status, message, int(duration_ms), int(changes_applied), int(failures), int(run_id)),
        )

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        rows = self._read("SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (max(1, limit),))
        return [dict(row) for row in rows]

    def record_audit_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        action: str,
        details: dict[str, Any],
        run_id: int | None = None,
    ) -> None:
        self._write(
            """
            INSERT INTO audit_events(run_id, created_at, calendar_id, event_id, action, details_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (run_id, _utc_now(), calendar_id, event_id, action, json.dumps(details, ensure_ascii=False)),
        )

    def recent_audit_events(self, limit: int = 100, run_id: int | None = None) -> list[dict[str, Any]]:
        where, params = ("", ()) if run_id is None else ("WHERE run_id = ?", (int(run_id),))
        rows = self._read(
            f"SELECT * FROM audit_events {where} ORDER BY id DESC LIMIT ?",
            params + (max(1, limit),),
        )
        events = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            events.append(item)
        return events

    def set_meta(self, key: str, value: str) -> None:
        self._write(
            """
            INSERT INTO app_meta(key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (str(key), str(value), _utc_now()),
        )

    def get_meta(self, key: str) -> str | None:
        rows = self._read("SELECT value FROM app_meta WHERE key = ?", (str(key),))
        return str(rows[0]["value"]) if rows else None

    def delete_meta(self, key: str) -> bool:
        return self._write("DELETE FROM app_meta WHERE key = ?", (str(key),)).rowcount > 0


class SyncCursorStore:
    """The persisted nextSyncToken; an absent row means the calendar was never bootstrapped."""

    def __init__(self, state_store: StateStore, key: str = NEXT_SYNC_TOKEN_KEY) -> None:
        self.state_store = state_store
        self.key = key

    def get(self) -> str | None:
        value = self.state_store.get_meta(self.key)
        return value or None

    def set(self, token: str) -> None:
        self.state_store.set_meta(self.key, token)

    def clear(self) -> bool:
        return self.state_store.delete_meta(self.key)
