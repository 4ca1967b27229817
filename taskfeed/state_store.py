from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from taskfeed.models import StoreSnapshot, SyncBatchResult, serialize_datetime


# Snapshot collections live under independent keys, one row each.
SNAPSHOT_KEYS = {
    "events": "calendarEvents",
    "tasks": "tasks",
    "sources": "calendarSources",
    "ignoredEventIds": "ignoredEvents",
}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS snapshot_entries (
            key TEXT PRIMARY KEY,
            value_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            run_at TEXT NOT NULL,
            trigger TEXT NOT NULL,
            status TEXT NOT NULL,
            message TEXT,
            duration_ms INTEGER NOT NULL,
            succeeded INTEGER NOT NULL,
            failed INTEGER NOT NULL,
            imported_events INTEGER NOT NULL,
            created_tasks INTEGER NOT NULL,
            errors_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS audit_events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            scope TEXT NOT NULL,
            subject_id TEXT NOT NULL,
            action TEXT NOT NULL,
            details_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS app_meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def load_snapshot(self) -> StoreSnapshot:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT key, value_json
                    FROM snapshot_entries
                    """
                ).fetchall()
        stored = {str(row["key"]): row["value_json"] for row in rows}
        payload: dict[str, Any] = {}
        for field_name, key in SNAPSHOT_KEYS.items():
            raw = stored.get(key)
            if raw is None:
                continue
            try:
                payload[field_name] = json.loads(raw)
            except json.JSONDecodeError:
                payload[field_name] = []
        return StoreSnapshot.from_dict(payload)

    def save_snapshot(self, snapshot: StoreSnapshot) -> None:
        payload = snapshot.to_dict()
        updated_at = _utc_now()
        rows = [
            (key, json.dumps(payload[field_name], ensure_ascii=False), updated_at)
            for field_name, key in SNAPSHOT_KEYS.items()
        ]
        with self._lock:
            with self._connect() as conn:
                conn.executemany(
                    """
                    INSERT INTO snapshot_entries(key, value_json, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value_json = excluded.value_json,
                        updated_at = excluded.updated_at
                    """,
                    rows,
                )
                conn.commit()

    def record_sync_run(self, result: SyncBatchResult) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO sync_runs(
                        run_at, trigger, status, message, duration_ms,
                        succeeded, failed, imported_events, created_tasks, errors_json
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        serialize_datetime(result.run_at),
                        result.trigger,
                        result.status,
                        result.message,
                        int(result.duration_ms),
                        int(result.succeeded),
                        int(result.failed),
                        int(result.imported_events),
                        int(result.created_tasks),
                        json.dumps(result.errors, ensure_ascii=False),
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def recent_sync_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT id, run_at, trigger, status, message, duration_ms,
                           succeeded, failed, imported_events, created_tasks, errors_json
                    FROM sync_runs
                    ORDER BY id DESC
                    LIMIT ?
                    """,
                    (max(1, limit),),
                ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["errors"] = json.loads(item.pop("errors_json") or "{}")
            output.append(item)
        return output

    def record_audit_event(
        self,
        *,
        scope: str,
        subject_id: str,
        action: str,
        details: dict[str, Any],
    ) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO audit_events(created_at, scope, subject_id, action, details_json)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (_utc_now(), scope, subject_id, action, json.dumps(details, ensure_ascii=False)),
                )
                conn.commit()

    def recent_audit_events(self, limit: int = 100, action: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            with self._connect() as conn:
                if action is None:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, scope, subject_id, action, details_json
                        FROM audit_events
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (max(1, limit),),
                    ).fetchall()
                else:
                    rows = conn.execute(
                        """
                        SELECT id, created_at, scope, subject_id, action, details_json
                        FROM audit_events
                        WHERE action = ?
                        ORDER BY id DESC
                        LIMIT ?
                        """,
                        (str(action), max(1, limit)),
                    ).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["details"] = json.loads(item.pop("details_json") or "{}")
            output.append(item)
        return output

    def set_meta(self, key: str, value: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_meta(key, value, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value = excluded.value,
                        updated_at = excluded.updated_at
                    """,
                    (str(key), str(value), _utc_now()),
                )
                conn.commit()

    def get_meta(self, key: str) -> str | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT value
                    FROM app_meta
                    WHERE key = ?
                    """,
                    (str(key),),
                ).fetchone()
        if row is None:
            return None
        return str(row["value"])
