from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from taskfeed.models import StoreSnapshot, serialize_datetime, utc_now


BACKUP_VERSION = 1.0


def export_backup(snapshot: StoreSnapshot, now: datetime | None = None) -> dict[str, Any]:
    payload = snapshot.to_dict()
    return {
        "events": payload["events"],
        "tasks": payload["tasks"],
        "sources": payload["sources"],
        "ignoredEvents": payload["ignoredEventIds"],
        "version": BACKUP_VERSION,
        "exportedAt": serialize_datetime(now or utc_now()),
    }


def backup_filename(now: datetime | None = None) -> str:
    return f"calendar-backup-{(now or utc_now()).date().isoformat()}.json"


def parse_backup(raw: str | bytes | dict[str, Any]) -> StoreSnapshot:
    if isinstance(raw, dict):
        data = raw
    else:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise ValueError("Invalid backup file: not JSON.") from exc
    if not isinstance(data, dict):
        raise ValueError("Invalid backup file: root must be an object.")
    return StoreSnapshot.from_dict(data)
