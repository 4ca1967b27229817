from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any


DEFAULT_RETENTION_CUTOFF = "2026-01-01"
TASK_ID_PREFIX = "task-"
LOCAL_MINUTE_FORMAT = "%Y-%m-%dT%H:%M"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def format_local_date(value: date) -> str:
    return value.strftime("%Y-%m-%d")


def format_local_minute(value: datetime) -> str:
    return value.strftime(LOCAL_MINUTE_FORMAT)


def parse_local_datetime(value: str | None) -> datetime | None:
    """Parse a stored date string into a naive local wall-clock datetime.

    Accepts the date-only form (``YYYY-MM-DD``, read as local midnight) and
    the minute form (``YYYY-MM-DDTHH:MM``). Offsets are dropped: stored dates
    are already local. Returns None for empty or unparseable values.
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1]
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed.replace(tzinfo=None)


def parse_cutoff(value: str | date | None) -> datetime:
    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime.combine(value, time.min)
    text = str(value or "").strip()
    try:
        return datetime.combine(date.fromisoformat(text[:10]), time.min)
    except ValueError:
        return datetime.combine(date.fromisoformat(DEFAULT_RETENTION_CUTOFF), time.min)


def new_token(prefix: str = "") -> str:
    token = uuid.uuid4().hex
    return f"{prefix}{token}" if prefix else token


def task_id_for_event(event_id: str) -> str:
    return f"{TASK_ID_PREFIX}{event_id}"


def event_id_for_task(task_id: str) -> str:
    if task_id.startswith(TASK_ID_PREFIX):
        return task_id[len(TASK_ID_PREFIX) :]
    return task_id


def _optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass
class FeedsConfig:
    proxies: list[str] = field(default_factory=list)
    timeout_seconds: int = 30
    user_agent: str = "taskfeed/0.1"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "FeedsConfig":
        data = data or {}
        raw_proxies = data.get("proxies") or []
        if isinstance(raw_proxies, str):
            raw_proxies = [raw_proxies]
        return cls(
            proxies=[str(x).strip() for x in raw_proxies if str(x).strip()],
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            user_agent=str(data.get("user_agent", "taskfeed/0.1")).strip() or "taskfeed/0.1",
        )


@dataclass
class RemoteConfig:
    base_url: str = ""
    record_path: str = "app/shared-data"
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RemoteConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            record_path=str(data.get("record_path", "app/shared-data")).strip().strip("/")
            or "app/shared-data",
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 0
    timezone: str = ""
    retention_cutoff: str = DEFAULT_RETENTION_CUTOFF

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        interval = int(data.get("interval_seconds", 0) or 0)
        cutoff = str(data.get("retention_cutoff", DEFAULT_RETENTION_CUTOFF)).strip()
        try:
            date.fromisoformat(cutoff)
        except ValueError:
            cutoff = DEFAULT_RETENTION_CUTOFF
        return cls(
            interval_seconds=0 if interval <= 0 else max(60, interval),
            timezone=str(data.get("timezone", "")).strip(),
            retention_cutoff=cutoff,
        )

    @property
    def cutoff(self) -> datetime:
        return parse_cutoff(self.retention_cutoff)


@dataclass
class AppConfig:
    feeds: FeedsConfig = field(default_factory=FeedsConfig)
    remote: RemoteConfig = field(default_factory=RemoteConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            feeds=FeedsConfig.from_dict(data.get("feeds")),
            remote=RemoteConfig.from_dict(data.get("remote")),
            sync=SyncConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class Event:
    id: str
    title: str = ""
    date: str = ""
    description: str = ""
    source_name: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Event":
        source_name = data.get("sourceName", data.get("source"))
        return cls(
            id=str(data.get("id", "")).strip(),
            title=str(data.get("title", "") or ""),
            date=str(data.get("date", "") or ""),
            description=str(data.get("description", "") or ""),
            source_name=_optional_text(source_name),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "date": self.date,
            "description": self.description,
        }
        if self.source_name is not None:
            payload["sourceName"] = self.source_name
        return payload

    @property
    def starts_at(self) -> datetime | None:
        return parse_local_datetime(self.date)


@dataclass
class Task:
    id: str
    title: str
    due_date: str | None = None
    description: str = ""
    completed: bool = False
    from_calendar: bool = False
    is_all_day: bool | None = None
    created_at: str = field(default_factory=lambda: serialize_datetime(utc_now()) or "")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        is_all_day = data.get("isAllDay")
        return cls(
            id=str(data.get("id", "")).strip(),
            title=str(data.get("title", "") or ""),
            due_date=_optional_text(data.get("dueDate")),
            description=str(data.get("description", "") or ""),
            completed=bool(data.get("completed", False)),
            from_calendar=bool(data.get("fromCalendar", False)),
            is_all_day=None if is_all_day is None else bool(is_all_day),
            created_at=str(data.get("createdAt", "") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "dueDate": self.due_date,
            "description": self.description,
            "completed": self.completed,
            "fromCalendar": self.from_calendar,
            "createdAt": self.created_at,
        }
        if self.is_all_day is not None:
            payload["isAllDay"] = self.is_all_day
        return payload

    @property
    def due_at(self) -> datetime | None:
        return parse_local_datetime(self.due_date)

    @property
    def event_id(self) -> str | None:
        if not self.from_calendar:
            return None
        return event_id_for_task(self.id)


@dataclass
class Source:
    id: str
    name: str
    url: str | None = None
    last_sync: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Source":
        return cls(
            id=str(data.get("id", "")).strip(),
            name=str(data.get("name", "") or ""),
            url=_optional_text(data.get("url")),
            last_sync=str(data.get("lastSync", "") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "lastSync": self.last_sync,
        }


@dataclass
class SourceDescriptor:
    name: str
    url: str | None = None
    type: str = "url"

    @classmethod
    def for_url(cls, url: str, name: str) -> "SourceDescriptor":
        return cls(name=name, url=url, type="url")

    @classmethod
    def for_file(cls, name: str) -> "SourceDescriptor":
        return cls(name=name, url=None, type="file")


def _records(raw: Any, factory: Any) -> list[Any]:
    if not isinstance(raw, list):
        return []
    output = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        record = factory(item)
        if record.id:
            output.append(record)
    return output


def _unique_ids(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    seen: set[str] = set()
    output: list[str] = []
    for item in raw:
        value = str(item).strip()
        if not value or value in seen:
            continue
        seen.add(value)
        output.append(value)
    return output


@dataclass
class StoreSnapshot:
    events: list[Event] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    sources: list[Source] = field(default_factory=list)
    ignored_event_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StoreSnapshot":
        data = data or {}
        ignored = data.get("ignoredEventIds", data.get("ignoredEvents"))
        return cls(
            events=_records(data.get("events"), Event.from_dict),
            tasks=_records(data.get("tasks"), Task.from_dict),
            sources=_records(data.get("sources"), Source.from_dict),
            ignored_event_ids=_unique_ids(ignored),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "events": [event.to_dict() for event in self.events],
            "tasks": [task.to_dict() for task in self.tasks],
            "sources": [source.to_dict() for source in self.sources],
            "ignoredEventIds": list(self.ignored_event_ids),
        }

    def clone(self) -> "StoreSnapshot":
        return StoreSnapshot.from_dict(self.to_dict())

    def find_event(self, event_id: str) -> Event | None:
        return next((event for event in self.events if event.id == event_id), None)

    def find_task(self, task_id: str) -> Task | None:
        return next((task for task in self.tasks if task.id == task_id), None)

    def find_source(self, source_id: str) -> Source | None:
        return next((source for source in self.sources if source.id == source_id), None)


@dataclass
class SyncBatchResult:
    trigger: str
    succeeded: int = 0
    failed: int = 0
    imported_events: int = 0
    created_tasks: int = 0
    errors: dict[str, str] = field(default_factory=dict)
    duration_ms: int = 0
    run_at: datetime = field(default_factory=utc_now)

    @property
    def status(self) -> str:
        if self.failed and not self.succeeded:
            return "error"
        if self.failed:
            return "partial"
        if not self.succeeded:
            return "skipped"
        return "success"

    @property
    def message(self) -> str:
        return f"{self.succeeded} succeeded, {self.failed} failed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "trigger": self.trigger,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "imported_events": self.imported_events,
            "created_tasks": self.created_tasks,
            "errors": dict(self.errors),
            "duration_ms": self.duration_ms,
            "run_at": serialize_datetime(self.run_at),
        }
