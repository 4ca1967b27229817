from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from taskfeed.classifier import is_assessment
from taskfeed.feed_parser import FeedEntry
from taskfeed.models import (
    Event,
    Source,
    SourceDescriptor,
    StoreSnapshot,
    Task,
    event_id_for_task,
    new_token,
    serialize_datetime,
    task_id_for_event,
    utc_now,
)


ASSESSMENT_TITLE_PREFIX = "📚 "


@dataclass
class MergeOutcome:
    snapshot: StoreSnapshot
    imported_events: int
    created_tasks: int
    skipped_expired: int
    skipped_ignored: int


@dataclass
class TaskDeletion:
    snapshot: StoreSnapshot
    task: Task
    ignored_event_id: str | None


def _upsert(records: list, record: object) -> bool:
    """Replace the record with the same id in place, or append it. True on append."""
    record_id = getattr(record, "id")
    for index, existing in enumerate(records):
        if existing.id == record_id:
            records[index] = record
            return False
    records.append(record)
    return True


def _derived_task(entry: FeedEntry, event: Event, source: SourceDescriptor, created_at: str) -> Task:
    return Task(
        id=task_id_for_event(event.id),
        title=f"{ASSESSMENT_TITLE_PREFIX}{entry.title}",
        due_date=event.date,
        description=f"Auto-imported from {source.name}\n\n{entry.description}",
        completed=False,
        from_calendar=True,
        is_all_day=entry.is_all_day,
        created_at=created_at,
    )


def _touch_source(snapshot: StoreSnapshot, source: SourceDescriptor, synced_at: str) -> None:
    if not source.url:
        return
    for existing in snapshot.sources:
        if existing.url == source.url:
            existing.last_sync = synced_at
            return
    snapshot.sources.append(
        Source(id=new_token(), name=source.name, url=source.url, last_sync=synced_at)
    )


def merge_feed(
    snapshot: StoreSnapshot,
    entries: Iterable[FeedEntry],
    source: SourceDescriptor,
    *,
    cutoff: datetime,
    now: datetime | None = None,
) -> MergeOutcome:
    merged = snapshot.clone()
    stamp = serialize_datetime(now or utc_now()) or ""
    ignored = set(merged.ignored_event_ids)
    ignored_task_ids = {task_id_for_event(event_id) for event_id in ignored}
    merged.events = [event for event in merged.events if event.id not in ignored]
    merged.tasks = [task for task in merged.tasks if task.id not in ignored_task_ids]
    imported_events = 0
    created_tasks = 0
    skipped_expired = 0
    skipped_ignored = 0

    for entry in entries:
        if entry.start < cutoff:
            skipped_expired += 1
            continue
        if entry.external_id and entry.external_id in ignored:
            skipped_ignored += 1
            continue

        event = Event(
            id=entry.external_id or new_token("event-"),
            title=entry.title,
            date=entry.date_text,
            description=entry.description,
            source_name=source.name,
        )
        _upsert(merged.events, event)
        imported_events += 1

        if is_assessment(entry.title, entry.description):
            if _upsert(merged.tasks, _derived_task(entry, event, source, stamp)):
                created_tasks += 1

    _touch_source(merged, source, stamp)
    return MergeOutcome(
        snapshot=merged,
        imported_events=imported_events,
        created_tasks=created_tasks,
        skipped_expired=skipped_expired,
        skipped_ignored=skipped_ignored,
    )


def delete_task(snapshot: StoreSnapshot, task_id: str) -> TaskDeletion:
    task = snapshot.find_task(task_id)
    if task is None:
        raise KeyError(task_id)
    updated = snapshot.clone()
    updated.tasks = [item for item in updated.tasks if item.id != task_id]
    ignored_event_id = None
    if task.from_calendar:
        ignored_event_id = event_id_for_task(task_id)
        updated.events = [event for event in updated.events if event.id != ignored_event_id]
        if ignored_event_id not in updated.ignored_event_ids:
            updated.ignored_event_ids.append(ignored_event_id)
    return TaskDeletion(snapshot=updated, task=task, ignored_event_id=ignored_event_id)


def add_task(
    snapshot: StoreSnapshot,
    *,
    title: str,
    due_date: str | None = None,
    description: str = "",
    now: datetime | None = None,
) -> tuple[StoreSnapshot, Task]:
    title_text = str(title or "").strip()
    if not title_text:
        raise ValueError("Task title is required.")
    task = Task(
        id=new_token(),
        title=title_text,
        due_date=str(due_date or "").strip() or None,
        description=str(description or "").strip(),
        completed=False,
        from_calendar=False,
        created_at=serialize_datetime(now or utc_now()) or "",
    )
    updated = snapshot.clone()
    updated.tasks.append(task)
    return updated, task


def update_task(
    snapshot: StoreSnapshot,
    task_id: str,
    *,
    title: str,
    due_date: str | None = None,
    description: str = "",
) -> tuple[StoreSnapshot, Task]:
    title_text = str(title or "").strip()
    if not title_text:
        raise ValueError("Task title is required.")
    updated = snapshot.clone()
    task = updated.find_task(task_id)
    if task is None:
        raise KeyError(task_id)
    task.title = title_text
    task.due_date = str(due_date or "").strip() or None
    task.description = str(description or "").strip()
    return updated, task


def toggle_task(snapshot: StoreSnapshot, task_id: str) -> tuple[StoreSnapshot, Task]:
    updated = snapshot.clone()
    task = updated.find_task(task_id)
    if task is None:
        raise KeyError(task_id)
    task.completed = not task.completed
    return updated, task


def delete_completed(snapshot: StoreSnapshot) -> tuple[StoreSnapshot, int]:
    updated = snapshot.clone()
    remaining = [task for task in updated.tasks if not task.completed]
    removed = len(updated.tasks) - len(remaining)
    updated.tasks = remaining
    return updated, removed


def remove_source(snapshot: StoreSnapshot, source_id: str) -> tuple[StoreSnapshot, Source]:
    source = snapshot.find_source(source_id)
    if source is None:
        raise KeyError(source_id)
    updated = snapshot.clone()
    updated.sources = [item for item in updated.sources if item.id != source_id]
    return updated, source


def prune_expired(snapshot: StoreSnapshot, cutoff: datetime) -> tuple[StoreSnapshot, int]:
    """Drop events and dated tasks before the cutoff. Undated tasks always stay."""
    pruned = snapshot.clone()
    kept_events = []
    for event in pruned.events:
        starts_at = event.starts_at
        if starts_at is not None and starts_at < cutoff:
            continue
        kept_events.append(event)
    kept_tasks = []
    for task in pruned.tasks:
        due_at = task.due_at
        if due_at is not None and due_at < cutoff:
            continue
        kept_tasks.append(task)
    removed = (len(pruned.events) - len(kept_events)) + (len(pruned.tasks) - len(kept_tasks))
    pruned.events = kept_events
    pruned.tasks = kept_tasks
    return pruned, removed
