from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta
from typing import Any, Iterable

from taskfeed.models import StoreSnapshot, Task


TASK_FILTERS = ("all", "active", "completed", "auto", "overdue", "upcoming")
URGENT_WINDOW = timedelta(days=3)


def _date_key(value: str | None) -> str:
    return str(value or "")[:10]


def _sort_key(task: Task) -> tuple[int, int, datetime]:
    due_at = task.due_at
    return (1 if task.completed else 0, 0 if due_at is not None else 1, due_at or datetime.max)


def filter_tasks(tasks: Iterable[Task], task_filter: str = "all", now: datetime | None = None) -> list[Task]:
    """Select and order tasks for the task list: active first, then by due date."""
    if task_filter not in TASK_FILTERS:
        raise ValueError(f"Unknown task filter: {task_filter}")
    current = now or datetime.now()
    selected: list[Task] = []
    for task in tasks:
        due_at = task.due_at
        if task_filter == "active" and task.completed:
            continue
        if task_filter == "completed" and not task.completed:
            continue
        if task_filter == "auto" and not task.from_calendar:
            continue
        if task_filter == "overdue" and (task.completed or due_at is None or due_at >= current):
            continue
        if task_filter == "upcoming" and (task.completed or due_at is None or due_at < current):
            continue
        selected.append(task)
    return sorted(selected, key=_sort_key)


def task_view(task: Task, now: datetime | None = None) -> dict[str, Any]:
    current = now or datetime.now()
    due_at = task.due_at
    view = task.to_dict()
    view["urgent"] = bool(due_at is not None and due_at - current < URGENT_WINDOW)
    view["overdue"] = bool(due_at is not None and not task.completed and due_at < current)
    return view


def month_view(snapshot: StoreSnapshot, year: int, month: int, today: date | None = None) -> dict[str, Any]:
    if not 1 <= month <= 12:
        raise ValueError("month must be between 1 and 12")
    current_day = today or date.today()
    event_counts: dict[str, int] = {}
    for event in snapshot.events:
        key = _date_key(event.date)
        event_counts[key] = event_counts.get(key, 0) + 1
    task_counts: dict[str, int] = {}
    for task in snapshot.tasks:
        if not task.due_date:
            continue
        key = _date_key(task.due_date)
        task_counts[key] = task_counts.get(key, 0) + 1

    # Sunday-first grid, matching the weekday header order.
    leading_blanks = (calendar.weekday(year, month, 1) + 1) % 7
    days = []
    for day in range(1, calendar.monthrange(year, month)[1] + 1):
        key = date(year, month, day).isoformat()
        days.append(
            {
                "date": key,
                "day": day,
                "today": key == current_day.isoformat(),
                "events": event_counts.get(key, 0),
                "tasks": task_counts.get(key, 0),
            }
        )
    return {
        "year": year,
        "month": month,
        "title": date(year, month, 1).strftime("%B %Y"),
        "weekdays": ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"],
        "leading_blanks": leading_blanks,
        "days": days,
    }


def events_on(snapshot: StoreSnapshot, day: date) -> list[dict[str, Any]]:
    key = day.isoformat()
    return [event.to_dict() for event in snapshot.events if _date_key(event.date) == key]
