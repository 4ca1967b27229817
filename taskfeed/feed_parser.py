from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, tzinfo
from typing import Any, Iterator
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from icalendar import Calendar as ICalendar

from taskfeed.errors import FormatError
from taskfeed.models import format_local_date, format_local_minute


@dataclass(frozen=True)
class FeedEntry:
    external_id: str | None
    title: str
    start: datetime
    is_all_day: bool
    description: str

    @property
    def date_text(self) -> str:
        if self.is_all_day:
            return format_local_date(self.start.date())
        return format_local_minute(self.start)


def resolve_timezone(name: str | None) -> tzinfo | None:
    """Return the configured zone, or None to mean the host's local zone."""
    text = str(name or "").strip()
    if not text:
        return None
    try:
        return ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {text}") from exc


def _decode_text(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data or "")


def to_local_start(value: date | datetime, local_tz: tzinfo | None) -> tuple[datetime, bool]:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(local_tz) if local_tz is not None else value.astimezone()
        return value.replace(tzinfo=None, second=0, microsecond=0), False
    return datetime.combine(value, time.min), True


class FeedDocument:
    """A parsed calendar feed.

    Iterating yields one FeedEntry per VEVENT in document order. The walk is
    lazy and starts over on every iteration.
    """

    def __init__(self, calendar_obj: ICalendar, local_tz: tzinfo | None = None) -> None:
        self._calendar = calendar_obj
        self._local_tz = local_tz

    def __iter__(self) -> Iterator[FeedEntry]:
        for component in self._calendar.walk("VEVENT"):
            entry = self._entry(component)
            if entry is not None:
                yield entry

    def _entry(self, component: Any) -> FeedEntry | None:
        dtstart = component.get("DTSTART")
        try:
            raw_start = dtstart.dt
        except (AttributeError, ValueError):
            # missing or unparseable start
            return None
        if not isinstance(raw_start, (date, datetime)):
            return None
        start, is_all_day = to_local_start(raw_start, self._local_tz)
        uid = str(component.get("UID", "") or "").strip()
        return FeedEntry(
            external_id=uid or None,
            title=str(component.get("SUMMARY", "") or "").strip(),
            start=start,
            is_all_day=is_all_day,
            description=str(component.get("DESCRIPTION", "") or "").strip(),
        )


def parse_feed(raw_data: str | bytes, tz: tzinfo | None = None) -> FeedDocument:
    text = _decode_text(raw_data)
    if not text.strip():
        raise FormatError("Feed is empty.")
    try:
        calendar_obj = ICalendar.from_ical(text)
    except (ValueError, IndexError, KeyError) as exc:
        raise FormatError(f"Feed is not a valid iCalendar document: {exc}") from exc
    if str(getattr(calendar_obj, "name", "")).upper() != "VCALENDAR":
        raise FormatError("Parsed data is not a valid iCalendar (VCALENDAR) object.")
    return FeedDocument(calendar_obj, tz)
