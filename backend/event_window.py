from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from typing import Any, Callable, Iterable, Optional, TypeVar

from dateutil.relativedelta import relativedelta

from event_models import Event

"""
Rolling time-window filtering, start-date ordering and name-based dedup.

The window helpers take start/end accessors so they work for any dated item,
not only Events.
"""

T = TypeVar("T")
DateAccessor = Callable[[T], Any]

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
DEFAULT_HORIZON = relativedelta(months=1)


def local_timezone() -> tzinfo:
    return datetime.now().astimezone().tzinfo or timezone.utc


def parse_datetime(value: Any, *, tz: Optional[tzinfo] = None) -> Optional[datetime]:
    """
    Parse an ISO-8601 date or datetime. Returns None when unparsable.
    Naive values are taken to be in `tz` (server local time by default).
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if not s:
            return None
        try:
            dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=tz or local_timezone())
    return dt


def falls_within_range(
    start: Optional[datetime],
    end: Optional[datetime],
    window_start: datetime,
    window_end: datetime,
) -> bool:
    """Inclusive interval overlap; a missing boundary borrows the other one."""
    if start is None and end is None:
        return False
    s = start if start is not None else end
    e = end if end is not None else start
    return e >= window_start and s <= window_end  # type: ignore[operator]


def effective_start(item: T, get_start: DateAccessor, get_end: DateAccessor) -> datetime:
    return parse_datetime(get_start(item)) or parse_datetime(get_end(item)) or EPOCH


def sort_by_start_date(items: Iterable[T], get_start: DateAccessor, get_end: DateAccessor) -> list[T]:
    """Stable ascending sort; missing start falls back to end, then to the epoch."""
    return sorted(items, key=lambda it: effective_start(it, get_start, get_end))


def filter_within_window(
    items: Iterable[T],
    get_start: DateAccessor,
    get_end: DateAccessor,
    *,
    now: Optional[datetime] = None,
    horizon: relativedelta = DEFAULT_HORIZON,
) -> list[T]:
    """
    Keep items whose [start, end] overlaps [now, now + horizon], sorted by start.
    Items with neither date parsable are dropped.
    """
    window_start = parse_datetime(now) if now is not None else datetime.now(timezone.utc)
    window_end = window_start + horizon  # type: ignore[operator]

    kept = [
        it
        for it in items
        if falls_within_range(parse_datetime(get_start(it)), parse_datetime(get_end(it)), window_start, window_end)  # type: ignore[arg-type]
    ]
    return sort_by_start_date(kept, get_start, get_end)


def filter_events_within_next_month(events: Iterable[Event], *, now: Optional[datetime] = None) -> list[Event]:
    return filter_within_window(events, lambda e: e.start_date, lambda e: e.end_date, now=now)


def dedupe_key(name: str) -> str:
    return (name or "").strip().lower()


def dedupe_events_by_name(events: Iterable[Event]) -> list[Event]:
    """
    One event per case-insensitive trimmed name: the earliest valid start wins,
    first-seen wins ties. A candidate with an unparsable start never replaces
    an entry already kept for its name.
    """
    kept: dict[str, Event] = {}
    for ev in events:
        key = dedupe_key(ev.name)
        existing = kept.get(key)
        if existing is None:
            kept[key] = ev
            continue
        candidate_start = parse_datetime(ev.start_date)
        if candidate_start is None:
            continue
        existing_start = parse_datetime(existing.start_date)
        if existing_start is None or candidate_start < existing_start:
            kept[key] = ev
    return sort_by_start_date(kept.values(), lambda e: e.start_date, lambda e: e.end_date)
