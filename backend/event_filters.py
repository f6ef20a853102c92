from __future__ import annotations

import functools
import os
from datetime import datetime, timezone, tzinfo
from typing import Iterable, Optional

from event_models import Event, ExtractedFilters
from event_window import local_timezone, parse_datetime
from geo import DEFAULT_CENTER, Location, distance_miles

DEFAULT_TIE_THRESHOLD = 1.0

DISTANCE_WEIGHT = 0.4
PAST_EVENT_PENALTY = -50.0
WITHIN_WEEK_BONUS = 30.0
WITHIN_MONTH_BONUS = 15.0
FREE_BONUS = 5.0


def _day_bounds(filters: ExtractedFilters, tz: tzinfo) -> tuple[Optional[datetime], Optional[datetime]]:
    start = parse_datetime(filters.date_start, tz=tz) if filters.date_start else None
    end = parse_datetime(filters.date_end, tz=tz) if filters.date_end else None
    if start is not None:
        start = start.replace(hour=0, minute=0, second=0, microsecond=0)
    if end is not None:
        end = end.replace(hour=23, minute=59, second=59, microsecond=999000)
    return start, end


def _searchable_text(ev: Event) -> str:
    parts = [ev.name, ev.description, ev.short_description, ev.location_name, *ev.themes, *ev.categories]
    return " ".join(p for p in parts if p).lower()


def filter_events_with_filters(
    events: Iterable[Event],
    filters: ExtractedFilters,
    user_location: Optional[Location] = None,
    *,
    tz: Optional[tzinfo] = None,
) -> list[Event]:
    """
    Apply extracted filters to a corpus.

    Hard constraints (dates, isFree, isAccessible) must match exactly. Themes,
    categories and keywords each match when the event hits any listed value.
    Every active constraint must pass; with none active, the input is returned.
    `user_location` is accepted for symmetry with ranking and is not used here.
    """
    out = list(events)

    if filters.date_start or filters.date_end:
        start_boundary, end_boundary = _day_bounds(filters, tz or local_timezone())

        def _in_range(ev: Event) -> bool:
            ev_start = parse_datetime(ev.start_date, tz=tz)
            ev_end = parse_datetime(ev.end_date, tz=tz)
            if ev_start is None or ev_end is None:
                return False
            if start_boundary is not None and ev_end < start_boundary:
                return False
            if end_boundary is not None and ev_start > end_boundary:
                return False
            return True

        out = [ev for ev in out if _in_range(ev)]

    if filters.is_free is not None:
        out = [ev for ev in out if ev.is_free == filters.is_free]

    if filters.is_accessible is not None:
        out = [ev for ev in out if ev.is_accessible == filters.is_accessible]

    if filters.themes:
        wanted_themes = set(filters.themes)
        out = [ev for ev in out if any(t in wanted_themes for t in ev.themes)]

    if filters.categories:
        wanted_categories = set(filters.categories)
        out = [ev for ev in out if any(c in wanted_categories for c in ev.categories)]

    if filters.keywords:
        needles = [k.lower() for k in filters.keywords if k]
        if needles:
            out = [ev for ev in out if any(n in _searchable_text(ev) for n in needles)]

    return out


def tie_threshold_from_env() -> float:
    raw = (os.getenv("RANK_TIE_THRESHOLD") or "").strip()
    try:
        v = float(raw) if raw else DEFAULT_TIE_THRESHOLD
    except ValueError:
        return DEFAULT_TIE_THRESHOLD
    return v if v >= 0 else DEFAULT_TIE_THRESHOLD


def score_event(ev: Event, reference: Location, *, now: datetime) -> tuple[float, float]:
    """Return (score, distance_miles) for one candidate."""
    distance = distance_miles(reference, ev.location)
    score = max(0.0, 100.0 - distance * 10.0) * DISTANCE_WEIGHT

    start = parse_datetime(ev.start_date)
    if start is not None:
        days_until_start = (start - now).total_seconds() / 86400.0
        if days_until_start < 0:
            score += PAST_EVENT_PENALTY
        elif days_until_start <= 7:
            score += WITHIN_WEEK_BONUS
        elif days_until_start <= 30:
            score += WITHIN_MONTH_BONUS

    if ev.is_free:
        score += FREE_BONUS
    return score, distance


def rank_and_limit_events(
    events: Iterable[Event],
    max_results: int,
    user_location: Optional[Location] = None,
    *,
    now: Optional[datetime] = None,
    tie_threshold: Optional[float] = None,
) -> list[Event]:
    """
    Score by distance, start proximity and price, return the top `max_results`.

    Scores within `tie_threshold` points of each other count as a tie and are
    ordered by distance instead.
    """
    reference = user_location or DEFAULT_CENTER
    when = parse_datetime(now) if now is not None else datetime.now(timezone.utc)
    threshold = tie_threshold if tie_threshold is not None else tie_threshold_from_env()

    scored = [(ev, *score_event(ev, reference, now=when)) for ev in events]  # type: ignore[arg-type]

    def _compare(a: tuple[Event, float, float], b: tuple[Event, float, float]) -> int:
        _, a_score, a_dist = a
        _, b_score, b_dist = b
        if abs(a_score - b_score) > threshold:
            return -1 if a_score > b_score else 1
        if a_dist == b_dist:
            return 0
        return -1 if a_dist < b_dist else 1

    scored.sort(key=functools.cmp_to_key(_compare))
    return [ev for ev, _, _ in scored[: max(0, int(max_results))]]


def _short_date(dt: datetime) -> str:
    return f"{dt:%b} {dt.day}"


def generate_event_summary(ev: Event) -> str:
    """Compact one-line description used as model context."""
    parts = [ev.name]

    start = parse_datetime(ev.start_date)
    end = parse_datetime(ev.end_date)
    if start is not None and end is not None:
        if start.date() == end.date():
            parts.append(f"({_short_date(start)})")
        else:
            parts.append(f"({_short_date(start)} - {_short_date(end)})")

    parts.append(f"at {ev.location_name}")

    if ev.is_free:
        parts.append("(Free)")
    elif ev.price:
        parts.append(f"({ev.price})")

    if ev.categories:
        parts.append(f"[{ev.categories[0]}]")
    return " ".join(parts)
