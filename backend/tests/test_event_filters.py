from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from event_filters import (
    filter_events_with_filters,
    generate_event_summary,
    rank_and_limit_events,
    score_event,
    tie_threshold_from_env,
)
from event_models import Event, ExtractedFilters
from geo import DEFAULT_CENTER, Location

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)
MILES_PER_DEGREE_LAT = 69.0940


def _event(eid: str, **kw) -> Event:
    base = {
        "id": eid,
        "name": f"Event {eid}",
        "location": DEFAULT_CENTER,
        "location_name": "Nathan Phillips Square",
        "start_date": "2025-07-31T18:00:00Z",
        "end_date": "2025-07-31T21:00:00Z",
    }
    base.update(kw)
    return Event(**base)


def _north_of_center(miles: float) -> Location:
    return Location(lat=DEFAULT_CENTER.lat + miles / MILES_PER_DEGREE_LAT, lng=DEFAULT_CENTER.lng)


def _corpus() -> list[Event]:
    events = []
    for i in range(3):
        events.append(_event(f"fm{i}", is_free=True, categories=("Music",)))
    for i in range(2):
        events.append(_event(f"fa{i}", is_free=True, categories=("Arts",)))
    for i in range(5):
        events.append(_event(f"pm{i}", is_free=False, categories=("Music",), is_accessible=i % 2 == 0))
    return events


def test_free_music_filter_matches_exactly_three():
    out = filter_events_with_filters(_corpus(), ExtractedFilters(is_free=True, categories=["Music"]))
    assert sorted(e.id for e in out) == ["fm0", "fm1", "fm2"]


def test_filter_is_conjunction_of_single_constraints():
    corpus = _corpus()
    combined = ExtractedFilters(is_free=False, categories=["Music"], is_accessible=True)
    singles = [
        ExtractedFilters(is_free=False),
        ExtractedFilters(categories=["Music"]),
        ExtractedFilters(is_accessible=True),
    ]
    expected = set(e.id for e in corpus)
    for f in singles:
        expected &= {e.id for e in filter_events_with_filters(corpus, f)}
    assert {e.id for e in filter_events_with_filters(corpus, combined)} == expected == {"pm0", "pm2", "pm4"}


def test_no_criteria_returns_everything():
    corpus = _corpus()
    assert filter_events_with_filters(corpus, ExtractedFilters()) == corpus


def test_date_filter_uses_whole_days_and_drops_unparsable():
    events = [
        _event("overlap", start_date="2025-06-06T20:00:00Z", end_date="2025-06-07T01:00:00Z"),
        _event("late_sunday", start_date="2025-06-08T23:30:00Z", end_date="2025-06-08T23:45:00Z"),
        _event("after", start_date="2025-06-09T00:00:00Z", end_date="2025-06-09T02:00:00Z"),
        _event("bad", start_date="soon", end_date="later"),
    ]
    f = ExtractedFilters(date_start="2025-06-07", date_end="2025-06-08")
    out = filter_events_with_filters(events, f, tz=timezone.utc)
    assert [e.id for e in out] == ["overlap", "late_sunday"]


def test_keywords_match_any_searchable_field_case_insensitively():
    events = [
        _event("name", name="Salsa Night"),
        _event("theme", themes=("Latin Dance",)),
        _event("venue", location_name="SALSA Hall"),
        _event("none", name="Book Fair"),
    ]
    out = filter_events_with_filters(events, ExtractedFilters(keywords=["salsa", "latin"]))
    assert [e.id for e in out] == ["name", "theme", "venue"]


def test_themes_match_any_listed_value():
    events = [_event("a", themes=("Jazz",)), _event("b", themes=("Food",)), _event("c")]
    out = filter_events_with_filters(events, ExtractedFilters(themes=["Food", "Jazz"]))
    assert [e.id for e in out] == ["a", "b"]


def test_rank_limits_and_orders_by_score():
    events = [_event(f"e{i}", location=_north_of_center(0.5 * i)) for i in range(20)]
    events.reverse()
    top = rank_and_limit_events(events, 5, now=NOW, tie_threshold=1.0)
    assert [e.id for e in top] == ["e0", "e1", "e2", "e3", "e4"]
    scores = [score_event(e, DEFAULT_CENTER, now=NOW)[0] for e in top]
    assert scores == sorted(scores, reverse=True)


def test_rank_near_ties_prefer_the_nearer_event():
    near = _event("near", location=_north_of_center(1.0))
    far_free = _event("far_free", location=_north_of_center(2.1), is_free=True)
    near_score = score_event(near, DEFAULT_CENTER, now=NOW)[0]
    far_score = score_event(far_free, DEFAULT_CENTER, now=NOW)[0]
    assert 0 < far_score - near_score <= 1.0

    assert [e.id for e in rank_and_limit_events([far_free, near], 2, now=NOW, tie_threshold=1.0)] == ["near", "far_free"]
    assert [e.id for e in rank_and_limit_events([near, far_free], 2, now=NOW, tie_threshold=0.0)] == ["far_free", "near"]


def test_rank_is_deterministic_and_uses_user_location():
    events = [_event(f"e{i}", location=_north_of_center(i)) for i in range(6)]
    user = _north_of_center(5)
    first = rank_and_limit_events(events, 3, user, now=NOW, tie_threshold=1.0)
    second = rank_and_limit_events(list(events), 3, user, now=NOW, tie_threshold=1.0)
    assert first == second
    assert first[0].id == "e5"


def test_score_recency_bonuses_and_past_penalty():
    here = DEFAULT_CENTER
    soon = _event("soon", start_date="2025-06-03T00:00:00Z")
    month = _event("month", start_date="2025-06-20T00:00:00Z")
    past = _event("past", start_date="2025-05-30T00:00:00Z")
    base = 40.0
    assert score_event(soon, here, now=NOW)[0] == pytest.approx(base + 30)
    assert score_event(month, here, now=NOW)[0] == pytest.approx(base + 15)
    assert score_event(past, here, now=NOW)[0] == pytest.approx(base - 50)


def test_tie_threshold_from_env(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("RANK_TIE_THRESHOLD", "2.5")
    assert tie_threshold_from_env() == 2.5
    monkeypatch.setenv("RANK_TIE_THRESHOLD", "abc")
    assert tie_threshold_from_env() == 1.0


def test_generate_event_summary():
    one_day = _event(
        "s",
        name="Jazz Night",
        start_date="2025-06-07T19:00:00Z",
        end_date="2025-06-07T19:00:00Z",
        location_name="Harbourfront",
        is_free=True,
        categories=("Music", "Festival"),
    )
    assert generate_event_summary(one_day) == "Jazz Night (Jun 7) at Harbourfront (Free) [Music]"

    multi = _event(
        "m",
        name="Art Fair",
        start_date="2025-06-07T10:00:00Z",
        end_date="2025-06-09T18:00:00Z",
        location_name="Trinity Bellwoods",
        price="$10.00",
    )
    assert generate_event_summary(multi) == "Art Fair (Jun 7 - Jun 9) at Trinity Bellwoods ($10.00)"

    undated = _event("u", name="Mystery", start_date="", end_date="", location_name="Somewhere")
    assert generate_event_summary(undated) == "Mystery at Somewhere"
