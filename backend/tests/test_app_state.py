from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path

from langchain_core.language_models.fake_chat_models import FakeListChatModel
from langchain_core.messages import AIMessage

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from agent.filter_graph import FILTER_TOOL_NAME
from agent.models import StubFilterModel
from app_state import AppState
from event_models import Event, ExtractedFilters
from geo import DEFAULT_CENTER, Location
from search_service import SearchResult, run_event_search, vocabulary

NOW = datetime(2025, 6, 4, 10, 0, tzinfo=timezone.utc)


def _event(eid: str, name: str, lat_offset: float = 0.0, **kw) -> Event:
    return Event(
        id=eid,
        name=name,
        location=Location(lat=DEFAULT_CENTER.lat + lat_offset, lng=DEFAULT_CENTER.lng),
        location_name=kw.pop("location_name", "Downtown"),
        start_date=kw.pop("start_date", "2025-06-07T18:00:00Z"),
        end_date=kw.pop("end_date", "2025-06-07T21:00:00Z"),
        **kw,
    )


def _corpus() -> list[Event]:
    return [
        _event("1", "Zumba in the Park", 0.03, is_free=True, themes=("Fitness",), categories=("Sports",)),
        _event("2", "Jazz Night", 0.01, is_free=False, price="$20.00", themes=("Jazz",), categories=("Music",)),
        _event("3", "Art Walk", 0.02, is_free=True, is_accessible=True, themes=("Arts",), categories=("Arts",)),
        _event("4", "Brewery Tour", 0.05, description="Craft beer and jazz", location_name="Distillery"),
    ]


def test_browse_filters_and_sorts():
    state = AppState(_corpus())
    assert [e.id for e in state.filtered_events()] == ["2", "3", "1", "4"]

    state.selected_sort = "name"
    assert [e.id for e in state.filtered_events()] == ["3", "4", "2", "1"]

    state.selected_filter = "free"
    assert [e.id for e in state.filtered_events()] == ["3", "1"]
    state.selected_filter = "paid"
    assert [e.id for e in state.filtered_events()] == ["4", "2"]
    state.selected_filter = "accessible"
    assert [e.id for e in state.filtered_events()] == ["3"]


def test_browse_theme_and_text_search():
    state = AppState(_corpus())
    state.search_query = "JAZZ"
    assert {e.id for e in state.filtered_events()} == {"2", "4"}
    state.selected_theme = "Jazz"
    assert [e.id for e in state.filtered_events()] == ["2"]
    state.search_query = ""
    state.selected_theme = None
    state.search_query = "distillery"
    assert [e.id for e in state.filtered_events()] == ["4"]


def test_nearest_sort_uses_user_location():
    state = AppState(_corpus())
    state.user_location = Location(lat=DEFAULT_CENTER.lat + 0.05, lng=DEFAULT_CENTER.lng)
    assert [e.id for e in state.filtered_events()][0] == "4"


def _result(query: str) -> SearchResult:
    return SearchResult(query=query, filters=ExtractedFilters(keywords=[query]))


def test_search_result_applies_only_for_current_ticket():
    state = AppState(_corpus())
    first = state.begin_search("jazz")
    second = state.begin_search("art")
    assert first.cancelled

    assert state.apply_search_result(first, _result("jazz")) is False
    assert state.search_result is None

    assert state.apply_search_result(second, _result("art")) is True
    assert state.search_result.query == "art"
    assert not state.search_in_flight


def test_cancelled_search_is_discarded():
    state = AppState(_corpus())
    state.apply_search_result(state.begin_search("old"), _result("old"))
    ticket = state.begin_search("new")
    state.cancel_search()
    assert state.apply_search_result(ticket, _result("new")) is False
    assert state.search_result.query == "old"

    state.clear_search()
    assert state.search_result is None


def test_vocabulary_is_distinct_and_sorted():
    themes, categories = vocabulary(_corpus())
    assert themes == ["Arts", "Fitness", "Jazz"]
    assert categories == ["Arts", "Music", "Sports"]


def test_run_event_search_filters_ranks_and_summarizes():
    reply = AIMessage(content="", tool_calls=[{"name": FILTER_TOOL_NAME, "args": {"isFree": True}, "id": "c1"}])
    llm = FakeListChatModel(responses=["Two free events are on this weekend."])
    out = run_event_search("free stuff", _corpus(), StubFilterModel(reply), summary_llm=llm, now=NOW)
    assert out.filters.is_free is True
    assert out.matched_count == 2
    assert [e.id for e in out.events] == ["3", "1"]
    assert out.summaries[0] == "Art Walk (Jun 7) at Downtown (Free) [Arts]"
    assert out.sentence == "Two free events are on this weekend."


def test_run_event_search_without_models_still_answers():
    out = run_event_search("jazz", _corpus(), None, now=NOW, max_results=1)
    assert out.error
    assert out.matched_count == 2
    assert len(out.events) == 1
    assert out.sentence == "I found 2 events for you."


def test_run_event_search_direct_answer_skips_summary_model():
    model = StubFilterModel(AIMessage(content="I can help with events in Toronto only."))
    llm = FakeListChatModel(responses=["should not be used"])
    out = run_event_search("what's 2 plus 2", _corpus(), model, summary_llm=llm, now=NOW)
    assert out.response == "I can help with events in Toronto only."
    assert out.sentence == out.response
