from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional, Sequence

from langchain_core.language_models.chat_models import BaseChatModel
from pydantic import BaseModel, Field

from agent.filter_graph import extract_filters
from agent.models import FilterModel
from agent.respond import generate_response_sentence
from event_filters import filter_events_with_filters, generate_event_summary, rank_and_limit_events
from event_models import Event, ExtractedFilters
from geo import Location

logger = logging.getLogger(__name__)

DEFAULT_MAX_RESULTS = 10


class SearchResult(BaseModel):
    """Everything a client needs to apply one search in a single step."""

    query: str
    filters: ExtractedFilters
    # Direct answer from the model, when it declined to search.
    response: Optional[str] = None
    error: Optional[str] = None
    matched_count: int = 0
    events: list[Event] = Field(default_factory=list)
    summaries: list[str] = Field(default_factory=list)
    sentence: str = ""


def vocabulary(events: Sequence[Event]) -> tuple[list[str], list[str]]:
    """Distinct themes and categories present in a corpus."""
    themes = sorted({t for ev in events for t in ev.themes if t})
    categories = sorted({c for ev in events for c in ev.categories if c})
    return themes, categories


def run_event_search(
    query: str,
    events: Sequence[Event],
    model: Optional[FilterModel],
    *,
    user_location: Optional[Location] = None,
    chat_context: Any = None,
    summary_llm: Optional[BaseChatModel] = None,
    max_results: int = DEFAULT_MAX_RESULTS,
    now: Optional[datetime] = None,
) -> SearchResult:
    """
    Reconcile filters, apply them to `events`, rank, and summarize.

    Filtering and ranking are local; the only outbound calls are the filter
    extraction request and (when `summary_llm` is given) the summary sentence.
    """
    themes, categories = vocabulary(events)
    extraction = extract_filters(
        query,
        model=model,
        available_themes=themes,
        available_categories=categories,
        chat_context=chat_context,
        now=now,
    )

    matched = filter_events_with_filters(events, extraction.filters, user_location)
    top = rank_and_limit_events(matched, max_results, user_location, now=now)
    summaries = [generate_event_summary(ev) for ev in top]
    logger.info("Search %r matched=%d returned=%d", query, len(matched), len(top))

    if extraction.response:
        sentence = extraction.response
    else:
        sentence = generate_response_sentence(query, summaries, len(matched), summary_llm)

    return SearchResult(
        query=query,
        filters=extraction.filters,
        response=extraction.response,
        error=extraction.error,
        matched_count=len(matched),
        events=top,
        summaries=summaries,
        sentence=sentence,
    )
