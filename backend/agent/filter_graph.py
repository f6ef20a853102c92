from __future__ import annotations

import json
import logging
import re
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Mapping, Optional

from langchain_core.messages import AIMessage, AnyMessage, HumanMessage, SystemMessage
from langgraph.graph import StateGraph, START, END
from pydantic import BaseModel
from typing_extensions import TypedDict

from agent.models import FilterModel
from event_models import ChatTurn, ExtractedFilters
from event_window import parse_datetime

"""
Natural-language search -> ExtractedFilters.

One tool-calling model request, then deterministic post-processing:
interpret the reply (tool call, direct answer, or junk), fill in relative
dates the model missed, and clamp everything to the request's vocabulary.
Every path ends with at least one populated criterion.
"""

logger = logging.getLogger(__name__)

FILTER_TOOL_NAME = "filter_events"
CITY_NAME = "Toronto"
MAX_CONTEXT_MESSAGES = 5

TOOL_PLAN_RE = re.compile(
    r"I will use the|I'll use the|filter_events|extract_event_filters|I will search|I'll search",
    re.IGNORECASE,
)
EVENT_QUERY_RE = re.compile(
    r"event|show|concert|festival|exhibition|workshop|class|meeting|gathering|activity",
    re.IGNORECASE,
)
REPEATED_CHAR_RE = re.compile(r"(.)\1{10,}")
DATE_FORMAT_SPAM_RE = re.compile(r"DD-DD-DD")
SENTENCE_SPLIT_RE = re.compile(r"[.!?\n]+")

MAX_REPLY_CHARS = 500
MAX_REPLY_WORDS = 200
MAX_FRAGMENT_REPEATS = 3

_TOKEN_PUNCTUATION = ".,!?;:\"'()[]{}"
FREE_WORDS = {"free"}
PAID_WORDS = {"paid"}
ACCESSIBLE_WORDS = {"accessible", "accessibility", "wheelchair"}


class FilterExtraction(BaseModel):
    filters: ExtractedFilters
    # Direct conversational answer when the model chose not to call the tool.
    response: Optional[str] = None
    # Model/transport failure text, for the caller to surface separately.
    error: Optional[str] = None
    used_tool: bool = False


class ReconcileState(TypedDict):
    query: str
    themes: list[str]
    categories: list[str]
    today: str
    messages: list[AnyMessage]
    reply: Optional[AIMessage]
    error: str
    filters: dict[str, Any]
    response: str
    used_tool: bool


# --- query heuristics -----------------------------------------------------


def _tokens(query: str) -> list[str]:
    return [w.strip(_TOKEN_PUNCTUATION) for w in (query or "").split()]


def query_keywords(query: str) -> list[str]:
    """Words longer than two characters; the whole query if there are none."""
    words = [w for w in _tokens(query) if len(w) > 2]
    if words:
        return words
    q = (query or "").strip()
    return [q] if q else []


def is_event_query(query: str) -> bool:
    return bool(EVENT_QUERY_RE.search(query or ""))


def fallback_filters(query: str) -> ExtractedFilters:
    """
    Deterministic filter used whenever the model gives nothing usable.
    Price and accessibility words become flags instead of keywords.
    """
    lowered = {w.lower() for w in _tokens(query)}
    is_free: Optional[bool] = None
    if lowered & FREE_WORDS:
        is_free = True
    elif lowered & PAID_WORDS:
        is_free = False
    is_accessible = True if lowered & ACCESSIBLE_WORDS else None

    consumed = set()
    if is_free is not None:
        consumed |= FREE_WORDS | PAID_WORDS
    if is_accessible is not None:
        consumed |= ACCESSIBLE_WORDS
    keywords = [w for w in query_keywords(query) if w.lower() not in consumed]

    return ExtractedFilters(is_free=is_free, is_accessible=is_accessible, keywords=keywords or None)


# --- reply interpretation -------------------------------------------------


def parse_string_or_list(value: Any) -> Optional[list[str]]:
    """Accept a list, a JSON array string, or a comma/semicolon separated string."""
    if isinstance(value, (list, tuple)):
        return [str(x).strip() for x in value if isinstance(x, str) and x.strip()]
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            return [x.strip() for x in parsed if isinstance(x, str) and x.strip()]
        return [s.strip() for s in re.split(r"[,;]", value) if s.strip()]
    return None


def parse_tri_state(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def filters_from_tool_args(args: Mapping[str, Any]) -> ExtractedFilters:
    return ExtractedFilters(
        date_start=args.get("dateStart") if isinstance(args.get("dateStart"), str) else None,
        date_end=args.get("dateEnd") if isinstance(args.get("dateEnd"), str) else None,
        is_free=parse_tri_state(args.get("isFree")),
        is_accessible=parse_tri_state(args.get("isAccessible")),
        themes=parse_string_or_list(args.get("themes")),
        categories=parse_string_or_list(args.get("categories")),
        keywords=parse_string_or_list(args.get("keywords")),
    )


def message_text(msg: Optional[AIMessage]) -> str:
    if msg is None:
        return ""
    content = msg.content
    if isinstance(content, str):
        return content
    parts: list[str] = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type", "text") == "text":
            parts.append(str(block.get("text") or ""))
    return "".join(parts)


def is_tool_plan(text: str) -> bool:
    return bool(TOOL_PLAN_RE.search(text or ""))


def _has_repeated_fragment(text: str) -> bool:
    counts: dict[str, int] = {}
    for fragment in SENTENCE_SPLIT_RE.split(text):
        key = " ".join(fragment.lower().split())
        if len(key) < 8:
            continue
        counts[key] = counts.get(key, 0) + 1
        if counts[key] >= MAX_FRAGMENT_REPEATS:
            return True
    return False


def looks_corrupted(text: str) -> bool:
    """Degenerate generations: too long, stuck characters, format spam, loops."""
    return (
        len(text) > MAX_REPLY_CHARS
        or bool(REPEATED_CHAR_RE.search(text))
        or bool(DATE_FORMAT_SPAM_RE.search(text))
        or _has_repeated_fragment(text)
        or len(text.split()) > MAX_REPLY_WORDS
    )


def interpret_reply(reply: Optional[AIMessage], query: str) -> FilterExtraction:
    """Turn the model reply into filters (or a direct answer plus fallback filters)."""
    if reply is None:
        return FilterExtraction(filters=fallback_filters(query))

    if reply.tool_calls:
        call = reply.tool_calls[0]
        name = str(call.get("name") or "")
        args = call.get("args")
        if name != FILTER_TOOL_NAME or not isinstance(args, dict):
            logger.warning("Unusable tool call name=%r; using keyword fallback", name)
            return FilterExtraction(filters=fallback_filters(query))
        try:
            filters = filters_from_tool_args(args)
        except Exception:
            logger.warning("Failed to parse tool arguments %r; using keyword fallback", args, exc_info=True)
            return FilterExtraction(filters=fallback_filters(query))
        return FilterExtraction(filters=filters, used_tool=True)

    if reply.invalid_tool_calls:
        logger.warning("Model sent unparsable tool arguments; using keyword fallback")
        return FilterExtraction(filters=fallback_filters(query))

    text = message_text(reply).strip()
    response: Optional[str] = None
    filters = ExtractedFilters()
    if text:
        plan = is_tool_plan(text)
        corrupted = looks_corrupted(text)
        if not plan and not corrupted:
            response = text
        elif corrupted:
            logger.warning("Ignoring corrupted model text: %s", text[:100])
            if is_event_query(query):
                filters = fallback_filters(query)
        else:
            logger.info("Ignoring tool-plan text from model: %s", text[:100])

    if not (filters.date_start or filters.date_end or filters.themes or filters.categories or filters.keywords):
        filters = fallback_filters(query)
    return FilterExtraction(filters=filters, response=response)


# --- deterministic post-processing ----------------------------------------


def relative_date_range(query: str, today: date) -> Optional[tuple[str, date, date]]:
    """
    Map the first matching relative phrase to (phrase, start, end).
    Priority: weekend (not "next weekend"), tomorrow, today, next week.
    """
    q = (query or "").lower()
    if "weekend" in q and "next weekend" not in q:
        saturday = today + timedelta(days=(5 - today.weekday()) % 7)
        return "weekend", saturday, saturday + timedelta(days=1)
    if "tomorrow" in q:
        tomorrow = today + timedelta(days=1)
        return "tomorrow", tomorrow, tomorrow
    if "today" in q:
        return "today", today, today
    if "next week" in q:
        start = today + timedelta(days=7)
        return "next week", start, start + timedelta(days=7)
    return None


# single-day phrases only remove a keyword that is exactly the phrase
_EXACT_PHRASES = frozenset({"today", "tomorrow"})


def _strip_phrase(keywords: Optional[list[str]], phrase: str) -> Optional[list[str]]:
    if not keywords:
        return keywords
    if phrase in _EXACT_PHRASES:
        kept = [k for k in keywords if k.strip().lower() != phrase]
        return kept or None
    words = set(phrase.split()) if " " in phrase else set()
    kept = [k for k in keywords if phrase not in k.lower() and k.lower() not in words]
    return kept or None


def enhance_date_filters(filters: ExtractedFilters, query: str, *, today: date) -> ExtractedFilters:
    """
    Fill dates from relative phrases when the model produced no usable date.
    Unparsable model dates (e.g. "this weekend") count as absent.
    """
    if _valid_date(filters.date_start) or _valid_date(filters.date_end):
        return filters
    if filters.date_start or filters.date_end:
        filters = filters.model_copy(update={"date_start": None, "date_end": None})
    match = relative_date_range(query, today)
    if match is None:
        return filters
    phrase, start, end = match
    enhanced = filters.model_copy(
        update={
            "date_start": start.isoformat(),
            "date_end": end.isoformat(),
            "keywords": _strip_phrase(filters.keywords, phrase),
        }
    )
    logger.info("Converted %r to dates %s..%s", phrase, enhanced.date_start, enhanced.date_end)
    return enhanced


def _vocabulary(values: Iterable[Any]) -> list[str]:
    return sorted({str(v) for v in values or [] if isinstance(v, str) and v.strip()})


def _clamp_to_vocabulary(values: Optional[list[str]], vocabulary: list[str]) -> Optional[list[str]]:
    if not values:
        return None
    by_lower = {v.lower(): v for v in vocabulary}
    out: list[str] = []
    for v in values:
        if not isinstance(v, str):
            continue
        canonical = v if v in vocabulary else by_lower.get(v.strip().lower())
        if canonical and canonical not in out:
            out.append(canonical)
    return out or None


def _valid_date(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip() if parse_datetime(value) is not None else None


def validate_filters(
    filters: ExtractedFilters,
    query: str,
    *,
    themes: list[str],
    categories: list[str],
) -> ExtractedFilters:
    validated = ExtractedFilters(
        date_start=_valid_date(filters.date_start),
        date_end=_valid_date(filters.date_end),
        is_free=parse_tri_state(filters.is_free),
        is_accessible=parse_tri_state(filters.is_accessible),
        themes=_clamp_to_vocabulary(filters.themes, themes),
        categories=_clamp_to_vocabulary(filters.categories, categories),
        keywords=[k for k in filters.keywords or [] if isinstance(k, str) and k.strip()] or None,
    )
    if not validated.has_criteria():
        validated.keywords = query_keywords(query) or None
    return validated


# --- model request --------------------------------------------------------


def build_filter_tool(themes: list[str], categories: list[str], today: str) -> dict[str, Any]:
    themes_list = ", ".join(themes) if themes else "None"
    categories_list = ", ".join(categories) if categories else "None"
    return {
        "type": "function",
        "function": {
            "name": FILTER_TOOL_NAME,
            "description": (
                f"ALWAYS use this tool when the user asks about finding events in {CITY_NAME}. "
                "Extract search filters from their query. Only include date/category/theme/free/accessible "
                f"when the user clearly asks for them. Current date: {today}. "
                f"Available themes (use only these exact strings or omit): {themes_list}. "
                f"Available categories (use only these exact strings or omit): {categories_list}."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "dateStart": {
                        "type": "string",
                        "description": (
                            "Start date in ISO format YYYY-MM-DD. Convert relative dates like today, tomorrow, "
                            "this weekend, next week to actual dates. Only include if the user mentions a "
                            "specific date or time period."
                        ),
                    },
                    "dateEnd": {
                        "type": "string",
                        "description": "End date in ISO format YYYY-MM-DD. Use same as dateStart for single-day events.",
                    },
                    "isFree": {
                        "type": "boolean",
                        "description": "True for free events only, false for paid only, omit for no preference.",
                    },
                    "isAccessible": {
                        "type": "boolean",
                        "description": "True for accessible events only, false otherwise, omit for no preference.",
                    },
                    "themes": {
                        "type": "string",
                        "description": f"Comma-separated or JSON array of theme names. Use ONLY from: {themes_list}.",
                    },
                    "categories": {
                        "type": "string",
                        "description": f"Comma-separated or JSON array of category names. Use ONLY from: {categories_list}.",
                    },
                    "keywords": {
                        "type": "string",
                        "description": "Comma-separated or JSON array of keywords for text search.",
                    },
                },
                "required": [],
            },
        },
    }


def build_system_prompt() -> str:
    return (
        f"You are a helpful assistant that ONLY answers questions about events in {CITY_NAME}.\n"
        "If the user asks about anything other than events (general questions, math, weather, etc.), "
        "politely redirect them to ask about events.\n"
        f"For ALL event-related queries, you MUST use the {FILTER_TOOL_NAME} tool to extract search filters. "
        "Only respond directly with text if the user asks something completely unrelated to events."
    )


def coerce_chat_context(raw: Any) -> list[ChatTurn]:
    """Keep well-formed user/assistant turns, last MAX_CONTEXT_MESSAGES only."""
    turns: list[ChatTurn] = []
    for m in raw if isinstance(raw, list) else []:
        if not isinstance(m, dict):
            continue
        role = m.get("role")
        content = m.get("content")
        if role in ("user", "assistant") and isinstance(content, str):
            turns.append(ChatTurn(role=role, content=content))
    return turns[-MAX_CONTEXT_MESSAGES:]


def _history_messages(turns: list[ChatTurn]) -> list[AnyMessage]:
    out: list[AnyMessage] = []
    for t in turns:
        if not t.content:
            continue
        out.append(AIMessage(content=t.content) if t.role == "assistant" else HumanMessage(content=t.content))
    return out


# --- graph ----------------------------------------------------------------


def build_filter_graph(model: Optional[FilterModel]):
    def call_model_node(state: ReconcileState) -> dict[str, Any]:
        """Single outbound request; any failure is recorded, never raised."""
        if model is None:
            return {"reply": None, "error": "LLM provider not configured"}
        tool = build_filter_tool(state["themes"], state["categories"], state["today"])
        try:
            reply = model.invoke(state["messages"], tools=[tool])
        except Exception as e:
            logger.warning("Filter extraction call failed: %s", e)
            return {"reply": None, "error": str(e) or type(e).__name__}
        return {"reply": reply, "error": ""}

    def interpret_node(state: ReconcileState) -> dict[str, Any]:
        out = interpret_reply(state.get("reply"), state["query"])
        return {"filters": out.filters.model_dump(), "response": out.response or "", "used_tool": out.used_tool}

    def enhance_dates_node(state: ReconcileState) -> dict[str, Any]:
        filters = ExtractedFilters.model_validate(state["filters"])
        enhanced = enhance_date_filters(filters, state["query"], today=date.fromisoformat(state["today"]))
        return {"filters": enhanced.model_dump()}

    def validate_node(state: ReconcileState) -> dict[str, Any]:
        filters = ExtractedFilters.model_validate(state["filters"])
        validated = validate_filters(
            filters, state["query"], themes=state["themes"], categories=state["categories"]
        )
        return {"filters": validated.model_dump()}

    builder = StateGraph(ReconcileState)
    builder.add_node("call_model_node", call_model_node)
    builder.add_node("interpret_node", interpret_node)
    builder.add_node("enhance_dates_node", enhance_dates_node)
    builder.add_node("validate_node", validate_node)
    builder.add_edge(START, "call_model_node")
    builder.add_edge("call_model_node", "interpret_node")
    builder.add_edge("interpret_node", "enhance_dates_node")
    builder.add_edge("enhance_dates_node", "validate_node")
    builder.add_edge("validate_node", END)
    return builder.compile()


def extract_filters(
    query: str,
    *,
    model: Optional[FilterModel],
    available_themes: Iterable[Any] = (),
    available_categories: Iterable[Any] = (),
    chat_context: Any = None,
    now: Optional[datetime] = None,
) -> FilterExtraction:
    """
    Run the filter-extraction pipeline for one search request.

    `model=None` means no provider is configured: the deterministic fallback is
    used and `error` says why.
    """
    if not isinstance(query, str) or not query.strip():
        raise ValueError("query must be a non-empty string")

    today = (now or datetime.now()).date()
    themes = _vocabulary(available_themes)
    categories = _vocabulary(available_categories)
    turns = coerce_chat_context(chat_context)
    messages: list[AnyMessage] = [SystemMessage(content=build_system_prompt())]
    messages += _history_messages(turns)
    messages.append(HumanMessage(content=query))

    graph = build_filter_graph(model)
    state = graph.invoke(
        {
            "query": query,
            "themes": themes,
            "categories": categories,
            "today": today.isoformat(),
            "messages": messages,
            "reply": None,
            "error": "",
            "filters": {},
            "response": "",
            "used_tool": False,
        }
    )
    return FilterExtraction(
        filters=ExtractedFilters.model_validate(state.get("filters") or {}),
        response=state.get("response") or None,
        error=state.get("error") or None,
        used_tool=bool(state.get("used_tool")),
    )
