from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from langchain_core.language_models.chat_models import BaseChatModel
from pydantic import BaseModel, Field, ValidationError

from agent.filter_graph import extract_filters, fallback_filters
from agent.models import FilterModel, get_filter_model as _get_filter_model, get_llm_or_none
from agent.respond import generate_response_sentence
from event_models import EventsResponse, ExtractedFilters
from events_feed import EventCache, EventsFeedError, EventsFeedTimeout
from rate_limit import RateLimiter, RateLimitResult, client_identifier, rate_limit_headers


def _load_env_file(path: str) -> None:
    """
    Minimal dotenv loader (no extra dependency).
    Loads KEY=VALUE lines into os.environ without overriding already-set vars.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            for raw_line in f:
                line = raw_line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                if key:
                    os.environ.setdefault(key, value.strip().strip("'").strip('"'))
    except FileNotFoundError:
        return


# Auto-load backend/.env if present (useful for local dev).
_load_env_file(os.path.join(os.path.dirname(__file__), ".env"))

logging.basicConfig(
    level=(os.getenv("LOG_LEVEL") or "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ALLOWED_ORIGIN = (os.getenv("ALLOWED_ORIGIN") or "*").strip() or "*"


class RespondRequest(BaseModel):
    query: str = Field(min_length=1)
    event_summaries: list[str] = Field(alias="eventSummaries")
    count: int = 0


class ClientLogEntry(BaseModel):
    level: Literal["error", "warn", "info"]
    message: str
    data: Any = None
    timestamp: Optional[str] = None


app = FastAPI(title="Event Map Search API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[ALLOWED_ORIGIN],
    allow_credentials=ALLOWED_ORIGIN != "*",
    allow_methods=["*"],
    allow_headers=["*"],
)


# Process-wide collaborators; routes receive them through Depends so tests can swap them.
_EVENT_CACHE = EventCache()
_RATE_LIMITER = RateLimiter()


def get_event_cache() -> EventCache:
    return _EVENT_CACHE


def get_rate_limiter() -> RateLimiter:
    return _RATE_LIMITER


def get_filter_model() -> Optional[FilterModel]:
    return _get_filter_model()


def get_summary_llm() -> Optional[BaseChatModel]:
    return get_llm_or_none(temperature=0.5)


def _client_id(request: Request) -> str:
    return client_identifier(request.headers, request.client.host if request.client else None)


def _filters_json(filters: ExtractedFilters) -> dict[str, Any]:
    return filters.model_dump(by_alias=True, exclude_none=True)


def _rate_limited(limiter: RateLimiter, result: RateLimitResult) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "message": (
                f"You have exceeded the rate limit of {limiter.limit} requests per "
                f"{limiter.window_minutes} minutes. Please try again later."
            ),
            "retryAfter": result.retry_after,
        },
        headers=rate_limit_headers(result),
    )


def _string_list(value: Any) -> list[str]:
    return [v for v in value if isinstance(v, str)] if isinstance(value, list) else []


async def _read_json(request: Request) -> Any:
    raw = await request.body()
    return json.loads(raw or b"")


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/events")
def events(cache: EventCache = Depends(get_event_cache)) -> JSONResponse:
    """
    Deduplicated events for the next month from the city open-data feed.
    Served from the in-memory cache; only the very first load can fail.
    """
    try:
        corpus = cache.get_events()
    except EventsFeedTimeout:
        logger.error("Events feed timed out")
        return JSONResponse(
            status_code=500,
            content={"error": "The events service took too long to respond. Please try again."},
        )
    except EventsFeedError:
        logger.exception("Failed to fetch events feed")
        return JSONResponse(status_code=500, content={"error": "Unable to fetch events at this time."})

    return JSONResponse(
        content=EventsResponse(events=corpus).model_dump(mode="json", by_alias=True),
        headers={
            "Access-Control-Allow-Origin": ALLOWED_ORIGIN,
            "Access-Control-Allow-Methods": "GET",
            "Access-Control-Allow-Headers": "Content-Type",
        },
    )


@app.get("/ai-search")
def ai_search_ping() -> Dict[str, str]:
    return {
        "message": "AI Search API is working",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": "GET",
    }


@app.post("/ai-search")
async def ai_search(
    request: Request,
    limiter: RateLimiter = Depends(get_rate_limiter),
    model: Optional[FilterModel] = Depends(get_filter_model),
) -> JSONResponse:
    """
    Natural-language query -> ExtractedFilters (+ optional direct answer).

    Model failures degrade to keyword filters with 200. A missing provider
    or an unexpected error is a 500 that still carries keyword filters.
    """
    rl = limiter.check(_client_id(request))
    if not rl.allowed:
        return _rate_limited(limiter, rl)
    headers = rate_limit_headers(rl)

    try:
        body = await _read_json(request)
    except ValueError:
        return JSONResponse(status_code=400, content={"error": "Invalid request body. Expected JSON."})

    query = body.get("query") if isinstance(body, dict) else None
    if not isinstance(query, str) or not query.strip():
        return JSONResponse(status_code=400, content={"error": "Query is required and must be a string"})

    logger.info("AI search received: %r", query[:100])

    if model is None:
        logger.error("No LLM provider configured (GROQ_API_KEY / GOOGLE_API_KEY)")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Failed to process AI search",
                "details": "LLM provider not configured",
                "filters": _filters_json(fallback_filters(query)),
            },
            headers=headers,
        )

    try:
        out = await run_in_threadpool(
            extract_filters,
            query,
            model=model,
            available_themes=_string_list(body.get("availableThemes")),
            available_categories=_string_list(body.get("availableCategories")),
            chat_context=body.get("chatContext"),
        )
    except Exception as e:
        logger.exception("Unhandled AI search error")
        return JSONResponse(
            status_code=500,
            content={
                "error": "Failed to process AI search",
                "details": str(e) or type(e).__name__,
                "filters": _filters_json(fallback_filters(query)),
            },
            headers=headers,
        )

    content: dict[str, Any] = {"filters": _filters_json(out.filters)}
    if out.response:
        content["response"] = out.response
    logger.info("AI search returned filters=%s direct_response=%s", content["filters"], bool(out.response))
    return JSONResponse(content=content, headers=headers)


@app.post("/ai-search/respond")
async def ai_search_respond(
    request: Request,
    limiter: RateLimiter = Depends(get_rate_limiter),
    llm: Optional[BaseChatModel] = Depends(get_summary_llm),
) -> JSONResponse:
    """One-sentence answer for a result set; falls back to a templated sentence."""
    rl = limiter.check(_client_id(request))
    if not rl.allowed:
        return _rate_limited(limiter, rl)

    try:
        req = RespondRequest.model_validate(await _read_json(request))
    except (ValueError, ValidationError):
        return JSONResponse(
            status_code=400, content={"error": "query and eventSummaries (array) are required"}
        )

    sentence = await run_in_threadpool(
        generate_response_sentence, req.query, req.event_summaries, req.count, llm
    )
    return JSONResponse(content={"response": sentence}, headers=rate_limit_headers(rl))


@app.post("/ai-search/log")
async def ai_search_log(request: Request) -> JSONResponse:
    """Relay a client-side log line into the server log."""
    try:
        entry = ClientLogEntry.model_validate(await _read_json(request))
    except (ValueError, ValidationError):
        return JSONResponse(status_code=400, content={"success": False})

    line = f"[client {entry.timestamp or '-'}] {entry.message}"
    extra = f" {json.dumps(entry.data, default=str)}" if entry.data is not None else ""
    if entry.level == "error":
        logger.error("%s%s", line, extra)
    elif entry.level == "warn":
        logger.warning("%s%s", line, extra)
    else:
        logger.info("%s%s", line, extra)
    return JSONResponse(content={"success": True})
