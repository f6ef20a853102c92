from __future__ import annotations

import http.client
import json
import logging
import os
import threading
import time
import urllib.error
import urllib.request
from datetime import datetime
from typing import Any, Callable, Optional

from event_models import Event
from event_parser import parse_events
from event_window import dedupe_events_by_name, filter_events_within_next_month

"""
Upstream open-data feed client and the in-memory corpus cache.

The feed is polled (single GET, JSON document with a `value` array). The cache
keeps serving the previous corpus while a refresh is running or after a failed
refresh; only the very first load can surface an error to callers.
"""

logger = logging.getLogger(__name__)

DEFAULT_FEED_URL = (
    "https://ckan0.cf.opendata.inter.prod-toronto.ca/dataset/9201059e-43ed-4369-885e-0b867652feac"
    "/resource/8900fdb2-7f6c-4f50-8581-b463311ff05d/download/file.json"
)
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_REVALIDATE_SECONDS = 3600.0
READ_CHUNK_BYTES = 64 * 1024


class EventsFeedError(RuntimeError):
    pass


class EventsFeedTimeout(EventsFeedError):
    pass


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        v = float(raw)
    except ValueError:
        return default
    return v if v > 0 else default


def fetch_feed_rows(
    url: Optional[str] = None,
    *,
    timeout: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> list[Any]:
    """
    GET the feed and return its raw `value` rows.

    Raises EventsFeedTimeout when a socket operation times out or the whole
    download runs past `timeout` seconds (leaving the `with` block closes the
    connection), EventsFeedError for any other failure including truncated
    reads and bytes that are not UTF-8.
    """
    feed_url = url or (os.getenv("EVENTS_FEED_URL") or "").strip() or DEFAULT_FEED_URL
    t = timeout if timeout is not None else _env_float("EVENTS_FETCH_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)

    req = urllib.request.Request(feed_url, headers={"Accept": "application/json"})
    deadline = clock() + t
    try:
        with urllib.request.urlopen(req, timeout=t) as resp:
            chunks: list[bytes] = []
            while True:
                if clock() > deadline:
                    raise TimeoutError(f"feed download exceeded {t:g}s")
                chunk = resp.read(READ_CHUNK_BYTES)
                if not chunk:
                    break
                chunks.append(chunk)
            raw = b"".join(chunks).decode("utf-8")
    except urllib.error.HTTPError as e:
        raise EventsFeedError(f"Upstream request failed with status {e.code}") from e
    except TimeoutError as e:
        raise EventsFeedTimeout("Request timeout: external API took too long to respond") from e
    except urllib.error.URLError as e:
        if isinstance(e.reason, TimeoutError):
            raise EventsFeedTimeout("Request timeout: external API took too long to respond") from e
        raise EventsFeedError(f"Upstream request failed: {e.reason}") from e
    except (http.client.HTTPException, OSError) as e:
        raise EventsFeedError(f"Upstream connection failed: {e}") from e
    except UnicodeDecodeError as e:
        raise EventsFeedError(f"Upstream returned undecodable bytes: {e}") from e

    try:
        payload = json.loads(raw)
    except ValueError as e:
        raise EventsFeedError(f"Upstream returned malformed JSON: {e}") from e

    rows = payload.get("value") if isinstance(payload, dict) else None
    return rows if isinstance(rows, list) else []


def build_corpus(rows: list[Any], *, now: Optional[datetime] = None) -> list[Event]:
    """Normalize, keep the next month, then collapse same-name duplicates."""
    parsed = parse_events(rows)
    windowed = filter_events_within_next_month(parsed, now=now)
    deduped = dedupe_events_by_name(windowed)
    logger.info(
        "Built events corpus: rows=%d parsed=%d in_window=%d deduped=%d",
        len(rows),
        len(parsed),
        len(windowed),
        len(deduped),
    )
    return deduped


def load_events() -> list[Event]:
    return build_corpus(fetch_feed_rows())


class EventCache:
    """
    Corpus cache with periodic revalidation.

    Readers never wait on a refresh once a corpus exists: a stale read triggers
    the refresh in the calling thread only if no other thread is refreshing.
    """

    def __init__(
        self,
        loader: Optional[Callable[[], list[Event]]] = None,
        *,
        revalidate_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader or load_events
        self._ttl = (
            revalidate_seconds
            if revalidate_seconds is not None
            else _env_float("EVENTS_REVALIDATE_SECONDS", DEFAULT_REVALIDATE_SECONDS)
        )
        self._clock = clock
        self._events: Optional[list[Event]] = None
        self._fetched_at = 0.0
        self._refresh_lock = threading.Lock()

    def _is_stale(self) -> bool:
        return self._clock() - self._fetched_at >= self._ttl

    def peek(self) -> Optional[list[Event]]:
        return self._events

    def invalidate(self) -> None:
        self._fetched_at = float("-inf")

    def get_events(self) -> list[Event]:
        current = self._events
        if current is not None and not self._is_stale():
            return current

        if current is None:
            self._refresh_lock.acquire()
        elif not self._refresh_lock.acquire(blocking=False):
            return current

        try:
            if self._events is not None and not self._is_stale():
                return self._events
            try:
                fresh = self._loader()
            except EventsFeedError:
                if self._events is None:
                    raise
                logger.exception("Events refresh failed; serving previous corpus (%d events)", len(self._events))
                return self._events
            self._events = fresh
            self._fetched_at = self._clock()
            return fresh
        finally:
            self._refresh_lock.release()
