from __future__ import annotations

import logging
import math
import os
import random
import threading
import time
from typing import Callable, Mapping, Optional

from pydantic import BaseModel

"""
Per-client fixed-window rate limiting for the AI search endpoints.

State lives in process memory and resets on restart. It is a UX throttle, not
a security boundary. Expired entries are swept opportunistically on about 1%
of checks instead of by a background timer.
"""

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 4
DEFAULT_WINDOW_MS = 120_000


class RateLimitResult(BaseModel):
    allowed: bool
    limit: int
    remaining: int
    # Epoch seconds.
    reset_at: float
    retry_after: Optional[int] = None


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        v = int(raw) if raw else default
    except ValueError:
        return default
    return v if v > 0 else default


def client_identifier(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """First proxy hop if present, then the direct peer address."""
    forwarded = str(headers.get("x-forwarded-for") or "").split(",")[0].strip()
    return (
        forwarded
        or str(headers.get("x-real-ip") or "").strip()
        or str(headers.get("cf-connecting-ip") or "").strip()
        or (peer or "").strip()
        or "unknown"
    )


class RateLimiter:
    def __init__(
        self,
        *,
        limit: Optional[int] = None,
        window_ms: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        cleanup_probability: float = 0.01,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.limit = limit if limit is not None else _env_int("AI_SEARCH_RATE_LIMIT", DEFAULT_LIMIT)
        self.window_seconds = (window_ms if window_ms is not None else _env_int("AI_SEARCH_RATE_LIMIT_WINDOW_MS", DEFAULT_WINDOW_MS)) / 1000.0
        self._clock = clock
        self._cleanup_probability = cleanup_probability
        self._rng = rng
        # client -> (count, reset_at)
        self._entries: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    @property
    def window_minutes(self) -> int:
        return max(1, int(self.window_seconds // 60))

    def __len__(self) -> int:
        return len(self._entries)

    def cleanup(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, reset_at) in self._entries.items() if now >= reset_at]
            for k in expired:
                self._entries.pop(k, None)
        return len(expired)

    def check(self, client_id: str) -> RateLimitResult:
        """Consume one request from the client's quota."""
        if self._rng() < self._cleanup_probability:
            self.cleanup()

        now = self._clock()
        with self._lock:
            entry = self._entries.get(client_id)
            if entry is None or now >= entry[1]:
                reset_at = now + self.window_seconds
                self._entries[client_id] = (1, reset_at)
                return RateLimitResult(allowed=True, limit=self.limit, remaining=self.limit - 1, reset_at=reset_at)

            count, reset_at = entry
            if count >= self.limit:
                retry_after = max(1, math.ceil(reset_at - now))
                logger.info("Rate limit reached for client=%s retry_after=%ss", client_id, retry_after)
                return RateLimitResult(
                    allowed=False, limit=self.limit, remaining=0, reset_at=reset_at, retry_after=retry_after
                )

            count += 1
            self._entries[client_id] = (count, reset_at)
            return RateLimitResult(allowed=True, limit=self.limit, remaining=self.limit - count, reset_at=reset_at)

    def status(self, client_id: str) -> RateLimitResult:
        """Current quota for a client without consuming it."""
        now = self._clock()
        entry = self._entries.get(client_id)
        if entry is None or now >= entry[1]:
            return RateLimitResult(allowed=True, limit=self.limit, remaining=self.limit, reset_at=now + self.window_seconds)
        count, reset_at = entry
        remaining = max(0, self.limit - count)
        retry_after = max(1, math.ceil(reset_at - now)) if remaining == 0 else None
        return RateLimitResult(
            allowed=remaining > 0, limit=self.limit, remaining=remaining, reset_at=reset_at, retry_after=retry_after
        )


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    headers = {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": str(int(result.reset_at)),
    }
    if result.retry_after:
        headers["Retry-After"] = str(result.retry_after)
    return headers
