"""Sliding-window rate limiter — per-client request counting.

Tracks request timestamps for each client key (normally the caller's IP)
and rejects a request once ``max_requests`` fall within the trailing
``window_seconds``. One limiter instance guards one endpoint; the
orchestrator owns its limiters explicitly, so the in-memory store can be
swapped for a shared one without touching call sites.

Process-local and not durable: every worker process counts independently.
Check-then-record is atomic per key via asyncio.Lock (one lock per key).
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

UNKNOWN_CLIENT = "unknown"

# Header lookup order for the client key
_CLIENT_IP_HEADERS = ("x-forwarded-for", "x-real-ip", "cf-connecting-ip")

# Idle clients are swept once every N admitted requests
_SWEEP_EVERY = 50


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a rate-limit check for one client key."""

    limited: bool
    limit: int
    current: int
    remaining: int
    reset_at: float  # epoch seconds when the oldest counted request leaves the window
    retry_after: int  # whole seconds, 0 when not limited

    def headers(self) -> dict[str, str]:
        """X-RateLimit-* response headers (plus Retry-After when limited)."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(math.ceil(self.reset_at)),
        }
        if self.limited:
            headers["Retry-After"] = str(self.retry_after)
        return headers


@dataclass
class _ClientWindow:
    """Timestamps of one client's requests inside the window."""

    timestamps: deque[float] = field(default_factory=deque)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def prune(self, cutoff: float) -> None:
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()


class SlidingWindowRateLimiter:
    """Per-client sliding-window limiter.

    Usage:
        limiter = SlidingWindowRateLimiter(max_requests=30, window_seconds=60)

        decision = await limiter.acquire(client_key)
        if decision.limited:
            ...  # reject with 429, Retry-After = decision.retry_after
    """

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        name: str = "default",
        clock: Callable[[], float] = time.time,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock
        self._windows: dict[str, _ClientWindow] = {}
        self._admitted = 0

    def _get_window(self, key: str) -> _ClientWindow:
        window = self._windows.get(key)
        if window is None:
            window = self._windows[key] = _ClientWindow()
        return window

    def _decide(self, window: _ClientWindow, now: float) -> RateLimitDecision:
        window.prune(now - self.window_seconds)
        count = len(window.timestamps)
        limited = count >= self.max_requests

        if window.timestamps:
            reset_at = window.timestamps[0] + self.window_seconds
        else:
            reset_at = now + self.window_seconds

        retry_after = max(1, math.ceil(reset_at - now)) if limited else 0
        return RateLimitDecision(
            limited=limited,
            limit=self.max_requests,
            current=count,
            remaining=max(0, self.max_requests - count),
            reset_at=reset_at,
            retry_after=retry_after,
        )

    def check(self, key: str) -> RateLimitDecision:
        """Evaluate *key* against the window without recording anything."""
        window = self._windows.get(key)
        if window is None:
            window = _ClientWindow()
        decision = self._decide(window, self._clock())
        if key in self._windows and not window.timestamps:
            self._discard_if_idle(key)
        return decision

    def record(self, key: str) -> None:
        """Count a request for *key* at the current time."""
        self._get_window(key).timestamps.append(self._clock())

    async def acquire(self, key: str) -> RateLimitDecision:
        """Atomically check *key* and, if admitted, record the request.

        The returned decision's ``remaining`` already accounts for the
        request being admitted.
        """
        window = self._get_window(key)
        async with window.lock:
            now = self._clock()
            decision = self._decide(window, now)
            if decision.limited:
                logger.info(
                    "Rate limit [%s] blocked %s (%d/%d, retry in %ds)",
                    self.name,
                    key,
                    decision.current,
                    decision.limit,
                    decision.retry_after,
                )
                return decision

            window.timestamps.append(now)
            admitted = RateLimitDecision(
                limited=False,
                limit=decision.limit,
                current=decision.current + 1,
                remaining=max(0, decision.remaining - 1),
                reset_at=window.timestamps[0] + self.window_seconds,
                retry_after=0,
            )

        self._admitted += 1
        if self._admitted % _SWEEP_EVERY == 0:
            self._sweep(exclude=key)
        return admitted

    def _discard_if_idle(self, key: str) -> None:
        window = self._windows.get(key)
        if window is not None and not window.timestamps and not window.lock.locked():
            del self._windows[key]

    def _sweep(self, exclude: str = "") -> None:
        """Drop clients whose windows have emptied. Bounds memory growth."""
        cutoff = self._clock() - self.window_seconds
        for key in [k for k in self._windows if k != exclude]:
            window = self._windows[key]
            window.prune(cutoff)
            if not window.timestamps:
                self._discard_if_idle(key)

    def stats(self, top: int = 10) -> dict:
        """Current tracking stats (tracked clients, counted requests, busiest keys)."""
        self._sweep()
        counts = sorted(
            ((key, len(w.timestamps)) for key, w in self._windows.items()),
            key=lambda item: item[1],
            reverse=True,
        )
        return {
            "name": self.name,
            "max_requests": self.max_requests,
            "window_seconds": self.window_seconds,
            "tracked_clients": len(counts),
            "total_requests": sum(c for _, c in counts),
            "top_clients": [{"key": k, "count": c} for k, c in counts[:top]],
        }

    def clear(self) -> None:
        self._windows.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._windows


def client_key_from_headers(headers: Mapping[str, str], peer: str | None = None) -> str:
    """Derive the client identity from forwarding headers.

    ``X-Forwarded-For`` may hold a comma-separated chain; the first entry is
    the original client.
    """
    for name in _CLIENT_IP_HEADERS:
        value = headers.get(name)
        if value:
            first = value.split(",")[0].strip()
            if first:
                return first
    return peer or UNKNOWN_CLIENT
