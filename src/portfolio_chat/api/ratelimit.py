"""Per-client fixed-window request limiter."""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from portfolio_chat.errors import RateLimitedError


@dataclass(slots=True)
class _Window:
    started_at: float
    count: int


class FixedWindowRateLimiter:
    """Allows `max_requests` per client within each `window_seconds` window."""

    def __init__(
        self,
        max_requests: int,
        window_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, _Window] = {}

    def check(self, client_id: str) -> None:
        """Count one request for `client_id`; raise `RateLimitedError` when over the limit."""
        now = self._clock()
        with self._lock:
            window = self._windows.get(client_id)
            if window is None or now - window.started_at >= self.window_seconds:
                self._windows[client_id] = _Window(started_at=now, count=1)
                self._evict(now)
                return
            if window.count >= self.max_requests:
                retry_after = self.window_seconds - (now - window.started_at)
                raise RateLimitedError(
                    "Too many messages. Please wait a moment and try again.",
                    retry_after_ms=max(1, math.ceil(retry_after * 1000)),
                )
            window.count += 1

    def _evict(self, now: float) -> None:
        expired = [
            key
            for key, window in self._windows.items()
            if now - window.started_at >= self.window_seconds
        ]
        for key in expired:
            del self._windows[key]
