"""Per-user fixed-window rate limiter for the poll gate."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable

from strategy_engine.types import RateLimitResult


class RateLimiter:
    """Allow `limit` calls per key in each `window_seconds` window."""

    def __init__(
        self,
        limit: int,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 1:
            raise ValueError("limit_must_be_positive")
        self._limit = limit
        self._window = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: dict[str, tuple[float, int]] = {}

    def hit(self, key: str) -> RateLimitResult:
        """Count one call for `key` and report whether it is allowed."""
        now = self._clock()
        with self._lock:
            started, count = self._windows.get(key, (now, 0))
            if now - started >= self._window:
                started, count = now, 0
            reset_in = max(0.0, self._window - (now - started))
            if count >= self._limit:
                self._windows[key] = (started, count)
                return RateLimitResult(
                    allowed=False,
                    current=count,
                    limit=self._limit,
                    reset_in=reset_in,
                    remaining=0,
                )
            count += 1
            self._windows[key] = (started, count)
            return RateLimitResult(
                allowed=True,
                current=count,
                limit=self._limit,
                reset_in=reset_in,
                remaining=self._limit - count,
            )

    def reset(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)
