from __future__ import annotations

from typing import Dict

from .errors import RateLimitExceeded


class FixedWindowRateLimiter:
    """Counts hits per key inside a fixed window, e.g. accepts per user per minute."""

    def __init__(self, limit: int, window_ms: int = 60_000) -> None:
        self.limit = limit
        self.window_ms = window_ms
        self._windows: Dict[str, tuple[int, int]] = {}

    def allow(self, key: str, now_ms: int) -> bool:
        window_start, count = self._windows.get(key, (now_ms, 0))
        if now_ms - window_start >= self.window_ms:
            window_start, count = now_ms, 0
        count += 1
        self._windows[key] = (window_start, count)
        return count <= self.limit

    def check(self, key: str, now_ms: int, action: str) -> None:
        if not self.allow(key, now_ms):
            raise RateLimitExceeded(f"{action} rate limit exceeded")
