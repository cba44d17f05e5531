"""Per-user limits on entry creation."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Protocol

from ...infra.logging import get_logger

__all__ = ["FixedWindowRateLimiter", "RateLimiter", "RateLimitExceededError"]

logger = get_logger(__name__)


class RateLimitExceededError(RuntimeError):
    code = "rate_limited"
    retryable = True

    def __init__(self, user_id: str, *, retry_after_seconds: float) -> None:
        super().__init__(f"Entry creation limit reached for user {user_id}")
        self.user_id = user_id
        self.retry_after_seconds = retry_after_seconds


class RateLimiter(Protocol):  # pragma: no cover - interface only
    def acquire(self, user_id: str) -> bool: ...

    def retry_after(self, user_id: str) -> float: ...


@dataclass
class _Window:
    started_at: float
    used: int


class FixedWindowRateLimiter(RateLimiter):
    """Allows ``limit`` creations per user in each ``period_seconds`` window."""

    def __init__(
        self,
        *,
        limit: int = 20,
        period_seconds: float = 3600,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self._limit = limit
        self._period = float(period_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._windows: Dict[str, _Window] = {}
        self._next_sweep_at = clock() + self._period

    def acquire(self, user_id: str) -> bool:
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep_at:
                self._evict_expired(now)
            window = self._current_window(user_id, now)
            if window.used >= self._limit:
                logger.warning(
                    "entry_rate_limit_exceeded",
                    extra={"user_id": user_id, "limit": self._limit},
                )
                return False
            window.used += 1
            return True

    def retry_after(self, user_id: str) -> float:
        now = self._clock()
        with self._lock:
            window = self._windows.get(user_id)
            if window is None or now - window.started_at >= self._period:
                return 0.0
            if window.used < self._limit:
                return 0.0
            return max(0.0, window.started_at + self._period - now)

    def reset(self, user_id: str) -> None:
        with self._lock:
            self._windows.pop(user_id, None)
        logger.info("entry_rate_limit_reset", extra={"user_id": user_id})

    def prune(self) -> int:
        """Forget every window that has already ended; returns how many were dropped."""

        with self._lock:
            return self._evict_expired(self._clock())

    @property
    def tracked_users(self) -> int:
        with self._lock:
            return len(self._windows)

    def _evict_expired(self, now: float) -> int:
        expired = [
            user_id
            for user_id, window in self._windows.items()
            if now - window.started_at >= self._period
        ]
        for user_id in expired:
            del self._windows[user_id]
        self._next_sweep_at = now + self._period
        if expired:
            logger.debug("entry_rate_limit_pruned", extra={"evicted": len(expired)})
        return len(expired)

    def _current_window(self, user_id: str, now: float) -> _Window:
        window = self._windows.get(user_id)
        if window is None or now - window.started_at >= self._period:
            window = _Window(started_at=now, used=0)
            self._windows[user_id] = window
        return window
