"""Fixed-window rate limiting keyed by (action, caller).

Callers pick their own identifier (the chat proxy uses the session key), so
the window table is pruned as it grows: expired windows are swept from the
oldest end on every new insert and the table never holds more than
``max_entries`` windows.
"""

from __future__ import annotations

import os
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Tuple

DEFAULT_MAX_ENTRIES = 10_000


class RateLimitExceeded(Exception):
    def __init__(self, retry_after_seconds: int) -> None:
        super().__init__("Rate limit exceeded")
        self.retry_after_seconds = retry_after_seconds


@dataclass
class _Window:
    count: int
    ends_at: float


class FixedWindowLimiter:
    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES, clock: Callable[[], float] = time.monotonic) -> None:
        self.max_entries = max_entries
        self._clock = clock
        # Oldest window first; windows are re-inserted when they restart.
        self._windows: "OrderedDict[Tuple[str, str], _Window]" = OrderedDict()
        self._lock = RLock()

    def __len__(self) -> int:
        return len(self._windows)

    def _sweep(self, now: float) -> None:
        while self._windows:
            oldest = next(iter(self._windows.values()))
            if oldest.ends_at > now:
                break
            self._windows.popitem(last=False)
        while len(self._windows) >= self.max_entries:
            self._windows.popitem(last=False)

    def hit(self, key: str, identifier: str, *, limit: int, window_seconds: int) -> None:
        now = self._clock()
        store_key = (key, identifier)
        with self._lock:
            window = self._windows.get(store_key)
            if window is not None and window.ends_at > now:
                if window.count >= limit:
                    raise RateLimitExceeded(max(int(window.ends_at - now), 1))
                window.count += 1
                return
            self._windows.pop(store_key, None)
            self._sweep(now)
            self._windows[store_key] = _Window(count=1, ends_at=now + window_seconds)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()


_limiter = FixedWindowLimiter()


def rate_limit_action(
    key: str,
    identifier: str,
    *,
    limit_env: str,
    window_env: str,
    default_limit: int,
    default_window_seconds: int,
) -> None:
    """Count one ``key`` action by ``identifier``.

    Raises:
        RateLimitExceeded if the action should be blocked. retry_after_seconds
        indicates when the caller may retry.
    """

    if _rate_limiting_disabled():
        return
    _limiter.hit(
        key,
        identifier,
        limit=_env_int(limit_env, default_limit),
        window_seconds=_env_int(window_env, default_window_seconds),
    )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _rate_limiting_disabled() -> bool:
    flag = os.getenv("AIKANBAN_RATE_LIMIT_DISABLED")
    if flag and flag.lower() in {"1", "true", "yes", "on"}:
        return True
    if os.getenv("PYTEST_CURRENT_TEST") and not os.getenv("AIKANBAN_RATE_LIMIT_IN_TESTS"):
        return True
    return False


def reset_rate_limits() -> None:
    """Clear in-memory counters (useful for tests)."""

    _limiter.clear()
