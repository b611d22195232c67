"""
In-memory sliding-window rate limiter for proxied tracker calls.

Counts are kept per ``(user, resource)`` key. A window opens with the first
request for a key and lasts ``window`` seconds; requests beyond ``max`` inside
that window are denied. Entries whose window has passed are swept lazily.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, Optional, Tuple, Union

DEFAULT_MAX_REQUESTS = 100
DEFAULT_WINDOW = "1h"
DEFAULT_SWEEP_INTERVAL = 5 * 60

_WINDOW_PATTERN = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 60 * 60, "d": 24 * 60 * 60}


def parse_window(window: Union[str, int, float, None]) -> float:
    """Return the window length in seconds; unknown formats mean one hour."""
    if isinstance(window, (int, float)) and not isinstance(window, bool):
        return float(window) if window > 0 else 3600.0
    if not isinstance(window, str):
        return 3600.0
    match = _WINDOW_PATTERN.match(window.strip())
    if not match:
        return 3600.0
    value, unit = match.groups()
    return float(int(value) * _UNIT_SECONDS[unit])


@dataclass
class _WindowEntry:
    count: int
    window_start: float
    max_requests: int
    window_seconds: float

    def expired(self, now: float) -> bool:
        return now - self.window_start > self.window_seconds


@dataclass
class RateLimitStatus:
    remaining: Optional[int]
    reset_in: Optional[float]

    @property
    def reset_at(self) -> Optional[datetime]:
        if self.reset_in is None:
            return None
        return datetime.now(timezone.utc) + timedelta(seconds=self.reset_in)

    def to_dict(self) -> dict:
        reset_at = self.reset_at
        return {
            "remaining": self.remaining,
            "reset_at": reset_at.isoformat() if reset_at else None,
        }


class RateLimiter:
    """
    Thread-safe fixed-window counter keyed by user and resource.

    ``clock`` must be monotonic; tests inject a fake one.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
    ):
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._store: Dict[Tuple[str, str], _WindowEntry] = {}
        self._lock = Lock()
        self._last_sweep = clock()

    @staticmethod
    def _key(user_id, resource: str) -> Tuple[str, str]:
        return str(user_id), resource

    def check(
        self,
        user_id,
        resource: str,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window: Union[str, int, float] = DEFAULT_WINDOW,
    ) -> bool:
        """Count one request. Returns False when the caller is over the limit."""
        window_seconds = parse_window(window)
        key = self._key(user_id, resource)
        with self._lock:
            now = self._clock()
            if now - self._last_sweep >= self._sweep_interval:
                self._sweep_locked(now)

            entry = self._store.get(key)
            if entry is None or entry.expired(now):
                self._store[key] = _WindowEntry(
                    count=1,
                    window_start=now,
                    max_requests=max_requests,
                    window_seconds=window_seconds,
                )
                return True

            if entry.count < entry.max_requests:
                entry.count += 1
                return True

            return False

    def get_status(self, user_id, resource: str) -> RateLimitStatus:
        with self._lock:
            entry = self._store.get(self._key(user_id, resource))
            now = self._clock()
            if entry is None or entry.expired(now):
                return RateLimitStatus(remaining=None, reset_in=None)
            return RateLimitStatus(
                remaining=max(0, entry.max_requests - entry.count),
                reset_in=max(0.0, entry.window_start + entry.window_seconds - now),
            )

    def reset(self, user_id, resource: str) -> None:
        with self._lock:
            self._store.pop(self._key(user_id, resource), None)

    def sweep(self) -> int:
        with self._lock:
            return self._sweep_locked(self._clock())

    def _sweep_locked(self, now: float) -> int:
        expired = [key for key, entry in self._store.items() if entry.expired(now)]
        for key in expired:
            del self._store[key]
        self._last_sweep = now
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)


# Shared across requests in this process
rate_limiter = RateLimiter()
