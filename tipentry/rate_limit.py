"""
Per-user abuse guards placed in front of the hosted text model.

Both guards keep their state in process memory only: counters reset when the
process restarts. A single lock per guard serializes the read-modify-write of
a user's entry, so interleaved requests cannot double-spend a slot.
Keys whose window has lapsed are swept out at most once per window.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from tipentry.graph.state import RateDecision

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Fixed-size request budget per user key, renewed when its window lapses.

    The window starts at the first request after the previous one expired;
    expiry is detected lazily on the next check.
    """

    def __init__(self, limit: int = 20, window_seconds: float = 3600.0, clock: Clock = time.monotonic):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._next_sweep = clock() + window_seconds
        self._lock = threading.Lock()

    def _sweep(self, now: float) -> None:
        # Caller holds the lock. Runs at most once per window.
        if now < self._next_sweep:
            return
        expired = [key for key, window in self._windows.items() if now >= window.reset_at]
        for key in expired:
            del self._windows[key]
        self._next_sweep = now + self.window_seconds

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._windows)

    def check_rate(self, user_key: str) -> RateDecision:
        """Consume one slot for user_key if any remain."""
        key = user_key or "anonymous"
        with self._lock:
            now = self._clock()
            self._sweep(now)
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                window = _Window(count=0, reset_at=now + self.window_seconds)
                self._windows[key] = window

            reset_in_ms = max(0, int(round((window.reset_at - now) * 1000)))
            if window.count >= self.limit:
                logger.info("Rate limit reached for %s, resets in %sms", key, reset_in_ms)
                return RateDecision(allowed=False, remaining=0, reset_in_ms=reset_in_ms)

            window.count += 1
            return RateDecision(
                allowed=True,
                remaining=self.limit - window.count,
                reset_in_ms=reset_in_ms,
            )

    def current_count(self, user_key: str) -> int:
        """Requests counted in the user's live window (0 if none or expired)."""
        with self._lock:
            window = self._windows.get(user_key)
            if window is None or self._clock() >= window.reset_at:
                return 0
            return window.count

    def reset(self, user_key: Optional[str] = None) -> None:
        with self._lock:
            if user_key is None:
                self._windows.clear()
            else:
                self._windows.pop(user_key, None)


_STRAY_SEPARATOR = re.compile(r"(?<!\d)[.,]|[.,](?!\d)")
_NON_WORD = re.compile(r"[^\w.,]+|_+", re.UNICODE)


def fingerprint(text: str) -> str:
    """Normalize text so trivially different resubmissions compare equal.

    Separators inside numbers are kept, so "12.00" and "1,200" stay distinct.
    """
    text = _STRAY_SEPARATOR.sub("", (text or "").lower())
    return _NON_WORD.sub("", text)[:50]


@dataclass
class _Recent:
    entries: List[Tuple[str, float]] = field(default_factory=list)


class SpamDetector:
    """Flags a user resubmitting the same text within a short span.

    An input is spam when at least duplicate_threshold earlier inputs from the
    same key, inside the window, share its fingerprint.
    """

    def __init__(
        self,
        window_seconds: float = 60.0,
        duplicate_threshold: int = 1,
        history: int = 10,
        clock: Clock = time.monotonic,
    ):
        if duplicate_threshold < 1:
            raise ValueError("duplicate_threshold must be at least 1")
        self.window_seconds = window_seconds
        self.duplicate_threshold = duplicate_threshold
        self.history = history
        self._clock = clock
        self._recent: Dict[str, _Recent] = {}
        self._next_sweep = clock() + window_seconds
        self._lock = threading.Lock()

    def _sweep(self, now: float) -> None:
        if now < self._next_sweep:
            return
        stale = [
            key
            for key, recent in self._recent.items()
            if all(now - ts >= self.window_seconds for _, ts in recent.entries)
        ]
        for key in stale:
            del self._recent[key]
        self._next_sweep = now + self.window_seconds

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._recent)

    def detect_spam(self, user_key: str, text: str) -> bool:
        key = user_key or "anonymous"
        digest = fingerprint(text)
        with self._lock:
            now = self._clock()
            self._sweep(now)
            recent = self._recent.setdefault(key, _Recent())
            live = [(d, ts) for d, ts in recent.entries if now - ts < self.window_seconds]
            duplicates = sum(1 for d, _ in live if d == digest)
            live.append((digest, now))
            recent.entries = live[-self.history:]

        if duplicates >= self.duplicate_threshold:
            logger.warning("Repeated input from %s (%d recent duplicates)", key, duplicates)
            return True
        return False
