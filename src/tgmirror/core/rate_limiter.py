"""Sliding window limiter for elevated visibility grants."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Deque, Optional

from tgmirror.core.config import RateLimitConfig

LOGGER = logging.getLogger(__name__)


class SlidingWindowLimiter:
    """Bounded FIFO of grant timestamps, trimmed on every access.

    Timestamps are plain seconds (``time.monotonic`` by default) so tests can
    pass explicit values.
    """

    def __init__(self, config: RateLimitConfig) -> None:
        self._window = config.window
        self._capacity = config.capacity
        self._grants: Deque[float] = deque()
        self._lock = threading.Lock()

    def _trim(self, now: float) -> None:
        cutoff = now - self._window
        while self._grants and self._grants[0] <= cutoff:
            self._grants.popleft()

    def try_reserve(self, now: Optional[float] = None) -> bool:
        """Check for headroom and take a slot in one step."""

        if now is None:
            now = time.monotonic()
        with self._lock:
            self._trim(now)
            if len(self._grants) < self._capacity:
                self._grants.append(now)
                return True
        LOGGER.warning("Throttled elevated visibility (%s grants per %ss)", self._capacity, self._window)
        return False

    def count(self, now: Optional[float] = None) -> int:
        if now is None:
            now = time.monotonic()
        with self._lock:
            self._trim(now)
            return len(self._grants)
