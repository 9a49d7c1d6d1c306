"""
Per-key mutual exclusion and request rate limiting.

``KeyedLocks`` serializes operations on the same identity key inside one
process; the database's unique index and conditional updates remain the
arbiter across processes. ``RateLimiter`` is the sliding-window limiter
used by the HTTP layer.
"""

import threading
import time
from collections import defaultdict, deque
from contextlib import contextmanager
from typing import Deque, Dict, Iterator, Optional


class KeyedLocks:
    """
    Reference-counted lock per key.

    Locks are created on first use and discarded when the last holder or
    waiter releases them, so the registry does not grow with every voter
    ever seen.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._refs: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            self._refs[key] = self._refs.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._refs[key] -= 1
                if self._refs[key] == 0:
                    del self._refs[key]
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class RateLimiter:
    """
    Sliding window rate limiter.

    Thread-safe; keeps one deque of hit timestamps per key.
    """

    def __init__(self, rpm: int, window_seconds: int = 60):
        self._limit = max(1, rpm)
        self._window = window_seconds
        self._hits: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.RLock()

    def allow(self, key: str, now: Optional[float] = None) -> bool:
        """Record a hit for ``key`` and report whether it is within the limit."""
        now = time.time() if now is None else now
        window_start = now - self._window

        with self._lock:
            q = self._hits[key]
            while q and q[0] < window_start:
                q.popleft()
            if len(q) >= self._limit:
                return False
            q.append(now)
            return True

    def reset(self, key: Optional[str] = None) -> None:
        with self._lock:
            if key:
                self._hits.pop(key, None)
            else:
                self._hits.clear()
