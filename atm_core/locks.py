"""
Per-Card Serialization

One re-entrant lock per card number. Multi-card operations acquire their
locks in ascending card order so two opposite-direction transfers cannot
deadlock.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class KeyedLockManager:
    """Hands out one lock per key and acquires groups in a fixed order"""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def acquire(self, *keys: str) -> Iterator[None]:
        """Hold the locks for every distinct key, taken in sorted order"""
        ordered = sorted(set(k for k in keys if k))
        acquired = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
