"""Per-referral exclusive locks.

Mutations on one referral are serialized; different referrals never contend
except for the brief registry lookup. The registry holds its locks weakly, so a
lock lives only while some caller is waiting on or holding it.
"""

import threading
import weakref
from contextlib import contextmanager
from typing import Hashable, Iterator


class LockTimeout(Exception):
    pass


class ReferralLocks:
    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._registry_lock = threading.Lock()
        self._locks: weakref.WeakValueDictionary = weakref.WeakValueDictionary()

    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        lock = self._lock_for(key)
        if not lock.acquire(timeout=self.timeout):
            raise LockTimeout(f"Timed out after {self.timeout}s waiting for {key!r}")
        try:
            yield
        finally:
            lock.release()

    def is_locked(self, key: Hashable) -> bool:
        with self._registry_lock:
            lock = self._locks.get(key)
        return lock is not None and lock.locked()

    def active_count(self) -> int:
        with self._registry_lock:
            return len(self._locks)
