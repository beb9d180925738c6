"""
Per-Account Locking

Serializes read-modify-write units per account instead of per service.
Multi-account units acquire their locks in sorted key order, which rules
out deadlock between two transfers moving funds in opposite directions.

These locks order units on the same account. They do not by themselves
let unrelated accounts commit in parallel: every unit also runs inside
StorageInterface.atomic(), which holds the backend-wide lock, so commits
are serialized per storage backend.
"""

import threading
from contextlib import contextmanager
from typing import Dict, List, Optional

from .config import get_config
from .exceptions import StorageFailureError


class AccountLockRegistry:
    """Hands out one re-entrant lock per key with bounded waiting"""

    def __init__(self, timeout_seconds: Optional[float] = None):
        if timeout_seconds is None:
            timeout_seconds = get_config().lock_timeout_seconds
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: str):
        """
        Hold the locks for all keys for the duration of the block.

        Raises:
            StorageFailureError: a lock could not be acquired within the timeout
        """
        acquired: List[threading.RLock] = []
        try:
            for key in sorted(set(keys)):
                lock = self._lock_for(key)
                if not lock.acquire(timeout=self.timeout_seconds):
                    raise StorageFailureError(
                        f"Timed out after {self.timeout_seconds}s waiting for lock on {key}"
                    )
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    @staticmethod
    def owner_key(owner_id: str) -> str:
        """Lock key guarding account creation for an owner"""
        return f"owner:{owner_id}"
