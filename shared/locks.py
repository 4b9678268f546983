import threading
from contextlib import contextmanager
from typing import Dict, Optional

import redis

from .errors import LockTimeoutError


class KeyedLocks:
    """
    Mutual exclusion per resource key.

    Uses Redis locks when a client is given so that every worker process
    shares them; otherwise falls back to in-process locks, which only
    serialize threads of a single process.
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        wait_seconds: float = 5.0,
        ttl_seconds: float = 30.0
    ):
        self.redis = redis_client
        self.wait_seconds = wait_seconds
        self.ttl_seconds = ttl_seconds
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._holders: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str):
        if self.redis is not None:
            with self._hold_redis(key):
                yield
        else:
            with self._hold_local(key):
                yield

    @contextmanager
    def _hold_redis(self, key: str):
        lock = self.redis.lock(
            f"lock:{key}",
            timeout=self.ttl_seconds,
            blocking_timeout=self.wait_seconds
        )
        if not lock.acquire():
            raise LockTimeoutError(f"Timed out waiting for {key}", resource=key)
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                # Expired under us; the TTL already freed it.
                pass

    @contextmanager
    def _hold_local(self, key: str):
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._holders[key] = self._holders.get(key, 0) + 1
        try:
            if not lock.acquire(timeout=self.wait_seconds):
                raise LockTimeoutError(f"Timed out waiting for {key}", resource=key)
            try:
                yield
            finally:
                lock.release()
        finally:
            with self._guard:
                self._holders[key] -= 1
                if self._holders[key] == 0:
                    del self._holders[key]
                    del self._locks[key]

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)
