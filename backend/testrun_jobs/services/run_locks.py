"""Advisory locks that serialize jobs mutating the same test run's results."""

import logging
import threading
from contextlib import contextmanager
from typing import Dict

import redis
from redis.exceptions import LockError

from testrun_jobs.errors import RunLockTimeout

logger = logging.getLogger(__name__)


class LocalRunLocks:
    """In-process locks, for a single worker process or tests"""

    def __init__(self, blocking_timeout: float = 30.0):
        self.blocking_timeout = blocking_timeout
        self._guard = threading.Lock()
        self._locks: Dict[int, threading.Lock] = {}

    def _lock_for(self, test_run_id: int) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(test_run_id, threading.Lock())

    @contextmanager
    def hold(self, test_run_id: int):
        lock = self._lock_for(test_run_id)
        if not lock.acquire(timeout=self.blocking_timeout):
            raise RunLockTimeout(test_run_id, self.blocking_timeout)
        try:
            yield
        finally:
            lock.release()


class RedisRunLocks:
    """Locks shared by every worker talking to the same Redis"""

    def __init__(
        self,
        client: redis.Redis,
        timeout: int = 300,
        blocking_timeout: float = 30.0,
        prefix: str = "testrun-lock",
    ):
        self.client = client
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisRunLocks":
        return cls(redis.Redis.from_url(url, socket_connect_timeout=5), **kwargs)

    @contextmanager
    def hold(self, test_run_id: int):
        # timeout bounds how long a crashed worker can keep the run locked
        lock = self.client.lock(
            f"{self.prefix}:{test_run_id}",
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        if not lock.acquire():
            raise RunLockTimeout(test_run_id, self.blocking_timeout)
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError as e:
                # Expired while held; the job's own transaction already decided the outcome
                logger.warning("Lock on test run %s was lost before release: %s", test_run_id, e)


def create_run_locks(settings):
    if settings.run_lock_backend == "local":
        return LocalRunLocks(blocking_timeout=settings.run_lock_blocking_timeout_seconds)
    return RedisRunLocks.from_url(
        settings.redis_url,
        timeout=settings.run_lock_timeout_seconds,
        blocking_timeout=settings.run_lock_blocking_timeout_seconds,
    )
