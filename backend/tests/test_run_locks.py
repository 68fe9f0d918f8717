"""Tests for per-test-run advisory locks."""

import threading
import time
from unittest.mock import MagicMock

import pytest
from redis.exceptions import LockError

from testrun_jobs.config import Settings
from testrun_jobs.errors import RunLockTimeout
from testrun_jobs.services.run_locks import LocalRunLocks, RedisRunLocks, create_run_locks


class TestLocalRunLocks:
    def test_same_run_is_serialized(self):
        locks = LocalRunLocks(blocking_timeout=5)
        events = []

        def job(name):
            with locks.hold(1):
                events.append(f"{name}:start")
                time.sleep(0.05)
                events.append(f"{name}:end")

        threads = [threading.Thread(target=job, args=(n,)) for n in ("a", "b")]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        # No interleaving: each start is directly followed by its own end
        assert events[0].split(":")[0] == events[1].split(":")[0]
        assert events[2].split(":")[0] == events[3].split(":")[0]

    def test_different_runs_do_not_block(self):
        locks = LocalRunLocks(blocking_timeout=0.1)
        with locks.hold(1):
            with locks.hold(2):
                pass

    def test_times_out_while_held(self):
        locks = LocalRunLocks(blocking_timeout=0.05)
        with locks.hold(7):
            outcome = []
            t = threading.Thread(target=lambda: outcome.append(_try_hold(locks, 7)))
            t.start()
            t.join(timeout=5)
        assert isinstance(outcome[0], RunLockTimeout)
        assert outcome[0].test_run_id == 7

    def test_released_after_error(self):
        locks = LocalRunLocks(blocking_timeout=0.05)
        with pytest.raises(RuntimeError):
            with locks.hold(3):
                raise RuntimeError("boom")
        with locks.hold(3):
            pass


def _try_hold(locks, test_run_id):
    try:
        with locks.hold(test_run_id):
            return None
    except RunLockTimeout as e:
        return e


class TestRedisRunLocks:
    def test_acquires_named_lock(self):
        client = MagicMock()
        client.lock.return_value.acquire.return_value = True
        locks = RedisRunLocks(client, timeout=60, blocking_timeout=2)

        with locks.hold(12):
            pass

        client.lock.assert_called_once_with("testrun-lock:12", timeout=60, blocking_timeout=2)
        client.lock.return_value.release.assert_called_once()

    def test_acquire_failure_raises_timeout(self):
        client = MagicMock()
        client.lock.return_value.acquire.return_value = False
        locks = RedisRunLocks(client, blocking_timeout=2)

        with pytest.raises(RunLockTimeout) as excinfo:
            with locks.hold(12):
                pytest.fail("lock body must not run")
        assert str(excinfo.value) == "Timed out after 2s waiting for lock on test run 12"

    def test_lost_lock_is_logged_not_raised(self, caplog):
        client = MagicMock()
        client.lock.return_value.acquire.return_value = True
        client.lock.return_value.release.side_effect = LockError("Cannot release an unlocked lock")
        locks = RedisRunLocks(client)

        with locks.hold(5):
            pass

        assert "Lock on test run 5 was lost" in caplog.text


def test_backend_is_chosen_from_settings():
    local = create_run_locks(Settings(_env_file=None, run_lock_backend="local", run_lock_blocking_timeout_seconds=3))
    assert isinstance(local, LocalRunLocks)
    assert local.blocking_timeout == 3

    remote = create_run_locks(Settings(_env_file=None, run_lock_backend="redis"))
    assert isinstance(remote, RedisRunLocks)
