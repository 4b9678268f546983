"""
Unit tests for KeyedLocks.
Tests: in-process locking, lock cleanup, Redis-backed locking
"""
import threading

import pytest
import redis
from shared.errors import LockTimeoutError
from shared.locks import KeyedLocks


class TestLocalLocks:
    """Tests for the in-process fallback."""

    def test_hold_and_release(self):
        locks = KeyedLocks()
        with locks.hold('queue:1:2'):
            assert locks.active_keys() == 1
        assert locks.active_keys() == 0

    def test_lock_released_on_error(self):
        locks = KeyedLocks()
        with pytest.raises(ValueError):
            with locks.hold('team:1'):
                raise ValueError("boom")
        assert locks.active_keys() == 0
        with locks.hold('team:1'):
            pass

    def test_different_keys_do_not_block(self):
        locks = KeyedLocks(wait_seconds=0.1)
        with locks.hold('competition:1'):
            with locks.hold('competition:2'):
                assert locks.active_keys() == 2

    def test_same_key_times_out(self):
        locks = KeyedLocks(wait_seconds=0.1)
        held = threading.Event()
        done = threading.Event()

        def holder():
            with locks.hold('competition:1'):
                held.set()
                done.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        try:
            held.wait(5)
            with pytest.raises(LockTimeoutError) as exc_info:
                with locks.hold('competition:1'):
                    pass
            assert exc_info.value.status_code == 503
        finally:
            done.set()
            thread.join()
        assert locks.active_keys() == 0

    def test_serializes_threads(self):
        locks = KeyedLocks()
        counter = {'value': 0}

        def bump():
            for _ in range(200):
                with locks.hold('counter'):
                    current = counter['value']
                    counter['value'] = current + 1

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert counter['value'] == 800


class TestRedisLocks:
    """Tests for Redis-backed locks."""

    def test_acquires_namespaced_lock(self, mocker):
        client = mocker.MagicMock()
        client.lock.return_value.acquire.return_value = True
        locks = KeyedLocks(client, wait_seconds=2, ttl_seconds=10)

        with locks.hold('team:9'):
            pass

        client.lock.assert_called_once_with('lock:team:9', timeout=10, blocking_timeout=2)
        client.lock.return_value.release.assert_called_once()

    def test_acquire_timeout(self, mocker):
        client = mocker.MagicMock()
        client.lock.return_value.acquire.return_value = False
        locks = KeyedLocks(client)

        with pytest.raises(LockTimeoutError):
            with locks.hold('team:9'):
                pass
        client.lock.return_value.release.assert_not_called()

    def test_expired_lock_release_ignored(self, mocker):
        client = mocker.MagicMock()
        lock = client.lock.return_value
        lock.acquire.return_value = True
        lock.release.side_effect = redis.exceptions.LockError("expired")

        with KeyedLocks(client).hold('team:9'):
            pass
