"""Tests for target locks."""

import sqlite3
import threading

import pytest

from shipwright.core.errors import TargetBusyError
from shipwright.execution.concurrency import (
    ConcurrencyGuard,
    LedgerLock,
    TargetLockRegistry,
    target_lock_key,
)


class TestTargetLockRegistry:
    def test_hold_and_release(self):
        locks = TargetLockRegistry()
        with locks.hold("10.0.0.5", timeout=1, holder="run-a"):
            assert locks.is_locked("10.0.0.5")
            assert locks.holder("10.0.0.5") == "run-a"
        assert not locks.is_locked("10.0.0.5")
        assert locks.holder("10.0.0.5") is None

    def test_same_host_is_exclusive(self):
        locks = TargetLockRegistry()
        with locks.hold("10.0.0.5", timeout=1, holder="run-a"):
            with pytest.raises(TargetBusyError) as exc_info:
                with locks.hold("10.0.0.5", timeout=0, holder="run-b"):
                    pass
        assert exc_info.value.holder == "run-a"
        assert exc_info.value.target == "10.0.0.5"

    def test_different_hosts_are_independent(self):
        locks = TargetLockRegistry()
        with locks.hold("10.0.0.5", timeout=0):
            with locks.hold("10.0.0.6", timeout=0):
                assert locks.is_locked("10.0.0.6")

    def test_waiter_gets_lock_after_release(self):
        locks = TargetLockRegistry()
        order = []

        def second():
            with locks.hold("h", timeout=5, holder="run-b"):
                order.append("b")

        with locks.hold("h", timeout=0, holder="run-a"):
            worker = threading.Thread(target=second)
            worker.start()
            order.append("a")
        worker.join(timeout=5)
        assert order == ["a", "b"]

    def test_released_on_exception(self):
        locks = TargetLockRegistry()
        with pytest.raises(RuntimeError):
            with locks.hold("h", timeout=0):
                raise RuntimeError("boom")
        assert not locks.is_locked("h")


class TestConcurrencyGuard:
    @pytest.fixture
    def guard(self):
        conn = sqlite3.connect(":memory:")
        yield ConcurrencyGuard(conn)
        conn.close()

    def test_acquire_release(self, guard):
        key = target_lock_key("10.0.0.5")
        assert key == "target:10.0.0.5"
        assert guard.acquire(key, "run-a")
        assert not guard.acquire(key, "run-b")
        assert guard.get_lock_holder(key) == "run-a"
        assert guard.release(key, "run-a")
        assert not guard.is_locked(key)

    def test_reacquire_by_same_holder_extends(self, guard):
        assert guard.acquire("k", "run-a", ttl_seconds=10)
        assert guard.acquire("k", "run-a", ttl_seconds=100)

    def test_release_by_other_holder_is_refused(self, guard):
        guard.acquire("k", "run-a")
        assert guard.release("k", "run-b") is False
        assert guard.is_locked("k")

    def test_expired_lock_can_be_taken(self, guard):
        assert guard.acquire("k", "crashed", ttl_seconds=-1)
        assert not guard.is_locked("k")
        assert guard.acquire("k", "run-b")

    def test_cleanup_expired(self, guard):
        guard.acquire("a", "x", ttl_seconds=-1)
        guard.acquire("b", "y", ttl_seconds=60)
        assert guard.cleanup_expired() == 1


class TestLedgerLock:
    def test_hold_releases_row(self, tmp_path):
        path = tmp_path / "locks" / "targets.db"
        lock = LedgerLock(path)
        with lock.hold("target:h", "run-a", timeout=0):
            conn = sqlite3.connect(str(path))
            assert ConcurrencyGuard(conn).get_lock_holder("target:h") == "run-a"
            conn.close()
        conn = sqlite3.connect(str(path))
        assert not ConcurrencyGuard(conn).is_locked("target:h")
        conn.close()

    def test_times_out_when_held_elsewhere(self, tmp_path):
        path = tmp_path / "targets.db"
        conn = sqlite3.connect(str(path))
        ConcurrencyGuard(conn).acquire("target:h", "other-process")
        conn.close()

        ticks = iter([0.0, 0.5, 1.0])
        sleeps = []
        lock = LedgerLock(path, poll_interval=0.5, sleep=sleeps.append, clock=lambda: next(ticks))
        with pytest.raises(TargetBusyError) as exc_info:
            with lock.hold("target:h", "run-a", timeout=1.0):
                pass
        assert exc_info.value.holder == "other-process"
        assert sleeps == [0.5]
