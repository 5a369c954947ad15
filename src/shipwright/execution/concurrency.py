"""Target locks: at most one deployment per host at a time.

WHY
───
Two pushes landing close together must not interleave their stop/pull/start
sequences on the same host; the second would stop the container the first
just started, or pull over a half-started transition. Runs against the same
host are serialised; runs against different hosts are independent.

ARCHITECTURE
────────────
::

    TargetLockRegistry()                 ─ in-process, one threading.Lock per host
      └── .hold(host, timeout, holder)   ─ context manager, TargetBusyError on timeout

    ConcurrencyGuard(conn)               ─ sqlite lock rows with expiry
      ├── .acquire(key, holder, ttl)     ─ try-lock
      ├── .release(key, holder)          ─ explicit unlock
      ├── .is_locked(key)                ─ check without acquiring
      ├── .get_lock_holder(key)
      └── .cleanup_expired()             ─ reap stale locks

    LedgerLock(path)                     ─ cross-process wrapper around the guard
      └── .hold(key, holder, timeout, ttl)

    Lock key convention: "target:<host>"

BEST PRACTICES
──────────────
- Hold the lock for the whole run, not per step.
- Set ``ttl_seconds`` longer than the longest expected run; a crashed
  orchestrator's lock then heals on its own.

Example::

    locks = TargetLockRegistry()
    with locks.hold("10.0.0.5", timeout=600, holder="run-a1b2c3"):
        sequencer_body()
"""

from __future__ import annotations

import sqlite3
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path

from shipwright.core.errors import TargetBusyError
from shipwright.core.logging import get_logger

logger = get_logger(__name__)


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


def target_lock_key(host: str) -> str:
    return f"target:{host}"


class TargetLockRegistry:
    """Per-host mutual exclusion inside one orchestrator process.

    The webhook receiver shares one registry across all background runs;
    the CLI creates one per invocation.
    """

    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._holders: dict[str, str | None] = {}
        self._guard = threading.Lock()

    def lock_for(self, host: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(host)
            if lock is None:
                lock = self._locks[host] = threading.Lock()
            return lock

    def holder(self, host: str) -> str | None:
        with self._guard:
            return self._holders.get(host)

    def is_locked(self, host: str) -> bool:
        return self.lock_for(host).locked()

    @contextmanager
    def hold(self, host: str, timeout: float, holder: str | None = None) -> Iterator[None]:
        """Hold the host lock, waiting up to ``timeout`` seconds.

        Raises:
            TargetBusyError: If the lock is not free within ``timeout``
        """
        lock = self.lock_for(host)
        acquired = lock.acquire(timeout=timeout) if timeout > 0 else lock.acquire(blocking=False)
        if not acquired:
            raise TargetBusyError(host, self.holder(host))

        with self._guard:
            self._holders[host] = holder
        try:
            yield
        finally:
            with self._guard:
                self._holders.pop(host, None)
            lock.release()


class ConcurrencyGuard:
    """Guards against concurrent deployments across processes.

    Uses sqlite rows with automatic expiry. If the orchestrator crashes, the
    lock expires after its ttl.
    """

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn
        self._ensure_table()

    def _ensure_table(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS shipwright_target_locks (
                lock_key TEXT PRIMARY KEY,
                holder TEXT NOT NULL,
                acquired_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    def acquire(self, lock_key: str, holder: str, ttl_seconds: int = 3600) -> bool:
        """Try to acquire a lock.

        Returns:
            True if acquired (or already held by ``holder``, which extends it),
            False if held by someone else
        """
        now = utcnow()
        expires_at = now + timedelta(seconds=ttl_seconds)
        cursor = self._conn.cursor()

        cursor.execute(
            "DELETE FROM shipwright_target_locks WHERE lock_key = ? AND expires_at < ?",
            (lock_key, now.isoformat()),
        )

        try:
            cursor.execute(
                """
                INSERT INTO shipwright_target_locks (lock_key, holder, acquired_at, expires_at)
                VALUES (?, ?, ?, ?)
                """,
                (lock_key, holder, now.isoformat(), expires_at.isoformat()),
            )
            self._conn.commit()
            return True
        except sqlite3.IntegrityError:
            self._conn.rollback()
            cursor.execute(
                "SELECT holder FROM shipwright_target_locks WHERE lock_key = ?",
                (lock_key,),
            )
            row = cursor.fetchone()
            if row and row[0] == holder:
                cursor.execute(
                    "UPDATE shipwright_target_locks SET expires_at = ? WHERE lock_key = ? AND holder = ?",
                    (expires_at.isoformat(), lock_key, holder),
                )
                self._conn.commit()
                return True
            return False

    def release(self, lock_key: str, holder: str | None = None) -> bool:
        """Release a lock; with ``holder`` only if that holder owns it."""
        cursor = self._conn.cursor()
        if holder:
            cursor.execute(
                "DELETE FROM shipwright_target_locks WHERE lock_key = ? AND holder = ?",
                (lock_key, holder),
            )
        else:
            cursor.execute("DELETE FROM shipwright_target_locks WHERE lock_key = ?", (lock_key,))
        self._conn.commit()
        return cursor.rowcount > 0

    def get_lock_holder(self, lock_key: str) -> str | None:
        """Holder of an unexpired lock, or None."""
        cursor = self._conn.cursor()
        cursor.execute(
            "SELECT holder, expires_at FROM shipwright_target_locks WHERE lock_key = ?",
            (lock_key,),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        if datetime.fromisoformat(row[1]) < utcnow():
            return None
        return row[0]

    def is_locked(self, lock_key: str) -> bool:
        return self.get_lock_holder(lock_key) is not None

    def cleanup_expired(self) -> int:
        """Delete expired locks; returns the number removed."""
        cursor = self._conn.cursor()
        cursor.execute(
            "DELETE FROM shipwright_target_locks WHERE expires_at < ?",
            (utcnow().isoformat(),),
        )
        self._conn.commit()
        return cursor.rowcount


class LedgerLock:
    """Cross-process target lock backed by a sqlite file.

    Polls :class:`ConcurrencyGuard` until the lock is free or ``timeout``
    elapses.
    """

    def __init__(
        self,
        path: str | Path,
        poll_interval: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.path = Path(path)
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    @contextmanager
    def hold(
        self,
        key: str,
        holder: str,
        timeout: float,
        ttl_seconds: int = 3600,
    ) -> Iterator[None]:
        """Hold ``key`` for the duration of the block.

        Raises:
            TargetBusyError: If another holder keeps the lock past ``timeout``
        """
        if str(self.path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path), timeout=30)
        try:
            guard = ConcurrencyGuard(conn)
            deadline = self._clock() + timeout
            while not guard.acquire(key, holder, ttl_seconds):
                if self._clock() >= deadline:
                    raise TargetBusyError(key, guard.get_lock_holder(key))
                logger.debug("lock.waiting", key=key, holder=guard.get_lock_holder(key))
                self._sleep(self.poll_interval)
            try:
                yield
            finally:
                guard.release(key, holder)
        finally:
            conn.close()


__all__ = [
    "TargetLockRegistry",
    "ConcurrencyGuard",
    "LedgerLock",
    "target_lock_key",
]
