"""
Sync Concurrency Guard - Trigger dedup and per-unit mutual exclusion

Two backends share one interface:
- SyncConcurrencyGuard: process-local ledger and lock set (default)
- DatabaseSyncGuard: the same state in SQL tables, shared by every process
  pointing at the database

The in-memory guard does not coordinate across process instances; the
database guard exists for deployments that need that.
"""
import os
import socket
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterator, List, Optional

from sqlalchemy.exc import IntegrityError

from ...utils.logger import get_logger

logger = get_logger('sync_guard')

DEFAULT_RETENTION_SECONDS = 2 * 60 * 60


class SyncGuard:
    """Interface shared by the guard backends."""

    def is_duplicate_trigger(self, execution_id: Optional[str]) -> bool:
        raise NotImplementedError

    def try_acquire(self, sync_id: str) -> bool:
        raise NotImplementedError

    def heartbeat(self, sync_id: str) -> bool:
        """Signal that the holder of ``sync_id`` is still working."""
        raise NotImplementedError

    def release(self, sync_id: str) -> None:
        raise NotImplementedError

    def active_syncs(self) -> List[str]:
        raise NotImplementedError

    @contextmanager
    def hold(self, sync_id: str) -> Iterator[bool]:
        """Scoped acquisition.

        Yields True when the lock was taken; it is then released on every exit
        path. Yields False, and releases nothing, when the unit is busy.

        Example:
            >>> with guard.hold('static-pages') as acquired:
            ...     if not acquired:
            ...         return skipped()
            ...     run_sync()
        """
        acquired = self.try_acquire(sync_id)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(sync_id)


class SyncConcurrencyGuard(SyncGuard):
    """Process-local trigger ledger and active sync set.

    Example:
        >>> guard = SyncConcurrencyGuard()
        >>> guard.is_duplicate_trigger('cron-123')
        False
        >>> guard.is_duplicate_trigger('cron-123')
        True
        >>> guard.try_acquire('americas-news'), guard.try_acquire('americas-news')
        (True, False)
    """

    def __init__(
        self,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time
    ):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._executions: Dict[str, float] = {}
        self._active = set()
        self._lock = threading.Lock()

    def is_duplicate_trigger(self, execution_id: Optional[str]) -> bool:
        """Record an execution id; True if it was already seen.

        A falsy id (manual invocation) is never a duplicate.
        """
        if not execution_id:
            return False

        with self._lock:
            cutoff = self._clock() - self.retention_seconds
            expired = [eid for eid, seen in self._executions.items() if seen < cutoff]
            for eid in expired:
                del self._executions[eid]

            if execution_id in self._executions:
                logger.warning(f"[SyncGuard] Duplicate trigger execution detected: {execution_id}")
                return True

            self._executions[execution_id] = self._clock()
            return False

    def try_acquire(self, sync_id: str) -> bool:
        with self._lock:
            if sync_id in self._active:
                logger.warning(f"[SyncGuard] Sync already in progress: {sync_id}")
                return False
            self._active.add(sync_id)
            return True

    def heartbeat(self, sync_id: str) -> bool:
        with self._lock:
            return sync_id in self._active

    def release(self, sync_id: str) -> None:
        with self._lock:
            self._active.discard(sync_id)

    def active_syncs(self) -> List[str]:
        with self._lock:
            return sorted(self._active)


class DatabaseSyncGuard(SyncGuard):
    """Trigger ledger and sync locks stored through Flask-SQLAlchemy.

    A primary key insert is the atomic conditional put: an IntegrityError
    means another process got there first. Each acquisition writes its own
    owner token, and only that token can refresh or release the row.

    Holders call ``heartbeat()`` while their work runs. A lock whose last
    heartbeat is older than ``lock_ttl`` is assumed abandoned by a crashed
    process and taken over with a single conditional UPDATE.

    Must be used inside a Flask application context.
    """

    def __init__(
        self,
        db,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        lock_ttl: float = 900,
        heartbeat_interval: Optional[float] = None,
        clock: Callable[[], float] = time.time
    ):
        self.db = db
        self.retention_seconds = retention_seconds
        self.lock_ttl = lock_ttl
        # Refresh often enough that a live holder never looks stale
        self.heartbeat_interval = heartbeat_interval if heartbeat_interval is not None else lock_ttl / 3
        self._clock = clock
        self._tokens: Dict[str, str] = {}
        self._last_beat: Dict[str, float] = {}
        self._state_lock = threading.Lock()

    def _now(self) -> datetime:
        # Naive UTC, matching the model defaults
        return datetime.fromtimestamp(self._clock(), timezone.utc).replace(tzinfo=None)

    @staticmethod
    def _new_token() -> str:
        return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:12]}"

    def _remember(self, sync_id: str, token: str) -> None:
        with self._state_lock:
            self._tokens[sync_id] = token
            self._last_beat[sync_id] = self._clock()

    def is_duplicate_trigger(self, execution_id: Optional[str]) -> bool:
        from ...models import TriggerExecution

        if not execution_id:
            return False

        now = self._now()
        cutoff = now - timedelta(seconds=self.retention_seconds)
        TriggerExecution.query.filter(
            TriggerExecution.first_seen_at < cutoff
        ).delete(synchronize_session=False)

        if TriggerExecution.query.filter_by(execution_id=execution_id).first() is not None:
            self.db.session.commit()
            logger.warning(f"[SyncGuard] Duplicate trigger execution detected: {execution_id}")
            return True

        try:
            self.db.session.add(TriggerExecution(execution_id=execution_id, first_seen_at=now))
            self.db.session.commit()
            return False
        except IntegrityError:
            # Another process recorded it between the lookup and the insert
            self.db.session.rollback()
            logger.warning(f"[SyncGuard] Duplicate trigger execution detected: {execution_id}")
            return True

    def try_acquire(self, sync_id: str) -> bool:
        from ...models import SyncLock

        token = self._new_token()
        now = self._now()
        cutoff = now - timedelta(seconds=self.lock_ttl)

        taken_over = SyncLock.query.filter(
            SyncLock.sync_id == sync_id,
            SyncLock.acquired_at < cutoff,
        ).update({'acquired_at': now, 'owner': token}, synchronize_session=False)
        self.db.session.commit()
        if taken_over:
            logger.warning(f"[SyncGuard] Took over stale lock {sync_id} (no heartbeat for {int(self.lock_ttl)}s)")
            self._remember(sync_id, token)
            return True

        existing = SyncLock.query.filter_by(sync_id=sync_id).first()
        if existing is not None:
            age = (now - existing.acquired_at).total_seconds()
            logger.warning(
                f"[SyncGuard] Sync already in progress: {sync_id} "
                f"(held by {existing.owner}, last heartbeat {int(age)}s ago)"
            )
            return False

        try:
            self.db.session.add(SyncLock(sync_id=sync_id, acquired_at=now, owner=token))
            self.db.session.commit()
        except IntegrityError:
            self.db.session.rollback()
            logger.warning(f"[SyncGuard] Lost lock race for {sync_id}")
            return False

        self._remember(sync_id, token)
        return True

    def heartbeat(self, sync_id: str) -> bool:
        """Refresh a held lock.

        Writes at most once per ``heartbeat_interval``.

        Returns:
            False when this guard no longer owns the lock
        """
        from ...models import SyncLock

        with self._state_lock:
            token = self._tokens.get(sync_id)
            last_beat = self._last_beat.get(sync_id, 0.0)
        if token is None:
            return False

        now_ts = self._clock()
        if now_ts - last_beat < self.heartbeat_interval:
            return True

        refreshed = SyncLock.query.filter_by(sync_id=sync_id, owner=token).update(
            {'acquired_at': self._now()}, synchronize_session=False
        )
        self.db.session.commit()
        if not refreshed:
            logger.error(f"[SyncGuard] Lock {sync_id} was taken over while still running")
            return False

        with self._state_lock:
            self._last_beat[sync_id] = now_ts
        return True

    def release(self, sync_id: str) -> None:
        from ...models import SyncLock

        with self._state_lock:
            token = self._tokens.pop(sync_id, None)
            self._last_beat.pop(sync_id, None)
        if token is None:
            return

        try:
            deleted = SyncLock.query.filter_by(sync_id=sync_id, owner=token).delete(synchronize_session=False)
            self.db.session.commit()
        except Exception:
            self.db.session.rollback()
            logger.exception(f"[SyncGuard] Failed to release lock {sync_id}")
            raise

        if not deleted:
            logger.warning(f"[SyncGuard] Lock {sync_id} now belongs to another holder, left in place")

    def active_syncs(self) -> List[str]:
        from ...models import SyncLock

        return [row.sync_id for row in SyncLock.query.order_by(SyncLock.sync_id).all()]
