"""
Sync Log Collector - Per-run issue tracking

Collects per-item and per-page problems during one sync run so a single bad
item is recorded and skipped instead of aborting the run.
"""
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ...utils.logger import get_logger

logger = get_logger('log_collector')


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


class SyncLogCollector:
    """Issue collector for one logical sync run.

    Example:
        >>> collector = SyncLogCollector(sync_id='americas-news')
        >>> collector.set_total(100)
        >>> collector.add_issue(SyncLogCollector.TYPE_TRANSFORM_FAILED, item_id='abc')
        >>> collector.record_success()
        >>> logs = collector.finalize()
    """

    TYPE_FETCH_FAILED = 'fetch_failed'            # A page could not be fetched
    TYPE_TRANSFORM_FAILED = 'transform_failed'    # An item could not be mapped
    TYPE_INDEX_FAILED = 'index_failed'            # Index write failed
    TYPE_RECONCILE_SKIPPED = 'reconcile_skipped'  # Orphan deletion not attempted
    TYPE_RECONCILE_ABORTED = 'reconcile_aborted'  # Safety threshold tripped
    TYPE_UNIT_FAILED = 'unit_failed'              # One unit of a region sync failed

    # Prevent memory bloat on very broken runs
    MAX_ISSUES = 500
    MAX_MESSAGE_LENGTH = 500

    def __init__(self, sync_id: str, dry_run: bool = False):
        self.sync_id = sync_id
        self.dry_run = dry_run
        self.start_time = _utc_now()
        self.end_time: Optional[str] = None
        self.issues: List[Dict] = []
        self.summary = {
            'total': 0,
            'success': 0,
            'skipped': 0,
            self.TYPE_FETCH_FAILED: 0,
            self.TYPE_TRANSFORM_FAILED: 0,
            self.TYPE_INDEX_FAILED: 0,
            self.TYPE_RECONCILE_SKIPPED: 0,
            self.TYPE_RECONCILE_ABORTED: 0,
            self.TYPE_UNIT_FAILED: 0,
        }
        self._lock = threading.Lock()

    def add_issue(
        self,
        issue_type: str,
        item_id: Optional[str] = None,
        message: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None
    ) -> None:
        """Add an issue record.

        Args:
            issue_type: One of the TYPE_* constants
            item_id: Related item or page id
            message: Error message, truncated to MAX_MESSAGE_LENGTH
            extra: Additional context
        """
        with self._lock:
            issue = {
                'type': issue_type,
                'time': _utc_now(),
            }
            if item_id:
                issue['item_id'] = item_id
            if message:
                issue['message'] = str(message)[:self.MAX_MESSAGE_LENGTH]
            if extra:
                issue['extra'] = extra

            if len(self.issues) < self.MAX_ISSUES:
                self.issues.append(issue)

            if issue_type in self.summary:
                self.summary[issue_type] += 1

        logger.warning(f"[SyncLog] {self.sync_id}: {issue_type} {item_id or ''} {message or ''}".rstrip())

    def record_success(self, count: int = 1) -> None:
        with self._lock:
            self.summary['success'] += count

    def record_skipped(self, count: int = 1) -> None:
        with self._lock:
            self.summary['skipped'] += count

    def set_total(self, total: int) -> None:
        with self._lock:
            self.summary['total'] = total

    def finalize(self) -> Dict:
        """Close the run and return its log.

        Returns:
            Dictionary with sync_id, dry_run, times, summary and issues
        """
        with self._lock:
            self.end_time = _utc_now()
            return {
                'sync_id': self.sync_id,
                'dry_run': self.dry_run,
                'start_time': self.start_time,
                'end_time': self.end_time,
                'summary': self.summary.copy(),
                'issues': list(self.issues),
            }

    def get_summary(self) -> Dict:
        with self._lock:
            return self.summary.copy()

    def has_problems(self) -> bool:
        with self._lock:
            return any(
                self.summary[key] > 0 for key in (
                    self.TYPE_FETCH_FAILED,
                    self.TYPE_TRANSFORM_FAILED,
                    self.TYPE_INDEX_FAILED,
                    self.TYPE_RECONCILE_ABORTED,
                    self.TYPE_UNIT_FAILED,
                )
            )
