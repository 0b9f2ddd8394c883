"""
Sync Module - Building blocks of the content sync pipeline

This package contains the sync service components:
- rate_limit: Local view of the upstream request quota
- scheduler: Priority queue draining outbound requests under the quota
- guard: Trigger dedup and per-unit sync locks
- reconciler: Orphan deletion behind a safety threshold
- session_pool: HTTP session pooling for connection reuse
- log_collector: Per-run issue collection
"""
from .errors import (
    ContentSyncError,
    RequestError,
    TransientRequestError,
    RateLimitedError,
    PermanentRequestError,
    RequestFailedError,
    SafetyThresholdExceeded,
    SearchIndexError,
    CollectionNotConfiguredError,
    WebhookValidationError,
)
from .rate_limit import RateLimitState, RateLimitTracker
from .scheduler import QueuedRequest, RequestScheduler
from .guard import SyncGuard, SyncConcurrencyGuard, DatabaseSyncGuard
from .reconciler import ReconciliationReport, Reconciler
from .session_pool import RequestSessionPool, get_request_session_pool
from .log_collector import SyncLogCollector

__all__ = [
    'ContentSyncError',
    'RequestError',
    'TransientRequestError',
    'RateLimitedError',
    'PermanentRequestError',
    'RequestFailedError',
    'SafetyThresholdExceeded',
    'SearchIndexError',
    'CollectionNotConfiguredError',
    'WebhookValidationError',
    'RateLimitState',
    'RateLimitTracker',
    'QueuedRequest',
    'RequestScheduler',
    'SyncGuard',
    'SyncConcurrencyGuard',
    'DatabaseSyncGuard',
    'ReconciliationReport',
    'Reconciler',
    'RequestSessionPool',
    'get_request_session_pool',
    'SyncLogCollector',
]
