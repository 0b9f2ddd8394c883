"""
Sync Service - Orchestrates content sync runs

One run of a logical unit (a collection, the static pages, or a region fanned
out over its units) goes through:
    dedup -> lock -> fetch -> transform -> index -> reconcile -> release

Built from the modular components in ``sync``:
- sync.rate_limit / sync.scheduler: quota-aware outbound requests
- sync.guard: trigger dedup and per-unit locks
- sync.reconciler: orphan deletion behind the safety threshold
- sync.log_collector: per-run issue collection
"""
import threading
import time
from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Callable, Dict, List, Optional

from flask import current_app

from ..utils.logger import get_logger, log_sync_event
from .collections import CollectionConfig, parse_collections
from .content_client import ContentClient, PaginatedResult
from .search_index import SearchIndexClient
from .sync.errors import (
    CollectionNotConfiguredError,
    SafetyThresholdExceeded,
    SearchIndexError,
    WebhookValidationError,
)
from .sync.guard import DatabaseSyncGuard, SyncConcurrencyGuard, SyncGuard
from .sync.log_collector import SyncLogCollector
from .sync.rate_limit import RateLimitTracker
from .sync.reconciler import Reconciler
from .transform import (
    TYPE_STATIC_PAGE,
    cms_object_id,
    is_unpublished,
    page_object_id,
    transform_cms_item,
    transform_static_page,
)

logger = get_logger('sync')

STATUS_COMPLETED = 'completed'
STATUS_PARTIAL = 'completed_with_errors'
STATUS_FAILED = 'failed'
STATUS_SKIPPED_DUPLICATE = 'skipped_duplicate'
STATUS_SKIPPED_IN_PROGRESS = 'skipped_in_progress'

STATIC_PAGES_SYNC_ID = 'static-pages'

UPSERT_TRIGGERS = (
    'collection_item_created',
    'collection_item_changed',
    'collection_item_published',
)
DELETE_TRIGGERS = (
    'collection_item_deleted',
    'collection_item_unpublished',
)

# Transform errors are isolated per record
TRANSFORM_ERRORS = (ValueError, KeyError, TypeError, AttributeError)


def region_sync_id(region: Optional[str]) -> str:
    return f"full-sync-{region or 'all'}"


@dataclass
class SyncResult:
    """Outcome of one sync run."""
    sync_id: str
    status: str
    dry_run: bool = False
    fetched: int = 0
    indexed: int = 0
    skipped: int = 0
    failed_pages: List[int] = field(default_factory=list)
    reconciliation: Optional[Dict] = None
    units: List[Dict] = field(default_factory=list)
    log: Optional[Dict] = None
    error: Optional[str] = None
    duration: float = 0.0

    @property
    def was_skipped(self) -> bool:
        return self.status in (STATUS_SKIPPED_DUPLICATE, STATUS_SKIPPED_IN_PROGRESS)

    def summary(self) -> Dict:
        """Short form without the run log, used for unit lists and status."""
        return {
            'sync_id': self.sync_id,
            'status': self.status,
            'dry_run': self.dry_run,
            'fetched': self.fetched,
            'indexed': self.indexed,
            'skipped': self.skipped,
            'failed_pages': len(self.failed_pages),
            'deleted': (self.reconciliation or {}).get('deleted_count', 0),
            'error': self.error,
            'duration': self.duration,
        }

    def to_dict(self) -> Dict:
        return asdict(self)


class SyncService:
    """Runs sync units against the content API and the search index.

    Skipped runs (duplicate trigger, unit already in flight) are results, not
    errors. SafetyThresholdExceeded propagates out of single-unit runs and is
    recorded as a failed unit inside region runs.

    Example:
        >>> service = build_sync_service(app.config)
        >>> result = service.sync_collection('americas-news', execution_id='cron-42')
        >>> result.status
        'completed'
    """

    RECENT_RESULTS = 20

    def __init__(
        self,
        content: ContentClient,
        index: SearchIndexClient,
        guard: SyncGuard,
        reconciler: Reconciler,
        collections: List[CollectionConfig],
        batch_size: int = 100,
        clock: Callable[[], float] = time.time
    ):
        self.content = content
        self.index = index
        self.guard = guard
        self.reconciler = reconciler
        self.collections: Dict[str, CollectionConfig] = {c.slug: c for c in collections}
        self.batch_size = batch_size
        self._clock = clock
        self._recent = deque(maxlen=self.RECENT_RESULTS)
        self._recent_lock = threading.Lock()

    # ==================== Lookup ====================

    def get_collection(self, slug: str) -> CollectionConfig:
        collection = self.collections.get(slug)
        if collection is None:
            raise CollectionNotConfiguredError(f"Collection '{slug}' is not configured")
        return collection

    def get_collection_by_id(self, collection_id: str) -> CollectionConfig:
        for collection in self.collections.values():
            if collection.collection_id == collection_id:
                return collection
        raise CollectionNotConfiguredError(f"Collection id '{collection_id}' is not configured")

    # ==================== Sync units ====================

    def sync_collection(self, slug: str, execution_id: Optional[str] = None,
                        dry_run: bool = False) -> SyncResult:
        """Sync one CMS collection. The sync id is the collection slug."""
        collection = self.get_collection(slug)

        def work(result: SyncResult, collector: SyncLogCollector) -> None:
            fetched = self.content.fetch_all_items(collection.collection_id, self.batch_size)
            self._index_and_reconcile(
                result,
                collector,
                fetched,
                transform=lambda item: transform_cms_item(item, collection),
                object_id=cms_object_id,
                scope_filter=f'collectionSlug:"{collection.slug}"',
                entity_type=f'{collection.slug} items',
            )

        return self._run_unit(collection.slug, execution_id, dry_run, work)

    def sync_static_pages(self, execution_id: Optional[str] = None,
                          dry_run: bool = False) -> SyncResult:
        """Sync the site's static pages. CMS template pages are left out."""

        def work(result: SyncResult, collector: SyncLogCollector) -> None:
            fetched = self.content.fetch_all_pages(self.batch_size)
            self._index_and_reconcile(
                result,
                collector,
                fetched,
                transform=transform_static_page,
                object_id=page_object_id,
                scope_filter=f'type:"{TYPE_STATIC_PAGE}"',
                entity_type='static pages',
                skip=lambda page: is_unpublished(page) or bool(page.get('collectionId')),
            )

        return self._run_unit(STATIC_PAGES_SYNC_ID, execution_id, dry_run, work)

    def sync_region(
        self,
        region: Optional[str] = None,
        execution_id: Optional[str] = None,
        dry_run: bool = False,
        include_static: bool = True,
        include_cms: bool = True
    ) -> SyncResult:
        """Sync every scheduled unit of a region, or of all regions.

        Each unit takes its own lock; a failed or skipped unit does not stop
        the others. Webhook-managed collections are left out.
        """
        if region and not any(c.region == region for c in self.collections.values()):
            raise CollectionNotConfiguredError(f"No collections configured for region '{region}'")

        collections = [
            c for c in self.collections.values()
            if not c.webhook_managed and (region is None or c.region == region)
        ]

        def work(result: SyncResult, collector: SyncLogCollector) -> None:
            units = []
            if include_cms:
                units.extend(
                    (c.slug, lambda slug=c.slug: self.sync_collection(slug, dry_run=dry_run))
                    for c in collections
                )
            if include_static:
                units.append((STATIC_PAGES_SYNC_ID, lambda: self.sync_static_pages(dry_run=dry_run)))

            collector.set_total(len(units))
            for unit_id, run in units:
                try:
                    unit = run()
                except SafetyThresholdExceeded as e:
                    collector.add_issue(SyncLogCollector.TYPE_UNIT_FAILED, item_id=unit_id, message=str(e))
                    result.units.append({'sync_id': unit_id, 'status': STATUS_FAILED, 'error': str(e)})
                    continue
                except Exception as e:
                    logger.exception(f"[SyncService] Unit {unit_id} of {result.sync_id} failed")
                    collector.add_issue(SyncLogCollector.TYPE_UNIT_FAILED, item_id=unit_id, message=str(e))
                    result.units.append({'sync_id': unit_id, 'status': STATUS_FAILED, 'error': str(e)})
                    continue

                result.units.append(unit.summary())
                result.fetched += unit.fetched
                result.indexed += unit.indexed
                result.skipped += unit.skipped
                if unit.status == STATUS_FAILED:
                    collector.add_issue(SyncLogCollector.TYPE_UNIT_FAILED, item_id=unit_id, message=unit.error)
                elif unit.was_skipped:
                    collector.record_skipped()
                else:
                    collector.record_success()
                self.guard.heartbeat(result.sync_id)

        return self._run_unit(region_sync_id(region), execution_id, dry_run, work)

    def _run_unit(
        self,
        sync_id: str,
        execution_id: Optional[str],
        dry_run: bool,
        work: Callable[[SyncResult, SyncLogCollector], None]
    ) -> SyncResult:
        """Dedup, lock, run ``work`` and release."""
        if self.guard.is_duplicate_trigger(execution_id):
            logger.info(f"[SyncService] Skipping {sync_id}: duplicate trigger {execution_id}")
            return self._remember(SyncResult(sync_id, STATUS_SKIPPED_DUPLICATE, dry_run=dry_run))

        with self.guard.hold(sync_id) as acquired:
            if not acquired:
                logger.info(f"[SyncService] Skipping {sync_id}: already in progress")
                return self._remember(SyncResult(sync_id, STATUS_SKIPPED_IN_PROGRESS, dry_run=dry_run))

            result = SyncResult(sync_id, STATUS_COMPLETED, dry_run=dry_run)
            collector = SyncLogCollector(sync_id, dry_run=dry_run)
            started = self._clock()
            log_sync_event(sync_id, 'started', {'execution_id': execution_id, 'dry_run': dry_run})

            try:
                with self.content.scheduler.progress_hook(lambda: self.guard.heartbeat(sync_id)):
                    work(result, collector)
            except Exception as e:
                result.status = STATUS_FAILED
                result.error = str(e)
                raise
            finally:
                result.duration = round(self._clock() - started, 3)
                result.log = collector.finalize()
                if result.status == STATUS_COMPLETED and collector.has_problems():
                    result.status = STATUS_PARTIAL
                self._remember(result)
                log_sync_event(sync_id, result.status, result.summary())

            return result

    def _index_and_reconcile(
        self,
        result: SyncResult,
        collector: SyncLogCollector,
        fetched: PaginatedResult,
        transform: Callable[[Dict], Dict],
        object_id: Callable[[str], str],
        scope_filter: str,
        entity_type: str,
        skip: Callable[[Dict], bool] = is_unpublished
    ) -> None:
        result.fetched = len(fetched.records)
        result.failed_pages = list(fetched.failed_offsets)
        collector.set_total(result.fetched)
        for offset in fetched.failed_offsets:
            collector.add_issue(SyncLogCollector.TYPE_FETCH_FAILED, message=f'page at offset {offset} failed')

        records = []
        source_ids = set()
        for raw in fetched.records:
            if skip(raw):
                result.skipped += 1
                continue
            raw_id = raw.get('id')
            # Counted as present even when its transform fails, so it is never reconciled away
            if raw_id:
                source_ids.add(object_id(raw_id))
            try:
                records.append(transform(raw))
            except TRANSFORM_ERRORS as e:
                collector.add_issue(SyncLogCollector.TYPE_TRANSFORM_FAILED, item_id=raw_id, message=str(e))

        self.guard.heartbeat(result.sync_id)
        if records and not result.dry_run:
            try:
                self.index.save_objects(records)
            except SearchIndexError as e:
                collector.add_issue(SyncLogCollector.TYPE_INDEX_FAILED, message=str(e))
                result.status = STATUS_FAILED
                result.error = str(e)
                return
            result.indexed = len(records)
            collector.record_success(len(records))

        if not fetched.complete:
            collector.add_issue(
                SyncLogCollector.TYPE_RECONCILE_SKIPPED,
                message=f'{len(fetched.failed_offsets)} page(s) failed, source list is incomplete',
            )
            return
        if not source_ids:
            collector.add_issue(SyncLogCollector.TYPE_RECONCILE_SKIPPED, message='source returned no records')
            return

        self.guard.heartbeat(result.sync_id)
        indexed_ids = self.index.browse_all_ids(scope_filter)
        try:
            report = self.reconciler.reconcile(
                source_ids, indexed_ids, dry_run=result.dry_run, entity_type=entity_type
            )
        except SafetyThresholdExceeded as e:
            result.reconciliation = e.report.to_dict()
            collector.add_issue(SyncLogCollector.TYPE_RECONCILE_ABORTED, message=str(e))
            raise
        result.reconciliation = report.to_dict()

    # ==================== Webhooks ====================

    def process_webhook_event(self, trigger_type: str, payload: Dict) -> Dict:
        """Apply one item change notification to the index.

        Args:
            trigger_type: One of UPSERT_TRIGGERS or DELETE_TRIGGERS
            payload: Item notification with ``id`` and ``collectionId``

        Returns:
            Dictionary with processed flag, action or reason

        Raises:
            WebhookValidationError: Unsupported trigger or missing ids
            CollectionNotConfiguredError: Unknown collection id
        """
        if trigger_type not in UPSERT_TRIGGERS + DELETE_TRIGGERS:
            raise WebhookValidationError(f'Unsupported trigger type: {trigger_type}')

        item_id = payload.get('id') or payload.get('itemId')
        collection_id = payload.get('collectionId')
        if not item_id or not collection_id:
            raise WebhookValidationError('Webhook payload requires id and collectionId')

        collection = self.get_collection_by_id(collection_id)
        outcome = {
            'triggerType': trigger_type,
            'itemId': item_id,
            'collectionId': collection_id,
            'collectionSlug': collection.slug,
        }
        logger.info(f"[Webhook] {trigger_type} for {collection.slug}/{item_id}")

        if not collection.webhook_managed:
            return dict(outcome, processed=False, reason='Collection is not webhook managed')

        if trigger_type in DELETE_TRIGGERS:
            object_id = cms_object_id(item_id)
            self.index.delete_objects([object_id])
            return dict(outcome, processed=True, action='deleted', objectID=object_id)

        if is_unpublished(payload):
            return dict(outcome, processed=False, reason='Item is draft or archived')

        item = self.content.get_item(collection.collection_id, item_id)
        if is_unpublished(item):
            return dict(outcome, processed=False, reason='Item is draft or archived')

        record = transform_cms_item(item, collection)
        self.index.save_objects([record])
        return dict(outcome, processed=True, action='indexed', objectID=record['objectID'])

    # ==================== Status ====================

    def _remember(self, result: SyncResult) -> SyncResult:
        with self._recent_lock:
            self._recent.appendleft(result.summary())
        return result

    def get_status(self) -> Dict:
        with self._recent_lock:
            recent = list(self._recent)
        return {
            'active_syncs': self.guard.active_syncs(),
            'scheduler': self.content.scheduler.get_stats(),
            'collections': [c.to_dict() for c in self.collections.values()],
            'recent_runs': recent,
        }


def build_sync_service(config) -> SyncService:
    """Create a SyncService from a Flask config mapping."""
    tracker = RateLimitTracker()
    content = ContentClient(
        api_token=config.get('CONTENT_API_TOKEN'),
        site_id=config.get('CONTENT_SITE_ID'),
        base_url=config.get('CONTENT_API_BASE_URL', 'https://api.webflow.com/v2'),
        timeout=config.get('CONTENT_API_TIMEOUT', 30),
        tracker=tracker,
        safety_buffer=config.get('RATE_LIMIT_SAFETY_BUFFER', 0.05),
        inter_request_delay=config.get('INTER_REQUEST_DELAY', 0.05),
        max_retries=config.get('MAX_RETRIES', 3),
    )
    index = SearchIndexClient(
        app_id=config.get('SEARCH_APP_ID'),
        api_key=config.get('SEARCH_API_KEY'),
        index_name=config.get('SEARCH_INDEX_NAME', 'site_content'),
    )

    retention = config.get('TRIGGER_RETENTION_SECONDS', 7200)
    backend = (config.get('SYNC_GUARD_BACKEND') or 'memory').lower()
    if backend == 'database':
        from ..extensions import db
        guard = DatabaseSyncGuard(db, retention_seconds=retention, lock_ttl=config.get('SYNC_LOCK_TTL', 900))
    elif backend == 'memory':
        guard = SyncConcurrencyGuard(retention_seconds=retention)
    else:
        raise ValueError(f'Unknown SYNC_GUARD_BACKEND: {backend}')

    collections = parse_collections(config.get('CONTENT_COLLECTIONS'))
    logger.info(
        f"[SyncService] Configured {len(collections)} collection(s), guard backend={backend}"
    )

    return SyncService(
        content=content,
        index=index,
        guard=guard,
        reconciler=Reconciler(index, config.get('DELETION_SAFETY_THRESHOLD', 0.6)),
        collections=collections,
        batch_size=config.get('SYNC_BATCH_SIZE', 100),
    )


def get_sync_service() -> SyncService:
    """The SyncService of the current Flask application."""
    return current_app.extensions['content_sync']
