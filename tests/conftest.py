"""
Pytest Configuration and Fixtures

This module provides shared fixtures for all tests: a simulated clock, an
in-memory content API behind a requests-like session, an in-memory search
index and the Flask application wired to them.
"""
import json

import pytest
from requests.structures import CaseInsensitiveDict

from content_sync import create_app
from content_sync import models  # noqa: F401  (registers the guard tables)
from content_sync.config import TestingConfig
from content_sync.extensions import db
from content_sync.services.collections import parse_collections
from content_sync.services.content_client import ContentClient
from content_sync.services.sync.errors import SearchIndexError
from content_sync.services.sync.guard import SyncConcurrencyGuard
from content_sync.services.sync.rate_limit import RateLimitTracker
from content_sync.services.sync.reconciler import Reconciler
from content_sync.services.sync_service import SyncService

FAKE_BASE_URL = 'https://content.test/v2'


class FakeClock:
    """Simulated wall clock; ``sleep`` advances it instead of blocking."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeResponse:
    def __init__(self, status_code, payload=None, headers=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = CaseInsensitiveDict(headers or {})
        self.content = b'' if payload is None else json.dumps(payload).encode('utf-8')
        self.text = self.content.decode('utf-8')

    def json(self):
        return self._payload


class FakeContentAPI:
    """In-memory content API answering like the real paginated endpoints.

    ``fail(path, offset, statuses)`` makes the next calls for that page
    answer with the given status codes before succeeding again.
    """

    def __init__(self):
        self.collections = {}
        self.pages = []
        self.site = {'id': 'site-1', 'displayName': 'Test site'}
        self.failures = {}
        self.calls = []

    def add_collection(self, collection_id, items):
        self.collections[collection_id] = list(items)

    def fail(self, path, offset=None, statuses=(500,)):
        self.failures[(path, offset)] = list(statuses)

    def request(self, method, url, params=None, headers=None, timeout=None, **kwargs):
        assert url.startswith(FAKE_BASE_URL)
        path = url[len(FAKE_BASE_URL):]
        params = params or {}
        offset = params.get('offset')
        self.calls.append((method, path, offset))

        pending = self.failures.get((path, offset))
        if pending:
            status = pending.pop(0)
            extra = {'Retry-After': '1'} if status == 429 else None
            return FakeResponse(status, {'message': 'simulated failure'}, extra)

        parts = path.strip('/').split('/')
        if parts[0] == 'collections' and len(parts) == 3 and parts[2] == 'items':
            if parts[1] not in self.collections:
                return FakeResponse(404, {'message': 'collection not found'})
            return self._page(self.collections[parts[1]], 'items', params)

        if parts[0] == 'collections' and len(parts) == 4:
            for item in self.collections.get(parts[1], []):
                if item['id'] == parts[3]:
                    return FakeResponse(200, item)
            return FakeResponse(404, {'message': 'item not found'})

        if parts[0] == 'sites' and len(parts) == 3 and parts[2] == 'pages':
            return self._page(self.pages, 'pages', params)

        if parts[0] == 'sites' and len(parts) == 2:
            return FakeResponse(200, self.site)

        return FakeResponse(404, {'message': 'not found'})

    @staticmethod
    def _page(records, key, params):
        offset = int(params.get('offset', 0))
        limit = int(params.get('limit', 100))
        return FakeResponse(200, {
            key: records[offset:offset + limit],
            'pagination': {'offset': offset, 'limit': limit, 'total': len(records)},
        })


class FakeSearchIndex:
    """In-memory search index supporting ``attr:"value"`` filters."""

    def __init__(self):
        self.objects = {}
        self.saved = []
        self.deleted = []
        self.fail_saves = False

    def seed(self, object_id, **attrs):
        self.objects[object_id] = dict(attrs, objectID=object_id)

    def save_objects(self, objects):
        objects = list(objects)
        if self.fail_saves:
            raise SearchIndexError('/batch: HTTP 503 simulated', status=503)
        for obj in objects:
            self.objects[obj['objectID']] = dict(obj)
        self.saved.extend(objects)
        return len(objects)

    def delete_objects(self, object_ids):
        object_ids = list(object_ids)
        for object_id in object_ids:
            self.objects.pop(object_id, None)
        self.deleted.extend(object_ids)
        return len(object_ids)

    def browse_all_ids(self, filters=None):
        if not filters:
            return set(self.objects)
        attr, _, value = filters.partition(':')
        value = value.strip('"')
        return {oid for oid, obj in self.objects.items() if obj.get(attr) == value}


def make_items(count, prefix='item', **overrides):
    """CMS items as returned by the content API."""
    items = []
    for i in range(count):
        item = {
            'id': f'{prefix}-{i}',
            'isDraft': False,
            'isArchived': False,
            'lastUpdated': '2024-05-01T12:00:00.000Z',
            'fieldData': {'name': f'Item {i}', 'slug': f'{prefix}-{i}'},
        }
        item.update(overrides)
        items.append(item)
    return items


def make_pages(count, prefix='page'):
    return [
        {
            'id': f'{prefix}-{i}',
            'title': f'Page {i}',
            'slug': f'{prefix}-{i}',
            'publishedPath': f'/{prefix}-{i}',
            'seo': {'title': f'Page {i}', 'description': 'About'},
        }
        for i in range(count)
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_api():
    return FakeContentAPI()


@pytest.fixture
def fake_index():
    return FakeSearchIndex()


@pytest.fixture
def content_client(fake_api, clock):
    return ContentClient(
        'test-token',
        'site-1',
        base_url=FAKE_BASE_URL,
        session=fake_api,
        tracker=RateLimitTracker(clock=clock),
        inter_request_delay=0,
        clock=clock,
        sleep=clock.sleep,
    )


@pytest.fixture
def guard(clock):
    return SyncConcurrencyGuard(clock=clock)


@pytest.fixture
def sync_service(content_client, fake_index, guard, clock):
    return SyncService(
        content=content_client,
        index=fake_index,
        guard=guard,
        reconciler=Reconciler(fake_index),
        collections=parse_collections(TestingConfig.CONTENT_COLLECTIONS),
        batch_size=10,
        clock=clock,
    )


@pytest.fixture
def app(sync_service):
    """Create application for testing."""
    app = create_app(TestingConfig, sync_service=sync_service)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()
