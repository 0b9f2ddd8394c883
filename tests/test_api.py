"""
API Tests

Tests for the sync trigger and webhook endpoints.
"""
import hashlib
import hmac
import json
import time

import pytest

from conftest import make_items, make_pages

WEBHOOK_SECRET = 'test-webhook-secret'


def _signed(body, secret=WEBHOOK_SECRET, timestamp=None):
    raw = json.dumps(body)
    ts = str(timestamp if timestamp is not None else int(time.time() * 1000))
    signature = hmac.new(secret.encode(), f'{ts}:{raw}'.encode(), hashlib.sha256).hexdigest()
    headers = {
        'X-Webflow-Timestamp': ts,
        'X-Webflow-Signature': signature,
        'Content-Type': 'application/json',
    }
    return raw, headers


class TestHealthAPI:
    """Tests for health check endpoint."""

    def test_health_check(self, client):
        response = client.get('/api/health')
        assert response.status_code == 200

        data = response.get_json()
        assert data['status'] == 'healthy'


class TestErrorHandlers:
    """Tests for the global error handlers."""

    def test_unhandled_error_is_logged_with_request_path(self, app, monkeypatch):
        import content_sync

        logged = []
        monkeypatch.setattr(content_sync, 'log_error', lambda error, context=None: logged.append((error, context)))
        app.config['PROPAGATE_EXCEPTIONS'] = False

        @app.route('/api/explode')
        def explode():
            raise RuntimeError('boom')

        response = app.test_client().get('/api/explode')
        assert response.status_code == 500
        assert response.get_json()['error']['code'] == 'INTERNAL_ERROR'

        error, context = logged[0]
        assert isinstance(error, RuntimeError)
        assert context == '/api/explode'


class TestSyncAPI:
    """Tests for sync trigger endpoints."""

    def test_sync_collection(self, client, fake_api, fake_index):
        fake_api.add_collection('col-news', make_items(3))

        response = client.post('/api/sync/collections/americas-news')
        assert response.status_code == 200

        data = response.get_json()
        assert data['success'] is True
        assert data['data']['status'] == 'completed'
        assert data['data']['indexed'] == 3
        assert len(fake_index.objects) == 3

    def test_cron_redelivery_is_skipped(self, client, fake_api):
        fake_api.add_collection('col-news', make_items(3))
        headers = {'X-Cron-Execution-Id': 'exec-123'}

        first = client.get('/api/sync/collections/americas-news', headers=headers)
        second = client.get('/api/sync/collections/americas-news', headers=headers)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.get_json()['data']['status'] == 'skipped_duplicate'

    def test_unknown_collection(self, client):
        response = client.post('/api/sync/collections/missing')
        assert response.status_code == 404
        assert response.get_json()['error']['code'] == 'NOT_FOUND'

    def test_safety_threshold_returns_409(self, client, fake_api, fake_index):
        fake_api.add_collection('col-news', make_items(1))
        for i in range(1, 10):
            fake_index.seed(f'cms_item-{i}', collectionSlug='americas-news')

        response = client.post('/api/sync/collections/americas-news')
        assert response.status_code == 409

        error = response.get_json()['error']
        assert error['code'] == 'SAFETY_THRESHOLD_EXCEEDED'
        assert error['details']['orphan_count'] == 9
        assert error['details']['aborted'] is True
        assert fake_index.deleted == []

    def test_upstream_failure_returns_502(self, client):
        response = client.post('/api/sync/collections/insights')
        assert response.status_code == 502
        assert response.get_json()['error']['code'] == 'CONTENT_API_ERROR'

    def test_static_pages_dry_run(self, client, fake_api, fake_index):
        fake_api.pages = make_pages(2)

        response = client.post('/api/sync/static-pages?dry_run=true')
        assert response.status_code == 200

        data = response.get_json()['data']
        assert data['dry_run'] is True
        assert fake_index.saved == []

    def test_full_sync_with_json_body(self, client, fake_api):
        fake_api.add_collection('col-news', make_items(2))

        response = client.post('/api/sync/full', json={'region': 'americas', 'include_static': False})
        assert response.status_code == 200

        data = response.get_json()['data']
        assert data['sync_id'] == 'full-sync-americas'
        assert [unit['sync_id'] for unit in data['units']] == ['americas-news']

    def test_index_failure_returns_502(self, client, fake_api, fake_index):
        fake_api.add_collection('col-news', make_items(2))
        fake_index.fail_saves = True

        response = client.post('/api/sync/collections/americas-news')
        assert response.status_code == 502
        assert response.get_json()['error']['code'] == 'SYNC_FAILED'

    def test_status(self, client, fake_api):
        fake_api.add_collection('col-news', make_items(2))
        client.post('/api/sync/collections/americas-news')

        response = client.get('/api/sync/status')
        assert response.status_code == 200

        data = response.get_json()['data']
        assert data['active_syncs'] == []
        assert data['recent_runs'][0]['sync_id'] == 'americas-news'
        assert 'rate_limit' in data['scheduler']


class TestAuth:
    """Tests for API key authentication."""

    @pytest.fixture
    def secured_client(self, sync_service):
        from content_sync import create_app
        from content_sync.config import TestingConfig

        class SecuredConfig(TestingConfig):
            API_KEY = 'sync-key'

        return create_app(SecuredConfig, sync_service=sync_service).test_client()

    def test_missing_key(self, secured_client):
        response = secured_client.get('/api/sync/status')
        assert response.status_code == 401

    def test_wrong_key(self, secured_client):
        response = secured_client.get('/api/sync/status', headers={'X-API-Key': 'nope'})
        assert response.status_code == 401

    def test_api_key_header(self, secured_client):
        response = secured_client.get('/api/sync/status', headers={'X-API-Key': 'sync-key'})
        assert response.status_code == 200

    def test_bearer_token(self, secured_client):
        response = secured_client.get('/api/sync/status', headers={'Authorization': 'Bearer sync-key'})
        assert response.status_code == 200

    def test_health_is_open(self, secured_client):
        assert secured_client.get('/api/health').status_code == 200


class TestWebhookAPI:
    """Tests for the content webhook endpoint."""

    def test_signed_webhook_is_processed(self, client, fake_api, fake_index):
        fake_api.add_collection('col-blog', make_items(1, prefix='post'))
        raw, headers = _signed({
            'triggerType': 'collection_item_published',
            'payload': {'id': 'post-0', 'collectionId': 'col-blog', 'siteId': 'site-1'},
        })

        response = client.post('/api/webhooks/content', data=raw, headers=headers)
        assert response.status_code == 200

        data = response.get_json()['data']
        assert data['processed'] is True
        assert data['action'] == 'indexed'
        assert 'cms_post-0' in fake_index.objects

    def test_bad_signature(self, client):
        raw, headers = _signed({'triggerType': 'collection_item_deleted',
                                'payload': {'id': 'p', 'collectionId': 'col-blog'}},
                               secret='wrong-secret')

        response = client.post('/api/webhooks/content', data=raw, headers=headers)
        assert response.status_code == 401

    def test_missing_signature(self, client):
        response = client.post('/api/webhooks/content', json={'triggerType': 'collection_item_deleted'})
        assert response.status_code == 401

    def test_stale_timestamp(self, client):
        old = int(time.time() * 1000) - 6 * 60 * 1000
        raw, headers = _signed({'triggerType': 'collection_item_deleted',
                                'payload': {'id': 'p', 'collectionId': 'col-blog'}},
                               timestamp=old)

        response = client.post('/api/webhooks/content', data=raw, headers=headers)
        assert response.status_code == 401

    def test_invalid_payload(self, client):
        raw, headers = _signed({'triggerType': 'collection_item_changed', 'payload': {'id': 'p'}})

        response = client.post('/api/webhooks/content', data=raw, headers=headers)
        assert response.status_code == 400
        assert 'collectionId' in response.get_json()['error']['message']

    def test_unsupported_trigger(self, client):
        raw, headers = _signed({'triggerType': 'form_submission',
                                'payload': {'id': 'p', 'collectionId': 'col-blog'}})

        response = client.post('/api/webhooks/content', data=raw, headers=headers)
        assert response.status_code == 400


class TestWebhookSignature:
    """Tests for verify_webhook_signature."""

    def test_valid_signature(self):
        from content_sync.middleware.auth import verify_webhook_signature

        body = b'{"a": 1}'
        signature = hmac.new(b'secret', b'1000:' + body, hashlib.sha256).hexdigest()

        assert verify_webhook_signature('1000', body, signature, 'secret', now_ms=1500) is True

    def test_expires_after_five_minutes(self):
        from content_sync.middleware.auth import verify_webhook_signature

        body = b'{"a": 1}'
        signature = hmac.new(b'secret', b'1000:' + body, hashlib.sha256).hexdigest()

        assert verify_webhook_signature('1000', body, signature, 'secret', now_ms=1000 + 300000) is False

    @pytest.mark.parametrize('timestamp,signature', [(None, 'abc'), ('1000', None), ('not-a-number', 'abc')])
    def test_missing_or_invalid_parts(self, timestamp, signature):
        from content_sync.middleware.auth import verify_webhook_signature

        assert verify_webhook_signature(timestamp, b'{}', signature, 'secret', now_ms=1000) is False
