"""
Authentication middleware
Protects the sync trigger endpoints and verifies inbound webhooks
"""
import hashlib
import hmac
import time
from functools import wraps
from typing import Optional

from flask import current_app, request

from ..utils.logger import get_logger
from ..utils.responses import ApiResponse

logger = get_logger('auth')

TIMESTAMP_HEADER = 'X-Webflow-Timestamp'
SIGNATURE_HEADER = 'X-Webflow-Signature'

# Webhook timestamps are epoch milliseconds
MAX_WEBHOOK_AGE_MS = 5 * 60 * 1000


def get_current_api_key() -> str:
    """API key from X-API-Key, or from an Authorization bearer token"""
    api_key = request.headers.get('X-API-Key', '')
    if api_key:
        return api_key

    auth_header = request.headers.get('Authorization', '')
    if auth_header.lower().startswith('bearer '):
        return auth_header[7:].strip()
    return ''


def require_auth(f):
    """
    Basic authentication decorator

    Checks the request API key against API_KEY.
    Authentication is skipped when API_KEY is not configured (development).
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        expected_key = current_app.config.get('API_KEY')

        if not expected_key:
            return f(*args, **kwargs)

        api_key = get_current_api_key()
        if not api_key:
            return ApiResponse.unauthorized('Missing API key, send X-API-Key or a bearer token')

        if not hmac.compare_digest(api_key.encode('utf-8'), expected_key.encode('utf-8')):
            return ApiResponse.unauthorized('Invalid API key')

        return f(*args, **kwargs)
    return decorated


def verify_webhook_signature(
    timestamp: Optional[str],
    body: bytes,
    signature: Optional[str],
    secret: Optional[str],
    now_ms: Optional[int] = None
) -> bool:
    """
    Verify an HMAC-SHA256 webhook signature.

    The signed message is ``"{timestamp}:{body}"``, hex encoded. Requests
    older than five minutes are rejected.
    """
    if not timestamp or not body or not signature or not secret:
        logger.warning("[Webhook] Missing signature parameters")
        return False

    try:
        request_ts = int(timestamp)
    except (TypeError, ValueError):
        logger.warning(f"[Webhook] Invalid timestamp: {timestamp!r}")
        return False

    if now_ms is None:
        now_ms = int(time.time() * 1000)
    age = now_ms - request_ts
    if age >= MAX_WEBHOOK_AGE_MS:
        logger.warning(f"[Webhook] Timestamp too old: {age // 1000}s")
        return False

    if isinstance(body, str):
        body = body.encode('utf-8')
    message = timestamp.encode('utf-8') + b':' + body
    expected = hmac.new(secret.encode('utf-8'), message, hashlib.sha256).hexdigest()

    if not hmac.compare_digest(signature.encode('utf-8'), expected.encode('utf-8')):
        logger.warning("[Webhook] Signature mismatch")
        return False
    return True


def require_webhook_signature(f):
    """
    Webhook signature decorator

    Rejects every request when WEBHOOK_SECRET is not configured.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        secret = current_app.config.get('WEBHOOK_SECRET')
        if not secret:
            logger.error("[Webhook] WEBHOOK_SECRET is not configured, rejecting webhook")
            return ApiResponse.unauthorized('Webhook secret is not configured')

        valid = verify_webhook_signature(
            request.headers.get(TIMESTAMP_HEADER),
            request.get_data(cache=True),
            request.headers.get(SIGNATURE_HEADER),
            secret,
        )
        if not valid:
            return ApiResponse.unauthorized('Invalid webhook signature')

        return f(*args, **kwargs)
    return decorated
