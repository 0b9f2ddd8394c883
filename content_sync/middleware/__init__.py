"""
Middleware
"""
from .auth import require_auth, require_webhook_signature, get_current_api_key, verify_webhook_signature

__all__ = ['require_auth', 'require_webhook_signature', 'get_current_api_key', 'verify_webhook_signature']
