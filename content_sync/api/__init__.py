"""
API blueprints
"""
from .sync import sync_bp
from .webhooks import webhooks_bp

__all__ = ['sync_bp', 'webhooks_bp']
