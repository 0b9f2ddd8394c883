"""
Flask Application Factory

This module creates and configures the Flask application.
"""
import time
from flask import Flask, g, request, jsonify
from flask_cors import CORS

from .config import get_config
from .extensions import db, migrate
from .api import sync_bp, webhooks_bp
from .utils.logger import setup_logger, get_logger, log_error


def create_app(config_class=None, sync_service=None):
    """Create and configure Flask application.

    Args:
        config_class: Configuration class to use. If None, auto-detect from environment.
        sync_service: Prebuilt SyncService. If None, one is built from the config.

    Returns:
        Configured Flask application instance
    """
    if config_class is None:
        config_class = get_config()

    app = Flask(__name__)
    app.config.from_object(config_class)

    # Initialize logging
    setup_logger(
        log_level=app.config.get('LOG_LEVEL', 'INFO'),
        log_file=app.config.get('LOG_FILE')
    )

    logger = get_logger('app')

    # Initialize CORS
    cors_config = config_class.get_cors_config()
    CORS(app, resources={r"/api/*": cors_config})

    # Initialize database
    db.init_app(app)

    # Initialize Flask-Migrate
    migrate.init_app(app, db)

    # Guard tables are tiny and schema-stable, create them when needed
    if app.config.get('SYNC_GUARD_BACKEND') == 'database':
        with app.app_context():
            from . import models  # noqa: F401
            db.create_all()

    if sync_service is None:
        from .services.sync_service import build_sync_service
        sync_service = build_sync_service(app.config)
    app.extensions['content_sync'] = sync_service

    _register_blueprints(app)

    # Register handlers and hooks
    _register_error_handlers(app)
    _register_request_hooks(app)
    _register_health_check(app)

    logger.info(
        f"Application initialized, guard backend: {app.config.get('SYNC_GUARD_BACKEND')}, "
        f"index: {app.config.get('SEARCH_INDEX_NAME')}"
    )

    return app


def _register_blueprints(app):
    """Register API blueprints under /api."""
    app.register_blueprint(sync_bp, url_prefix='/api')
    app.register_blueprint(webhooks_bp, url_prefix='/api')


def _register_error_handlers(app):
    """Register global error handlers."""
    from .utils.responses import ApiResponse
    from .services.sync.errors import (
        CollectionNotConfiguredError,
        RequestFailedError,
        SafetyThresholdExceeded,
        SearchIndexError,
        WebhookValidationError,
    )

    @app.errorhandler(SafetyThresholdExceeded)
    def safety_threshold_exceeded(error):
        get_logger('error').error(str(error))
        return ApiResponse.error(str(error), 409, 'SAFETY_THRESHOLD_EXCEEDED', error.report.to_dict())

    @app.errorhandler(CollectionNotConfiguredError)
    def collection_not_configured(error):
        return ApiResponse.not_found(str(error))

    @app.errorhandler(WebhookValidationError)
    def webhook_validation(error):
        return ApiResponse.validation_error(str(error))

    @app.errorhandler(RequestFailedError)
    def upstream_request_failed(error):
        get_logger('error').error(f"Content API request failed: {error}")
        return ApiResponse.error(str(error), 502, 'CONTENT_API_ERROR', {'attempts': error.attempts})

    @app.errorhandler(SearchIndexError)
    def search_index_failed(error):
        get_logger('error').error(f"Search index request failed: {error}")
        return ApiResponse.error(str(error), 502, 'SEARCH_INDEX_ERROR')

    @app.errorhandler(400)
    def bad_request(error):
        msg = str(error.description) if hasattr(error, 'description') else 'Bad request'
        return ApiResponse.error(msg, 400, 'BAD_REQUEST')

    @app.errorhandler(404)
    def not_found(error):
        msg = str(error.description) if hasattr(error, 'description') else 'Resource not found'
        return ApiResponse.not_found(msg)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return ApiResponse.error('Method not allowed', 405, 'METHOD_NOT_ALLOWED')

    @app.errorhandler(500)
    def internal_error(error):
        log_error(getattr(error, 'original_exception', None) or error, context=request.path)
        return ApiResponse.server_error('Internal server error')


def _register_request_hooks(app):
    """Register request timing hooks."""

    @app.before_request
    def before_request():
        g.start_time = time.time()

    @app.after_request
    def after_request(response):
        if hasattr(g, 'start_time'):
            duration = (time.time() - g.start_time) * 1000
            if duration > 30000:  # Syncs are slow by nature, only flag outliers
                logger = get_logger('slow_request')
                logger.warning(f"Slow request: {request.method} {request.path} took {duration:.2f}ms")
        return response


def _register_health_check(app):
    """Register health check endpoint."""

    @app.route('/api/health')
    def health_check():
        """Health check endpoint for container orchestration."""
        return jsonify({
            'status': 'healthy',
            'service': 'content-sync'
        })
