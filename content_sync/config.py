"""
Application configuration
Values are read from environment variables
"""
import os

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _env_float(name: str, default: str) -> float:
    return float(os.environ.get(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.environ.get(name, default))


class Config:
    """Base configuration"""

    # ==================== Security ====================
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-key')

    # Shared key for manual/cron sync calls; auth is skipped when unset
    API_KEY = os.environ.get('API_KEY')

    # Secret used to sign inbound content webhooks
    WEBHOOK_SECRET = os.environ.get('WEBHOOK_SECRET')

    # ==================== Database ====================
    # Only used by the database-backed sync guard
    DATABASE_URL = os.environ.get('DATABASE_URL')
    if DATABASE_URL:
        SQLALCHEMY_DATABASE_URI = DATABASE_URL
    else:
        SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(BASE_DIR, "content_sync.db")}'

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # ==================== CORS ====================
    CORS_ORIGINS = os.environ.get(
        'CORS_ORIGINS',
        'http://localhost:5173,http://127.0.0.1:5173'
    ).split(',')

    # ==================== Logging ====================
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FILE = os.environ.get('LOG_FILE')

    # ==================== Content API ====================
    CONTENT_API_TOKEN = os.environ.get('CONTENT_API_TOKEN')
    CONTENT_SITE_ID = os.environ.get('CONTENT_SITE_ID')
    CONTENT_API_BASE_URL = os.environ.get('CONTENT_API_BASE_URL', 'https://api.webflow.com/v2')
    # Per-request timeout (seconds)
    CONTENT_API_TIMEOUT = _env_float('CONTENT_API_TIMEOUT', '30')
    # slug:collection_id:region[:webhook], comma separated
    CONTENT_COLLECTIONS = os.environ.get('CONTENT_COLLECTIONS', '')

    # ==================== Search index ====================
    SEARCH_APP_ID = os.environ.get('SEARCH_APP_ID')
    SEARCH_API_KEY = os.environ.get('SEARCH_API_KEY')
    SEARCH_INDEX_NAME = os.environ.get('SEARCH_INDEX_NAME', 'site_content')

    # ==================== Sync ====================
    SYNC_BATCH_SIZE = _env_int('SYNC_BATCH_SIZE', '100')
    MAX_RETRIES = _env_int('MAX_RETRIES', '3')
    # Fraction of the quota kept in reserve before throttling
    RATE_LIMIT_SAFETY_BUFFER = _env_float('RATE_LIMIT_SAFETY_BUFFER', '0.05')
    # Pause between two outbound requests (seconds)
    INTER_REQUEST_DELAY = _env_float('INTER_REQUEST_DELAY', '0.05')
    # Abort reconciliation above this fraction of deleted objects
    DELETION_SAFETY_THRESHOLD = _env_float('DELETION_SAFETY_THRESHOLD', '0.6')
    # How long a cron execution id is remembered (seconds)
    TRIGGER_RETENTION_SECONDS = _env_int('TRIGGER_RETENTION_SECONDS', '7200')
    # memory | database
    SYNC_GUARD_BACKEND = os.environ.get('SYNC_GUARD_BACKEND', 'memory')
    # Database locks older than this are treated as abandoned (seconds)
    SYNC_LOCK_TTL = _env_int('SYNC_LOCK_TTL', '900')
    CRON_EXECUTION_HEADER = os.environ.get('CRON_EXECUTION_HEADER', 'X-Cron-Execution-Id')

    @classmethod
    def get_cors_config(cls):
        """CORS options for the API blueprints"""
        return {
            "origins": cls.CORS_ORIGINS,
            "methods": ["GET", "POST", "OPTIONS"],
            "allow_headers": ["Content-Type", "X-API-Key", "Authorization"],
            "supports_credentials": True,
        }


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    LOG_LEVEL = 'WARNING'

    @classmethod
    def validate(cls):
        """Return a list of missing production settings."""
        errors = []

        for name in ('CONTENT_API_TOKEN', 'CONTENT_SITE_ID', 'SEARCH_APP_ID', 'SEARCH_API_KEY'):
            if not os.environ.get(name):
                errors.append(f'{name} is not set')

        if not os.environ.get('API_KEY'):
            errors.append('API_KEY is not set (sync endpoints are unauthenticated)')

        if not os.environ.get('WEBHOOK_SECRET'):
            errors.append('WEBHOOK_SECRET is not set (webhooks will be rejected)')

        return errors


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    API_KEY = None
    WEBHOOK_SECRET = 'test-webhook-secret'
    CONTENT_API_TOKEN = 'test-token'
    CONTENT_SITE_ID = 'site-1'
    CONTENT_COLLECTIONS = 'americas-news:col-news:americas,insights:col-insights:asia-pacific,blog:col-blog:americas:webhook'
    SEARCH_APP_ID = 'TESTAPP'
    SEARCH_API_KEY = 'test-key'
    INTER_REQUEST_DELAY = 0.0
    SYNC_GUARD_BACKEND = 'memory'


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}


def get_config():
    """Pick the configuration class from FLASK_ENV"""
    env = os.environ.get('FLASK_ENV', 'development')
    return config.get(env, config['default'])
