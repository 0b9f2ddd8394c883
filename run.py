"""
Application entry point
Content sync service

Usage:
    python run.py

Settings are read from the environment or a .env file,
see content_sync/config.py
"""
import os
import sys

from content_sync import create_app
from content_sync.config import get_config

config_class = get_config()

app = create_app(config_class)

if __name__ == '__main__':
    env = os.environ.get('FLASK_ENV', 'development')
    if env == 'production':
        errors = config_class.validate()
        if errors:
            for error in errors:
                print(f"✗ {error}", file=sys.stderr)
            sys.exit(1)

    port = int(os.environ.get('PORT', '8000'))

    print("=" * 60)
    print("Content sync service")
    print("=" * 60)
    print(f"Service: http://localhost:{port}")
    print(f"Environment: {env}")
    print(f"Search index: {app.config['SEARCH_INDEX_NAME']}")
    print(f"Guard backend: {app.config['SYNC_GUARD_BACKEND']}")
    if app.config.get('API_KEY'):
        print("API key auth: enabled")
    else:
        print("API key auth: disabled (set API_KEY)")
    print("=" * 60)

    app.run(host='0.0.0.0', port=port, debug=(env == 'development'), use_reloader=False)
