#!/usr/bin/env python
"""
Management Script

CLI commands for running syncs outside the HTTP server, plus the
Flask-Migrate database commands.

Usage:
    # Sync one collection
    flask --app manage.py sync-collection americas-news

    # Sync static pages without writing to the index
    flask --app manage.py sync-static-pages --dry-run

    # Sync every scheduled unit of a region
    flask --app manage.py sync-region --region americas

    # Show active syncs and scheduler statistics
    flask --app manage.py sync-status

    # Database migrations (database guard backend)
    flask --app manage.py db upgrade
"""
import json

import click
from flask.cli import with_appcontext

from content_sync import create_app
from content_sync.services.sync.errors import ContentSyncError, SafetyThresholdExceeded

# Create app instance
app = create_app()


def _echo_result(result):
    color = {
        'completed': 'green',
        'completed_with_errors': 'yellow',
        'skipped_duplicate': 'cyan',
        'skipped_in_progress': 'cyan',
    }.get(result.status, 'red')
    click.echo(click.style(f'{result.sync_id}: {result.status}', fg=color))
    click.echo(json.dumps(result.summary(), indent=2))
    for unit in result.units:
        click.echo(f"  - {unit['sync_id']}: {unit['status']}")


def _run(action):
    from content_sync.services.sync_service import STATUS_FAILED

    try:
        result = action()
    except SafetyThresholdExceeded as e:
        click.echo(click.style(f'✗ {e}', fg='red'))
        click.echo(json.dumps(e.report.to_dict(), indent=2))
        raise SystemExit(2)
    except ContentSyncError as e:
        click.echo(click.style(f'✗ {e}', fg='red'))
        raise SystemExit(1)

    _echo_result(result)
    if result.status == STATUS_FAILED:
        raise SystemExit(1)


@app.cli.command('sync-collection')
@click.argument('slug')
@click.option('--dry-run', is_flag=True, help='Compute changes without writing to the index.')
@with_appcontext
def sync_collection(slug, dry_run):
    """Sync one CMS collection."""
    from content_sync.services.sync_service import get_sync_service
    _run(lambda: get_sync_service().sync_collection(slug, dry_run=dry_run))


@app.cli.command('sync-static-pages')
@click.option('--dry-run', is_flag=True, help='Compute changes without writing to the index.')
@with_appcontext
def sync_static_pages(dry_run):
    """Sync the site's static pages."""
    from content_sync.services.sync_service import get_sync_service
    _run(lambda: get_sync_service().sync_static_pages(dry_run=dry_run))


@app.cli.command('sync-region')
@click.option('--region', default=None, help='Region name, all regions when omitted.')
@click.option('--skip-static', is_flag=True, help='Do not sync static pages.')
@click.option('--skip-cms', is_flag=True, help='Do not sync CMS collections.')
@click.option('--dry-run', is_flag=True, help='Compute changes without writing to the index.')
@with_appcontext
def sync_region(region, skip_static, skip_cms, dry_run):
    """Sync every scheduled unit of a region."""
    from content_sync.services.sync_service import get_sync_service
    _run(lambda: get_sync_service().sync_region(
        region=region,
        dry_run=dry_run,
        include_static=not skip_static,
        include_cms=not skip_cms,
    ))


@app.cli.command('sync-status')
@with_appcontext
def sync_status():
    """Show active syncs, scheduler statistics and configured collections."""
    from content_sync.services.sync_service import get_sync_service
    status = get_sync_service().get_status()
    click.echo(json.dumps(status, indent=2, default=str))
