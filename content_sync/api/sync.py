"""
Sync trigger API

Called by the scheduler (cron) with an execution id header, or manually
without one. Skipped runs answer 200 so the trigger source does not redeliver.
"""
from flask import Blueprint, current_app, request

from ..middleware.auth import require_auth
from ..services.sync_service import STATUS_FAILED, SyncResult, get_sync_service
from ..utils.logger import get_logger
from ..utils.responses import ApiResponse, success_response

sync_bp = Blueprint('sync', __name__)
logger = get_logger('sync_api')

TRUE_VALUES = ('1', 'true', 'yes', 'on')


def _execution_id():
    header = current_app.config.get('CRON_EXECUTION_HEADER', 'X-Cron-Execution-Id')
    return request.headers.get(header) or None


def _param(name: str, default=None):
    """Read a parameter from the query string, then the JSON body"""
    if name in request.args:
        return request.args.get(name)
    data = request.get_json(silent=True) or {}
    return data.get(name, default)


def _flag(name: str, default: bool = False) -> bool:
    value = _param(name)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUE_VALUES


def _result_response(result: SyncResult):
    if result.status == STATUS_FAILED:
        return ApiResponse.error(
            f'Sync {result.sync_id} failed: {result.error}',
            502,
            'SYNC_FAILED',
            result.to_dict(),
        )
    return success_response(
        data=result.to_dict(),
        message=f'Sync {result.sync_id}: {result.status}'
    )


@sync_bp.route('/sync/collections/<slug>', methods=['GET', 'POST'])
@require_auth
def sync_collection(slug):
    """
    Sync one CMS collection

    Query / Body:
        - dry_run: Compute changes without writing to the index
    """
    result = get_sync_service().sync_collection(
        slug,
        execution_id=_execution_id(),
        dry_run=_flag('dry_run'),
    )
    return _result_response(result)


@sync_bp.route('/sync/static-pages', methods=['GET', 'POST'])
@require_auth
def sync_static_pages():
    """
    Sync the site's static pages

    Query / Body:
        - dry_run: Compute changes without writing to the index
    """
    result = get_sync_service().sync_static_pages(
        execution_id=_execution_id(),
        dry_run=_flag('dry_run'),
    )
    return _result_response(result)


@sync_bp.route('/sync/full', methods=['GET', 'POST'])
@require_auth
def sync_full():
    """
    Sync every scheduled unit of one region, or of all regions

    Query / Body:
        - region: Region name, all regions when omitted
        - include_static: Also sync static pages (default true)
        - include_cms: Also sync CMS collections (default true)
        - dry_run: Compute changes without writing to the index
    """
    region = _param('region') or None
    result = get_sync_service().sync_region(
        region=region,
        execution_id=_execution_id(),
        dry_run=_flag('dry_run'),
        include_static=_flag('include_static', True),
        include_cms=_flag('include_cms', True),
    )
    return _result_response(result)


@sync_bp.route('/sync/status', methods=['GET'])
@require_auth
def sync_status():
    """Active syncs, scheduler statistics and recent runs"""
    return success_response(get_sync_service().get_status())
