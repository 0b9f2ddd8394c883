"""
Content webhook API
"""
from datetime import datetime, timezone

from flask import Blueprint, request

from ..middleware.auth import require_webhook_signature
from ..services.sync_service import get_sync_service
from ..utils.logger import get_logger
from ..utils.responses import ApiResponse, success_response

webhooks_bp = Blueprint('webhooks', __name__)
logger = get_logger('webhooks')

REQUIRED_PAYLOAD_FIELDS = ('id', 'collectionId')


def validate_webhook_body(body):
    """
    Check the envelope of a webhook body

    Returns:
        (is_valid, error message)
    """
    if not isinstance(body, dict):
        return False, 'Invalid payload: must be a JSON object'

    if not body.get('triggerType'):
        return False, 'Missing triggerType'

    payload = body.get('payload')
    if not isinstance(payload, dict):
        return False, 'Missing or invalid payload object'

    for name in REQUIRED_PAYLOAD_FIELDS:
        if not payload.get(name):
            return False, f'Missing required field: payload.{name}'

    return True, None


@webhooks_bp.route('/webhooks/content', methods=['POST'])
@require_webhook_signature
def content_webhook():
    """
    Item change notification

    Body:
        - triggerType: collection_item_created|changed|published|deleted|unpublished
        - payload: {id, collectionId, isDraft, isArchived, ...}
    """
    body = request.get_json(silent=True)
    is_valid, error_msg = validate_webhook_body(body)
    if not is_valid:
        logger.warning(f"[Webhook] Invalid payload: {error_msg}")
        return ApiResponse.validation_error(error_msg)

    outcome = get_sync_service().process_webhook_event(body['triggerType'], body['payload'])
    outcome['timestamp'] = datetime.now(timezone.utc).isoformat()

    logger.info(
        f"[Webhook] {outcome['triggerType']} {outcome['itemId']}: "
        f"processed={outcome['processed']} {outcome.get('action') or outcome.get('reason')}"
    )
    return success_response(outcome, 'Webhook processed')
