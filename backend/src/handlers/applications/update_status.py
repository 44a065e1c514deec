"""
POST /applications/{applicationId}/status
Body: { "status": "accepted" | "rejected" | "withdrawn" }
"""
from gigpay.applications import update_application_status
from gigpay.auth import get_user_sub
from gigpay.errors import EscrowError
from gigpay.logging import log_event, logger
from gigpay.store import get_store
from gigpay.utils import error_response, format_response, get_path_param, parse_body


def handler(event, context):
    log_event(event)

    user_id = get_user_sub(event)
    if not user_id:
        return format_response(401, {'message': 'Unauthorized'})

    application_id = get_path_param(event, 'applicationId')
    status = parse_body(event).get('status')
    if not application_id or not status:
        return format_response(400, {'message': 'applicationId and status are required'})

    try:
        result = update_application_status(get_store(), application_id, status, user_id)
        return format_response(200, result)
    except EscrowError as e:
        logger.warning(f"Status update of application {application_id} refused: {e}")
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error updating application {application_id}: {e}")
        return format_response(500, {'message': 'Internal Server Error'})
