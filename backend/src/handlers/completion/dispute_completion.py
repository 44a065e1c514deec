"""
POST /applications/{applicationId}/completion/dispute
Body: { "reason": "..." }
"""
from gigpay.auth import get_user_sub
from gigpay.completion import dispute_completion
from gigpay.errors import EscrowError
from gigpay.logging import log_event, logger
from gigpay.store import get_store
from gigpay.utils import error_response, format_response, get_path_param, parse_body


def handler(event, context):
    log_event(event)

    employer_id = get_user_sub(event)
    if not employer_id:
        return format_response(401, {'message': 'Unauthorized'})

    application_id = get_path_param(event, 'applicationId')
    if not application_id:
        return format_response(400, {'message': 'applicationId is required'})

    reason = parse_body(event).get('reason', '')

    try:
        result = dispute_completion(get_store(), application_id, employer_id, reason)
        return format_response(200, result)
    except EscrowError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error disputing completion for {application_id}: {e}")
        return format_response(500, {'message': 'Internal Server Error'})
