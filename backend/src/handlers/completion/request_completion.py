"""
POST /applications/{applicationId}/completion/request
Worker marks the gig as done; starts the auto-release countdown.
"""
from gigpay.auth import get_user_sub
from gigpay.completion import request_completion_by_worker
from gigpay.errors import EscrowError
from gigpay.logging import log_event, logger
from gigpay.store import get_store
from gigpay.utils import error_response, format_response, get_path_param


def handler(event, context):
    log_event(event)

    worker_id = get_user_sub(event)
    if not worker_id:
        return format_response(401, {'message': 'Unauthorized'})

    application_id = get_path_param(event, 'applicationId')
    if not application_id:
        return format_response(400, {'message': 'applicationId is required'})

    try:
        result = request_completion_by_worker(get_store(), application_id, worker_id)
        return format_response(200, result)
    except EscrowError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error requesting completion for {application_id}: {e}")
        return format_response(500, {'message': 'Internal Server Error'})
