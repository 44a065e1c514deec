"""
POST /applications/{applicationId}/completion/approve
Employer approves the completion request; escrow is released to the worker.
"""
from gigpay.auth import get_user_sub
from gigpay.errors import EscrowError, InsufficientBalance
from gigpay.logging import log_event, logger
from gigpay.orchestrator import approve_completion
from gigpay.store import get_store
from gigpay.tradesafe import get_escrow_provider
from gigpay.utils import error_response, format_response, get_path_param


def handler(event, context):
    log_event(event)

    employer_id = get_user_sub(event)
    if not employer_id:
        return format_response(401, {'message': 'Unauthorized'})

    application_id = get_path_param(event, 'applicationId')
    if not application_id:
        return format_response(400, {'message': 'applicationId is required'})

    try:
        result = approve_completion(get_store(), application_id, employer_id, provider=get_escrow_provider())
        return format_response(200, result)
    except EscrowError as e:
        if e.status_code >= 500 or isinstance(e, InsufficientBalance):
            logger.error(f"Approval of application {application_id} failed: {e}")
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error approving completion for {application_id}: {e}")
        return format_response(500, {'message': 'Internal Server Error'})
