"""
POST /admin/disputes/{applicationId}/resolve
Body: { "favor": "worker" | "employer", "notes": "..." }
"""
from gigpay.auth import get_user_sub, is_admin
from gigpay.disputes import resolve_dispute_in_favor_of_employer, resolve_dispute_in_favor_of_worker
from gigpay.errors import EscrowError
from gigpay.logging import log_event, logger
from gigpay.store import get_store
from gigpay.tradesafe import get_escrow_provider
from gigpay.utils import error_response, format_response, get_path_param, parse_body


def handler(event, context):
    log_event(event)

    admin_id = get_user_sub(event)
    if not admin_id or not is_admin(event):
        return format_response(403, {'message': 'Admin access required'})

    application_id = get_path_param(event, 'applicationId')
    body = parse_body(event)
    favor = body.get('favor')
    notes = body.get('notes')

    if not application_id:
        return format_response(400, {'message': 'applicationId is required'})
    if favor not in ('worker', 'employer'):
        return format_response(400, {'message': 'favor must be "worker" or "employer"'})

    try:
        store = get_store()
        if favor == 'worker':
            result = resolve_dispute_in_favor_of_worker(
                store, application_id, admin_id, notes, provider=get_escrow_provider()
            )
        else:
            result = resolve_dispute_in_favor_of_employer(store, application_id, admin_id, notes)
        return format_response(200, result)
    except EscrowError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error resolving dispute on {application_id}: {e}")
        return format_response(500, {'message': 'Internal Server Error'})
