"""
GET /admin/disputes
Lists funded applications with an unresolved completion dispute.
"""
from gigpay.auth import is_admin
from gigpay.disputes import get_all_disputed_applications
from gigpay.logging import log_event, logger
from gigpay.store import get_store
from gigpay.utils import format_response


def handler(event, context):
    log_event(event)

    if not is_admin(event):
        return format_response(403, {'message': 'Admin access required'})

    try:
        disputes = get_all_disputed_applications(get_store())
        return format_response(200, {'disputes': disputes, 'count': len(disputes)})
    except Exception as e:
        logger.exception(f"Error listing disputes: {e}")
        return format_response(500, {'message': 'Internal Server Error'})
