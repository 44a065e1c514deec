"""
GET /payments/history?limit=50
Caller's payment history, newest first.
"""
from gigpay.auth import get_user_sub
from gigpay.ledger import get_user_payment_history
from gigpay.logging import logger
from gigpay.store import get_store
from gigpay.utils import format_response, get_query_param

MAX_LIMIT = 200


def handler(event, context):
    user_id = get_user_sub(event)
    if not user_id:
        return format_response(401, {'message': 'Unauthorized'})

    try:
        limit = min(max(int(get_query_param(event, 'limit', 50)), 1), MAX_LIMIT)
    except (TypeError, ValueError):
        return format_response(400, {'message': 'limit must be an integer'})

    try:
        history = get_user_payment_history(get_store(), user_id, limit)
        return format_response(200, {'history': history, 'count': len(history)})
    except Exception as e:
        logger.exception(f"Error loading payment history for {user_id}: {e}")
        return format_response(500, {'message': 'Internal Server Error'})
