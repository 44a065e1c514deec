"""
GET /admin/fee-configs
Lists fee configurations, newest first. The active one is flagged isActive.
"""
from gigpay.auth import is_admin
from gigpay.fees import list_fee_configs
from gigpay.logging import log_event, logger
from gigpay.store import get_store
from gigpay.utils import format_response


def handler(event, context):
    log_event(event)

    if not is_admin(event):
        return format_response(403, {'message': 'Admin access required'})

    try:
        configs = list_fee_configs(get_store())
        return format_response(200, {'configs': configs, 'count': len(configs)})
    except Exception as e:
        logger.exception(f"Error listing fee configurations: {e}")
        return format_response(500, {'message': 'Internal Server Error'})
