"""
POST /admin/fee-configs
Body: { "platformCommissionPercent": 12, "minimumGigAmount": 50,
        "maximumGigAmount": 50000, "escrowAutoReleaseDays": 7 }

Omitted fields take the platform defaults. The new configuration becomes the
active one.
"""
from gigpay.auth import get_user_sub, is_admin
from gigpay.errors import EscrowError
from gigpay.fees import create_fee_config
from gigpay.logging import log_event, logger
from gigpay.store import get_store
from gigpay.utils import error_response, format_response, parse_body


def handler(event, context):
    log_event(event)

    admin_id = get_user_sub(event)
    if not admin_id or not is_admin(event):
        return format_response(403, {'message': 'Admin access required'})

    try:
        created = create_fee_config(get_store(), parse_body(event), admin_id)
        return format_response(201, created)
    except EscrowError as e:
        return error_response(e)
    except Exception as e:
        logger.exception(f"Error creating fee configuration: {e}")
        return format_response(500, {'message': 'Internal Server Error'})
