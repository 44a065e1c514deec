"""
Scheduled auto-release sweep.
Triggered by EventBridge, or through API Gateway with a Bearer CRON_SECRET.
GET through API Gateway only reports how many applications are due.
"""
import hmac

from gigpay.completion import get_applications_eligible_for_auto_release, process_all_auto_releases
from gigpay.config import config
from gigpay.logging import logger
from gigpay.store import get_store
from gigpay.tradesafe import get_escrow_provider
from gigpay.utils import format_response, get_header, to_iso, utc_now


def _is_authorized(event) -> bool:
    if not config.CRON_SECRET:
        logger.error('CRON_SECRET not configured, rejecting auto-release request')
        return False
    provided = get_header(event, 'Authorization') or ''
    return hmac.compare_digest(provided, f"Bearer {config.CRON_SECRET}")


def handler(event, context):
    event = event or {}
    from_api = 'httpMethod' in event

    if from_api and not _is_authorized(event):
        return format_response(401, {'message': 'Unauthorized'})

    store = get_store()
    try:
        if from_api and event['httpMethod'] == 'GET':
            eligible = get_applications_eligible_for_auto_release(store)
            return format_response(200, {
                'status': 'healthy',
                'eligibleCount': len(eligible),
                'timestamp': to_iso(utc_now())
            })

        summary = process_all_auto_releases(store, provider=get_escrow_provider())
        logger.info(
            f"Auto-release sweep done: {summary['succeeded']} released, "
            f"{summary['failed']} not released of {summary['processed']}"
        )
    except Exception as e:
        logger.exception(f"Auto-release sweep failed: {e}")
        if from_api:
            return format_response(500, {'message': 'Internal Server Error'})
        raise

    if from_api:
        return format_response(200, summary)
    return summary
