"""
POST /payments/tradesafe/webhook
TradeSafe transaction state notifications.

FUNDS_RECEIVED / FUNDS_DEPOSITED record the escrow funding locally; the other
states only move the payment intent. Unknown transactions are acknowledged so
TradeSafe stops retrying.
"""
from gigpay.config import config
from gigpay.errors import EscrowError
from gigpay.ledger import record_escrow_funding, set_payment_intent_status
from gigpay.logging import audit, logger
from gigpay.models import PaymentIntentStatus, PROVIDER_TRADESAFE, TransactionState
from gigpay.store import get_store
from gigpay.tradesafe import SIGNATURE_HEADER, get_escrow_provider
from gigpay.utils import error_response, format_response, get_header, get_raw_body

FUNDED_STATES = (TransactionState.FUNDS_RECEIVED, TransactionState.FUNDS_DEPOSITED)

INTENT_STATUS_BY_STATE = {
    TransactionState.ACCEPTED: PaymentIntentStatus.RELEASING,
    TransactionState.COMPLETED: PaymentIntentStatus.COMPLETED,
    TransactionState.CANCELLED: PaymentIntentStatus.CANCELLED,
}


def _find_intent(store, transaction_id):
    intents = store.query(config.PAYMENT_INTENTS_TABLE, config.TRANSACTION_INDEX, 'transactionId', transaction_id)
    for intent in intents:
        if intent.get('provider') == PROVIDER_TRADESAFE:
            return intent
    return None


def handler(event, context):
    provider = get_escrow_provider()
    if provider is None:
        return format_response(503, {'message': 'TradeSafe is not configured'})

    try:
        payload = get_raw_body(event)
    except ValueError:
        return format_response(400, {'message': 'Invalid payload'})
    if not provider.validate_webhook(payload, get_header(event, SIGNATURE_HEADER)):
        logger.error('TradeSafe webhook: invalid signature')
        return format_response(401, {'message': 'Invalid signature'})

    notification = provider.parse_webhook(payload)
    if not notification or not notification.get('transactionId'):
        return format_response(400, {'message': 'Invalid payload'})

    transaction_id = notification['transactionId']
    state = notification.get('state')
    audit('Webhook received', event=notification.get('event'), transactionId=transaction_id, state=state)

    store = get_store()
    try:
        intent = _find_intent(store, transaction_id)
        if not intent:
            logger.warning(f"TradeSafe webhook: no payment intent for transaction {transaction_id}")
            return format_response(200, {'received': True, 'processed': False})

        if state in FUNDED_STATES:
            processed = record_escrow_funding(store, intent, allocation_id=notification.get('allocationId'))
        elif state in INTENT_STATUS_BY_STATE:
            processed = set_payment_intent_status(store, intent['id'], INTENT_STATUS_BY_STATE[state])
        else:
            logger.info(f"TradeSafe webhook: state {state} for transaction {transaction_id} needs no action")
            processed = False

        return format_response(200, {'received': True, 'processed': processed})
    except EscrowError as e:
        logger.error(f"TradeSafe webhook for transaction {transaction_id} failed: {e}")
        return error_response(e)
    except Exception as e:
        logger.exception(f"TradeSafe webhook for transaction {transaction_id} failed: {e}")
        return format_response(500, {'message': 'Internal Server Error'})
