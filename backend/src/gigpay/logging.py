"""
Logging for the escrow handlers.

Everything goes to the 'gigpay' logger. Money movements are also written to
the 'gigpay.audit' child logger, which stays at INFO whatever LOG_LEVEL says.
"""
import logging
import json

from .config import config

FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Event keys that may carry credentials or personal data
REDACTED_EVENT_KEYS = ('body', 'headers', 'multiValueHeaders')

logger = logging.getLogger('gigpay')
logger.setLevel(getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))

# Warm Lambda containers re-import modules; only attach one handler
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(FORMAT))
    logger.addHandler(handler)

audit_logger = logging.getLogger('gigpay.audit')
audit_logger.setLevel(logging.INFO)


def log_event(event: dict) -> None:
    """Log an incoming API Gateway event without body, headers or token claims."""
    try:
        safe_event = {k: v for k, v in event.items() if k not in REDACTED_EVENT_KEYS}
        request_context = safe_event.get('requestContext')
        if isinstance(request_context, dict) and 'authorizer' in request_context:
            safe_event['requestContext'] = {
                k: v for k, v in request_context.items() if k != 'authorizer'
            }
        logger.debug(f"Lambda event: {json.dumps(safe_event, default=str)}")
    except (TypeError, ValueError, AttributeError) as e:
        logger.warning(f"Could not log event: {e}")


def audit(message: str, **fields) -> None:
    """
    Write a payment audit line.

    Args:
        message: Short description of the money movement
        fields: Identifiers and amounts to attach (JSON serialized)
    """
    audit_logger.info(f"[PAYMENT_AUDIT] {message} {json.dumps(fields, default=str, sort_keys=True)}")
