"""
Common utility functions for Lambda handlers.
"""
import base64
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional


class DecimalEncoder(json.JSONEncoder):
    """JSON encoder that handles Decimal types from DynamoDB."""

    def default(self, o):
        if isinstance(o, Decimal):
            # Convert to int if it's a whole number, otherwise float
            if o % 1 == 0:
                return int(o)
            return float(o)
        return super().default(o)


def format_response(
    status_code: int,
    body: Any,
    headers: Dict[str, str] = None
) -> Dict[str, Any]:
    """
    Format a standard API Gateway response with CORS headers.

    Args:
        status_code: HTTP status code
        body: Response body (will be JSON serialized)
        headers: Additional headers to include

    Returns:
        API Gateway response dict
    """
    default_headers = {
        'Access-Control-Allow-Origin': '*',
        'Access-Control-Allow-Credentials': True,
        'Content-Type': 'application/json'
    }

    if headers:
        default_headers.update(headers)

    return {
        'statusCode': status_code,
        'headers': default_headers,
        'body': json.dumps(body, cls=DecimalEncoder)
    }


def error_response(error) -> Dict[str, Any]:
    """Format an EscrowError as an API Gateway response."""
    return format_response(error.status_code, {
        'error': error.code,
        'message': str(error),
        'retryable': error.retryable
    })


def get_raw_body(event: dict) -> str:
    """Request body as text, decoding API Gateway base64 payloads."""
    body = event.get('body') or ''
    if not isinstance(body, str):
        return json.dumps(body)
    if event.get('isBase64Encoded'):
        return base64.b64decode(body).decode('utf-8')
    return body


def parse_body(event: dict) -> dict:
    """
    Parse the JSON body of an API Gateway event.

    Returns:
        Parsed body dict, or an empty dict when missing, malformed or not an object
    """
    try:
        body = json.loads(get_raw_body(event) or '{}')
    except (ValueError, TypeError):
        return {}
    return body if isinstance(body, dict) else {}


def get_path_param(event: dict, param_name: str) -> Optional[str]:
    """Extract path parameter from event."""
    try:
        return event['pathParameters'][param_name]
    except (KeyError, TypeError):
        return None


def get_query_param(event: dict, param_name: str, default: str = None) -> Optional[str]:
    """Extract query string parameter from event."""
    params = event.get('queryStringParameters') or {}
    return params.get(param_name, default)


def get_header(event: dict, name: str) -> Optional[str]:
    """Case-insensitive header lookup."""
    headers = event.get('headers') or {}
    for key, value in headers.items():
        if key.lower() == name.lower():
            return value
    return None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Serialize a timestamp the way it is stored in DynamoDB."""
    return moment.astimezone(timezone.utc).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp; naive values are treated as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def as_decimal(value, default: str = '0') -> Decimal:
    """Coerce a stored numeric attribute to Decimal."""
    if value is None:
        return Decimal(default)
    return Decimal(str(value))
