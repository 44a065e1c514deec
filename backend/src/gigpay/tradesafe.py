"""
TradeSafe escrow provider client.

OAuth2 client-credentials token plus GraphQL calls over HTTPS. Every request
carries a bounded timeout; transport, HTTP and GraphQL failures surface as
ProviderError.
"""
import hashlib
import hmac
import json
import time
from typing import Callable, Optional, Union

import requests

from .config import config
from .errors import ProviderError
from .logging import logger

AUTH_URL = 'https://auth.tradesafe.co.za/oauth/token'
API_URLS = {
    'sandbox': 'https://api-developer.tradesafe.dev/graphql',
    'production': 'https://api.tradesafe.co.za/graphql',
}

# Refresh the access token this long before it expires
TOKEN_EXPIRY_BUFFER_SECONDS = 300

SIGNATURE_HEADER = 'x-tradesafe-signature'

TRANSACTION_QUERY = """
query transaction($id: ID!) {
  transaction(id: $id) {
    id
    reference
    state
    allocations { id title value state }
    parties { id role }
  }
}
"""

ALLOCATION_MUTATION = """
mutation {name}($id: ID!) {{
  {name}(id: $id) {{ id state }}
}}
"""

class EscrowProvider:
    """
    Capability the release orchestrator needs from an escrow provider.

    get_transaction returns {'id', 'state', 'reference', 'allocations': [{'id',
    'state', 'value'}]} or None when the transaction does not exist.
    """

    def get_transaction(self, transaction_id: str) -> Optional[dict]:
        raise NotImplementedError

    def start_delivery(self, allocation_id: str) -> dict:
        raise NotImplementedError

    def complete_delivery(self, allocation_id: str) -> dict:
        raise NotImplementedError

    def accept_delivery(self, allocation_id: str) -> dict:
        raise NotImplementedError


class TradeSafeClient(EscrowProvider):
    """TradeSafe GraphQL API client."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        environment: str = 'sandbox',
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time
    ):
        if environment not in API_URLS:
            raise ValueError(f"Unknown TradeSafe environment: {environment}")
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_url = API_URLS[environment]
        self.timeout = timeout or config.TRADESAFE_TIMEOUT_SECONDS
        self.session = session or requests.Session()
        self._clock = clock
        self._token = None
        self._token_expires_at = 0.0

    def _access_token(self) -> str:
        if self._token and self._clock() < self._token_expires_at:
            return self._token

        try:
            response = self.session.post(AUTH_URL, data={
                'grant_type': 'client_credentials',
                'client_id': self.client_id,
                'client_secret': self.client_secret
            }, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as e:
            logger.error(f"TradeSafe authentication failed: {e}")
            raise ProviderError(f"TradeSafe authentication failed: {e}") from e
        except ValueError as e:
            raise ProviderError('TradeSafe authentication returned invalid JSON') from e

        token = body.get('access_token')
        if not token:
            raise ProviderError('TradeSafe authentication returned no access token')
        expires_in = float(body.get('expires_in', 3600))
        self._token = token
        self._token_expires_at = self._clock() + expires_in - TOKEN_EXPIRY_BUFFER_SECONDS
        return token

    def _graphql(self, query: str, variables: dict) -> dict:
        token = self._access_token()
        try:
            response = self.session.post(
                self.api_url,
                json={'query': query, 'variables': variables},
                headers={'Authorization': f"Bearer {token}", 'Content-Type': 'application/json'},
                timeout=self.timeout
            )
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as e:
            logger.error(f"TradeSafe request failed: {e}")
            raise ProviderError(f"TradeSafe request failed: {e}") from e
        except ValueError as e:
            raise ProviderError('TradeSafe returned invalid JSON') from e

        if body.get('errors'):
            message = body['errors'][0].get('message', 'Unknown GraphQL error')
            logger.error(f"TradeSafe GraphQL error: {message}")
            raise ProviderError(f"TradeSafe GraphQL error: {message}")
        return body.get('data') or {}

    def get_transaction(self, transaction_id):
        data = self._graphql(TRANSACTION_QUERY, {'id': transaction_id})
        transaction = data.get('transaction')
        if not transaction:
            return None
        return {
            'id': transaction['id'],
            'reference': transaction.get('reference'),
            'state': transaction.get('state'),
            'allocations': [
                {
                    'id': allocation['id'],
                    'title': allocation.get('title'),
                    'value': allocation.get('value'),
                    'state': allocation.get('state')
                }
                for allocation in transaction.get('allocations') or []
            ],
            'parties': transaction.get('parties') or []
        }

    def _allocation_mutation(self, name: str, allocation_id: str) -> dict:
        data = self._graphql(ALLOCATION_MUTATION.format(name=name), {'id': allocation_id})
        result = data.get(name) or {}
        logger.info(f"TradeSafe {name} on allocation {allocation_id}: {result.get('state')}")
        return result

    def start_delivery(self, allocation_id):
        return self._allocation_mutation('allocationStartDelivery', allocation_id)

    def complete_delivery(self, allocation_id):
        return self._allocation_mutation('allocationCompleteDelivery', allocation_id)

    def accept_delivery(self, allocation_id):
        return self._allocation_mutation('allocationAcceptDelivery', allocation_id)

    def validate_webhook(self, payload: Union[str, bytes], signature: Optional[str]) -> bool:
        """Check the HMAC-SHA256 hex signature TradeSafe puts on webhook bodies."""
        if not signature:
            logger.error('Webhook validation failed: no signature provided')
            return False
        if isinstance(payload, str):
            payload = payload.encode('utf-8')
        expected = hmac.new(self.client_secret.encode('utf-8'), payload, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature.strip().lower())

    @staticmethod
    def parse_webhook(payload: Union[str, bytes, dict]) -> Optional[dict]:
        """
        Normalize a webhook body.

        Returns:
            {'event', 'transactionId', 'allocationId', 'state'} or None if the
            body is not valid JSON
        """
        if isinstance(payload, (str, bytes)):
            try:
                payload = json.loads(payload)
            except ValueError:
                logger.error('Failed to parse webhook payload')
                return None
        if not isinstance(payload, dict):
            return None

        transaction = payload.get('transaction') or {}
        allocation = payload.get('allocation') or {}
        return {
            'event': payload.get('event') or payload.get('type'),
            'transactionId': transaction.get('id') or payload.get('transactionId'),
            'allocationId': allocation.get('id') or payload.get('allocationId'),
            'state': transaction.get('state') or payload.get('state')
        }


def get_escrow_provider() -> Optional[TradeSafeClient]:
    """TradeSafe client from configuration, or None when not configured."""
    if not config.TRADESAFE_CLIENT_ID or not config.TRADESAFE_CLIENT_SECRET:
        logger.warning('TradeSafe credentials not configured, provider payouts disabled')
        return None
    return TradeSafeClient(
        config.TRADESAFE_CLIENT_ID,
        config.TRADESAFE_CLIENT_SECRET,
        config.TRADESAFE_ENVIRONMENT
    )
