"""
Tests for the TradeSafe client.
"""
import hashlib
import hmac
import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from gigpay.errors import ProviderError
from gigpay.tradesafe import API_URLS, AUTH_URL, TradeSafeClient, get_escrow_provider


def response(body, status=200):
    mock = MagicMock()
    mock.json.return_value = body
    if status >= 400:
        mock.raise_for_status.side_effect = requests.HTTPError(f"{status} Error")
    return mock


TOKEN = response({'access_token': 'token-abc', 'expires_in': 3600})


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def client(session):
    clock = MagicMock(return_value=1000.0)
    return TradeSafeClient('client-id', 'client-secret', 'sandbox', timeout=12, session=session, clock=clock)


class TestTradeSafeClient:
    """Tests for OAuth and GraphQL calls."""

    def test_get_transaction(self, client, session):
        session.post.side_effect = [TOKEN, response({'data': {'transaction': {
            'id': 'tx-1', 'reference': 'GIG-1', 'state': 'FUNDS_RECEIVED',
            'allocations': [{'id': 'alloc-1', 'title': 'Gig', 'value': 1000, 'state': 'FUNDS_RECEIVED'}],
            'parties': []
        }}})]

        transaction = client.get_transaction('tx-1')

        assert transaction['state'] == 'FUNDS_RECEIVED'
        assert transaction['allocations'][0]['id'] == 'alloc-1'
        auth_call, graphql_call = session.post.call_args_list
        assert auth_call.args[0] == AUTH_URL
        assert auth_call.kwargs['data']['grant_type'] == 'client_credentials'
        assert graphql_call.args[0] == API_URLS['sandbox']
        assert graphql_call.kwargs['headers']['Authorization'] == 'Bearer token-abc'
        assert graphql_call.kwargs['json']['variables'] == {'id': 'tx-1'}
        assert graphql_call.kwargs['timeout'] == 12

    def test_token_is_cached(self, client, session):
        session.post.side_effect = [
            TOKEN,
            response({'data': {'allocationStartDelivery': {'id': 'alloc-1', 'state': 'INITIATED'}}}),
            response({'data': {'allocationAcceptDelivery': {'id': 'alloc-1', 'state': 'ACCEPTED'}}}),
        ]

        client.start_delivery('alloc-1')
        result = client.accept_delivery('alloc-1')

        assert result['state'] == 'ACCEPTED'
        assert session.post.call_count == 3
        assert 'allocationAcceptDelivery' in session.post.call_args.kwargs['json']['query']

    def test_token_refreshed_inside_expiry_buffer(self, client, session):
        """Tokens are renewed five minutes before they expire."""
        session.post.side_effect = [
            response({'access_token': 'first', 'expires_in': 600}),
            response({'data': {'transaction': None}}),
            response({'access_token': 'second', 'expires_in': 600}),
            response({'data': {'transaction': None}}),
        ]

        client.get_transaction('tx-1')
        client._clock.return_value = 1000.0 + 301
        assert client.get_transaction('tx-1') is None

        assert session.post.call_args.kwargs['headers']['Authorization'] == 'Bearer second'

    def test_graphql_errors_raise(self, client, session):
        session.post.side_effect = [TOKEN, response({'errors': [{'message': 'Allocation not found'}]})]

        with pytest.raises(ProviderError, match='Allocation not found'):
            client.complete_delivery('alloc-404')

    def test_timeout_raises_provider_error(self, client, session):
        session.post.side_effect = [TOKEN, requests.Timeout('read timed out')]

        with pytest.raises(ProviderError):
            client.get_transaction('tx-1')

    def test_http_error_on_auth(self, client, session):
        session.post.side_effect = [response({}, status=401)]

        with pytest.raises(ProviderError):
            client.get_transaction('tx-1')

    def test_unknown_environment(self):
        with pytest.raises(ValueError):
            TradeSafeClient('id', 'secret', 'staging')


class TestWebhooks:
    """Tests for webhook signature validation and parsing."""

    def test_valid_signature(self, client):
        payload = json.dumps({'event': 'transaction.funded', 'transaction': {'id': 'tx-1', 'state': 'FUNDS_RECEIVED'}})
        signature = hmac.new(b'client-secret', payload.encode(), hashlib.sha256).hexdigest()

        assert client.validate_webhook(payload, signature) is True
        assert client.validate_webhook(payload, signature.upper()) is True

    def test_invalid_signature(self, client):
        assert client.validate_webhook('{"a": 1}', 'deadbeef') is False
        assert client.validate_webhook('{"a": 1}', '') is False
        assert client.validate_webhook('{"a": 1}', None) is False

    def test_parse_nested_and_flat_payloads(self):
        nested = TradeSafeClient.parse_webhook(
            '{"event": "allocation.accepted", "transaction": {"id": "tx-1", "state": "ACCEPTED"}, "allocation": {"id": "a-1"}}'
        )
        flat = TradeSafeClient.parse_webhook({'type': 'transaction.cancelled', 'transactionId': 'tx-2', 'state': 'CANCELLED'})

        assert nested == {'event': 'allocation.accepted', 'transactionId': 'tx-1', 'allocationId': 'a-1', 'state': 'ACCEPTED'}
        assert flat == {'event': 'transaction.cancelled', 'transactionId': 'tx-2', 'allocationId': None, 'state': 'CANCELLED'}

    def test_parse_invalid_json(self):
        assert TradeSafeClient.parse_webhook('not json') is None


class TestGetEscrowProvider:
    def test_none_without_credentials(self):
        with patch('gigpay.tradesafe.config') as mock_config:
            mock_config.TRADESAFE_CLIENT_ID = ''
            mock_config.TRADESAFE_CLIENT_SECRET = ''
            assert get_escrow_provider() is None

    def test_client_with_credentials(self):
        with patch('gigpay.tradesafe.config') as mock_config:
            mock_config.TRADESAFE_CLIENT_ID = 'id'
            mock_config.TRADESAFE_CLIENT_SECRET = 'secret'
            mock_config.TRADESAFE_ENVIRONMENT = 'production'
            mock_config.TRADESAFE_TIMEOUT_SECONDS = 20.0

            provider = get_escrow_provider()

        assert provider.api_url == API_URLS['production']
        assert provider.timeout == 20.0
