"""
Shared fixtures: in-memory document store, fake escrow provider and a funded
gig scenario.
"""
import copy
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
import requests

from gigpay.config import config
from gigpay.errors import TransactionConflict
from gigpay.models import (
    ApplicationStatus, GigStatus, HistoryStatus, HistoryType, PaymentIntentStatus,
    PaymentStatus, PROVIDER_TRADESAFE, TransactionState, AllocationState
)
from gigpay.store import ABSENT, DocumentStore, RetryPolicy
from gigpay.tradesafe import EscrowProvider
from gigpay.utils import to_iso


class InMemoryStore(DocumentStore):
    """
    DocumentStore keeping tables in dicts.

    Commits are checked against document versions exactly like the DynamoDB
    condition expressions, so lost races raise TransactionConflict.
    before_commit hooks run (once each) right before a commit is validated,
    which lets a test slip a concurrent write in between read and commit.
    """

    def __init__(self, retry_policy=None):
        super().__init__(retry_policy or RetryPolicy(max_attempts=3, backoff_seconds=0, sleep=lambda seconds: None))
        self.tables = {}
        self.commits = 0
        self.conflicts = 0
        self.writes = 0
        self.before_commit = []

    def seed(self, table, item):
        stored = copy.deepcopy(item)
        stored.setdefault('version', 1)
        self.tables.setdefault(table, {})[stored['id']] = stored
        return stored

    def doc(self, table, doc_id):
        return self.tables.get(table, {}).get(doc_id)

    def write(self, table, doc_id, **fields):
        """Direct write by another writer; bumps the version."""
        stored = self.tables[table][doc_id]
        stored.update(fields)
        stored['version'] = stored.get('version', 0) + 1

    def get(self, table, doc_id):
        item = self.doc(table, doc_id)
        return copy.deepcopy(item) if item is not None else None

    def query(self, table, index_name, field, value):
        return [copy.deepcopy(item) for item in self.tables.get(table, {}).values() if item.get(field) == value]

    def scan(self, table):
        return [copy.deepcopy(item) for item in self.tables.get(table, {}).values()]

    def _matches(self, op):
        current = self.doc(op.table, op.doc_id)
        if op.expected_version is ABSENT:
            return current is None
        if current is None:
            return False
        if op.expected_version is None:
            return 'version' not in current
        return current.get('version') == op.expected_version

    def commit(self, ops):
        if self.before_commit:
            self.before_commit.pop(0)(self)
        self.commits += 1
        if not all(self._matches(op) for op in ops):
            self.conflicts += 1
            raise TransactionConflict('Version mismatch')

        for op in ops:
            if op.kind == 'put':
                item = copy.deepcopy(op.item)
                item['version'] = 1
                self.tables.setdefault(op.table, {})[op.doc_id] = item
                self.writes += 1
            elif op.kind == 'update':
                current = self.tables[op.table][op.doc_id]
                current.update(copy.deepcopy(op.set_fields))
                for field, amount in op.increments.items():
                    current[field] = current.get(field, 0) + amount
                for field in op.removes:
                    current.pop(field, None)
                current['version'] = current.get('version', 0) + 1
                self.writes += 1


class FakeProvider(EscrowProvider):
    """Escrow provider double recording every delivery call."""

    def __init__(self, transaction=None, error=None):
        self.transaction = transaction
        self.error = error
        self.calls = []

    def get_transaction(self, transaction_id):
        self.calls.append(('get_transaction', transaction_id))
        if self.error:
            raise self.error
        return copy.deepcopy(self.transaction)

    def start_delivery(self, allocation_id):
        self.calls.append(('start_delivery', allocation_id))
        return {'id': allocation_id, 'state': AllocationState.INITIATED}

    def complete_delivery(self, allocation_id):
        self.calls.append(('complete_delivery', allocation_id))
        return {'id': allocation_id, 'state': AllocationState.DELIVERY_COMPLETE}

    def accept_delivery(self, allocation_id):
        self.calls.append(('accept_delivery', allocation_id))
        return {'id': allocation_id, 'state': AllocationState.ACCEPTED}

    def call_names(self):
        return [name for name, _ in self.calls]


@pytest.fixture
def now():
    return datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def funded_provider():
    """Provider reporting funds received on transaction tx-1."""
    return FakeProvider(transaction={
        'id': 'tx-1',
        'state': TransactionState.FUNDS_RECEIVED,
        'reference': 'GIG-1',
        'allocations': [{'id': 'alloc-1', 'state': AllocationState.FUNDS_RECEIVED, 'value': 1000}]
    })


@pytest.fixture
def open_gig(store):
    """Open gig gig-1 owned by employer-1 with three pending applicants."""
    store.seed(config.GIGS_TABLE, {
        'id': 'gig-1',
        'employerId': 'employer-1',
        'title': 'Garden clean-up',
        'status': GigStatus.OPEN
    })
    for index in (1, 2, 3):
        store.seed(config.APPLICATIONS_TABLE, {
            'id': f"app-{index}",
            'gigId': 'gig-1',
            'applicantId': f"worker-{index}",
            'proposedRate': Decimal('1000'),
            'status': ApplicationStatus.PENDING,
            'paymentStatus': PaymentStatus.UNPAID
        })
    return store


@pytest.fixture
def funded_gig(store, now):
    """
    gig-1 funded with R1000 escrow for worker-1 (application app-1).

    Completion is not requested yet; tests add the completion fields they need.
    """
    funded_at = to_iso(now - timedelta(days=10))
    store.seed(config.GIGS_TABLE, {
        'id': 'gig-1',
        'employerId': 'employer-1',
        'title': 'Garden clean-up',
        'status': GigStatus.IN_PROGRESS,
        'assignedTo': 'worker-1',
        'escrowAmount': Decimal('1000'),
        'escrowTransactionId': 'tx-1',
        'paymentStatus': PaymentStatus.IN_ESCROW
    })
    store.seed(config.APPLICATIONS_TABLE, {
        'id': 'app-1',
        'gigId': 'gig-1',
        'applicantId': 'worker-1',
        'proposedRate': Decimal('1000'),
        'agreedRate': Decimal('1000'),
        'paymentId': 'intent-1',
        'status': ApplicationStatus.FUNDED,
        'paymentStatus': PaymentStatus.IN_ESCROW,
        'fundedAt': funded_at
    })
    store.seed(config.USERS_TABLE, {
        'id': 'worker-1',
        'pendingBalance': Decimal('1000'),
        'walletBalance': Decimal('0'),
        'totalEarnings': Decimal('0'),
        'completedGigs': 0
    })
    store.seed(config.USERS_TABLE, {
        'id': 'employer-1',
        'pendingBalance': Decimal('1000'),
        'walletBalance': Decimal('0')
    })
    store.seed(config.PAYMENT_INTENTS_TABLE, {
        'id': 'intent-1',
        'gigId': 'gig-1',
        'applicationId': 'app-1',
        'workerId': 'worker-1',
        'employerId': 'employer-1',
        'amount': Decimal('1000'),
        'provider': PROVIDER_TRADESAFE,
        'transactionId': 'tx-1',
        'allocationId': 'alloc-1',
        'status': PaymentIntentStatus.FUNDED,
        'createdAt': funded_at
    })
    store.seed(config.PAYMENT_HISTORY_TABLE, {
        'id': 'history-1',
        'userId': 'worker-1',
        'gigId': 'gig-1',
        'paymentId': 'intent-1',
        'type': HistoryType.EARNINGS,
        'status': HistoryStatus.PENDING,
        'amount': Decimal('1000'),
        'currency': 'ZAR',
        'createdAt': funded_at
    })
    return store


@pytest.fixture
def completion_requested(funded_gig, now):
    """funded_gig with a completion request from two days ago, due in five days."""
    funded_gig.write(
        config.APPLICATIONS_TABLE, 'app-1',
        completionRequestedAt=to_iso(now - timedelta(days=2)),
        completionRequestedBy='worker',
        completionAutoReleaseAt=to_iso(now + timedelta(days=5))
    )
    return funded_gig


@pytest.fixture
def disputed(completion_requested, now):
    """completion_requested with an open employer dispute."""
    completion_requested.write(
        config.APPLICATIONS_TABLE, 'app-1',
        completionDisputedAt=to_iso(now - timedelta(days=1)),
        completionDisputeReason='Work was only half finished'
    )
    completion_requested.tables[config.APPLICATIONS_TABLE]['app-1'].pop('completionAutoReleaseAt', None)
    return completion_requested


@pytest.fixture
def unreachable_provider():
    """Provider whose every call fails at the network level."""
    return FakeProvider(error=requests.ConnectionError('connection reset by peer'))
