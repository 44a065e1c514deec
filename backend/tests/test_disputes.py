"""
Tests for admin dispute resolution.
"""
from decimal import Decimal

import pytest

from gigpay.completion import dispute_completion, request_completion_by_worker
from gigpay.config import config
from gigpay.disputes import (
    get_all_disputed_applications, resolve_dispute_in_favor_of_employer, resolve_dispute_in_favor_of_worker
)
from gigpay.errors import AlreadyResolved, NoActiveDispute, ValidationError
from gigpay.models import ApplicationStatus, CompletionResolution, ReleaseTrigger
from gigpay.utils import to_iso


def application(store):
    return store.doc(config.APPLICATIONS_TABLE, 'app-1')


def balances(store):
    worker = store.doc(config.USERS_TABLE, 'worker-1')
    return worker['pendingBalance'], worker['walletBalance'], worker['totalEarnings']


class TestResolveForWorker:
    """Tests for resolve_dispute_in_favor_of_worker."""

    def test_releases_escrow_and_records_ruling(self, disputed, funded_provider, now):
        result = resolve_dispute_in_favor_of_worker(
            disputed, 'app-1', 'admin-1', 'Photos show the job was finished', funded_provider, now
        )

        app = application(disputed)
        assert result['netAmount'] == Decimal('900.00')
        assert result['tradeSafePayoutTriggered'] is True
        assert app['status'] == ApplicationStatus.COMPLETED
        assert app['releasedBy'] == ReleaseTrigger.ADMIN
        assert app['completionResolution'] == CompletionResolution.APPROVED
        assert app['completionResolvedBy'] == 'admin-1'
        assert app['completionResolvedAt'] == to_iso(now)
        assert app['completionResolutionNotes'] == 'Photos show the job was finished'
        assert balances(disputed) == (Decimal('0'), Decimal('900.00'), Decimal('900.00'))

    def test_second_resolution_changes_nothing(self, disputed, now):
        """Calling twice fails with AlreadyResolved and leaves balances as they were."""
        resolve_dispute_in_favor_of_worker(disputed, 'app-1', 'admin-1', now=now)
        before = balances(disputed)
        writes = disputed.writes

        with pytest.raises(AlreadyResolved):
            resolve_dispute_in_favor_of_worker(disputed, 'app-1', 'admin-2', now=now)

        assert balances(disputed) == before
        assert disputed.writes == writes

    def test_requires_dispute(self, completion_requested, now):
        with pytest.raises(NoActiveDispute):
            resolve_dispute_in_favor_of_worker(completion_requested, 'app-1', 'admin-1', now=now)
        assert completion_requested.writes == 0


class TestResolveForEmployer:
    """Tests for resolve_dispute_in_favor_of_employer."""

    def test_reopens_completion_cycle(self, disputed, now):
        resolve_dispute_in_favor_of_employer(disputed, 'app-1', 'admin-1', 'Back wall still unpainted', now)

        app = application(disputed)
        assert app['status'] == ApplicationStatus.FUNDED
        assert app['completionResolution'] == CompletionResolution.REJECTED
        for field in ('completionRequestedAt', 'completionRequestedBy', 'completionDisputedAt',
                      'completionDisputeReason', 'completionAutoReleaseAt'):
            assert field not in app
        assert balances(disputed) == (Decimal('1000'), Decimal('0'), Decimal('0'))

    def test_worker_can_request_again(self, disputed, now):
        """After the ruling the worker fixes the job and a new cycle starts."""
        resolve_dispute_in_favor_of_employer(disputed, 'app-1', 'admin-1', 'Back wall still unpainted', now)

        request_completion_by_worker(disputed, 'app-1', 'worker-1', now)
        dispute_completion(disputed, 'app-1', 'employer-1', 'Paint is dripping everywhere', now)

        assert [app['id'] for app in get_all_disputed_applications(disputed)] == ['app-1']
        assert application(disputed)['previousCompletionResolution']['completionResolvedBy'] == 'admin-1'

    def test_notes_required(self, disputed, now):
        with pytest.raises(ValidationError):
            resolve_dispute_in_favor_of_employer(disputed, 'app-1', 'admin-1', '   ', now)
        assert disputed.writes == 0

    def test_already_resolved(self, disputed, now):
        resolve_dispute_in_favor_of_employer(disputed, 'app-1', 'admin-1', 'Not finished', now)

        with pytest.raises(AlreadyResolved):
            resolve_dispute_in_favor_of_employer(disputed, 'app-1', 'admin-1', 'Not finished', now)
        with pytest.raises(AlreadyResolved):
            resolve_dispute_in_favor_of_worker(disputed, 'app-1', 'admin-1', now=now)


class TestListDisputes:
    def test_only_open_disputes_are_listed(self, disputed, now):
        disputed.seed(config.APPLICATIONS_TABLE, {
            'id': 'app-resolved', 'gigId': 'gig-9', 'status': ApplicationStatus.FUNDED,
            'completionDisputedAt': to_iso(now), 'completionResolvedAt': to_iso(now)
        })
        disputed.seed(config.APPLICATIONS_TABLE, {
            'id': 'app-done', 'gigId': 'gig-8', 'status': ApplicationStatus.COMPLETED,
            'completionDisputedAt': to_iso(now)
        })

        assert [app['id'] for app in get_all_disputed_applications(disputed)] == ['app-1']
