"""
Worker completion requests, employer disputes and timeout-based auto-release.
"""
from datetime import datetime, timedelta
from typing import List, Optional

from .config import config
from .errors import (
    AlreadyRequested, AlreadyResolved, EscrowError, InvalidState,
    NotFoundError, Unauthorized, ValidationError
)
from .fees import get_active_fee_config, get_auto_release_days
from .logging import logger
from .models import ApplicationStatus, ReleaseTrigger, is_auto_release_due
from .orchestrator import release_escrow
from .store import CLEAR, DocumentStore, run_transaction
from .tradesafe import EscrowProvider
from .utils import to_iso, utc_now

MIN_DISPUTE_REASON_LENGTH = 10
MAX_DISPUTE_REASON_LENGTH = 1000

RESOLUTION_FIELDS = (
    'completionResolvedAt',
    'completionResolvedBy',
    'completionResolution',
    'completionResolutionNotes',
)


def request_completion_by_worker(
    store: DocumentStore,
    application_id: str,
    worker_id: str,
    now: Optional[datetime] = None
) -> dict:
    """
    Worker marks the gig as done and starts the auto-release countdown.

    Args:
        store: Document store
        application_id: Funded application
        worker_id: Verified caller, must be the applicant

    Returns:
        {'applicationId', 'completionRequestedAt', 'completionAutoReleaseAt'}

    Raises:
        NotFoundError: Application missing
        Unauthorized: Caller is not the applicant
        InvalidState: Application not funded
        AlreadyRequested: Completion already requested
    """
    now = now or utc_now()
    days = get_auto_release_days(store)
    requested_at = to_iso(now)
    auto_release_at = to_iso(now + timedelta(days=days))

    def _request(txn):
        application = txn.get(config.APPLICATIONS_TABLE, application_id)
        if not application:
            raise NotFoundError(f"Application {application_id} not found")
        if application.get('applicantId') != worker_id:
            raise Unauthorized('Only the assigned worker can request completion')
        if application.get('status') != ApplicationStatus.FUNDED:
            raise InvalidState(f"Cannot request completion for an application with status {application.get('status')}")
        if application.get('completionRequestedAt'):
            raise AlreadyRequested('Completion has already been requested for this application')

        fields = {
            'completionRequestedAt': requested_at,
            'completionRequestedBy': 'worker',
            'completionAutoReleaseAt': auto_release_at
        }
        # A new cycle after a dispute was resolved for the employer
        if application.get('completionResolvedAt'):
            fields['previousCompletionResolution'] = {
                field: application[field] for field in RESOLUTION_FIELDS if application.get(field) is not None
            }
            for field in RESOLUTION_FIELDS:
                fields[field] = CLEAR
        txn.update(config.APPLICATIONS_TABLE, application_id, fields)

    run_transaction(store, _request)
    logger.info(f"Completion requested for application {application_id}, auto-release at {auto_release_at}")
    return {
        'applicationId': application_id,
        'completionRequestedAt': requested_at,
        'completionAutoReleaseAt': auto_release_at
    }


def dispute_completion(
    store: DocumentStore,
    application_id: str,
    employer_id: str,
    reason: str,
    now: Optional[datetime] = None
) -> dict:
    """
    Employer disputes a completion request, cancelling the pending auto-release.

    Raises:
        NotFoundError, Unauthorized, InvalidState, ValidationError
    """
    timestamp = to_iso(now or utc_now())
    reason = (reason or '').strip()

    def _dispute(txn):
        application = txn.get(config.APPLICATIONS_TABLE, application_id)
        if not application:
            raise NotFoundError(f"Application {application_id} not found")
        gig = txn.get(config.GIGS_TABLE, application['gigId'])
        if not gig:
            raise NotFoundError(f"Gig {application['gigId']} not found")
        if gig.get('employerId') != employer_id:
            raise Unauthorized('Only the gig owner can dispute completion')
        if application.get('status') != ApplicationStatus.FUNDED or not application.get('completionRequestedAt'):
            raise InvalidState('No completion request to dispute')
        if application.get('completionDisputedAt'):
            raise InvalidState('Completion has already been disputed')
        if len(reason) < MIN_DISPUTE_REASON_LENGTH:
            raise ValidationError(f"Dispute reason must be at least {MIN_DISPUTE_REASON_LENGTH} characters")
        if len(reason) > MAX_DISPUTE_REASON_LENGTH:
            raise ValidationError(f"Dispute reason must be at most {MAX_DISPUTE_REASON_LENGTH} characters")

        txn.update(config.APPLICATIONS_TABLE, application_id, {
            'completionDisputedAt': timestamp,
            'completionDisputeReason': reason,
            'completionAutoReleaseAt': CLEAR
        })

    run_transaction(store, _dispute)
    logger.info(f"Completion of application {application_id} disputed by {employer_id}")
    return {'applicationId': application_id, 'completionDisputedAt': timestamp}


def check_and_process_auto_release(
    store: DocumentStore,
    application_id: str,
    provider: Optional[EscrowProvider] = None,
    now: Optional[datetime] = None,
    fee_config=None
) -> bool:
    """
    Release escrow if the auto-release deadline passed without a dispute.

    Safe to call repeatedly. A dispute or approval that lands between the
    check and the release transaction makes this return False.

    Returns:
        True if escrow was released by this call
    """
    now = now or utc_now()
    application = store.get(config.APPLICATIONS_TABLE, application_id)
    if not application or not is_auto_release_due(application, now):
        return False

    try:
        release_escrow(
            store, application_id, ReleaseTrigger.AUTO_RELEASE,
            provider=provider, now=now, fee_config=fee_config
        )
    except (InvalidState, AlreadyResolved, AlreadyRequested) as e:
        logger.info(f"Auto-release of application {application_id} skipped: {e}")
        return False
    logger.info(f"Auto-released escrow for application {application_id}")
    return True


def get_applications_eligible_for_auto_release(store: DocumentStore, now: Optional[datetime] = None) -> List[dict]:
    """Funded applications whose undisputed completion request is past its deadline."""
    now = now or utc_now()
    funded = store.query(config.APPLICATIONS_TABLE, config.STATUS_INDEX, 'status', ApplicationStatus.FUNDED)
    return [application for application in funded if is_auto_release_due(application, now)]


def process_all_auto_releases(
    store: DocumentStore,
    provider: Optional[EscrowProvider] = None,
    now: Optional[datetime] = None
) -> dict:
    """
    Scheduled sweep over every due application.

    One failing application never stops the sweep.

    Returns:
        {'processed', 'succeeded', 'failed', 'results': [{'applicationId', 'success', 'error'?}]}
    """
    now = now or utc_now()
    eligible = get_applications_eligible_for_auto_release(store, now)
    fee_config = get_active_fee_config(store) if eligible else None
    logger.info(f"Auto-release sweep found {len(eligible)} eligible applications")

    results = []
    for application in eligible:
        try:
            success = check_and_process_auto_release(store, application['id'], provider, now, fee_config)
            results.append({'applicationId': application['id'], 'success': success})
        except EscrowError as e:
            logger.error(f"Auto-release failed for application {application['id']}: {e}")
            results.append({'applicationId': application['id'], 'success': False, 'error': str(e)})
        except Exception as e:
            logger.exception(f"Unexpected auto-release failure for application {application['id']}")
            results.append({'applicationId': application['id'], 'success': False, 'error': str(e)})

    succeeded = sum(1 for result in results if result['success'])
    return {
        'processed': len(results),
        'succeeded': succeeded,
        'failed': len(results) - succeeded,
        'results': results
    }
