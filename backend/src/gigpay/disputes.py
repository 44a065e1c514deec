"""
Admin resolution of disputed completion requests.
"""
from datetime import datetime
from typing import List, Optional

from .config import config
from .errors import AlreadyResolved, InvalidState, NoActiveDispute, NotFoundError, ValidationError
from .logging import logger
from .models import ApplicationStatus, CompletionResolution, ReleaseTrigger, has_active_dispute
from .orchestrator import release_escrow
from .store import CLEAR, DocumentStore, run_transaction
from .tradesafe import EscrowProvider
from .utils import to_iso, utc_now


def _check_open_dispute(application: Optional[dict], application_id: str) -> None:
    if not application:
        raise NotFoundError(f"Application {application_id} not found")
    if application.get('completionResolvedAt'):
        raise AlreadyResolved(f"Dispute on application {application_id} has already been resolved")
    if not application.get('completionDisputedAt'):
        raise NoActiveDispute(f"Application {application_id} has no active dispute")


def resolve_dispute_in_favor_of_worker(
    store: DocumentStore,
    application_id: str,
    admin_id: str,
    notes: Optional[str] = None,
    provider: Optional[EscrowProvider] = None,
    now: Optional[datetime] = None
) -> dict:
    """
    Release the escrow to the worker and record the admin decision.

    Raises:
        AlreadyResolved: The dispute was already resolved; nothing is written
        NoActiveDispute: The completion is not disputed
    """
    now = now or utc_now()
    _check_open_dispute(store.get(config.APPLICATIONS_TABLE, application_id), application_id)

    resolution = {
        'completionResolvedAt': to_iso(now),
        'completionResolvedBy': admin_id,
        'completionResolution': CompletionResolution.APPROVED
    }
    if notes:
        resolution['completionResolutionNotes'] = notes.strip()

    result = release_escrow(
        store, application_id, ReleaseTrigger.ADMIN, admin_id,
        provider=provider, now=now, extra_fields=resolution
    )
    logger.info(f"Dispute on application {application_id} resolved for the worker by {admin_id}")
    result['resolution'] = CompletionResolution.APPROVED
    return result


def resolve_dispute_in_favor_of_employer(
    store: DocumentStore,
    application_id: str,
    admin_id: str,
    notes: str,
    now: Optional[datetime] = None
) -> dict:
    """
    Keep the escrow held and reopen the completion cycle.

    Requested and disputed fields are cleared so the worker can request
    completion again once the issues are fixed. Application and gig stay funded.
    """
    notes = (notes or '').strip()
    if not notes:
        raise ValidationError('Resolution notes are required when ruling for the employer')
    timestamp = to_iso(now or utc_now())

    def _resolve(txn):
        application = txn.get(config.APPLICATIONS_TABLE, application_id)
        _check_open_dispute(application, application_id)
        if application.get('status') != ApplicationStatus.FUNDED:
            raise InvalidState(f"Application {application_id} is {application.get('status')}, not funded")

        txn.update(config.APPLICATIONS_TABLE, application_id, {
            'completionRequestedAt': CLEAR,
            'completionRequestedBy': CLEAR,
            'completionAutoReleaseAt': CLEAR,
            'completionDisputedAt': CLEAR,
            'completionDisputeReason': CLEAR,
            'completionResolvedAt': timestamp,
            'completionResolvedBy': admin_id,
            'completionResolution': CompletionResolution.REJECTED,
            'completionResolutionNotes': notes
        })

    run_transaction(store, _resolve)
    logger.info(f"Dispute on application {application_id} resolved for the employer by {admin_id}")
    return {'applicationId': application_id, 'resolution': CompletionResolution.REJECTED}


def get_all_disputed_applications(store: DocumentStore) -> List[dict]:
    """Funded applications with an unresolved dispute, oldest dispute first."""
    funded = store.query(config.APPLICATIONS_TABLE, config.STATUS_INDEX, 'status', ApplicationStatus.FUNDED)
    disputed = [application for application in funded if has_active_dispute(application)]
    disputed.sort(key=lambda application: application.get('completionDisputedAt', ''))
    return disputed
