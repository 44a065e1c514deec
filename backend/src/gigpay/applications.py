"""
Application status transitions: accept, reject and withdraw.

Acceptance enforces a single selected worker per gig. The sibling check runs
inside the transaction, and the commit is conditioned on every sibling's
version, so two employers racing to accept different workers cannot both win.
"""
from datetime import datetime
from typing import Optional

from .config import config
from .errors import AlreadySelected, InvalidState, NotFoundError, Unauthorized
from .logging import logger
from .models import ApplicationStatus, SELECTED_STATUSES, is_browsable
from .store import CLEAR, DocumentStore, Transaction, run_transaction
from .utils import to_iso, utc_now

ALREADY_SELECTED_MESSAGE = 'Another worker has already been selected for this gig'

# Statuses an application may leave through reject / withdraw
OPEN_STATUSES = (ApplicationStatus.PENDING, ApplicationStatus.ACCEPTED)


def _load(txn: Transaction, application_id: str):
    application = txn.get(config.APPLICATIONS_TABLE, application_id)
    if not application:
        raise NotFoundError(f"Application {application_id} not found")
    gig = txn.get(config.GIGS_TABLE, application['gigId'])
    if not gig:
        raise NotFoundError(f"Gig {application['gigId']} not found")
    return application, gig


def _accept(txn: Transaction, application: dict, gig: dict, actor_id: str, timestamp: str) -> None:
    if gig.get('employerId') != actor_id:
        raise Unauthorized('Only the gig owner can accept applications')
    if application.get('applicantId') == gig.get('employerId'):
        raise InvalidState('An employer cannot accept their own application')

    siblings = [
        sibling for sibling in txn.query(config.APPLICATIONS_TABLE, config.GIG_INDEX, 'gigId', gig['id'])
        if sibling['id'] != application['id']
    ]
    if any(sibling.get('status') in SELECTED_STATUSES for sibling in siblings):
        raise AlreadySelected(ALREADY_SELECTED_MESSAGE)
    if application.get('status') != ApplicationStatus.PENDING:
        raise InvalidState(f"Cannot accept an application with status {application.get('status')}")
    if not is_browsable(gig):
        if gig.get('assignedTo'):
            raise AlreadySelected(ALREADY_SELECTED_MESSAGE)
        raise InvalidState(f"Gig {gig['id']} is {gig.get('status')} and no longer accepts workers")

    txn.update(config.APPLICATIONS_TABLE, application['id'], {
        'status': ApplicationStatus.ACCEPTED,
        'acceptedAt': timestamp
    })
    for sibling in siblings:
        if sibling.get('status') == ApplicationStatus.PENDING:
            txn.update(config.APPLICATIONS_TABLE, sibling['id'], {
                'status': ApplicationStatus.REJECTED,
                'rejectedAt': timestamp
            })
    # Gig status stays open until the escrow is funded
    txn.update(config.GIGS_TABLE, gig['id'], {
        'assignedTo': application['applicantId'],
        'updatedAt': timestamp
    })


def _close(txn: Transaction, application: dict, gig: dict, status: str, timestamp: str) -> None:
    current = application.get('status')
    if current not in OPEN_STATUSES:
        raise InvalidState(f"Cannot change application from {current} to {status}")

    stamp_field = 'rejectedAt' if status == ApplicationStatus.REJECTED else 'withdrawnAt'
    txn.update(config.APPLICATIONS_TABLE, application['id'], {
        'status': status,
        stamp_field: timestamp
    })
    if current == ApplicationStatus.ACCEPTED and gig.get('assignedTo') == application['applicantId']:
        txn.update(config.GIGS_TABLE, gig['id'], {
            'assignedTo': CLEAR,
            'updatedAt': timestamp
        })


def update_application_status(
    store: DocumentStore,
    application_id: str,
    status: str,
    actor_id: str,
    now: Optional[datetime] = None
) -> dict:
    """
    Move an application to accepted, rejected or withdrawn.

    Args:
        store: Document store
        application_id: Application to update
        status: Target status
        actor_id: Verified caller; the gig owner for accept/reject, the
            applicant for withdraw

    Returns:
        {'applicationId', 'status'}

    Raises:
        NotFoundError, Unauthorized, InvalidState, AlreadySelected
    """
    timestamp = to_iso(now or utc_now())

    def _update(txn):
        application, gig = _load(txn, application_id)
        if status == ApplicationStatus.ACCEPTED:
            _accept(txn, application, gig, actor_id, timestamp)
        elif status == ApplicationStatus.REJECTED:
            if gig.get('employerId') != actor_id:
                raise Unauthorized('Only the gig owner can reject applications')
            _close(txn, application, gig, status, timestamp)
        elif status == ApplicationStatus.WITHDRAWN:
            if application.get('applicantId') != actor_id:
                raise Unauthorized('Only the applicant can withdraw an application')
            _close(txn, application, gig, status, timestamp)
        else:
            raise InvalidState(f"Unsupported application status transition to {status}")
        return {'applicationId': application_id, 'status': status}

    result = run_transaction(store, _update)
    logger.info(f"Application {application_id} set to {status} by {actor_id}")
    return result
