"""
Data models and status constants for the gig escrow backend.
Based on the application lifecycle: Pending → Accepted → Funded → (Completion requested) → Completed
"""
from datetime import datetime

from .utils import parse_iso


class ApplicationStatus:
    """Application lifecycle statuses."""
    PENDING = 'pending'
    ACCEPTED = 'accepted'
    REJECTED = 'rejected'
    WITHDRAWN = 'withdrawn'
    FUNDED = 'funded'
    COMPLETED = 'completed'


# At most one application per gig may hold one of these
SELECTED_STATUSES = (ApplicationStatus.ACCEPTED, ApplicationStatus.FUNDED, ApplicationStatus.COMPLETED)


class PaymentStatus:
    """Escrow state of an application."""
    UNPAID = 'unpaid'
    IN_ESCROW = 'in_escrow'
    RELEASED = 'released'


class GigStatus:
    """Gig posting statuses."""
    OPEN = 'open'
    IN_PROGRESS = 'in-progress'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class HistoryType:
    """Payment history entry types."""
    EARNINGS = 'earnings'
    FEES = 'fees'
    PAYMENTS = 'payments'
    WITHDRAWAL = 'withdrawal'
    REFUND = 'refund'


class HistoryStatus:
    """Payment history entry statuses."""
    PENDING = 'pending'
    COMPLETED = 'completed'


class CompletionResolution:
    """Admin outcomes for a disputed completion."""
    APPROVED = 'approved'
    REJECTED = 'rejected'


class ReleaseTrigger:
    """What caused an escrow release."""
    EMPLOYER = 'employer'
    AUTO_RELEASE = 'auto_release'
    ADMIN = 'admin'


class PaymentIntentStatus:
    """Local bookkeeping of a provider escrow transaction."""
    PENDING = 'pending'
    FUNDED = 'funded'
    RELEASING = 'releasing'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


class TransactionState:
    """TradeSafe transaction states."""
    CREATED = 'CREATED'
    FUNDS_DEPOSITED = 'FUNDS_DEPOSITED'
    FUNDS_RECEIVED = 'FUNDS_RECEIVED'
    INITIATED = 'INITIATED'
    ACCEPTED = 'ACCEPTED'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'


class AllocationState:
    """TradeSafe allocation states."""
    CREATED = 'CREATED'
    FUNDS_DEPOSITED = 'FUNDS_DEPOSITED'
    FUNDS_RECEIVED = 'FUNDS_RECEIVED'
    INITIATED = 'INITIATED'
    IN_TRANSIT = 'IN_TRANSIT'
    DELIVERY_COMPLETE = 'DELIVERY_COMPLETE'
    ACCEPTED = 'ACCEPTED'
    CANCELLED = 'CANCELLED'


# acceptDelivery is rejected once completeDelivery has run (DELIVERY_COMPLETE)
ACCEPTABLE_ALLOCATION_STATES = (
    AllocationState.FUNDS_RECEIVED,
    AllocationState.INITIATED,
    AllocationState.IN_TRANSIT,
)

PROVIDER_TRADESAFE = 'tradesafe'
CURRENCY = 'ZAR'


def is_browsable(gig: dict) -> bool:
    """A gig is listed to workers only while open and unassigned."""
    return gig.get('status') == GigStatus.OPEN and not gig.get('assignedTo')


def has_active_dispute(application: dict) -> bool:
    """Disputed and not yet resolved by an admin."""
    return bool(application.get('completionDisputedAt')) and not application.get('completionResolvedAt')


def is_auto_release_due(application: dict, now: datetime) -> bool:
    """Funded, completion requested, undisputed and past the auto-release deadline."""
    if application.get('status') != ApplicationStatus.FUNDED:
        return False
    if not application.get('completionRequestedAt') or application.get('completionDisputedAt'):
        return False
    deadline = parse_iso(application.get('completionAutoReleaseAt'))
    return deadline is not None and now >= deadline
