"""
Ledger updates for escrow funding and release.

Balances are only changed inside a store Transaction shared with the
application and gig status writes, so a release is either fully applied or
not applied at all.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from .config import config
from .errors import InsufficientBalance, InvalidState, NotFoundError
from .logging import audit, logger
from .models import (
    ApplicationStatus, CURRENCY, GigStatus, HistoryStatus, HistoryType,
    PaymentIntentStatus, PaymentStatus
)
from .store import DocumentStore, Transaction, run_transaction
from .utils import as_decimal, to_iso, utc_now


@dataclass(frozen=True)
class EscrowReleaseContext:
    payment_id: Optional[str]
    worker_id: str
    employer_id: Optional[str]
    gig_id: str
    gross_amount: Decimal
    net_amount: Decimal
    platform_commission: Decimal


def release_escrow_in_transaction(txn: Transaction, ctx: EscrowReleaseContext) -> Dict[str, Decimal]:
    """
    Move released escrow from the worker's pending balance into the wallet.

    The balance check runs against the transaction's own read so a concurrent
    release of the same funds makes the commit fail instead of double paying.

    Args:
        txn: Caller's open transaction
        ctx: Amounts and parties of the release

    Returns:
        Balances observed before the update, for the audit log

    Raises:
        NotFoundError: Worker ledger record missing
        InsufficientBalance: Worker pending balance below the gross amount
    """
    worker = txn.get(config.USERS_TABLE, ctx.worker_id)
    if not worker:
        raise NotFoundError(f"Worker {ctx.worker_id} not found")

    worker_pending = as_decimal(worker.get('pendingBalance'))
    if ctx.gross_amount > 0 and worker_pending < ctx.gross_amount:
        logger.error(
            f"Insufficient pending balance for worker {ctx.worker_id} on gig {ctx.gig_id}: "
            f"pending {worker_pending}, releasing {ctx.gross_amount}"
        )
        raise InsufficientBalance(
            f"Worker pending balance {worker_pending} is lower than the escrow amount {ctx.gross_amount}"
        )

    txn.update(config.USERS_TABLE, ctx.worker_id, increments={
        'pendingBalance': -ctx.gross_amount,
        'walletBalance': ctx.net_amount,
        'totalEarnings': ctx.net_amount
    })

    observed = {'workerPendingBalance': worker_pending}
    if ctx.employer_id == ctx.worker_id:
        # One ledger record holds both sides; fold the employer decrease into the same ADD
        employer_decrease = min(ctx.gross_amount, max(Decimal('0'), worker_pending - ctx.gross_amount))
        txn.update(config.USERS_TABLE, ctx.worker_id, increments={'pendingBalance': -employer_decrease})
        observed['employerPendingBalance'] = worker_pending - ctx.gross_amount
    elif ctx.employer_id:
        employer = txn.get(config.USERS_TABLE, ctx.employer_id)
        if employer:
            employer_pending = as_decimal(employer.get('pendingBalance'))
            # Clamped: earlier partial releases can leave a stale pending balance
            txn.update(config.USERS_TABLE, ctx.employer_id, {
                'pendingBalance': max(Decimal('0'), employer_pending - ctx.gross_amount)
            })
            observed['employerPendingBalance'] = employer_pending
        else:
            logger.warning(f"Employer {ctx.employer_id} has no ledger record, skipping pending balance update")
    return observed


def _find_pending_earnings(txn: Transaction, gig_id: str, worker_id: str) -> Optional[dict]:
    records = txn.query(config.PAYMENT_HISTORY_TABLE, config.GIG_INDEX, 'gigId', gig_id)
    for record in records:
        if (record.get('userId') == worker_id
                and record.get('type') == HistoryType.EARNINGS
                and record.get('status') == HistoryStatus.PENDING):
            return record
    return None


def record_release_history_in_transaction(txn: Transaction, ctx: EscrowReleaseContext, now: datetime) -> None:
    """
    Complete the worker's earnings record and add the platform fee record.

    The pending earnings record created at funding time is updated in place;
    one is inserted only when none exists.
    """
    timestamp = to_iso(now)
    pending = _find_pending_earnings(txn, ctx.gig_id, ctx.worker_id)
    if pending:
        txn.update(config.PAYMENT_HISTORY_TABLE, pending['id'], {
            'status': HistoryStatus.COMPLETED,
            'amount': ctx.net_amount,
            'description': 'Payment released from escrow',
            'updatedAt': timestamp
        })
    else:
        txn.put(config.PAYMENT_HISTORY_TABLE, {
            'id': str(uuid.uuid4()),
            'userId': ctx.worker_id,
            'gigId': ctx.gig_id,
            'paymentId': ctx.payment_id,
            'type': HistoryType.EARNINGS,
            'status': HistoryStatus.COMPLETED,
            'amount': ctx.net_amount,
            'currency': CURRENCY,
            'description': 'Payment released from escrow',
            'createdAt': timestamp,
            'updatedAt': timestamp
        })

    txn.put(config.PAYMENT_HISTORY_TABLE, {
        'id': str(uuid.uuid4()),
        'userId': ctx.worker_id,
        'gigId': ctx.gig_id,
        'paymentId': ctx.payment_id,
        'type': HistoryType.FEES,
        'status': HistoryStatus.COMPLETED,
        'amount': -ctx.platform_commission,
        'currency': CURRENCY,
        'description': 'Platform commission',
        'createdAt': timestamp,
        'updatedAt': timestamp
    })


def record_escrow_funding(
    store: DocumentStore,
    intent: dict,
    now: Optional[datetime] = None,
    allocation_id: Optional[str] = None
) -> bool:
    """
    Apply a provider funding confirmation to the local records.

    Moves the accepted application to funded, puts the gig in progress, adds
    the escrow amount to both pending balances and writes the history records.
    Safe to call again for the same intent.

    Args:
        store: Document store
        intent: Payment intent document the provider transaction belongs to
        allocation_id: Provider allocation id reported with the funding event

    Returns:
        True if funding was recorded, False if it had already been recorded

    Raises:
        NotFoundError: Application, gig or ledger record missing
        InvalidState: Application is neither accepted nor already funded
    """
    now = now or utc_now()
    timestamp = to_iso(now)
    amount = as_decimal(intent.get('amount'))

    def _fund(txn):
        current_intent = txn.get(config.PAYMENT_INTENTS_TABLE, intent['id'])
        if not current_intent:
            raise NotFoundError(f"Payment intent {intent['id']} not found")
        if current_intent.get('status') != PaymentIntentStatus.PENDING:
            return False

        application = txn.get(config.APPLICATIONS_TABLE, current_intent['applicationId'])
        if not application:
            raise NotFoundError(f"Application {current_intent['applicationId']} not found")
        if application.get('status') in (ApplicationStatus.FUNDED, ApplicationStatus.COMPLETED):
            return False
        if application.get('status') != ApplicationStatus.ACCEPTED:
            raise InvalidState(
                f"Application {application['id']} cannot be funded from status {application.get('status')}"
            )

        gig = txn.get(config.GIGS_TABLE, current_intent['gigId'])
        if not gig:
            raise NotFoundError(f"Gig {current_intent['gigId']} not found")

        worker_id = application['applicantId']
        employer_id = gig.get('employerId')

        txn.update(config.APPLICATIONS_TABLE, application['id'], {
            'status': ApplicationStatus.FUNDED,
            'paymentStatus': PaymentStatus.IN_ESCROW,
            'paymentId': current_intent['id'],
            'fundedAt': timestamp
        })
        txn.update(config.GIGS_TABLE, gig['id'], {
            'status': GigStatus.IN_PROGRESS,
            'paymentStatus': PaymentStatus.IN_ESCROW,
            'escrowAmount': amount,
            'escrowTransactionId': current_intent.get('transactionId'),
            'updatedAt': timestamp
        })
        txn.update(config.USERS_TABLE, worker_id, increments={'pendingBalance': amount})
        if employer_id:
            txn.update(config.USERS_TABLE, employer_id, increments={'pendingBalance': amount})

        txn.put(config.PAYMENT_HISTORY_TABLE, {
            'id': str(uuid.uuid4()),
            'userId': worker_id,
            'gigId': gig['id'],
            'paymentId': current_intent['id'],
            'type': HistoryType.EARNINGS,
            'status': HistoryStatus.PENDING,
            'amount': amount,
            'currency': CURRENCY,
            'description': f"Escrow funded for {gig.get('title', 'gig')}",
            'createdAt': timestamp,
            'updatedAt': timestamp
        })
        if employer_id:
            txn.put(config.PAYMENT_HISTORY_TABLE, {
                'id': str(uuid.uuid4()),
                'userId': employer_id,
                'gigId': gig['id'],
                'paymentId': current_intent['id'],
                'type': HistoryType.PAYMENTS,
                'status': HistoryStatus.COMPLETED,
                'amount': amount,
                'currency': CURRENCY,
                'description': f"Escrow payment for {gig.get('title', 'gig')}",
                'createdAt': timestamp,
                'updatedAt': timestamp
            })

        intent_fields = {
            'status': PaymentIntentStatus.FUNDED,
            'fundedAt': timestamp
        }
        if allocation_id:
            intent_fields['allocationId'] = allocation_id
        txn.update(config.PAYMENT_INTENTS_TABLE, current_intent['id'], intent_fields)
        return True

    recorded = run_transaction(store, _fund)
    if recorded:
        audit(
            'Escrow funded',
            paymentIntentId=intent['id'],
            applicationId=intent.get('applicationId'),
            gigId=intent.get('gigId'),
            transactionId=intent.get('transactionId'),
            amount=amount
        )
    else:
        logger.info(f"Funding for payment intent {intent['id']} already recorded")
    return recorded


def get_user_payment_history(store: DocumentStore, user_id: str, limit: int = 50) -> List[dict]:
    """Payment history entries for a user, newest first."""
    records = store.query(config.PAYMENT_HISTORY_TABLE, config.USER_INDEX, 'userId', user_id)
    records.sort(key=lambda record: record.get('createdAt', ''), reverse=True)
    return records[:limit]


# Intent statuses that no webhook may move out of
FINAL_INTENT_STATUSES = (PaymentIntentStatus.COMPLETED, PaymentIntentStatus.CANCELLED)


def set_payment_intent_status(
    store: DocumentStore,
    intent_id: str,
    status: str,
    now: Optional[datetime] = None
) -> bool:
    """
    Record a provider-reported status change on a payment intent.

    Returns:
        True if the status changed
    """
    timestamp = to_iso(now or utc_now())

    def _set(txn):
        intent = txn.get(config.PAYMENT_INTENTS_TABLE, intent_id)
        if not intent:
            raise NotFoundError(f"Payment intent {intent_id} not found")
        if intent.get('status') == status or intent.get('status') in FINAL_INTENT_STATUSES:
            return False
        txn.update(config.PAYMENT_INTENTS_TABLE, intent_id, {'status': status, 'updatedAt': timestamp})
        return True

    changed = run_transaction(store, _set)
    if changed:
        audit('Payment intent status changed', paymentIntentId=intent_id, status=status)
    return changed
