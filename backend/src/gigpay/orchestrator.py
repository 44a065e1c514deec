"""
Escrow release orchestration.

A release has two halves:

1. A local transaction that re-validates the application, splits the fees,
   moves the ledger balances and marks application and gig completed. Any
   failure aborts with nothing written.
2. Best-effort reconciliation with the escrow provider. The provider
   transaction is fetched live and only driven through start/accept delivery
   when it reports the funds as received. Failures are logged and never
   propagate; the local release already committed.

Employer approval, auto-release and admin dispute resolution all go through
release_escrow().
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

from .config import config
from .errors import AlreadyResolved, InvalidState, NoActiveDispute, NotFoundError, Unauthorized
from .fees import FeeConfiguration, calculate_fees, get_active_fee_config
from .ledger import EscrowReleaseContext, record_release_history_in_transaction, release_escrow_in_transaction
from .logging import audit, logger
from .models import (
    ACCEPTABLE_ALLOCATION_STATES, AllocationState, ApplicationStatus, GigStatus,
    PaymentIntentStatus, PaymentStatus, PROVIDER_TRADESAFE, ReleaseTrigger,
    TransactionState, has_active_dispute, is_auto_release_due
)
from .store import CLEAR, DocumentStore, run_transaction
from .tradesafe import EscrowProvider
from .utils import as_decimal, to_iso, utc_now

# Intent statuses that can still have a payout pending at the provider
RELEASABLE_INTENT_STATUSES = (PaymentIntentStatus.FUNDED, PaymentIntentStatus.RELEASING)


def validate_release(application: dict, gig: dict, trigger: str, actor_id: Optional[str], now: datetime) -> None:
    """
    Check that a release may happen for the given trigger.

    Runs once before the transaction, so an unauthorized caller causes no
    writes, and again on the transaction's own reads.
    """
    if trigger == ReleaseTrigger.EMPLOYER and gig.get('employerId') != actor_id:
        raise Unauthorized('Only the gig owner can approve completion')

    if application.get('status') == ApplicationStatus.COMPLETED:
        raise AlreadyResolved(f"Escrow for application {application['id']} has already been released")
    if trigger == ReleaseTrigger.ADMIN and application.get('completionResolvedAt'):
        raise AlreadyResolved(f"Dispute on application {application['id']} has already been resolved")
    if application.get('status') != ApplicationStatus.FUNDED:
        raise InvalidState(f"Application {application['id']} is {application.get('status')}, not funded")
    if not application.get('completionRequestedAt'):
        raise InvalidState(f"Application {application['id']} has no active completion request")

    if trigger == ReleaseTrigger.ADMIN:
        if not has_active_dispute(application):
            raise NoActiveDispute(f"Application {application['id']} has no active dispute")
    elif application.get('completionDisputedAt'):
        raise InvalidState(f"Completion of application {application['id']} is disputed")
    elif trigger == ReleaseTrigger.AUTO_RELEASE and not is_auto_release_due(application, now):
        raise InvalidState(f"Auto-release of application {application['id']} is not due")


def _load(reader, application_id: str):
    application = reader.get(config.APPLICATIONS_TABLE, application_id)
    if not application:
        raise NotFoundError(f"Application {application_id} not found")
    gig = reader.get(config.GIGS_TABLE, application['gigId'])
    if not gig:
        raise NotFoundError(f"Gig {application['gigId']} not found")
    return application, gig


def _gross_amount(application: dict, gig: dict) -> Decimal:
    return as_decimal(
        gig.get('escrowAmount') or application.get('agreedRate') or application.get('proposedRate') or 0
    )


def release_escrow(
    store: DocumentStore,
    application_id: str,
    trigger: str,
    actor_id: Optional[str] = None,
    provider: Optional[EscrowProvider] = None,
    now: Optional[datetime] = None,
    extra_fields: Optional[dict] = None,
    fee_config: Optional[FeeConfiguration] = None
) -> dict:
    """
    Release a funded escrow to the worker.

    Args:
        store: Document store
        application_id: Application whose escrow is released
        trigger: ReleaseTrigger value
        actor_id: Employer or admin id; None for the auto-release sweep
        provider: Escrow provider; None skips remote reconciliation
        extra_fields: Additional application fields written in the same transaction
        fee_config: Fee configuration; resolved once from the store when omitted

    Returns:
        {'applicationId', 'grossAmount', 'netAmount', 'platformCommission',
         'tradeSafePayoutTriggered'}

    Raises:
        NotFoundError, Unauthorized, InvalidState, NoActiveDispute,
        AlreadyResolved, InsufficientBalance, TransactionConflict
    """
    now = now or utc_now()
    timestamp = to_iso(now)

    application, gig = _load(store, application_id)
    validate_release(application, gig, trigger, actor_id, now)

    fee_config = fee_config or get_active_fee_config(store)

    def _release(txn):
        application, gig = _load(txn, application_id)
        validate_release(application, gig, trigger, actor_id, now)

        fees = calculate_fees(_gross_amount(application, gig), fee_config)
        ctx = EscrowReleaseContext(
            payment_id=application.get('paymentId'),
            worker_id=application['applicantId'],
            employer_id=gig.get('employerId'),
            gig_id=gig['id'],
            gross_amount=fees.gross_amount,
            net_amount=fees.net_amount_to_worker,
            platform_commission=fees.platform_commission
        )
        observed = release_escrow_in_transaction(txn, ctx)

        application_fields = {
            'status': ApplicationStatus.COMPLETED,
            'paymentStatus': PaymentStatus.RELEASED,
            'completedAt': timestamp,
            'releasedBy': trigger,
            'completionAutoReleaseAt': CLEAR
        }
        application_fields.update(extra_fields or {})
        txn.update(config.APPLICATIONS_TABLE, application_id, application_fields)
        txn.update(config.GIGS_TABLE, gig['id'], {
            'status': GigStatus.COMPLETED,
            'paymentStatus': PaymentStatus.RELEASED,
            'completedAt': timestamp,
            'updatedAt': timestamp
        })
        txn.update(config.USERS_TABLE, ctx.worker_id, increments={'completedGigs': 1})

        if ctx.gross_amount > 0:
            record_release_history_in_transaction(txn, ctx, now)
        return application, gig, ctx, observed

    application, gig, ctx, observed = run_transaction(store, _release)
    audit(
        'Escrow released',
        trigger=trigger,
        actorId=actor_id,
        applicationId=application_id,
        gigId=ctx.gig_id,
        workerId=ctx.worker_id,
        employerId=ctx.employer_id,
        grossAmount=ctx.gross_amount,
        netAmount=ctx.net_amount,
        platformCommission=ctx.platform_commission,
        commissionPercent=fee_config.platform_commission_percent,
        **observed
    )

    payout_triggered = False
    if provider is not None:
        payout_triggered = reconcile_provider_payout(store, provider, application, gig)
    else:
        logger.info(f"No escrow provider configured, skipping payout for application {application_id}")

    return {
        'applicationId': application_id,
        'grossAmount': ctx.gross_amount,
        'netAmount': ctx.net_amount,
        'platformCommission': ctx.platform_commission,
        'tradeSafePayoutTriggered': payout_triggered
    }


def find_payment_intent(store: DocumentStore, application: dict, gig: dict) -> Optional[dict]:
    """
    Payment intent holding the provider transaction for this application.

    The intent linked on the application wins; otherwise the newest funded or
    releasing TradeSafe intent for the gig.
    """
    payment_id = application.get('paymentId')
    if payment_id:
        intent = store.get(config.PAYMENT_INTENTS_TABLE, payment_id)
        if intent and intent.get('provider') == PROVIDER_TRADESAFE:
            return intent

    candidates = [
        intent for intent in store.query(config.PAYMENT_INTENTS_TABLE, config.GIG_INDEX, 'gigId', gig['id'])
        if intent.get('provider') == PROVIDER_TRADESAFE and intent.get('status') in RELEASABLE_INTENT_STATUSES
    ]
    if not candidates:
        return None
    candidates.sort(key=lambda intent: intent.get('createdAt', ''), reverse=True)
    return candidates[0]


def _select_allocation(transaction: dict, allocation_id: Optional[str]) -> Optional[dict]:
    allocations = transaction.get('allocations') or []
    if allocation_id:
        for allocation in allocations:
            if allocation.get('id') == allocation_id:
                return allocation
    return allocations[0] if allocations else None


def reconcile_provider_payout(store: DocumentStore, provider: EscrowProvider, application: dict, gig: dict) -> bool:
    """
    Drive the provider's delivery flow so it pays the worker out.

    Returns:
        True when accept delivery was sent, False when the provider is not in
        the expected state yet or any call failed
    """
    intent = find_payment_intent(store, application, gig)
    if not intent or not intent.get('transactionId'):
        logger.info(f"No TradeSafe transaction linked to application {application['id']}, skipping payout")
        return False

    transaction_id = intent['transactionId']
    allocation_id = intent.get('allocationId')
    try:
        transaction = provider.get_transaction(transaction_id)
        if not transaction:
            logger.warning(f"TradeSafe transaction {transaction_id} not found for gig {gig['id']}")
            return False
        if transaction.get('state') != TransactionState.FUNDS_RECEIVED:
            logger.info(
                f"TradeSafe transaction {transaction_id} is {transaction.get('state')}, "
                f"payout for application {application['id']} deferred"
            )
            return False

        allocation = _select_allocation(transaction, allocation_id)
        if not allocation:
            logger.warning(f"TradeSafe transaction {transaction_id} has no allocations")
            return False
        allocation_id = allocation['id']
        allocation_state = allocation.get('state')
        if allocation_state not in ACCEPTABLE_ALLOCATION_STATES:
            logger.info(
                f"Allocation {allocation_id} is {allocation_state}, "
                f"payout for application {application['id']} deferred"
            )
            return False

        if allocation_state == AllocationState.FUNDS_RECEIVED:
            provider.start_delivery(allocation_id)
            audit('Delivery started', transactionId=transaction_id, allocationId=allocation_id, gigId=gig['id'])
        provider.accept_delivery(allocation_id)
        audit(
            'Delivery accepted',
            transactionId=transaction_id,
            allocationId=allocation_id,
            gigId=gig['id'],
            applicationId=application['id']
        )

        def _mark_releasing(txn):
            current = txn.get(config.PAYMENT_INTENTS_TABLE, intent['id'])
            if current and current.get('status') == PaymentIntentStatus.FUNDED:
                txn.update(config.PAYMENT_INTENTS_TABLE, intent['id'], {
                    'status': PaymentIntentStatus.RELEASING,
                    'allocationId': allocation_id,
                    'updatedAt': to_iso(utc_now())
                })

        run_transaction(store, _mark_releasing)
        return True
    except Exception as e:
        logger.error(
            f"TradeSafe payout failed for gig {gig['id']}, application {application['id']}, "
            f"transaction {transaction_id}, allocation {allocation_id}: {e}"
        )
        return False


def approve_completion(
    store: DocumentStore,
    application_id: str,
    employer_id: str,
    provider: Optional[EscrowProvider] = None,
    now: Optional[datetime] = None
) -> dict:
    """
    Employer approves the worker's completion request and releases escrow.

    The response always states that the wallet was credited; the provider
    payout flag only reports whether the bank payout was started too.
    """
    result = release_escrow(store, application_id, ReleaseTrigger.EMPLOYER, employer_id, provider, now)
    if result['tradeSafePayoutTriggered']:
        message = (
            f"Completion approved. R{result['netAmount']} has been credited to the worker's wallet "
            f"and the TradeSafe payout has been started."
        )
    else:
        message = f"Completion approved. R{result['netAmount']} has been credited to the worker's wallet."
    result['message'] = message
    return result
