"""
Platform fee calculation and fee configuration source.

The commission is taken from the gross escrow amount when it is released to
the worker. Configuration lives in DynamoDB; at most one record is active.
"""
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import List, Optional

from .config import config
from .errors import InvalidAmount, ValidationError
from .logging import logger
from .store import DocumentStore, run_transaction
from .utils import as_decimal, to_iso, utc_now

CENTS = Decimal('0.01')

PLATFORM_CONFIG_ID = 'main'


@dataclass(frozen=True)
class FeeConfiguration:
    platform_commission_percent: Decimal
    minimum_gig_amount: Decimal = Decimal('100')
    maximum_gig_amount: Decimal = Decimal('100000')
    escrow_auto_release_days: int = config.DEFAULT_AUTO_RELEASE_DAYS
    id: Optional[str] = None

    @classmethod
    def from_item(cls, item: dict) -> 'FeeConfiguration':
        return cls(
            platform_commission_percent=as_decimal(item.get('platformCommissionPercent'), config.DEFAULT_COMMISSION_PERCENT),
            minimum_gig_amount=as_decimal(item.get('minimumGigAmount'), '100'),
            maximum_gig_amount=as_decimal(item.get('maximumGigAmount'), '100000'),
            escrow_auto_release_days=int(item.get('escrowAutoReleaseDays') or config.DEFAULT_AUTO_RELEASE_DAYS),
            id=item.get('id')
        )


DEFAULT_FEE_CONFIG = FeeConfiguration(platform_commission_percent=Decimal(config.DEFAULT_COMMISSION_PERCENT))


@dataclass(frozen=True)
class FeeBreakdown:
    gross_amount: Decimal
    platform_commission: Decimal
    net_amount_to_worker: Decimal


def _to_amount(value) -> Decimal:
    if isinstance(value, bool):
        raise InvalidAmount(f"Amount must be numeric, got {value!r}")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"Amount must be numeric, got {value!r}")
    if not amount.is_finite():
        raise InvalidAmount(f"Amount must be finite, got {value!r}")
    if amount < 0:
        raise InvalidAmount(f"Amount must not be negative, got {amount}")
    return amount


def calculate_fees(gross_amount, fee_config: FeeConfiguration = DEFAULT_FEE_CONFIG) -> FeeBreakdown:
    """
    Split a gross escrow amount into platform commission and worker payout.

    The commission is rounded half-up to cents and the worker gets the rest,
    so commission plus net always equals a cent-valued gross exactly.

    Args:
        gross_amount: Amount held in escrow (Decimal, int or numeric string)
        fee_config: Active fee configuration

    Returns:
        FeeBreakdown

    Raises:
        InvalidAmount: Negative, non-finite or non-numeric gross amount
        ValidationError: Commission percentage outside 0-100
    """
    gross = _to_amount(gross_amount)
    percent = Decimal(str(fee_config.platform_commission_percent))
    if not percent.is_finite() or percent < 0 or percent > 100:
        raise ValidationError(f"Platform commission must be between 0 and 100 percent, got {percent}")

    commission = (gross * percent / Decimal('100')).quantize(CENTS, rounding=ROUND_HALF_UP)
    net = max(gross - commission, Decimal('0')).quantize(CENTS, rounding=ROUND_HALF_UP)
    return FeeBreakdown(gross_amount=gross, platform_commission=commission, net_amount_to_worker=net)


def validate_fee_config(values: dict) -> List[str]:
    """
    Check fee configuration bounds.

    Returns:
        List of human readable problems, empty when valid
    """
    errors = []
    checks = [
        ('platformCommissionPercent', Decimal('0'), Decimal('50'), 'Platform commission must be between 0% and 50%'),
        ('minimumGigAmount', Decimal('1'), Decimal('10000'), 'Minimum gig amount must be between R1 and R10,000'),
        ('maximumGigAmount', Decimal('1000'), Decimal('1000000'), 'Maximum gig amount must be between R1,000 and R1,000,000'),
        ('escrowAutoReleaseDays', Decimal('1'), Decimal('30'), 'Auto-release days must be between 1 and 30'),
    ]
    for field, low, high, message in checks:
        if field not in values or values[field] is None:
            continue
        try:
            value = Decimal(str(values[field]))
        except (InvalidOperation, ValueError):
            errors.append(message)
            continue
        if not value.is_finite() or value < low or value > high:
            errors.append(message)

    minimum = values.get('minimumGigAmount')
    maximum = values.get('maximumGigAmount')
    if minimum is not None and maximum is not None and not errors:
        if Decimal(str(minimum)) >= Decimal(str(maximum)):
            errors.append('Minimum gig amount must be less than maximum gig amount')
    return errors


def list_fee_configs(store: DocumentStore) -> List[dict]:
    """All fee configuration records, newest first."""
    items = store.scan(config.FEE_CONFIGS_TABLE)
    return sorted(items, key=lambda item: item.get('createdAt', ''), reverse=True)


def get_active_fee_config(store: DocumentStore) -> FeeConfiguration:
    """Newest active fee configuration, or the platform default."""
    active = [item for item in list_fee_configs(store) if item.get('isActive')]
    if not active:
        return DEFAULT_FEE_CONFIG
    if len(active) > 1:
        logger.warning(f"{len(active)} active fee configurations found, using {active[0].get('id')}")
    return FeeConfiguration.from_item(active[0])


def create_fee_config(
    store: DocumentStore,
    values: dict,
    created_by: str,
    now: Optional[datetime] = None
) -> dict:
    """
    Store a new active fee configuration, deactivating the previous ones.

    Raises:
        ValidationError: Values out of bounds
    """
    errors = validate_fee_config(values)
    if errors:
        raise ValidationError('; '.join(errors))

    merged = {
        'platformCommissionPercent': DEFAULT_FEE_CONFIG.platform_commission_percent,
        'minimumGigAmount': DEFAULT_FEE_CONFIG.minimum_gig_amount,
        'maximumGigAmount': DEFAULT_FEE_CONFIG.maximum_gig_amount,
        'escrowAutoReleaseDays': DEFAULT_FEE_CONFIG.escrow_auto_release_days,
    }
    for field in merged:
        if values.get(field) is not None:
            merged[field] = Decimal(str(values[field]))
    merged['escrowAutoReleaseDays'] = int(merged['escrowAutoReleaseDays'])

    timestamp = to_iso(now or utc_now())
    active_ids = [item['id'] for item in store.scan(config.FEE_CONFIGS_TABLE) if item.get('isActive')]
    item = {
        'id': str(uuid.uuid4()),
        **merged,
        'isActive': True,
        'createdAt': timestamp,
        'createdBy': created_by
    }

    def _create(txn):
        for config_id in active_ids:
            current = txn.get(config.FEE_CONFIGS_TABLE, config_id)
            if current and current.get('isActive'):
                txn.update(config.FEE_CONFIGS_TABLE, config_id, {'isActive': False, 'updatedAt': timestamp})
        txn.put(config.FEE_CONFIGS_TABLE, item)
        return item

    created = run_transaction(store, _create)
    logger.info(f"Fee configuration {created['id']} activated by {created_by}")
    return created


def get_auto_release_days(store: DocumentStore, fee_config: Optional[FeeConfiguration] = None) -> int:
    """
    Days between a completion request and automatic release.

    The platform configuration document wins, then the active fee
    configuration, then the built-in default.
    """
    platform = store.get(config.PLATFORM_CONFIG_TABLE, PLATFORM_CONFIG_ID)
    if platform and platform.get('escrowAutoReleaseDays'):
        return int(platform['escrowAutoReleaseDays'])
    fee_config = fee_config or get_active_fee_config(store)
    if fee_config.escrow_auto_release_days:
        return int(fee_config.escrow_auto_release_days)
    return config.DEFAULT_AUTO_RELEASE_DAYS
