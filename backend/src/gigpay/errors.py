"""
Exception taxonomy for escrow operations.
Each error carries the HTTP status and code the handlers respond with.
"""


class EscrowError(Exception):
    """Base class for all domain failures."""
    status_code = 500
    code = 'EscrowError'
    retryable = False


class ValidationError(EscrowError):
    """Malformed input; the caller may resubmit corrected input."""
    status_code = 400
    code = 'ValidationError'


class InvalidAmount(ValidationError):
    code = 'InvalidAmount'


class Unauthorized(EscrowError):
    """Caller is not the permitted actor."""
    status_code = 403
    code = 'Unauthorized'


class NotFoundError(EscrowError):
    status_code = 404
    code = 'NotFound'


class InvalidState(EscrowError):
    """Operation attempted on a document not in the required state."""
    status_code = 409
    code = 'InvalidState'


class NoActiveDispute(InvalidState):
    code = 'NoActiveDispute'


class AlreadyRequested(EscrowError):
    status_code = 409
    code = 'AlreadyRequested'


class AlreadySelected(EscrowError):
    status_code = 409
    code = 'AlreadySelected'


class AlreadyResolved(EscrowError):
    status_code = 409
    code = 'AlreadyResolved'


class InsufficientBalance(EscrowError):
    """Ledger drift: pending balance lower than the amount being released."""
    status_code = 409
    code = 'InsufficientBalance'


class ProviderError(EscrowError):
    """Failure talking to the escrow provider."""
    status_code = 502
    code = 'ProviderError'


class TransactionConflict(EscrowError):
    """Optimistic transaction lost a write race."""
    status_code = 503
    code = 'TransactionConflict'
    retryable = True
