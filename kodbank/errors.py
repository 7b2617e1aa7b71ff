"""
Ledger Error Taxonomy

Every expected failure in the ledger core is one of these kinds. Errors raised
by the account store and the ledger propagate unchanged through the transfer
engine to the caller; the HTTP layer maps each kind to a status code.
"""

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for all ledger core errors"""
    code = "ledger_error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message}


class ValidationError(LedgerError):
    """Bad input shape or values"""
    code = "validation_error"


class NotFoundError(LedgerError):
    """Unknown account or transaction"""
    code = "not_found"


class AuthorizationError(LedgerError):
    """Caller does not own the account it tried to use"""
    code = "forbidden"


class InsufficientFundsError(LedgerError):
    """Debit would take a balance below zero"""
    code = "insufficient_funds"


class ConcurrencyConflictError(LedgerError):
    """Lost a race for an account; the whole transfer may be resubmitted"""
    code = "concurrency_conflict"
    retryable = True


class PersistenceError(LedgerError):
    """Storage layer failure"""
    code = "persistence_error"


class CompensationFailedError(PersistenceError):
    """
    A debit could not be reversed after its credit failed.

    Money has left the source account without arriving anywhere; operators
    must restore it by hand.
    """
    code = "compensation_failed"

    def __init__(self, message: str, account_number: str, amount):
        super().__init__(message)
        self.account_number = account_number
        self.amount = amount


class ReconciliationRequired(LedgerError):
    """
    Balances were moved but the ledger entry could not be written.

    The transfer is real and is not rolled back; `pending` describes the
    missing entry so it can be repaired.
    """
    code = "reconciliation_required"

    def __init__(self, message: str, pending: Optional[Any] = None):
        super().__init__(message)
        self.pending = pending
