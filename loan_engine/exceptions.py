"""
Exception hierarchy for the loan engine.

Every error is recoverable by the caller (correct the input, re-fetch and
retry, or re-authorize). None of them leaves the ledger partially updated.
"""

from typing import Optional


class LoanEngineError(Exception):
    """Base exception for all loan engine errors."""

    category = "error"

    def __init__(self, message: str, loan_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.loan_id = loan_id

    @property
    def code(self) -> str:
        return type(self).__name__


# Validation

class LoanValidationError(LoanEngineError):
    """Caller-supplied input fails a precondition."""

    category = "validation"


class InvalidAmount(LoanValidationError):
    """Amount is non-positive, exceeds the balance or cannot be applied."""


class InvalidTermKind(LoanValidationError):
    """Repayment term is missing or its value is not positive."""


class InvalidRestructure(LoanValidationError):
    """Restructure would produce an empty or non-positive schedule."""


# State

class LoanStateError(LoanEngineError):
    """Action is not legal for the loan's current status."""

    category = "state"


class InvalidTransition(LoanStateError):
    """Loan status does not allow the requested transition."""


class AlreadyDisbursed(LoanStateError):
    """Loan funds were already released."""


class NotDue(LoanStateError):
    """Installment is not in the due state."""


class AlreadyPaid(LoanStateError):
    """Installment was already settled or skipped."""


class TerminalStateProtected(LoanStateError):
    """Closed loans are immutable audit records."""


# Concurrency

class ConcurrentModification(LoanEngineError):
    """A competing write to the same loan committed first."""

    category = "concurrency"


# Lookup

class LoanLookupError(LoanEngineError):
    """Referenced entity is missing or mismatched."""

    category = "not_found"


class LoanNotFound(LoanLookupError):
    """Loan does not exist."""


class InstallmentNotFound(LoanLookupError):
    """Installment does not exist."""


class NotBelongsToLoan(LoanLookupError):
    """Installment belongs to a different loan."""


class EmployeeNotFound(LoanLookupError):
    """Employee is unknown to the directory or no longer active."""
