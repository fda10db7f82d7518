"""Custom exception hierarchy for the EMI ledger."""


class LoanLedgerError(Exception):
    """Base exception for all EMI ledger errors."""


class ConfigurationError(LoanLedgerError):
    """Raised when configuration is invalid or missing."""


class InvalidLoanTermsError(LoanLedgerError, ValueError):
    """Raised when loan inputs are malformed or out of range."""


class UnpayableEMIError(InvalidLoanTermsError):
    """Raised when an EMI does not cover the first period's interest."""


class MissingLoanTermsError(InvalidLoanTermsError):
    """Raised when neither a tenure nor an EMI is supplied."""


class InvalidAmountError(InvalidLoanTermsError):
    """Raised when a payment or prepayment amount is not positive."""


class LoanNotFoundError(LoanLedgerError):
    """Raised when a referenced loan does not exist."""


class LoanStateError(LoanLedgerError):
    """Raised when a loan is in an invalid state for the operation."""


class LoanLockedError(LoanStateError):
    """Raised when financial terms are edited after a payment was recorded."""


class LoanClosedError(LoanStateError):
    """Raised when a completed or foreclosed loan is mutated."""


class NoOutstandingInstallmentError(LoanStateError):
    """Raised when a payment is recorded against a loan with nothing unpaid."""


class ConcurrentModificationError(LoanLedgerError):
    """Raised when another writer changed the loan during an operation."""
