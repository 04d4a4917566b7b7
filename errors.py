"""
Error kinds raised by the Jarbook business logic.

Ledger rule violations subclass ValueError so the route layer keeps the
usual mapping: ValueError -> 400 with the message shown to the user.
TransactionFailure is a server-side failure and is safe to retry.
"""


class LedgerError(ValueError):
    """Base class for caller-visible ledger rule violations."""


class InvalidAmountError(LedgerError):
    """Amount is not a positive number."""


class NotFoundError(LedgerError):
    """Referenced jar/goal/rule does not exist or belongs to another user."""


class InsufficientFundsError(LedgerError):
    """Source jar balance is lower than the requested amount."""


class JarNotEmptyError(LedgerError):
    """Jar still holds money and cannot be deleted."""


class TransactionFailure(Exception):
    """Database transaction could not commit. No partial state is visible."""
