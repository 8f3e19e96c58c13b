"""Exceptions shared across the ledger import pipeline."""


class LedgerImportError(Exception):
    """Base class for ledger import errors."""


class PersistenceError(LedgerImportError):
    """
    Raised by a ledger repository when a read or write cannot complete.

    The orchestrator treats this as a recoverable commit failure.
    """


class InvalidIntentError(LedgerImportError, ValueError):
    """Raised when a UI intent references an unknown row or category."""
