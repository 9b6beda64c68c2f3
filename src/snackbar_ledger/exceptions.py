"""Error taxonomy shared by the store boundary, the ledgers, and the coordinator."""

from __future__ import annotations

from typing import Optional


class LedgerError(Exception):
    """Base class for every error raised by the package."""


class ValidationError(LedgerError, ValueError):
    """Raised for invalid input, always before the store is touched."""


class PersistenceError(LedgerError):
    """Raised when a read or write against the store fails.

    ``partial`` tells the caller whether records from a multi-step write were
    left behind. A partial write is repaired by
    :class:`~snackbar_ledger.reconciliation.Reconciler`; a non-partial failure
    means nothing from the operation remains in the store.
    """

    def __init__(
        self,
        message: str,
        *,
        partial: bool = False,
        sale_id: Optional[str] = None,
        collection: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.partial = partial
        self.sale_id = sale_id
        self.collection = collection


class ConsistencyError(LedgerError):
    """Raised when an operation references a record in an invalid state."""


__all__ = [
    "LedgerError",
    "ValidationError",
    "PersistenceError",
    "ConsistencyError",
]
