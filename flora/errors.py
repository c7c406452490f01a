"""
Flora ledger errors.

InsufficientStockError and AlreadyCancelledError are business outcomes shown
to the florist as-is. ValidationError and NotFoundError are raised before any
write, so they never leave partial state behind.
"""

from __future__ import annotations

from typing import Any, Optional


class LedgerError(Exception):
    """Base error for ledger engine operations."""
    pass


class InsufficientStockError(LedgerError):
    """Requested quantity exceeds what is on hand."""

    def __init__(self, product_id: int, requested: int, available: int, name: Optional[str] = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        self.name = name
        label = f"'{name}'" if name else f"#{product_id}"
        super().__init__(
            f"Not enough stock for product {label}: requested {requested}, available {available}."
        )


class NotFoundError(LedgerError):
    """Unknown product, material, template, category or transaction."""

    def __init__(self, kind: str, id: Any):
        self.kind = kind
        self.id = id
        super().__init__(f"{kind.capitalize()} '{id}' not found.")


class AlreadyCancelledError(LedgerError):
    """A sale may be reversed only once."""

    def __init__(self, transaction_id: int, storno_id: Optional[int] = None):
        self.transaction_id = transaction_id
        self.storno_id = storno_id
        suffix = f" by storno #{storno_id}" if storno_id is not None else ""
        super().__init__(f"Transaction #{transaction_id} is already cancelled{suffix}.")


class ValidationError(LedgerError, ValueError):
    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")
