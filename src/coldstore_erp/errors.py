"""Error taxonomy shared by the data access and business logic layers.

Recoverable errors derive from :class:`BusinessRuleViolation`; they are raised
before anything is written, or after the enclosing transaction has been rolled
back. Fatal errors derive from :class:`SettlementFailure` and must be surfaced
to the caller rather than persisted.
"""

from __future__ import annotations


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class ValidationError(BusinessRuleViolation):
    """Raised when caller input is malformed or incomplete."""


class InsufficientInventory(ValidationError):
    """Raised when a lot holds fewer bags than a sale requests."""

    def __init__(self, lot_id: str, requested: int, remaining: int) -> None:
        super().__init__(
            f"Lot '{lot_id}' has {remaining} bag(s) remaining; cannot sell {requested}"
        )
        self.lot_id = lot_id
        self.requested = requested
        self.remaining = remaining


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced lot, sale or history entry is unknown."""


class AlreadyReversed(BusinessRuleViolation):
    """Raised when a reversed sale is edited or reversed a second time."""


class PermissionDenied(BusinessRuleViolation):
    """Raised when the active session lacks edit access."""


class LaterSaleExists(BusinessRuleViolation):
    """Raised when a later sale drew on bags billed by the sale being reversed."""


class NothingToReverse(BusinessRuleViolation):
    """Raised when a lot has no edit eligible for one-shot reversal."""


class SettlementFailure(Exception):
    """Base class for failures that abort an operation as a whole."""


class InconsistentChargeState(SettlementFailure):
    """Raised when derived money amounts would break the sale invariants."""


class StorageFailure(SettlementFailure):
    """Raised when the ledger store fails in the middle of a transaction."""


__all__ = [
    "BusinessRuleViolation",
    "ValidationError",
    "InsufficientInventory",
    "MissingReferenceError",
    "AlreadyReversed",
    "PermissionDenied",
    "LaterSaleExists",
    "NothingToReverse",
    "SettlementFailure",
    "InconsistentChargeState",
    "StorageFailure",
]
