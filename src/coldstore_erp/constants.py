"""Enumerations shared across the cold-storage ledger modules.

Centralises domain constants so that the data access layer (DAL), the charge
calculator, the settlement rules and the CLI rely on a single source of truth
for stored identifiers.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Kilograms per quintal; weight-based rates are quoted per quintal.
WEIGHT_UNIT_NORMALIZATION = Decimal("100")

# Tolerance used when comparing paid + due against the total charge.
MONEY_TOLERANCE = Decimal("0.01")


class BagCategory(str, Enum):
    """Enumerate the bag types a lot can be deposited in."""

    WAFER = "wafer"
    SEED = "seed"
    RATION = "ration"

    @property
    def numbering_scope(self) -> str:
        """Lot numbers are sequenced separately for wafer and non-wafer bags."""
        return "wafer" if self is BagCategory.WAFER else "seed"


class Quality(str, Enum):
    """Enumerate quality grades recorded at deposit time."""

    POOR = "poor"
    MEDIUM = "medium"
    GOOD = "good"


class ChargeUnit(str, Enum):
    """Enumerate the pricing bases a storage can bill on."""

    PER_BAG = "bag"
    PER_QUINTAL = "quintal"


class ChargeBasis(str, Enum):
    """Enumerate how many bags the base charge of a sale covers."""

    ACTUAL = "actual"
    TOTAL_REMAINING = "totalRemaining"


class SplitStrategy(str, Enum):
    """Enumerate how a base charge is split into cold charge and hammali."""

    PROPORTIONAL = "proportional"
    DIRECT_HAMMALI = "direct_hammali"


class PaymentStatus(str, Enum):
    """Enumerate the settlement states of a sale."""

    DUE = "due"
    PARTIAL = "partial"
    PAID = "paid"


class PaymentMode(str, Enum):
    """Enumerate supported payment mechanisms for sales."""

    CASH = "cash"
    ACCOUNT = "account"


class SaleType(str, Enum):
    """Enumerate whether a sale exhausted its lot."""

    PARTIAL = "partial"
    FINAL = "final"


class LotSaleStatus(str, Enum):
    """Enumerate the derived sale progress of a lot."""

    STORED = "stored"
    PARTIAL = "partial"
    SOLD = "sold"


class LotChangeType(str, Enum):
    """Enumerate the change types recorded in the lot history."""

    EDIT = "edit"
    PARTIAL_SALE = "partial_sale"
    FINAL_SALE = "final_sale"
    SALE_REVERSED = "sale_reversed"
    EDIT_REVERSED = "edit_reversed"


class AccessLevel(str, Enum):
    """Enumerate operator permissions."""

    VIEW = "view"
    EDIT = "edit"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    LOTS = "Lots"
    SALES = "Sales"
    LOT_HISTORY = "LotHistory"
    SALE_HISTORY = "SaleHistory"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "WEIGHT_UNIT_NORMALIZATION",
    "MONEY_TOLERANCE",
    "BagCategory",
    "Quality",
    "ChargeUnit",
    "ChargeBasis",
    "SplitStrategy",
    "PaymentStatus",
    "PaymentMode",
    "SaleType",
    "LotSaleStatus",
    "LotChangeType",
    "AccessLevel",
    "SheetName",
]
