"""Charge calculator for cold-storage sales.

Pure functions turning a lot's pricing snapshot and a sale's quantities into
the money owed, decomposed into the base charge (cold charge plus hammali) and
the extras (weighing, extra hammali and grading). Nothing here touches the
workbook so the same formulas serve settlement, reconciliation and the
read-side verification of persisted totals.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Tuple

from . import log
from .constants import WEIGHT_UNIT_NORMALIZATION, ChargeBasis, ChargeUnit, SplitStrategy
from .errors import InconsistentChargeState, ValidationError


ZERO = Decimal("0")
CENT = Decimal("0.01")
DISPLAY_STEP = Decimal("0.1")


@dataclass(frozen=True)
class PricingSnapshot:
    """Rates and lot measurements captured at sale time."""

    cold_charge_rate: Decimal
    hammali_rate: Decimal
    charge_unit: ChargeUnit
    net_weight: Optional[Decimal] = None
    original_lot_size: Optional[int] = None

    @property
    def combined_rate(self) -> Decimal:
        return self.cold_charge_rate + self.hammali_rate


@dataclass(frozen=True)
class Extras:
    """Optional surcharges, always billed over the bags actually sold."""

    weighing: Decimal = ZERO
    extra_handling_per_bag: Decimal = ZERO
    grading: Decimal = ZERO


@dataclass(frozen=True)
class ChargeBreakdown:
    """Result of a charge calculation."""

    basis_quantity: int
    base_charge: Decimal
    cold_charge_amount: Decimal
    hammali_amount: Decimal
    split_strategy: SplitStrategy
    weighing: Decimal
    extra_handling: Decimal
    grading: Decimal
    total: Decimal

    @property
    def extras_total(self) -> Decimal:
        return self.weighing + self.extra_handling + self.grading


def quantize_money(amount: Decimal) -> Decimal:
    """Round a money value to whole paise."""
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def round_for_display(amount: Decimal) -> Decimal:
    """Round a money value to one fractional digit for bills and reports."""
    return Decimal(amount).quantize(DISPLAY_STEP, rounding=ROUND_HALF_UP)


def validate_pricing(pricing: PricingSnapshot) -> None:
    """Reject negative rates and incomplete weight-based snapshots.

    Args:
        pricing (PricingSnapshot): Snapshot about to be used in a calculation.

    Raises:
        ValidationError: If a rate is negative, or the snapshot bills per
            quintal without a positive net weight and original lot size.
    """
    if pricing.cold_charge_rate < ZERO or pricing.hammali_rate < ZERO:
        log.warning(
            "Rejected negative rates: cold=%s hammali=%s",
            pricing.cold_charge_rate,
            pricing.hammali_rate,
        )
        raise ValidationError("Charge rates must be zero or positive")
    if pricing.charge_unit is ChargeUnit.PER_QUINTAL:
        if pricing.net_weight is None or pricing.net_weight <= ZERO:
            raise ValidationError("Net weight is required when charging per quintal")
        if pricing.original_lot_size is None or pricing.original_lot_size < 1:
            raise ValidationError("Original lot size is required when charging per quintal")


def validate_extras(extras: Extras) -> None:
    """Reject negative surcharges."""
    for name in ("weighing", "extra_handling_per_bag", "grading"):
        if getattr(extras, name) < ZERO:
            log.warning("Rejected negative extra '%s': %s", name, getattr(extras, name))
            raise ValidationError(f"Extra charge '{name}' must be zero or positive")


def select_basis_quantity(charge_basis: ChargeBasis, *, quantity_sold: int, remaining_before: int) -> int:
    """Return the number of bags the base charge is computed over.

    ``ACTUAL`` bills the bags leaving in this sale; ``TOTAL_REMAINING`` bills
    every bag still in the lot before the sale.
    """
    if charge_basis is ChargeBasis.TOTAL_REMAINING:
        return remaining_before
    return quantity_sold


def default_split_strategy(charge_unit: ChargeUnit) -> SplitStrategy:
    """Per-quintal bills carry hammali per bag; per-bag bills split by rate share."""
    if charge_unit is ChargeUnit.PER_QUINTAL:
        return SplitStrategy.DIRECT_HAMMALI
    return SplitStrategy.PROPORTIONAL


def compute_base_charge(pricing: PricingSnapshot, basis_quantity: int, *, already_billed: bool) -> Decimal:
    """Compute the unrounded base charge for ``basis_quantity`` bags.

    The base charge is billed once per lot: when ``already_billed`` is set a
    previous sale covered it and the result is zero.
    """
    if already_billed:
        return ZERO
    quantity = Decimal(basis_quantity)
    if pricing.charge_unit is ChargeUnit.PER_QUINTAL:
        weight = pricing.net_weight or ZERO
        lot_size = Decimal(pricing.original_lot_size or 1)
        return (weight * quantity * pricing.combined_rate) / (WEIGHT_UNIT_NORMALIZATION * lot_size)
    return pricing.combined_rate * quantity


def split_base_charge(
    base_charge: Decimal,
    pricing: PricingSnapshot,
    basis_quantity: int,
    strategy: SplitStrategy,
) -> Tuple[Decimal, Decimal]:
    """Split a rounded base charge into ``(cold_charge, hammali)`` amounts.

    ``PROPORTIONAL`` gives each component its share of the combined rate.
    ``DIRECT_HAMMALI`` bills hammali as ``rate × bags`` and leaves the
    remainder as cold charge. The two components always add up to
    ``base_charge``.

    Raises:
        InconsistentChargeState: If the direct strategy would leave a negative
            cold charge.
    """
    if base_charge == ZERO:
        return ZERO, ZERO
    if strategy is SplitStrategy.DIRECT_HAMMALI:
        hammali = quantize_money(pricing.hammali_rate * Decimal(basis_quantity))
        cold = base_charge - hammali
        if cold < ZERO:
            log.error(
                "Direct hammali split exceeds base charge: base=%s hammali=%s",
                base_charge,
                hammali,
            )
            raise InconsistentChargeState(
                f"Hammali {hammali} exceeds base charge {base_charge}"
            )
        return cold, hammali
    combined = pricing.combined_rate
    if combined == ZERO:
        return ZERO, ZERO
    cold = quantize_money(base_charge * pricing.cold_charge_rate / combined)
    return cold, base_charge - cold


def calculate_charge(
    pricing: PricingSnapshot,
    *,
    quantity_sold: int,
    basis_quantity: int,
    already_billed: bool,
    extras: Extras = Extras(),
    split_strategy: Optional[SplitStrategy] = None,
) -> ChargeBreakdown:
    """Compute the total charge of a sale and its breakdown.

    Args:
        pricing (PricingSnapshot): Rates and lot measurements in force.
        quantity_sold (int): Bags physically leaving in this sale; drives the
            extra hammali surcharge.
        basis_quantity (int): Bags the base charge is computed over, see
            :func:`select_basis_quantity`.
        already_billed (bool): Whether an earlier sale already billed the
            lot's base charge.
        extras (Extras): Optional surcharges.
        split_strategy (SplitStrategy | None): Strategy recorded on an
            existing sale; defaults to :func:`default_split_strategy`.

    Returns:
        ChargeBreakdown: Rounded amounts whose parts add up to ``total``.

    Raises:
        ValidationError: If quantities, rates or extras are out of range.
        InconsistentChargeState: If the split cannot be represented.
    """
    if quantity_sold < 1:
        raise ValidationError("Quantity sold must be at least one bag")
    if basis_quantity < 0:
        raise ValidationError("Charge basis quantity cannot be negative")
    validate_pricing(pricing)
    validate_extras(extras)

    strategy = split_strategy or default_split_strategy(pricing.charge_unit)
    base_charge = quantize_money(
        compute_base_charge(pricing, basis_quantity, already_billed=already_billed)
    )
    cold, hammali = split_base_charge(base_charge, pricing, basis_quantity, strategy)

    weighing = quantize_money(extras.weighing)
    extra_handling = quantize_money(extras.extra_handling_per_bag * Decimal(quantity_sold))
    grading = quantize_money(extras.grading)
    total = base_charge + weighing + extra_handling + grading

    log.debug(
        "Calculated charge: basis=%d base=%s extras=%s total=%s",
        basis_quantity,
        base_charge,
        weighing + extra_handling + grading,
        total,
    )
    return ChargeBreakdown(
        basis_quantity=basis_quantity,
        base_charge=base_charge,
        cold_charge_amount=cold,
        hammali_amount=hammali,
        split_strategy=strategy,
        weighing=weighing,
        extra_handling=extra_handling,
        grading=grading,
        total=total,
    )


__all__ = [
    "PricingSnapshot",
    "Extras",
    "ChargeBreakdown",
    "quantize_money",
    "round_for_display",
    "validate_pricing",
    "validate_extras",
    "select_basis_quantity",
    "default_split_strategy",
    "compute_base_charge",
    "split_base_charge",
    "calculate_charge",
]
