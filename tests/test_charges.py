"""Unit tests for the pure charge calculator."""

from __future__ import annotations

from decimal import Decimal

import pytest

from coldstore_erp import charges
from coldstore_erp.constants import ChargeBasis, ChargeUnit, SplitStrategy
from coldstore_erp.errors import InconsistentChargeState, ValidationError


def _bag_pricing(cold: str = "5", hammali: str = "2") -> charges.PricingSnapshot:
    return charges.PricingSnapshot(
        cold_charge_rate=Decimal(cold),
        hammali_rate=Decimal(hammali),
        charge_unit=ChargeUnit.PER_BAG,
    )


def _quintal_pricing(net_weight: str = "5000", lot_size: int = 100) -> charges.PricingSnapshot:
    return charges.PricingSnapshot(
        cold_charge_rate=Decimal("5"),
        hammali_rate=Decimal("2"),
        charge_unit=ChargeUnit.PER_QUINTAL,
        net_weight=Decimal(net_weight),
        original_lot_size=lot_size,
    )


# ---------------------------------------------------------------------------
# Base charge
# ---------------------------------------------------------------------------


def test_bag_mode_partial_sale_with_weighing():
    """Thirty bags at 5+2 per bag plus 10 weighing should cost 220."""

    breakdown = charges.calculate_charge(
        _bag_pricing(),
        quantity_sold=30,
        basis_quantity=30,
        already_billed=False,
        extras=charges.Extras(weighing=Decimal("10")),
    )

    assert breakdown.base_charge == Decimal("210.00")
    assert breakdown.total == Decimal("220.00")
    assert breakdown.extras_total == Decimal("10.00")


def test_weight_mode_base_charge_uses_quintal_formula():
    """Forty bags of a 5000 kg, 100 bag lot at 7 per quintal should cost 140."""

    breakdown = charges.calculate_charge(
        _quintal_pricing(),
        quantity_sold=40,
        basis_quantity=40,
        already_billed=False,
    )

    assert breakdown.base_charge == Decimal("140.00")
    assert breakdown.total == Decimal("140.00")


def test_already_billed_lot_charges_only_extras():
    """A lot whose base charge was billed should only owe the extras."""

    breakdown = charges.calculate_charge(
        _bag_pricing(),
        quantity_sold=20,
        basis_quantity=20,
        already_billed=True,
        extras=charges.Extras(grading=Decimal("15")),
    )

    assert breakdown.base_charge == Decimal("0.00")
    assert breakdown.cold_charge_amount == Decimal("0")
    assert breakdown.hammali_amount == Decimal("0")
    assert breakdown.total == Decimal("15.00")


def test_extra_handling_uses_quantity_sold_not_basis():
    """Extra hammali should scale with bags leaving, even on a whole-lot basis."""

    breakdown = charges.calculate_charge(
        _bag_pricing(),
        quantity_sold=30,
        basis_quantity=100,
        already_billed=False,
        extras=charges.Extras(extra_handling_per_bag=Decimal("1.5")),
    )

    assert breakdown.base_charge == Decimal("700.00")
    assert breakdown.extra_handling == Decimal("45.00")
    assert breakdown.total == Decimal("745.00")


@pytest.mark.parametrize(
    ("basis", "expected"),
    [
        (ChargeBasis.ACTUAL, 30),
        (ChargeBasis.TOTAL_REMAINING, 80),
    ],
)
def test_select_basis_quantity(basis, expected):
    """The basis choice should decide which bag count the base charge covers."""

    assert charges.select_basis_quantity(basis, quantity_sold=30, remaining_before=80) == expected


# ---------------------------------------------------------------------------
# Splitting
# ---------------------------------------------------------------------------


def test_bag_mode_defaults_to_proportional_split():
    """Per-bag bills should split the base by each rate's share."""

    breakdown = charges.calculate_charge(
        _bag_pricing(), quantity_sold=30, basis_quantity=30, already_billed=False
    )

    assert breakdown.split_strategy is SplitStrategy.PROPORTIONAL
    assert breakdown.cold_charge_amount == Decimal("150.00")
    assert breakdown.hammali_amount == Decimal("60.00")


def test_weight_mode_defaults_to_direct_hammali_split():
    """Per-quintal bills should charge hammali per bag and leave the rest as cold charge."""

    breakdown = charges.calculate_charge(
        _quintal_pricing(), quantity_sold=40, basis_quantity=40, already_billed=False
    )

    assert breakdown.split_strategy is SplitStrategy.DIRECT_HAMMALI
    assert breakdown.hammali_amount == Decimal("80.00")
    assert breakdown.cold_charge_amount == Decimal("60.00")


def test_proportional_split_components_add_up_after_rounding():
    """Rounded components should still sum to the base charge."""

    pricing = _bag_pricing(cold="1", hammali="2")
    cold, hammali = charges.split_base_charge(
        Decimal("10.00"), pricing, 10, SplitStrategy.PROPORTIONAL
    )

    assert cold == Decimal("3.33")
    assert hammali == Decimal("6.67")
    assert cold + hammali == Decimal("10.00")


def test_recorded_split_strategy_overrides_default():
    """An explicit strategy should be honoured regardless of the charge unit."""

    breakdown = charges.calculate_charge(
        _bag_pricing(),
        quantity_sold=10,
        basis_quantity=10,
        already_billed=False,
        split_strategy=SplitStrategy.DIRECT_HAMMALI,
    )

    assert breakdown.hammali_amount == Decimal("20.00")
    assert breakdown.cold_charge_amount == Decimal("50.00")


def test_direct_split_rejects_hammali_above_base():
    """A direct split that would leave negative cold charge is inconsistent."""

    with pytest.raises(InconsistentChargeState):
        charges.calculate_charge(
            _quintal_pricing(net_weight="100"),
            quantity_sold=10,
            basis_quantity=10,
            already_billed=False,
        )


# ---------------------------------------------------------------------------
# Validation and rounding
# ---------------------------------------------------------------------------


def test_weight_mode_requires_net_weight():
    """Per-quintal pricing without a net weight cannot be billed."""

    pricing = charges.PricingSnapshot(
        cold_charge_rate=Decimal("5"),
        hammali_rate=Decimal("2"),
        charge_unit=ChargeUnit.PER_QUINTAL,
        original_lot_size=100,
    )
    with pytest.raises(ValidationError):
        charges.calculate_charge(pricing, quantity_sold=1, basis_quantity=1, already_billed=False)


def test_negative_rates_are_rejected():
    """Money inputs are never negative."""

    with pytest.raises(ValidationError):
        charges.calculate_charge(
            _bag_pricing(cold="-1"), quantity_sold=1, basis_quantity=1, already_billed=False
        )


def test_negative_extras_are_rejected():
    """Extras must be zero or positive."""

    with pytest.raises(ValidationError):
        charges.calculate_charge(
            _bag_pricing(),
            quantity_sold=1,
            basis_quantity=1,
            already_billed=False,
            extras=charges.Extras(weighing=Decimal("-5")),
        )


def test_zero_quantity_is_rejected():
    """A sale must move at least one bag."""

    with pytest.raises(ValidationError):
        charges.calculate_charge(_bag_pricing(), quantity_sold=0, basis_quantity=0, already_billed=False)


def test_money_rounding_helpers():
    """Stored money rounds to paise and displayed money to one decimal, half up."""

    assert charges.quantize_money(Decimal("1.005")) == Decimal("1.01")
    assert charges.round_for_display(Decimal("12.25")) == Decimal("12.3")
    assert charges.round_for_display(Decimal("12.24")) == Decimal("12.2")
