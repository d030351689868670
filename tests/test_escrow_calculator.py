from decimal import Decimal

import pytest

from sew4mi.models import EscrowStage
from sew4mi.services.escrow_calculator import (
    EscrowCalculationError,
    calculate_deposit_amount,
    calculate_escrow_breakdown,
    get_stage_amount,
    to_money,
    validate_escrow_breakdown,
)


def test_breakdown_splits_25_50_25():
    breakdown = calculate_escrow_breakdown("400")

    assert breakdown.deposit_amount == Decimal("100.00")
    assert breakdown.fitting_amount == Decimal("200.00")
    assert breakdown.final_amount == Decimal("100.00")


def test_final_stage_absorbs_rounding():
    breakdown = calculate_escrow_breakdown("100.01")

    assert breakdown.deposit_amount == Decimal("25.00")
    assert breakdown.fitting_amount == Decimal("50.01")
    assert breakdown.final_amount == Decimal("25.00")
    assert breakdown.deposit_amount + breakdown.fitting_amount + breakdown.final_amount == Decimal("100.01")


def test_smallest_amount_still_sums_to_total():
    breakdown = calculate_escrow_breakdown("0.01")

    total = breakdown.deposit_amount + breakdown.fitting_amount + breakdown.final_amount
    assert total == Decimal("0.01")
    assert validate_escrow_breakdown(breakdown)


@pytest.mark.parametrize("bad_total", [0, -5, "abc", None, float("inf"), True])
def test_rejects_invalid_totals(bad_total):
    with pytest.raises(EscrowCalculationError):
        calculate_escrow_breakdown(bad_total)


def test_stage_amounts():
    assert calculate_deposit_amount(250) == Decimal("62.50")
    assert get_stage_amount(250, EscrowStage.FITTING) == Decimal("125.00")
    assert get_stage_amount(250, "FINAL") == Decimal("62.50")
    assert get_stage_amount(250, EscrowStage.RELEASED) == Decimal("0.00")


def test_stage_amount_rejects_unknown_stage():
    with pytest.raises(EscrowCalculationError):
        get_stage_amount(100, "SHIPPING")


def test_validate_breakdown_detects_mismatch():
    assert not validate_escrow_breakdown({
        "total_amount": 100,
        "deposit_amount": 25,
        "fitting_amount": 50,
        "final_amount": 30,
    })
    assert not validate_escrow_breakdown({
        "total_amount": 100,
        "deposit_amount": -25,
        "fitting_amount": 100,
        "final_amount": 25,
    })
    assert not validate_escrow_breakdown({"total_amount": 100})


def test_to_money_rounds_half_up():
    assert to_money("10.005") == Decimal("10.01")
    assert to_money(Decimal("2")) == Decimal("2.00")
