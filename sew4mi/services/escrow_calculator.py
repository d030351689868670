"""
Escrow breakdown arithmetic.

Orders are paid out to tailors in three stages: a 25% deposit when payment
is confirmed, 50% when the customer approves the fitting, and the remaining
25% on delivery. The final stage absorbs any rounding remainder so the three
amounts always add back up to the order total.
"""
from __future__ import annotations

from dataclasses import dataclass, asdict
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Mapping

from sew4mi.config import Config
from sew4mi.models import EscrowStage

CENT = Decimal("0.01")
BREAKDOWN_TOLERANCE = Decimal("0.01")


class EscrowCalculationError(ValueError):
    """Raised when an escrow amount cannot be computed."""


@dataclass(frozen=True)
class EscrowBreakdown:
    total_amount: Decimal
    deposit_amount: Decimal
    fitting_amount: Decimal
    final_amount: Decimal
    deposit_percentage: Decimal = Config.ESCROW_DEPOSIT_PERCENTAGE
    fitting_percentage: Decimal = Config.ESCROW_FITTING_PERCENTAGE
    final_percentage: Decimal = Config.ESCROW_FINAL_PERCENTAGE

    def to_dict(self) -> Dict[str, float]:
        return {key: float(value) for key, value in asdict(self).items()}


def to_money(value: Any) -> Decimal:
    """Coerce ``value`` to a finite Decimal rounded to cents."""
    if isinstance(value, bool):
        raise EscrowCalculationError("Amount must be numeric")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise EscrowCalculationError(f"Amount must be numeric, got {value!r}") from exc
    if not amount.is_finite():
        raise EscrowCalculationError("Amount must be a finite number")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def _validated_total(total_amount: Any) -> Decimal:
    total = to_money(total_amount)
    if total <= 0:
        raise EscrowCalculationError("Total amount must be greater than zero")
    return total


def calculate_escrow_breakdown(total_amount: Any) -> EscrowBreakdown:
    total = _validated_total(total_amount)
    deposit = (total * Config.ESCROW_DEPOSIT_PERCENTAGE).quantize(CENT, rounding=ROUND_HALF_UP)
    fitting = (total * Config.ESCROW_FITTING_PERCENTAGE).quantize(CENT, rounding=ROUND_HALF_UP)
    final = total - deposit - fitting
    return EscrowBreakdown(
        total_amount=total,
        deposit_amount=deposit,
        fitting_amount=fitting,
        final_amount=final,
    )


def calculate_deposit_amount(total_amount: Any) -> Decimal:
    return calculate_escrow_breakdown(total_amount).deposit_amount


def calculate_fitting_amount(total_amount: Any) -> Decimal:
    return calculate_escrow_breakdown(total_amount).fitting_amount


def calculate_final_amount(total_amount: Any) -> Decimal:
    return calculate_escrow_breakdown(total_amount).final_amount


def get_stage_amount(total_amount: Any, stage: EscrowStage | str) -> Decimal:
    """Amount released when the order reaches ``stage``; RELEASED carries nothing."""
    try:
        stage_enum = stage if isinstance(stage, EscrowStage) else EscrowStage(stage)
    except ValueError as exc:
        raise EscrowCalculationError(f"Invalid escrow stage: {stage}") from exc

    if stage_enum == EscrowStage.RELEASED:
        return Decimal("0.00")

    breakdown = calculate_escrow_breakdown(total_amount)
    return {
        EscrowStage.DEPOSIT: breakdown.deposit_amount,
        EscrowStage.FITTING: breakdown.fitting_amount,
        EscrowStage.FINAL: breakdown.final_amount,
    }[stage_enum]


def validate_escrow_breakdown(breakdown: EscrowBreakdown | Mapping[str, Any]) -> bool:
    """True when every part is finite, non-negative and the parts sum to the total."""
    if isinstance(breakdown, EscrowBreakdown):
        breakdown = asdict(breakdown)
    try:
        total = to_money(breakdown["total_amount"])
        parts = [
            to_money(breakdown["deposit_amount"]),
            to_money(breakdown["fitting_amount"]),
            to_money(breakdown["final_amount"]),
        ]
    except (KeyError, TypeError, EscrowCalculationError):
        return False

    if total < 0 or any(part < 0 for part in parts):
        return False
    return abs(sum(parts) - total) <= BREAKDOWN_TOLERANCE
