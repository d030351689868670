from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sew4mi.config import Config
from sew4mi.services.escrow_calculator import EscrowCalculationError, to_money


@dataclass(frozen=True)
class DiscountTier:
    name: str
    min_items: int
    max_items: Optional[int]
    percentage: int

    def covers(self, item_count: int) -> bool:
        return item_count >= self.min_items and (self.max_items is None or item_count <= self.max_items)


DISCOUNT_TIERS: Tuple[DiscountTier, ...] = (
    DiscountTier("Tier 1", 3, 5, 15),
    DiscountTier("Tier 2", 6, 9, 20),
    DiscountTier("Tier 3", 10, None, 25),
)


def discount_percentage(item_count: int) -> int:
    for tier in DISCOUNT_TIERS:
        if tier.covers(item_count):
            return tier.percentage
    return 0


def _percent_of(amount: Decimal, percentage: int) -> Decimal:
    return to_money(amount * Decimal(percentage) / Decimal(100))


class BulkDiscountService:
    """Tiered discounts for group orders placed with a single tailor."""

    def __init__(self, config: type[Config] = Config) -> None:
        self.config = config

    def qualifies(self, item_count: int) -> bool:
        return item_count >= self.config.BULK_MIN_ITEMS

    def calculate_discount(self, item_count: int, order_amounts: Sequence[Any]) -> Dict[str, Any]:
        amounts = [to_money(amount) for amount in order_amounts]
        original_total = to_money(sum(amounts, Decimal("0")))
        percentage = discount_percentage(item_count) if self.qualifies(item_count) else 0

        individual = []
        for index, amount in enumerate(amounts):
            discount = _percent_of(amount, percentage)
            individual.append({
                "item": index,
                "original_amount": float(amount),
                "discount": float(discount),
                "final_amount": float(amount - discount),
            })

        discount_amount = _percent_of(original_total, percentage)
        return {
            "original_total": float(original_total),
            "discount_percentage": percentage,
            "discount_amount": float(discount_amount),
            "final_total": float(original_total - discount_amount),
            "savings": float(discount_amount),
            "individual_discounts": individual,
        }

    def get_discount_tier_info(self, item_count: int) -> Dict[str, Any]:
        if not self.qualifies(item_count):
            first = DISCOUNT_TIERS[0]
            return {
                "tier_name": "No Discount",
                "discount_percentage": 0,
                "min_items": 0,
                "max_items": first.min_items - 1,
                "next_tier_at": first.min_items,
                "next_tier_discount": first.percentage,
            }

        for index, tier in enumerate(DISCOUNT_TIERS):
            if tier.covers(item_count):
                following = DISCOUNT_TIERS[index + 1] if index + 1 < len(DISCOUNT_TIERS) else None
                return {
                    "tier_name": tier.name,
                    "discount_percentage": tier.percentage,
                    "min_items": tier.min_items,
                    "max_items": tier.max_items,
                    "next_tier_at": following.min_items if following else None,
                    "next_tier_discount": following.percentage if following else None,
                }
        raise ValueError(f"No discount tier covers {item_count} items")

    def calculate_potential_savings(self, current_item_count: int, current_total: Any) -> Dict[str, Any]:
        total = to_money(current_total)
        percentage = discount_percentage(current_item_count) if self.qualifies(current_item_count) else 0
        result: Dict[str, Any] = {
            "current_discount": percentage,
            "current_savings": float(_percent_of(total, percentage)),
        }
        info = self.get_discount_tier_info(current_item_count)
        if info["next_tier_at"] and info["next_tier_discount"]:
            result.update({
                "next_tier_at": info["next_tier_at"],
                "next_tier_discount": info["next_tier_discount"],
                "next_tier_potential_savings": float(_percent_of(total, info["next_tier_discount"])),
            })
        return result

    def apply_discount_to_amounts(self, order_amounts: Sequence[Any], percentage: int) -> List[Decimal]:
        return [to_money(amount) - _percent_of(to_money(amount), percentage) for amount in order_amounts]

    def validate_discount_request(self, item_count: Any, order_amounts: Sequence[Any]) -> Tuple[bool, List[str]]:
        errors: List[str] = []
        if not isinstance(item_count, int) or isinstance(item_count, bool) or item_count < 1:
            errors.append("Item count must be at least 1")
        elif item_count != len(order_amounts):
            errors.append("Item count must match the number of order amounts")
        if len(order_amounts) > self.config.BULK_MAX_ORDERS_PER_GROUP:
            errors.append(f"A group order can have at most {self.config.BULK_MAX_ORDERS_PER_GROUP} items")
        try:
            if any(to_money(amount) <= 0 for amount in order_amounts):
                errors.append("All order amounts must be positive")
        except EscrowCalculationError:
            errors.append("All order amounts must be numbers")
        return not errors, errors
