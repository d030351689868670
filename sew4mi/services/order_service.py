from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

import bleach
from sqlalchemy import desc, or_
from sqlalchemy.orm import Session

from sew4mi.config import Config
from sew4mi.models import EscrowStage, Order, OrderStatus, User
from sew4mi.observability import increment_counter, record_event
from sew4mi.services.bulk_discount_service import BulkDiscountService
from sew4mi.services.escrow_calculator import (
    EscrowBreakdown,
    EscrowCalculationError,
    calculate_escrow_breakdown,
    to_money,
)


def _clean(value: Optional[str]) -> str:
    return bleach.clean(value or "", tags=[], strip=True).strip()


class OrderService:
    def __init__(
        self,
        db_session: Session,
        bulk_discount_service: Optional[BulkDiscountService] = None,
        config: type[Config] = Config,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.bulk_discount_service = bulk_discount_service or BulkDiscountService(config=config)

    def create_order(
        self,
        customer_id: int,
        tailor_id: int,
        garment_type: str,
        total_amount: Any,
        description: Optional[str] = None,
    ) -> Tuple[bool, str, Optional[Order]]:
        error = self._check_parties(customer_id, tailor_id)
        if error:
            return False, error, None
        garment = _clean(garment_type)
        if not garment:
            return False, "Garment type is required", None
        try:
            breakdown = calculate_escrow_breakdown(total_amount)
        except EscrowCalculationError as exc:
            return False, str(exc), None

        order = self._build_order(customer_id, tailor_id, garment, description, breakdown)
        self.db.add(order)
        self.db.commit()

        increment_counter("orders_created_total")
        record_event("order_created", {"order_id": order.orderID, "total": float(breakdown.total_amount)})
        self.logger.info(
            "Order created",
            extra={"order_id": order.orderID, "customer_id": customer_id, "tailor_id": tailor_id},
        )
        return True, "Order created", order

    def create_group_order(
        self,
        customer_id: int,
        tailor_id: int,
        items: Iterable[Dict[str, Any]],
    ) -> Tuple[bool, str, List[Order]]:
        """
        Place several garments with one tailor as a group. Every order in the
        group shares a ``group_reference`` and carries the bulk discount for
        the group's size.
        """
        items = list(items or [])
        error = self._check_parties(customer_id, tailor_id)
        if error:
            return False, error, []
        if not items:
            return False, "At least one item is required", []

        amounts = [item.get("amount") for item in items]
        valid, errors = self.bulk_discount_service.validate_discount_request(len(items), amounts)
        if not valid:
            return False, "; ".join(errors), []
        if any(not _clean(item.get("garment_type")) for item in items):
            return False, "Each item needs a garment type", []

        pricing = self.bulk_discount_service.calculate_discount(len(items), amounts)
        percentage = pricing["discount_percentage"]
        discounted = self.bulk_discount_service.apply_discount_to_amounts(amounts, percentage)

        group_reference = uuid4().hex
        orders: List[Order] = []
        for item, final_amount in zip(items, discounted):
            try:
                breakdown = calculate_escrow_breakdown(final_amount)
            except EscrowCalculationError as exc:
                self.db.rollback()
                return False, str(exc), []
            original = to_money(item["amount"])
            order = self._build_order(
                customer_id,
                tailor_id,
                _clean(item["garment_type"]),
                item.get("description"),
                breakdown,
            )
            order.group_reference = group_reference
            order.original_amount = original
            order.discount_amount = original - breakdown.total_amount
            self.db.add(order)
            orders.append(order)
        self.db.commit()

        increment_counter("group_orders_created_total", labels={"discount": str(percentage)})
        record_event(
            "group_order_created",
            {"group_reference": group_reference, "orders": len(orders), "discount_percentage": percentage},
        )
        self.logger.info(
            "Group order created",
            extra={"group_reference": group_reference, "orders": len(orders), "discount_percentage": percentage},
        )
        return True, f"Group order created with {percentage}% discount", orders

    def get_order(self, order_id: int) -> Optional[Order]:
        return self.db.get(Order, order_id)

    def list_orders_for_user(self, user: User) -> List[Order]:
        query = self.db.query(Order)
        if not user.is_admin:
            query = query.filter(or_(Order.customerID == user.userID, Order.tailorID == user.userID))
        return query.order_by(desc(Order.created_at), desc(Order.orderID)).all()

    def _check_parties(self, customer_id: int, tailor_id: int) -> Optional[str]:
        customer = self.db.get(User, customer_id)
        if not customer:
            return "Customer not found"
        tailor = self.db.get(User, tailor_id)
        if not tailor or not tailor.is_tailor:
            return "Tailor not found"
        if customer_id == tailor_id:
            return "Customers cannot place orders with themselves"
        return None

    @staticmethod
    def _build_order(
        customer_id: int,
        tailor_id: int,
        garment_type: str,
        description: Optional[str],
        breakdown: EscrowBreakdown,
    ) -> Order:
        return Order(
            customerID=customer_id,
            tailorID=tailor_id,
            garment_type=garment_type[:100],
            description=_clean(description) or None,
            status=OrderStatus.PENDING_DEPOSIT,
            escrow_stage=EscrowStage.DEPOSIT,
            original_amount=breakdown.total_amount,
            total_amount=breakdown.total_amount,
            deposit_amount=breakdown.deposit_amount,
            fitting_amount=breakdown.fitting_amount,
            final_amount=breakdown.final_amount,
        )
