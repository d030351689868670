from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from sew4mi.config import Config
from sew4mi.models import (
    EscrowStage,
    EscrowTransaction,
    EscrowTransactionType,
    Order,
    OrderStatus,
    PaymentStatus,
    PaymentTransaction,
    PaymentType,
    utcnow,
)
from sew4mi.observability import increment_counter, record_event, set_gauge
from sew4mi.services.escrow_calculator import (
    BREAKDOWN_TOLERANCE,
    EscrowCalculationError,
    calculate_escrow_breakdown,
    to_money,
)
from sew4mi.services.escrow_reminder_service import EscrowReminderService
from sew4mi.services.notification_service import send_milestone_notification
from sew4mi.services.payment_service import PaymentService

ZERO = Decimal("0.00")

# Stage the order moves to, the stage amount released and the ledger entry type
_STAGE_RELEASES = {
    EscrowStage.FITTING: (EscrowStage.FINAL, "fitting_amount", "fitting_paid_at", EscrowTransactionType.FITTING_PAYMENT),
    EscrowStage.FINAL: (EscrowStage.RELEASED, "final_amount", "final_paid_at", EscrowTransactionType.FINAL_PAYMENT),
}


class EscrowService:
    """
    Drives an order's escrow through DEPOSIT -> FITTING -> FINAL -> RELEASED.

    The customer funds the whole order total up front. The deposit share is
    released to the tailor as soon as funding is confirmed; the fitting and
    final shares are released when the matching milestones are approved.
    ``escrow_balance`` always equals funded - released - refunded.
    """

    def __init__(
        self,
        db_session: Session,
        payment_service: Optional[PaymentService] = None,
        reminder_service: Optional[EscrowReminderService] = None,
        config: type[Config] = Config,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.payment_service = payment_service or PaymentService(db_session, config=config)
        self.reminder_service = reminder_service or EscrowReminderService(db_session, config=config)

    # ------------------------------------------------------------------
    # Funding
    # ------------------------------------------------------------------
    def initiate_escrow_payment(
        self,
        order_id: int,
        customer_id: int,
        customer_phone: str,
    ) -> Tuple[bool, str, Optional[Dict[str, Any]]]:
        order = self._get_order(order_id)
        if not order:
            return False, "Order not found", None
        if order.customerID != customer_id:
            return False, "Order does not belong to this customer", None
        if order.status == OrderStatus.CANCELLED:
            return False, "Order has been cancelled", None
        if order.escrow_stage != EscrowStage.DEPOSIT or self._has_successful_funding(order):
            return False, "Escrow payment already completed for this order", None

        try:
            breakdown = calculate_escrow_breakdown(order.total_amount)
        except EscrowCalculationError as exc:
            return False, str(exc), None

        order.deposit_amount = breakdown.deposit_amount
        order.fitting_amount = breakdown.fitting_amount
        order.final_amount = breakdown.final_amount
        order.status = OrderStatus.PENDING_DEPOSIT

        success, message, transaction = self.payment_service.initiate_payment(
            order,
            breakdown.total_amount,
            customer_phone,
            payment_type=PaymentType.DEPOSIT,
            customer_name=order.customer.display_name if order.customer else None,
            description=f"Sew4Mi escrow payment for order #{order.order_number}",
        )
        self.db.commit()

        if not success:
            increment_counter("escrow_initiation_failed_total")
            return False, message, None

        increment_counter("escrow_payments_initiated_total")
        record_event(
            "escrow_payment_initiated",
            {"order_id": order.orderID, "transaction_id": transaction.transaction_id, "amount": float(breakdown.total_amount)},
        )
        payload = transaction.provider_payload or {}
        return True, "Escrow payment initiated", {
            "payment_intent_id": transaction.transaction_id,
            "deposit_amount": float(breakdown.deposit_amount),
            "amount_charged": float(transaction.amount),
            "payment_url": payload.get("payment_url"),
            "order_status": OrderStatus.PENDING_DEPOSIT.value,
            "breakdown": breakdown.to_dict(),
        }

    def process_deposit_payment(
        self,
        order_id: int,
        payment_reference: str,
    ) -> Tuple[bool, str, Optional[Order]]:
        """
        Record confirmed funding and release the deposit share.
        Calling it again after the order has left DEPOSIT is a no-op.
        """
        order = self._get_order(order_id)
        if not order:
            return False, "Order not found", None
        if order.escrow_stage != EscrowStage.DEPOSIT:
            return True, "Deposit already processed", order
        if order.status == OrderStatus.CANCELLED:
            return False, "Order has been cancelled", order

        transaction = self.payment_service.get_transaction(payment_reference)
        if not transaction or transaction.orderID != order.orderID:
            return False, "Payment transaction not found for this order", order
        if transaction.status != PaymentStatus.SUCCESS:
            return False, "Payment has not been confirmed", order

        paid = to_money(transaction.amount)
        if abs(paid - to_money(order.total_amount)) > BREAKDOWN_TOLERANCE:
            self.logger.error(
                "Funding amount does not match order total",
                extra={"order_id": order.orderID, "paid": float(paid), "total": float(order.total_amount)},
            )
            return False, "Paid amount does not match order total", order

        deposit = to_money(order.deposit_amount)
        order.funded_amount = paid
        order.deposit_paid_at = utcnow()
        order.advance_stage(EscrowStage.FITTING)
        order.escrow_balance = paid - deposit
        order.status = OrderStatus.IN_PROGRESS
        self.db.add(EscrowTransaction(
            orderID=order.orderID,
            paymentTransactionID=transaction.paymentTransactionID,
            transaction_type=EscrowTransactionType.DEPOSIT,
            amount=deposit,
            from_stage=EscrowStage.DEPOSIT,
            to_stage=EscrowStage.FITTING,
            notes=f"Escrow funded via {transaction.transaction_id}; deposit released to tailor",
        ))
        self.db.commit()

        increment_counter("escrow_deposits_processed_total")
        record_event("escrow_deposit_processed", {"order_id": order.orderID, "amount": float(deposit)})
        self.logger.info("Deposit released", extra={"order_id": order.orderID, "amount": float(deposit)})

        send_milestone_notification(order, EscrowStage.FITTING, "milestone_reached")
        self.reminder_service.schedule_reminder_notifications(order)
        self.db.commit()
        return True, "Deposit processed", order

    def handle_payment_webhook(self, transaction: PaymentTransaction) -> Tuple[bool, str]:
        """Route a settled payment to the escrow step it funds."""
        status = PaymentStatus(transaction.status)
        if status == PaymentStatus.SUCCESS and transaction.payment_type == PaymentType.DEPOSIT:
            success, message, _ = self.process_deposit_payment(transaction.orderID, transaction.transaction_id)
            return success, message
        if status in {PaymentStatus.FAILED, PaymentStatus.CANCELLED}:
            increment_counter("escrow_payments_failed_total", labels={"status": status.value})
            self.logger.warning(
                "Escrow payment did not complete",
                extra={"order_id": transaction.orderID, "status": status.value, "reason": transaction.failure_reason},
            )
            self.db.commit()
            return True, f"Payment {status.value.lower()} recorded"
        self.db.commit()
        return True, "Payment update acknowledged"

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------
    def approve_milestone(
        self,
        order_id: int,
        current_stage: EscrowStage | str,
        approved_by: Optional[int] = None,
        notes: Optional[str] = None,
        milestone_id: Optional[int] = None,
    ) -> Tuple[bool, str, Dict[str, Any]]:
        """
        Release the share for the order's current stage and advance it.
        Only FITTING and FINAL carry a release.
        """
        order = self._get_order(order_id)
        if not order:
            return False, "Order not found", {"amount_released": 0.0, "new_stage": None}

        stage = EscrowStage(order.escrow_stage)
        outcome = {"amount_released": 0.0, "new_stage": stage.value}
        try:
            requested = EscrowStage(current_stage)
        except ValueError:
            return False, f"Invalid escrow stage: {current_stage}", outcome
        if requested != stage:
            return False, f"Stage mismatch: order is in {stage.value}, not {requested.value}", outcome
        if order.status == OrderStatus.CANCELLED:
            return False, "Order has been cancelled", outcome
        if stage not in _STAGE_RELEASES:
            return False, f"Cannot approve milestone at stage {stage.value}", outcome

        new_stage, amount_field, paid_at_field, tx_type = _STAGE_RELEASES[stage]
        amount = to_money(getattr(order, amount_field))
        balance = to_money(order.escrow_balance)
        if amount > balance:
            self.logger.error(
                "Escrow balance too low for release",
                extra={"order_id": order.orderID, "amount": float(amount), "balance": float(balance)},
            )
            return False, "Insufficient escrow balance for release", outcome

        order.advance_stage(new_stage)
        setattr(order, paid_at_field, utcnow())
        order.escrow_balance = balance - amount
        if new_stage == EscrowStage.RELEASED:
            order.status = OrderStatus.COMPLETED
        self.db.add(EscrowTransaction(
            orderID=order.orderID,
            milestoneID=milestone_id,
            transaction_type=tx_type,
            amount=amount,
            from_stage=stage,
            to_stage=new_stage,
            approved_by=approved_by,
            notes=notes,
        ))
        self.db.commit()

        increment_counter("escrow_releases_total", labels={"stage": stage.value})
        record_event(
            "escrow_payment_released",
            {"order_id": order.orderID, "stage": stage.value, "amount": float(amount), "milestone_id": milestone_id},
        )
        self.logger.info(
            "Escrow release",
            extra={"order_id": order.orderID, "from_stage": stage.value, "to_stage": new_stage.value, "amount": float(amount)},
        )

        send_milestone_notification(order, stage, "payment_released")
        send_milestone_notification(order, new_stage, "milestone_reached")
        self.reminder_service.cancel_pending_for_stage(order, stage)
        if new_stage != EscrowStage.RELEASED:
            self.reminder_service.schedule_reminder_notifications(order)
        self.db.commit()
        return True, f"Released GH₵ {amount:.2f} and moved to {new_stage.value}", {
            "amount_released": float(amount),
            "new_stage": new_stage.value,
        }

    # ------------------------------------------------------------------
    # Refunds (flushed only; the caller owns the commit)
    # ------------------------------------------------------------------
    def refund_full(
        self,
        order: Order,
        actor_id: int,
        reason: str,
    ) -> Tuple[bool, str, Optional[Decimal]]:
        """Return everything still held in escrow and cancel the order."""
        balance = to_money(order.escrow_balance)
        if balance <= ZERO:
            return False, "No escrow funds available to refund", None

        success, message, refund_tx = self.payment_service.refund(order, balance, reason)
        if not success:
            return False, message, None

        order.refunded_amount = to_money(order.refunded_amount or 0) + balance
        order.escrow_balance = ZERO
        order.status = OrderStatus.CANCELLED
        self.reminder_service.cancel_pending_for_order(order)
        self.db.add(EscrowTransaction(
            orderID=order.orderID,
            paymentTransactionID=refund_tx.paymentTransactionID if refund_tx else None,
            transaction_type=EscrowTransactionType.REFUND,
            amount=balance,
            from_stage=order.escrow_stage,
            to_stage=order.escrow_stage,
            approved_by=actor_id,
            notes=reason,
        ))
        self.db.flush()
        increment_counter("escrow_refunds_total", labels={"kind": "full"})
        return True, f"Refunded GH₵ {balance:.2f}", balance

    def refund_partial(
        self,
        order: Order,
        amount: Any,
        actor_id: int,
        reason: str,
    ) -> Tuple[bool, str, Optional[Decimal]]:
        """
        Refund part of the order. The total shrinks by ``amount`` and the
        unreleased stage shares absorb it, last stage first.
        """
        try:
            refund = to_money(amount)
        except EscrowCalculationError:
            return False, "Refund amount must be a number", None
        total = to_money(order.total_amount)
        balance = to_money(order.escrow_balance)
        if refund <= ZERO or refund >= total:
            return False, "Partial refund must be greater than zero and less than the order total", None
        if refund > balance:
            return False, f"Partial refund exceeds escrow balance of GH₵ {balance:.2f}", None

        success, message, refund_tx = self.payment_service.refund(order, refund, reason)
        if not success:
            return False, message, None

        remaining = refund
        for amount_field, paid_at_field in (
            ("final_amount", "final_paid_at"),
            ("fitting_amount", "fitting_paid_at"),
            ("deposit_amount", "deposit_paid_at"),
        ):
            if remaining <= ZERO or getattr(order, paid_at_field):
                continue
            current = to_money(getattr(order, amount_field))
            cut = min(current, remaining)
            setattr(order, amount_field, current - cut)
            remaining -= cut

        order.total_amount = total - refund
        order.escrow_balance = balance - refund
        order.refunded_amount = to_money(order.refunded_amount or 0) + refund
        self.db.add(EscrowTransaction(
            orderID=order.orderID,
            paymentTransactionID=refund_tx.paymentTransactionID if refund_tx else None,
            transaction_type=EscrowTransactionType.REFUND,
            amount=refund,
            from_stage=order.escrow_stage,
            to_stage=order.escrow_stage,
            approved_by=actor_id,
            notes=reason,
        ))
        self.db.flush()
        increment_counter("escrow_refunds_total", labels={"kind": "partial"})
        return True, f"Refunded GH₵ {refund:.2f}", refund

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_escrow_status(self, order_id: int) -> Optional[Dict[str, Any]]:
        order = self._get_order(order_id)
        if not order:
            return None

        stage = EscrowStage(order.escrow_stage)
        next_amount = {
            EscrowStage.DEPOSIT: order.deposit_amount,
            EscrowStage.FITTING: order.fitting_amount,
            EscrowStage.FINAL: order.final_amount,
        }.get(stage)
        return {
            "order_id": order.orderID,
            "order_number": order.order_number,
            "current_stage": stage.value,
            "order_status": OrderStatus(order.status).value,
            "total_amount": float(order.total_amount),
            "deposit_amount": float(order.deposit_amount),
            "fitting_amount": float(order.fitting_amount),
            "final_amount": float(order.final_amount),
            "deposit_paid": float(order.deposit_amount) if order.deposit_paid_at else 0.0,
            "fitting_paid": float(order.fitting_amount) if order.fitting_paid_at else 0.0,
            "final_paid": float(order.final_amount) if order.final_paid_at else 0.0,
            "total_released": float(order.released_amount),
            "refunded_amount": float(order.refunded_amount or 0),
            "escrow_balance": float(order.escrow_balance),
            "next_stage_amount": float(next_amount) if next_amount is not None else None,
            "stage_history": [tx.to_dict() for tx in order.escrow_transactions],
        }

    def validate_escrow_state(self, order_id: int) -> Tuple[bool, List[str]]:
        order = self._get_order(order_id)
        if not order:
            return False, ["Order not found"]
        errors = self._order_errors(order)
        return not errors, errors

    def get_escrow_summary(self) -> Dict[str, Any]:
        """Funds held and orders per stage across the platform, plus any ledger drift."""
        held = (
            self.db.query(func.coalesce(func.sum(Order.escrow_balance), 0))
            .filter(Order.status != OrderStatus.CANCELLED)
            .scalar()
        )
        by_stage = {stage.value: 0 for stage in EscrowStage}
        for stage, total in self.db.query(Order.escrow_stage, func.count(Order.orderID)).group_by(Order.escrow_stage):
            by_stage[EscrowStage(stage).value] = total

        discrepancies = []
        for order in self.db.query(Order).filter(Order.deposit_paid_at.isnot(None)).all():
            errors = self._order_errors(order)
            if errors:
                discrepancies.append({"order_id": order.orderID, "errors": errors})

        total_held = float(to_money(held or 0))
        set_gauge("escrow_funds_held", total_held)
        return {
            "total_escrow_funds": total_held,
            "orders_by_stage": by_stage,
            "discrepancies": discrepancies,
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _get_order(self, order_id: int) -> Optional[Order]:
        return self.db.get(Order, order_id)

    def _has_successful_funding(self, order: Order) -> bool:
        return (
            self.db.query(PaymentTransaction.paymentTransactionID)
            .filter(
                PaymentTransaction.orderID == order.orderID,
                PaymentTransaction.payment_type == PaymentType.DEPOSIT,
                PaymentTransaction.status == PaymentStatus.SUCCESS,
            )
            .first()
            is not None
        )

    @staticmethod
    def _order_errors(order: Order) -> List[str]:
        errors: List[str] = []
        total = to_money(order.total_amount)
        parts = to_money(order.deposit_amount) + to_money(order.fitting_amount) + to_money(order.final_amount)
        if abs(parts - total) > BREAKDOWN_TOLERANCE:
            errors.append(f"Stage amounts ({parts}) do not sum to order total ({total})")

        expected_balance = (
            to_money(order.funded_amount or 0)
            - order.released_amount
            - to_money(order.refunded_amount or 0)
        )
        if abs(to_money(order.escrow_balance) - expected_balance) > BREAKDOWN_TOLERANCE:
            errors.append(
                f"Escrow balance ({to_money(order.escrow_balance)}) does not match expected ({expected_balance})"
            )
        return errors
