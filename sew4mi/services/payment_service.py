from __future__ import annotations

import json
import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from sew4mi.config import Config
from sew4mi.models import (
    Order,
    PaymentStatus,
    PaymentTransaction,
    PaymentType,
    utcnow,
)
from sew4mi.observability import increment_counter, record_event
from sew4mi.services.escrow_calculator import EscrowCalculationError, to_money
from sew4mi.services.hubtel_client import (
    HubtelClient,
    HubtelError,
    map_hubtel_status,
    validate_ghana_phone_number,
)

_WEBHOOK_STATUS_OVERRIDES = {
    "completed": PaymentStatus.SUCCESS,
    "rejected": PaymentStatus.FAILED,
    "aborted": PaymentStatus.CANCELLED,
}

_FINAL_STATUSES = {PaymentStatus.SUCCESS, PaymentStatus.FAILED, PaymentStatus.CANCELLED}


def map_webhook_status(raw_status: Optional[str]) -> PaymentStatus:
    key = str(raw_status or "").strip().lower()
    if key in _WEBHOOK_STATUS_OVERRIDES:
        return _WEBHOOK_STATUS_OVERRIDES[key]
    return map_hubtel_status(raw_status)


class PaymentService:
    """
    Records outbound mobile-money charges and disbursements.
    Every gateway call is mirrored in a PaymentTransaction row so webhooks
    and status polls can be reconciled against it.
    """

    def __init__(
        self,
        db_session: Session,
        hubtel_client: Optional[HubtelClient] = None,
        config: type[Config] = Config,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.hubtel = hubtel_client or HubtelClient(config=config)

    def validate_amount(self, amount: Any) -> Tuple[bool, str]:
        try:
            value = to_money(amount)
        except EscrowCalculationError:
            return False, "Amount must be a number"
        if value < self.config.PAYMENT_MIN_AMOUNT:
            return False, f"Minimum payment amount is GH₵ {self.config.PAYMENT_MIN_AMOUNT:.2f}"
        if value > self.config.PAYMENT_MAX_AMOUNT:
            return False, f"Maximum payment amount is GH₵ {self.config.PAYMENT_MAX_AMOUNT:.2f}"
        return True, "Amount is valid"

    def initiate_payment(
        self,
        order: Order,
        amount: Decimal,
        customer_phone: str,
        payment_type: PaymentType = PaymentType.DEPOSIT,
        customer_name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Tuple[bool, str, Optional[PaymentTransaction]]:
        """
        Charge the customer's wallet. Returns (success flag, message, transaction).
        The transaction stays PENDING until Hubtel confirms through the webhook.
        """
        valid, message = self.validate_amount(amount)
        if not valid:
            return False, message, None

        phone = validate_ghana_phone_number(customer_phone)
        if not phone.is_valid:
            return False, phone.error or "Invalid phone number", None

        transaction = PaymentTransaction(
            orderID=order.orderID,
            transaction_id=self._new_reference("PAY"),
            payment_type=payment_type,
            amount=to_money(amount),
            customer_phone=phone.formatted_number,
            network=phone.network,
            status=PaymentStatus.PENDING,
        )
        self.db.add(transaction)
        self.db.flush()

        try:
            response = self.hubtel.initiate_mobile_money_payment(
                transaction_id=transaction.transaction_id,
                amount=transaction.amount,
                customer_phone=customer_phone,
                customer_name=customer_name,
                description=description or f"Sew4Mi order #{order.order_number}",
            )
        except HubtelError as exc:
            transaction.mark_failed(str(exc))
            self.db.flush()
            increment_counter("payments_initiation_failed_total", labels={"type": PaymentType(payment_type).value})
            self.logger.warning(
                "Payment initiation failed",
                extra={"order_id": order.orderID, "transaction_id": transaction.transaction_id, "reason": str(exc)},
            )
            return False, f"Payment initiation failed: {exc}", transaction

        transaction.hubtel_transaction_id = response.hubtel_transaction_id
        transaction.provider_payload = {"payment_url": response.payment_url, "message": response.message}
        if response.status in {PaymentStatus.FAILED, PaymentStatus.CANCELLED}:
            transaction.mark_failed(response.message, status=response.status)
        self.db.flush()

        increment_counter("payments_initiated_total", labels={"type": PaymentType(payment_type).value})
        self.logger.info(
            "Payment initiated",
            extra={
                "order_id": order.orderID,
                "transaction_id": transaction.transaction_id,
                "amount": float(transaction.amount),
            },
        )
        if transaction.status in {PaymentStatus.FAILED, PaymentStatus.CANCELLED}:
            return False, response.message, transaction
        return True, response.message, transaction

    def verify_payment_status(self, transaction_id: str) -> Tuple[bool, str, Optional[PaymentTransaction]]:
        """Poll Hubtel for a pending transaction and persist any change."""
        transaction = self.get_transaction(transaction_id)
        if not transaction:
            return False, "Payment transaction not found", None
        if transaction.status in _FINAL_STATUSES:
            return True, "Payment already settled", transaction

        try:
            remote = self.hubtel.get_transaction_status(transaction.transaction_id)
        except HubtelError as exc:
            self.logger.warning(
                "Payment status check failed",
                extra={"transaction_id": transaction_id, "reason": str(exc)},
            )
            return False, f"Status check failed: {exc}", transaction

        self._apply_status(transaction, remote.status, remote.hubtel_transaction_id, remote.message)
        self.db.flush()
        return True, remote.message, transaction

    def process_webhook(
        self,
        raw_body: bytes | str,
        signature: Optional[str],
    ) -> Tuple[bool, str, Optional[PaymentTransaction]]:
        if not self.hubtel.verify_webhook_signature(raw_body, signature):
            increment_counter("payment_webhooks_rejected_total", labels={"reason": "signature"})
            self.logger.warning("Rejected Hubtel webhook with invalid signature")
            return False, "Invalid webhook signature", None

        try:
            payload = json.loads(raw_body)
        except (TypeError, ValueError):
            return False, "Invalid JSON payload", None
        if not isinstance(payload, dict):
            return False, "Invalid webhook payload structure", None

        fields = self._extract_webhook_fields(payload)
        if not fields["transaction_id"] or not fields["status"]:
            return False, "Invalid webhook payload structure", None

        transaction = self.get_transaction(fields["transaction_id"])
        if not transaction:
            increment_counter("payment_webhooks_rejected_total", labels={"reason": "unknown_transaction"})
            return False, "Payment transaction not found", None

        new_status = map_webhook_status(fields["status"])
        transaction.webhook_received = True
        if transaction.status in _FINAL_STATUSES:
            self.db.flush()
            return True, "Webhook already processed", transaction

        if fields["amount"] is not None and new_status == PaymentStatus.SUCCESS:
            try:
                reported = to_money(fields["amount"])
            except EscrowCalculationError:
                reported = None
            if reported is not None and reported != to_money(transaction.amount):
                transaction.mark_failed(
                    f"Amount mismatch: expected {transaction.amount}, received {reported}"
                )
                self.db.flush()
                self.logger.error(
                    "Webhook amount mismatch",
                    extra={"transaction_id": transaction.transaction_id, "reported": float(reported)},
                )
                return False, "Webhook amount does not match transaction", transaction

        self._apply_status(
            transaction,
            new_status,
            fields["hubtel_transaction_id"],
            fields["message"] or f"Payment {new_status.value.lower()}",
        )
        self.db.flush()
        increment_counter("payment_webhooks_processed_total", labels={"status": new_status.value})
        return True, "Webhook processed", transaction

    def refund(
        self,
        order: Order,
        amount: Decimal,
        reason: str,
    ) -> Tuple[bool, str, Optional[PaymentTransaction]]:
        """
        Send ``amount`` back to the customer's funding wallet.
        Returns (success flag, message, refund transaction or None).
        """
        if amount is None or to_money(amount) <= 0:
            return False, "Refund amount must be positive", None

        funding = (
            self.db.query(PaymentTransaction)
            .filter(
                PaymentTransaction.orderID == order.orderID,
                PaymentTransaction.payment_type == PaymentType.DEPOSIT,
                PaymentTransaction.status == PaymentStatus.SUCCESS,
            )
            .order_by(PaymentTransaction.paymentTransactionID.desc())
            .first()
        )
        if not funding:
            return False, "No successful payment found for this order", None
        if to_money(amount) > to_money(funding.amount):
            return False, "Refund amount exceeds original payment", None

        refund_tx = PaymentTransaction(
            orderID=order.orderID,
            transaction_id=self._new_reference("RF"),
            payment_type=PaymentType.REFUND,
            amount=to_money(amount),
            customer_phone=funding.customer_phone,
            network=funding.network,
            status=PaymentStatus.PENDING,
        )
        self.db.add(refund_tx)
        self.db.flush()

        try:
            response = self.hubtel.send_mobile_money(
                transaction_id=refund_tx.transaction_id,
                amount=refund_tx.amount,
                recipient_phone=funding.customer_phone,
                recipient_name=order.customer.display_name if order.customer else None,
                description=reason[:100] if reason else None,
            )
        except HubtelError as exc:
            refund_tx.mark_failed(str(exc))
            self.db.flush()
            increment_counter("refunds_failed_total")
            self.logger.warning(
                "Refund disbursement failed",
                extra={"order_id": order.orderID, "amount": float(amount), "reason": str(exc)},
            )
            return False, f"Refund failed: {exc}", refund_tx

        if response.status in {PaymentStatus.FAILED, PaymentStatus.CANCELLED}:
            refund_tx.mark_failed(response.message, status=response.status)
            self.db.flush()
            increment_counter("refunds_failed_total")
            return False, f"Refund failed: {response.message}", refund_tx

        refund_tx.mark_completed(response.hubtel_transaction_id)
        self.db.flush()
        increment_counter("refunds_completed_total")
        record_event(
            "refund_disbursed",
            {"order_id": order.orderID, "amount": float(refund_tx.amount), "reference": refund_tx.transaction_id},
        )
        self.logger.info(
            "Refund processed",
            extra={"order_id": order.orderID, "amount": float(refund_tx.amount), "reference": refund_tx.transaction_id},
        )
        return True, "Refund processed successfully", refund_tx

    def get_transaction(self, transaction_id: str) -> Optional[PaymentTransaction]:
        return (
            self.db.query(PaymentTransaction)
            .filter(PaymentTransaction.transaction_id == transaction_id)
            .first()
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _apply_status(
        self,
        transaction: PaymentTransaction,
        status: PaymentStatus,
        hubtel_reference: Optional[str],
        message: str,
    ) -> None:
        if status == PaymentStatus.SUCCESS:
            transaction.mark_completed(hubtel_reference)
        elif status in {PaymentStatus.FAILED, PaymentStatus.CANCELLED}:
            transaction.mark_failed(message, status=status)
        else:
            transaction.status = PaymentStatus.PENDING
            if hubtel_reference:
                transaction.hubtel_transaction_id = hubtel_reference
        transaction.updated_at = utcnow()
        record_event(
            "payment_status_changed",
            {"transaction_id": transaction.transaction_id, "status": PaymentStatus(transaction.status).value},
        )

    @staticmethod
    def _extract_webhook_fields(payload: Dict[str, Any]) -> Dict[str, Any]:
        data = payload.get("Data") if isinstance(payload.get("Data"), dict) else {}
        return {
            "transaction_id": payload.get("transactionId") or data.get("ClientReference"),
            "hubtel_transaction_id": payload.get("hubtelTransactionId") or data.get("TransactionId"),
            "status": payload.get("status") or data.get("Status") or payload.get("ResponseCode"),
            "amount": payload.get("amount", data.get("Amount")),
            "message": payload.get("message") or data.get("Description"),
        }

    @staticmethod
    def _new_reference(prefix: str) -> str:
        return f"{prefix}-{uuid.uuid4().hex[:16].upper()}"
