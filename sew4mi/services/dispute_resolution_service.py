from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from sew4mi.config import Config
from sew4mi.models import (
    Dispute,
    DisputeMessage,
    DisputeResolution,
    DisputeStatus,
    OrderStatus,
    PaymentTransaction,
    PaymentType,
    ResolutionType,
    SenderRole,
    User,
    utcnow,
)
from sew4mi.observability import increment_counter, record_event
from sew4mi.services.dispute_service import sanitize
from sew4mi.services.escrow_service import EscrowService
from sew4mi.services.notification_service import publish_dispute_update

RESOLUTION_TEMPLATES: List[Dict[str, str]] = [
    {
        "id": "quality-full-refund",
        "name": "Quality issue - full refund",
        "resolution_type": ResolutionType.FULL_REFUND.value,
        "reason_code": "QUALITY_ISSUE",
        "outcome": "Full refund issued due to quality issues. Order cancelled.",
        "admin_notes": "Customer provided evidence of quality defects. Refund approved.",
    },
    {
        "id": "delay-partial-refund",
        "name": "Delivery delay - partial refund",
        "resolution_type": ResolutionType.PARTIAL_REFUND.value,
        "reason_code": "DELIVERY_DELAY",
        "outcome": "Partial refund for delivery delay. Order to continue with adjusted timeline.",
        "admin_notes": "Delivery delayed beyond acceptable timeframe. Partial compensation approved.",
    },
    {
        "id": "minor-issue-continue",
        "name": "Minor issue - continue order",
        "resolution_type": ResolutionType.ORDER_COMPLETION.value,
        "reason_code": "MINOR_ISSUE",
        "outcome": "Minor issues resolved. Order to continue as planned.",
        "admin_notes": "Issues clarified between parties. No financial adjustment needed.",
    },
    {
        "id": "unfounded-claim",
        "name": "Unfounded claim - no action",
        "resolution_type": ResolutionType.NO_ACTION.value,
        "reason_code": "UNFOUNDED",
        "outcome": "Dispute claim not substantiated. Original order terms maintained.",
        "admin_notes": "Insufficient evidence provided. No action warranted.",
    },
]


class DisputeResolutionService:
    """Applies an admin's decision to a dispute and its order's escrow."""

    def __init__(
        self,
        db_session: Session,
        escrow_service: Optional[EscrowService] = None,
        config: type[Config] = Config,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.escrow_service = escrow_service or EscrowService(db_session, config=config)

    def resolve_dispute(
        self,
        dispute_id: int,
        admin_id: int,
        resolution_type: ResolutionType | str,
        outcome: str,
        reason_code: str,
        admin_notes: Optional[str] = None,
        refund_amount: Any = None,
    ) -> Tuple[bool, str, Optional[DisputeResolution]]:
        try:
            resolution_enum = ResolutionType(resolution_type)
        except ValueError:
            return False, f"Unknown resolution type: {resolution_type}", None

        admin = self.db.get(User, admin_id)
        if not admin or not admin.is_admin:
            return False, "Only admins can resolve disputes", None
        dispute = self.db.get(Dispute, dispute_id)
        if not dispute:
            return False, "Dispute not found", None
        if not dispute.is_active:
            return False, "Dispute is not active", None

        clean_outcome = sanitize(outcome)
        clean_reason = sanitize(reason_code)[:50]
        if not clean_outcome:
            return False, "Outcome is required", None
        if not clean_reason:
            return False, "Reason code is required", None

        order = dispute.order
        refunded: Optional[Decimal] = None
        refund_reason = f"Dispute #{dispute.disputeID}: {clean_outcome}"[:255]

        if resolution_enum == ResolutionType.FULL_REFUND:
            success, message, refunded = self.escrow_service.refund_full(order, admin_id, refund_reason)
            if not success:
                self.db.rollback()
                increment_counter("dispute_resolutions_failed_total", labels={"type": resolution_enum.value})
                return False, message, None
        elif resolution_enum == ResolutionType.PARTIAL_REFUND:
            if refund_amount in (None, ""):
                return False, "Refund amount is required for a partial refund", None
            success, message, refunded = self.escrow_service.refund_partial(order, refund_amount, admin_id, refund_reason)
            if not success:
                self.db.rollback()
                increment_counter("dispute_resolutions_failed_total", labels={"type": resolution_enum.value})
                return False, message, None
        elif resolution_enum == ResolutionType.ORDER_COMPLETION:
            if order.status == OrderStatus.CANCELLED:
                return False, "Cancelled orders cannot be resumed", None
            if order.status != OrderStatus.COMPLETED:
                order.status = OrderStatus.IN_PROGRESS

        now = utcnow()
        resolution = DisputeResolution(
            disputeID=dispute.disputeID,
            resolution_type=resolution_enum,
            outcome=clean_outcome,
            reason_code=clean_reason,
            refund_amount=refunded,
            admin_notes=sanitize(admin_notes) or None,
            resolved_by=admin_id,
            paymentTransactionID=self._latest_refund_id(order.orderID) if refunded is not None else None,
            created_at=now,
        )
        self.db.add(resolution)

        dispute.transition_to(DisputeStatus.RESOLVED)
        dispute.resolution_type = resolution_enum
        dispute.resolution = clean_outcome
        dispute.resolved_by = admin_id
        dispute.resolved_at = now
        self.db.commit()

        increment_counter("dispute_resolutions_total", labels={"type": resolution_enum.value})
        record_event(
            "dispute_resolved",
            {
                "dispute_id": dispute.disputeID,
                "order_id": order.orderID,
                "resolution_type": resolution_enum.value,
                "refund_amount": float(refunded) if refunded is not None else None,
            },
        )
        self.logger.info(
            "Dispute resolved",
            extra={"dispute_id": dispute.disputeID, "resolution_type": resolution_enum.value, "admin_id": admin_id},
        )

        text = f"The dispute on order #{order.order_number} has been resolved: {clean_outcome}"
        if refunded is not None:
            text += f" A refund of GH₵ {refunded:.2f} is on its way."
        publish_dispute_update(order, dispute.disputeID, "Dispute resolved", text)
        return True, "Dispute resolved", resolution

    def close_dispute(self, dispute_id: int, admin_id: int, reason: str) -> Tuple[bool, str, Optional[Dispute]]:
        admin = self.db.get(User, admin_id)
        if not admin or not admin.is_admin:
            return False, "Only admins can close disputes", None
        dispute = self.db.get(Dispute, dispute_id)
        if not dispute:
            return False, "Dispute not found", None
        if not dispute.can_transition(DisputeStatus.CLOSED):
            return False, "Dispute is already closed", dispute

        clean_reason = sanitize(reason) or "Closed by admin"
        now = utcnow()
        dispute.transition_to(DisputeStatus.CLOSED)
        if not dispute.resolution_type:
            dispute.resolution_type = ResolutionType.NO_ACTION
            dispute.resolution = clean_reason
            dispute.resolved_by = admin_id
            dispute.resolved_at = now
        self.db.add(DisputeMessage(
            disputeID=dispute.disputeID,
            sender_id=admin_id,
            sender_role=SenderRole.ADMIN,
            message=f"Dispute closed: {clean_reason}"[:1000],
            is_internal_note=False,
            created_at=now,
        ))
        self.db.commit()

        increment_counter("disputes_closed_total")
        self.logger.info("Dispute closed", extra={"dispute_id": dispute.disputeID, "admin_id": admin_id})
        publish_dispute_update(
            dispute.order,
            dispute.disputeID,
            "Dispute closed",
            f"The dispute on order #{dispute.order.order_number} was closed: {clean_reason}",
        )
        return True, "Dispute closed", dispute

    def get_resolution_templates(self) -> List[Dict[str, str]]:
        return [dict(template) for template in RESOLUTION_TEMPLATES]

    def get_resolution_statistics(
        self,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        query = self.db.query(DisputeResolution)
        if date_from:
            query = query.filter(DisputeResolution.created_at >= date_from)
        if date_to:
            query = query.filter(DisputeResolution.created_at <= date_to)
        resolutions = query.all()

        by_type = Counter(ResolutionType(r.resolution_type).value for r in resolutions)
        refunds = [Decimal(r.refund_amount) for r in resolutions if r.refund_amount is not None]
        total_refunded = sum(refunds, Decimal("0.00"))
        return {
            "total_resolutions": len(resolutions),
            "by_type": dict(by_type),
            "total_refunded": float(total_refunded),
            "average_refund": float(round(total_refunded / len(refunds), 2)) if refunds else 0.0,
            "refund_rate": round(len(refunds) / len(resolutions) * 100, 2) if resolutions else 0.0,
        }

    def _latest_refund_id(self, order_id: int) -> Optional[int]:
        refund = (
            self.db.query(PaymentTransaction)
            .filter(PaymentTransaction.orderID == order_id, PaymentTransaction.payment_type == PaymentType.REFUND)
            .order_by(PaymentTransaction.paymentTransactionID.desc())
            .first()
        )
        return refund.paymentTransactionID if refund else None
