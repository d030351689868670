from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import bleach
from sqlalchemy.orm import Session

from sew4mi.config import Config
from sew4mi.models import (
    EscrowStage,
    EscrowTransaction,
    MilestoneApproval,
    MilestoneApprovalAction,
    MilestoneApprovalStatus,
    MilestoneStage,
    Order,
    OrderMilestone,
    OrderStatus,
    as_utc,
    utcnow,
)
from sew4mi.observability import increment_counter, record_event
from sew4mi.observability.analytics import compute_milestone_analytics
from sew4mi.services.escrow_service import EscrowService
from sew4mi.services.notification_service import (
    publish_milestone_reviewed,
    publish_milestone_submitted,
)

AUTO_APPROVAL_COMMENT = "Automatically approved after 48-hour deadline"

# Milestones whose approval releases an escrow share, and the stage the order must be in
PAYMENT_MILESTONES = {
    MilestoneStage.FITTING_READY: EscrowStage.FITTING,
    MilestoneStage.READY_FOR_DELIVERY: EscrowStage.FINAL,
}

_STAGE_ORDER = [EscrowStage.DEPOSIT, EscrowStage.FITTING, EscrowStage.FINAL, EscrowStage.RELEASED]


def _clean_text(value: Optional[str]) -> str:
    return bleach.clean(value or "", tags=[], strip=True).strip()


class MilestoneService:
    """Tailor milestone submissions, customer review and the 48-hour auto-approval."""

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

    # ------------------------------------------------------------------
    # Tailor flows
    # ------------------------------------------------------------------
    def submit_milestone(
        self,
        order_id: int,
        tailor_id: int,
        milestone: MilestoneStage | str,
        photo_url: str,
        notes: Optional[str] = None,
    ) -> Tuple[bool, str, Optional[OrderMilestone]]:
        try:
            milestone_enum = milestone if isinstance(milestone, MilestoneStage) else MilestoneStage(milestone)
        except ValueError:
            return False, f"Unknown milestone: {milestone}", None

        order = self.db.get(Order, order_id)
        if not order:
            return False, "Order not found", None
        if order.tailorID != tailor_id:
            return False, "Only the assigned tailor can update milestones", None
        if order.status in {OrderStatus.CANCELLED, OrderStatus.COMPLETED}:
            return False, "Order is no longer active", None
        if order.escrow_stage == EscrowStage.DEPOSIT:
            return False, "Order has not been funded yet", None

        parsed = urlparse(photo_url or "")
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            return False, "A valid photo URL is required", None
        clean_notes = _clean_text(notes)
        if len(clean_notes) > self.config.MILESTONE_NOTES_MAX_LENGTH:
            return False, f"Notes must be at most {self.config.MILESTONE_NOTES_MAX_LENGTH} characters", None

        now = utcnow()
        deadline = now + timedelta(hours=self.config.MILESTONE_AUTO_APPROVAL_HOURS)
        record = (
            self.db.query(OrderMilestone)
            .filter_by(orderID=order.orderID, milestone=milestone_enum)
            .first()
        )
        if record and record.approval_status != MilestoneApprovalStatus.REJECTED:
            return False, "Milestone has already been submitted", record

        if record is None:
            record = OrderMilestone(orderID=order.orderID, milestone=milestone_enum)
            self.db.add(record)
        record.photo_url = photo_url
        record.notes = clean_notes or None
        record.verified_by = tailor_id
        record.verified_at = now
        record.approval_status = MilestoneApprovalStatus.PENDING
        record.customer_reviewed_at = None
        record.rejection_reason = None
        record.auto_approval_deadline = deadline
        if milestone_enum == MilestoneStage.READY_FOR_DELIVERY:
            order.status = OrderStatus.READY_FOR_DELIVERY
        self.db.commit()

        increment_counter("milestones_submitted_total", labels={"milestone": milestone_enum.value})
        record_event(
            "milestone_submitted",
            {"order_id": order.orderID, "milestone_id": record.milestoneID, "milestone": milestone_enum.value},
        )
        publish_milestone_submitted(order, milestone_enum, deadline)
        return True, "Milestone submitted for customer review", record

    # ------------------------------------------------------------------
    # Customer flows
    # ------------------------------------------------------------------
    def review_milestone(
        self,
        milestone_id: int,
        customer_id: int,
        action: MilestoneApprovalAction | str,
        comment: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[bool, str, Optional[OrderMilestone], int]:
        """
        Approve or reject a submitted milestone.
        Returns (success, message, milestone, http-style status code).
        """
        try:
            action_enum = action if isinstance(action, MilestoneApprovalAction) else MilestoneApprovalAction(action)
        except ValueError:
            return False, "Action must be APPROVED or REJECTED", None, 400
        if action_enum == MilestoneApprovalAction.AUTO_APPROVED:
            return False, "Action must be APPROVED or REJECTED", None, 400

        milestone = self.db.get(OrderMilestone, milestone_id)
        if not milestone:
            return False, "Milestone not found", None, 404
        order = milestone.order
        if order.customerID != customer_id:
            return False, "Only the order's customer can review milestones", None, 403

        clean_comment = _clean_text(comment)
        if len(clean_comment) > self.config.MILESTONE_COMMENT_MAX_LENGTH:
            return False, f"Comment must be at most {self.config.MILESTONE_COMMENT_MAX_LENGTH} characters", None, 400
        if action_enum == MilestoneApprovalAction.REJECTED and not clean_comment:
            return False, "A comment is required when rejecting a milestone", None, 400

        if milestone.approval_status != MilestoneApprovalStatus.PENDING:
            return False, "Milestone has already been reviewed", milestone, 409
        if milestone.is_past_deadline(now):
            return False, "Review window has closed for this milestone", milestone, 409

        reviewed_at = now or utcnow()
        milestone.customer_reviewed_at = reviewed_at
        if action_enum == MilestoneApprovalAction.APPROVED:
            milestone.approval_status = MilestoneApprovalStatus.APPROVED
        else:
            milestone.approval_status = MilestoneApprovalStatus.REJECTED
            milestone.rejection_reason = clean_comment
        self.db.add(MilestoneApproval(
            milestoneID=milestone.milestoneID,
            orderID=order.orderID,
            customerID=customer_id,
            action=action_enum,
            comment=clean_comment or None,
            reviewed_at=reviewed_at,
        ))
        self.db.commit()

        increment_counter("milestone_reviews_total", labels={"action": action_enum.value})
        record_event(
            "milestone_reviewed",
            {"milestone_id": milestone.milestoneID, "order_id": order.orderID, "action": action_enum.value},
        )
        publish_milestone_reviewed(order, milestone.milestone, action_enum.value, clean_comment)

        if action_enum == MilestoneApprovalAction.APPROVED:
            released, release_message, _ = self.release_milestone_payment(
                milestone.milestoneID, approved_by=customer_id, reason="Customer approved milestone"
            )
            if not released:
                self.logger.error(
                    "Payment release failed after approval",
                    extra={"milestone_id": milestone.milestoneID, "reason": release_message},
                )
                return True, f"Milestone approved; payment release pending: {release_message}", milestone, 200
            return True, "Milestone approved", milestone, 200
        return True, "Milestone rejected", milestone, 200

    # ------------------------------------------------------------------
    # Payment release
    # ------------------------------------------------------------------
    def release_milestone_payment(
        self,
        milestone_id: int,
        approved_by: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Tuple[bool, str, Dict[str, Any]]:
        """Release the escrow share tied to an approved milestone, at most once."""
        milestone = self.db.get(OrderMilestone, milestone_id)
        if not milestone:
            return False, "Milestone not found", {"status": "not_found"}
        if milestone.approval_status != MilestoneApprovalStatus.APPROVED:
            return False, "Milestone has not been approved", {"status": "not_approved"}

        already = (
            self.db.query(EscrowTransaction)
            .filter(EscrowTransaction.milestoneID == milestone.milestoneID)
            .first()
        )
        if already:
            return True, "Payment already released for this milestone", {
                "status": "already_released",
                "amount_released": float(already.amount),
            }

        expected_stage = PAYMENT_MILESTONES.get(MilestoneStage(milestone.milestone))
        if expected_stage is None:
            return True, "Milestone carries no payment", {"status": "no_payment_stage", "amount_released": 0.0}

        order = milestone.order
        current_stage = EscrowStage(order.escrow_stage)
        if order.status != OrderStatus.CANCELLED and _STAGE_ORDER.index(current_stage) < _STAGE_ORDER.index(expected_stage):
            return True, f"Release deferred until the order reaches {expected_stage.value}", {
                "status": "deferred",
                "amount_released": 0.0,
            }

        success, message, outcome = self.escrow_service.approve_milestone(
            milestone.orderID,
            expected_stage,
            approved_by=approved_by,
            notes=reason or f"{MilestoneStage(milestone.milestone).value} approved",
            milestone_id=milestone.milestoneID,
        )
        outcome["status"] = "released" if success else "failed"
        if success:
            self._release_deferred(milestone.orderID, approved_by)
        return success, message, outcome

    def _release_deferred(self, order_id: int, approved_by: Optional[int]) -> None:
        """Delivery can be approved before fitting; release it once the order catches up."""
        order = self.db.get(Order, order_id)
        for candidate in order.milestones:
            if candidate.approval_status != MilestoneApprovalStatus.APPROVED:
                continue
            if PAYMENT_MILESTONES.get(MilestoneStage(candidate.milestone)) != order.escrow_stage:
                continue
            released = (
                self.db.query(EscrowTransaction.escrowTransactionID)
                .filter(EscrowTransaction.milestoneID == candidate.milestoneID)
                .first()
            )
            if released is None:
                self.release_milestone_payment(candidate.milestoneID, approved_by=approved_by)
                return

    # ------------------------------------------------------------------
    # Auto-approval
    # ------------------------------------------------------------------
    def auto_approve_due_milestones(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Approve every pending milestone whose review window has lapsed."""
        now = now or utcnow()
        due = (
            self.db.query(OrderMilestone)
            .filter(
                OrderMilestone.approval_status == MilestoneApprovalStatus.PENDING,
                OrderMilestone.auto_approval_deadline < now,
            )
            .order_by(OrderMilestone.auto_approval_deadline)
            .all()
        )
        result: Dict[str, Any] = {
            "processed": len(due),
            "auto_approved": 0,
            "failed": 0,
            "skipped": 0,
            "releases_retried": 0,
            "approved_milestone_ids": [],
            "errors": [],
        }
        due_ids = [milestone.milestoneID for milestone in due]
        for milestone_id in due_ids:
            milestone = self.db.get(OrderMilestone, milestone_id)
            order = milestone.order
            if order.has_active_dispute() or order.status == OrderStatus.CANCELLED:
                result["skipped"] += 1
                continue

            try:
                released, message = self._auto_approve(milestone, now)
            except Exception as exc:
                self.db.rollback()
                self._record_failure(result, milestone_id, str(exc) or type(exc).__name__, exc_info=True)
                continue
            if not released:
                # Milestone stays PENDING so the next run tries again
                self.db.rollback()
                self._record_failure(result, milestone_id, message)
                continue

            publish_milestone_reviewed(order, milestone.milestone, MilestoneApprovalAction.AUTO_APPROVED.value)
            result["auto_approved"] += 1
            result["approved_milestone_ids"].append(milestone_id)

        self._retry_unreleased_payments(result)

        increment_counter("milestones_auto_approved_total", amount=result["auto_approved"])
        if result["failed"]:
            increment_counter("milestone_auto_approval_failures_total", amount=result["failed"])
        record_event("milestone_auto_approval_run", {k: v for k, v in result.items() if k != "errors"})
        self.logger.info(
            "Auto-approval run finished",
            extra={"processed": result["processed"], "auto_approved": result["auto_approved"], "failed": result["failed"]},
        )
        return result

    def _auto_approve(self, milestone: OrderMilestone, now: datetime) -> Tuple[bool, str]:
        milestone.approval_status = MilestoneApprovalStatus.APPROVED
        milestone.customer_reviewed_at = now
        self.db.add(MilestoneApproval(
            milestoneID=milestone.milestoneID,
            orderID=milestone.orderID,
            customerID=None,
            action=MilestoneApprovalAction.AUTO_APPROVED,
            comment=AUTO_APPROVAL_COMMENT,
            reviewed_at=now,
        ))
        self.db.flush()

        released, message, _ = self.release_milestone_payment(milestone.milestoneID, reason=AUTO_APPROVAL_COMMENT)
        if released:
            self.db.commit()
        return released, message

    def _retry_unreleased_payments(self, result: Dict[str, Any]) -> None:
        """Release shares for approved payment milestones whose earlier release failed."""
        stranded = (
            self.db.query(OrderMilestone)
            .join(Order, OrderMilestone.orderID == Order.orderID)
            .outerjoin(EscrowTransaction, EscrowTransaction.milestoneID == OrderMilestone.milestoneID)
            .filter(
                OrderMilestone.approval_status == MilestoneApprovalStatus.APPROVED,
                OrderMilestone.milestone.in_(list(PAYMENT_MILESTONES)),
                Order.status != OrderStatus.CANCELLED,
                EscrowTransaction.escrowTransactionID.is_(None),
            )
            .all()
        )
        for milestone_id in [milestone.milestoneID for milestone in stranded]:
            milestone = self.db.get(OrderMilestone, milestone_id)
            if milestone.order.has_active_dispute():
                continue
            try:
                released, message, outcome = self.release_milestone_payment(milestone_id)
            except Exception as exc:
                self.db.rollback()
                self._record_failure(result, milestone_id, str(exc) or type(exc).__name__, exc_info=True)
                continue
            if not released:
                self.db.rollback()
                self._record_failure(result, milestone_id, message)
            elif outcome.get("status") == "released":
                result["releases_retried"] += 1

    def _record_failure(self, result: Dict[str, Any], milestone_id: int, reason: str, exc_info: bool = False) -> None:
        result["failed"] += 1
        result["errors"].append(f"milestone {milestone_id}: {reason}")
        self.logger.error(
            "Auto-approval payment release failed",
            extra={"milestone_id": milestone_id, "reason": reason},
            exc_info=exc_info,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_order_milestones(self, order_id: int) -> List[OrderMilestone]:
        return (
            self.db.query(OrderMilestone)
            .filter_by(orderID=order_id)
            .order_by(OrderMilestone.verified_at)
            .all()
        )

    def get_approval_history(self, order_id: int) -> List[Dict[str, Any]]:
        approvals = (
            self.db.query(MilestoneApproval)
            .filter_by(orderID=order_id)
            .order_by(MilestoneApproval.reviewed_at)
            .all()
        )
        history = []
        for approval in approvals:
            entry = approval.to_dict()
            entry["milestone"] = MilestoneStage(approval.milestone.milestone).value
            history.append(entry)
        return history

    def time_remaining(self, milestone: OrderMilestone, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds left before auto-approval, or None once reviewed."""
        if milestone.approval_status != MilestoneApprovalStatus.PENDING:
            return None
        deadline = as_utc(milestone.auto_approval_deadline)
        if deadline is None:
            return None
        return max((deadline - (now or utcnow())).total_seconds(), 0.0)

    def get_milestone_analytics(
        self,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        tailor_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        return compute_milestone_analytics(self.db, date_from, date_to, tailor_id)
