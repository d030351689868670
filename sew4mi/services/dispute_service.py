from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

import bleach
from sqlalchemy import desc
from sqlalchemy.orm import Session

from sew4mi.config import Config
from sew4mi.models import (
    ACTIVE_DISPUTE_STATUSES,
    Dispute,
    DisputeCategory,
    DisputeEvidence,
    DisputeMessage,
    DisputePriority,
    DisputeStatus,
    Order,
    OrderMilestone,
    OrderStatus,
    SenderRole,
    User,
    as_utc,
    utcnow,
)
from sew4mi.observability import increment_counter, record_event
from sew4mi.services.notification_service import publish_dispute_update

SLA_HOURS = {
    DisputePriority.CRITICAL: 4,
    DisputePriority.HIGH: 24,
    DisputePriority.MEDIUM: 48,
    DisputePriority.LOW: 72,
}

ESCALATION_PATH = {
    DisputePriority.LOW: DisputePriority.MEDIUM,
    DisputePriority.MEDIUM: DisputePriority.HIGH,
    DisputePriority.HIGH: DisputePriority.CRITICAL,
    DisputePriority.CRITICAL: DisputePriority.CRITICAL,
}

TITLE_LENGTH = (5, 200)
DESCRIPTION_LENGTH = (10, 2000)
MESSAGE_LENGTH = (1, 1000)


def sanitize(value: Optional[str]) -> str:
    return bleach.clean(value or "", tags=[], strip=True).strip()


def calculate_priority(order_total: Any, category: DisputeCategory | str) -> DisputePriority:
    total = Decimal(str(order_total or 0))
    category_enum = DisputeCategory(category)
    if total > 1000:
        return DisputePriority.HIGH
    if total > 500 or category_enum in {DisputeCategory.PAYMENT_PROBLEM, DisputeCategory.DELIVERY_DELAY}:
        return DisputePriority.MEDIUM
    return DisputePriority.LOW


def sla_deadline(priority: DisputePriority | str, start: datetime) -> datetime:
    return start + timedelta(hours=SLA_HOURS[DisputePriority(priority)])


def next_priority(priority: DisputePriority | str | None) -> DisputePriority:
    try:
        return ESCALATION_PATH[DisputePriority(priority)]
    except (ValueError, KeyError):
        return DisputePriority.HIGH


class DisputeService:
    """Dispute intake, triage, messaging and escalation."""

    def __init__(self, db_session: Session, config: type[Config] = Config) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.config = config

    # ------------------------------------------------------------------
    # Access helpers
    # ------------------------------------------------------------------
    def sender_role(self, order: Order, user: User) -> Optional[SenderRole]:
        if user.is_admin:
            return SenderRole.ADMIN
        if order.customerID == user.userID:
            return SenderRole.CUSTOMER
        if order.tailorID == user.userID:
            return SenderRole.TAILOR
        return None

    def get_dispute(self, dispute_id: int) -> Optional[Dispute]:
        return self.db.get(Dispute, dispute_id)

    def can_view(self, dispute: Dispute, user: User) -> bool:
        return self.sender_role(dispute.order, user) is not None

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------
    def create_dispute(
        self,
        order_id: int,
        raised_by: int,
        category: DisputeCategory | str,
        title: str,
        description: str,
        milestone_id: Optional[int] = None,
    ) -> Tuple[bool, str, Optional[Dispute]]:
        try:
            category_enum = category if isinstance(category, DisputeCategory) else DisputeCategory(category)
        except ValueError:
            return False, f"Unknown dispute category: {category}", None

        order = self.db.get(Order, order_id)
        if not order:
            return False, "Order not found", None
        if raised_by not in {order.customerID, order.tailorID}:
            return False, "Only the order's customer or tailor can raise a dispute", None
        if order.status == OrderStatus.CANCELLED:
            return False, "Cancelled orders cannot be disputed", None

        clean_title = sanitize(title)
        clean_description = sanitize(description)
        if not TITLE_LENGTH[0] <= len(clean_title) <= TITLE_LENGTH[1]:
            return False, "Title must be between 5 and 200 characters", None
        if not DESCRIPTION_LENGTH[0] <= len(clean_description) <= DESCRIPTION_LENGTH[1]:
            return False, "Description must be between 10 and 2000 characters", None

        if milestone_id is not None:
            milestone = self.db.get(OrderMilestone, milestone_id)
            if not milestone or milestone.orderID != order.orderID:
                return False, "Milestone does not belong to this order", None

        if any(d.status in ACTIVE_DISPUTE_STATUSES for d in order.disputes):
            return False, "An active dispute already exists for this order", None

        now = utcnow()
        priority = calculate_priority(order.total_amount, category_enum)
        dispute = Dispute(
            orderID=order.orderID,
            milestoneID=milestone_id,
            created_by=raised_by,
            category=category_enum,
            title=clean_title,
            description=clean_description,
            status=DisputeStatus.OPEN,
            priority=priority,
            sla_deadline=sla_deadline(priority, now),
            created_at=now,
        )
        self.db.add(dispute)
        self.db.commit()

        increment_counter(
            "disputes_created_total",
            labels={"category": category_enum.value, "priority": priority.value},
        )
        record_event(
            "dispute_created",
            {"dispute_id": dispute.disputeID, "order_id": order.orderID, "priority": priority.value},
        )
        self.logger.info(
            "Dispute created",
            extra={"dispute_id": dispute.disputeID, "order_id": order.orderID, "category": category_enum.value},
        )
        publish_dispute_update(
            order,
            dispute.disputeID,
            f"Dispute opened on order {order.order_number}",
            f"A dispute was opened on order #{order.order_number}: {clean_title}. Our team will review it shortly.",
            exclude_user_id=raised_by,
        )
        return True, "Dispute created", dispute

    def list_disputes(self, filters: Optional[Dict[str, Any]] = None) -> List[Dispute]:
        filters = filters or {}
        query = self.db.query(Dispute).join(Order, Dispute.orderID == Order.orderID)
        if filters.get("status"):
            query = query.filter(Dispute.status == DisputeStatus(filters["status"]))
        if filters.get("priority"):
            query = query.filter(Dispute.priority == DisputePriority(filters["priority"]))
        if filters.get("category"):
            query = query.filter(Dispute.category == DisputeCategory(filters["category"]))
        if filters.get("assigned_admin"):
            query = query.filter(Dispute.assigned_admin == int(filters["assigned_admin"]))
        if filters.get("customer_id"):
            query = query.filter(Order.customerID == int(filters["customer_id"]))
        if filters.get("tailor_id"):
            query = query.filter(Order.tailorID == int(filters["tailor_id"]))
        if filters.get("overdue"):
            query = query.filter(
                Dispute.status.in_(ACTIVE_DISPUTE_STATUSES),
                Dispute.sla_deadline < utcnow(),
            )
        limit = min(int(filters.get("limit", 50)), 200)
        offset = int(filters.get("offset", 0))
        return (
            query.order_by(desc(Dispute.created_at), desc(Dispute.disputeID))
            .offset(offset)
            .limit(limit)
            .all()
        )

    def disputes_for_user(self, user: User) -> List[Dispute]:
        return (
            self.db.query(Dispute)
            .join(Order, Dispute.orderID == Order.orderID)
            .filter((Order.customerID == user.userID) | (Order.tailorID == user.userID))
            .order_by(desc(Dispute.created_at), desc(Dispute.disputeID))
            .all()
        )

    # ------------------------------------------------------------------
    # Triage
    # ------------------------------------------------------------------
    def assign_dispute(self, dispute_id: int, admin_id: int) -> Tuple[bool, str, Optional[Dispute]]:
        dispute = self.get_dispute(dispute_id)
        if not dispute:
            return False, "Dispute not found", None
        admin = self.db.get(User, admin_id)
        if not admin or not admin.is_admin:
            return False, "Disputes can only be assigned to admins", None
        if not dispute.is_active:
            return False, "Dispute is no longer active", dispute

        dispute.assigned_admin = admin_id
        if dispute.status != DisputeStatus.IN_PROGRESS:
            dispute.transition_to(DisputeStatus.IN_PROGRESS)
        self.db.commit()
        increment_counter("disputes_assigned_total")
        self.logger.info("Dispute assigned", extra={"dispute_id": dispute_id, "admin_id": admin_id})
        return True, "Dispute assigned", dispute

    def escalate_dispute(
        self,
        dispute_id: int,
        actor_id: Optional[int],
        reason: str,
        now: Optional[datetime] = None,
    ) -> Tuple[bool, str, Optional[Dispute]]:
        dispute = self.get_dispute(dispute_id)
        if not dispute:
            return False, "Dispute not found", None
        if not dispute.is_active:
            return False, "Dispute is no longer active", dispute

        now = now or utcnow()
        old_priority = DisputePriority(dispute.priority)
        new_priority = next_priority(old_priority)
        dispute.priority = new_priority
        dispute.transition_to(DisputeStatus.ESCALATED)
        dispute.sla_deadline = sla_deadline(new_priority, now)
        self.db.add(DisputeMessage(
            disputeID=dispute.disputeID,
            sender_id=actor_id,
            sender_role=SenderRole.ADMIN,
            message=sanitize(f"Dispute escalated from {old_priority.value} to {new_priority.value}. Reason: {reason}")[:1000],
            is_internal_note=True,
            created_at=now,
        ))
        self.db.commit()

        increment_counter("disputes_escalated_total", labels={"priority": new_priority.value})
        record_event(
            "dispute_escalated",
            {"dispute_id": dispute.disputeID, "from": old_priority.value, "to": new_priority.value},
        )
        self.logger.warning(
            "Dispute escalated",
            extra={"dispute_id": dispute.disputeID, "from": old_priority.value, "to": new_priority.value},
        )
        return True, f"Dispute escalated to {new_priority.value}", dispute

    def auto_escalate_stale_disputes(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Escalate OPEN disputes nobody has picked up within the escalation window."""
        now = now or utcnow()
        cutoff = now - timedelta(hours=self.config.DISPUTE_AUTO_ESCALATION_HOURS)
        stale = (
            self.db.query(Dispute)
            .filter(
                Dispute.status == DisputeStatus.OPEN,
                Dispute.assigned_admin.is_(None),
                Dispute.created_at < cutoff,
            )
            .all()
        )
        escalated = []
        for dispute in stale:
            success, _, _ = self.escalate_dispute(
                dispute.disputeID,
                actor_id=None,
                reason=f"Unassigned for more than {self.config.DISPUTE_AUTO_ESCALATION_HOURS} hours",
                now=now,
            )
            if success:
                escalated.append(dispute.disputeID)
        return {"checked": len(stale), "escalated": len(escalated), "dispute_ids": escalated}

    # ------------------------------------------------------------------
    # Evidence & messages
    # ------------------------------------------------------------------
    def add_evidence(
        self,
        dispute_id: int,
        uploader_id: int,
        file_url: str,
        file_name: str,
        file_type: str,
        file_size: int,
        description: Optional[str] = None,
    ) -> Tuple[bool, str, Optional[DisputeEvidence]]:
        dispute = self.get_dispute(dispute_id)
        if not dispute:
            return False, "Dispute not found", None
        uploader = self.db.get(User, uploader_id)
        if not uploader or self.sender_role(dispute.order, uploader) is None:
            return False, "Not allowed to add evidence to this dispute", None
        if not dispute.is_active:
            return False, "Evidence can only be added to active disputes", None
        if len(dispute.evidence) >= self.config.DISPUTE_MAX_EVIDENCE_FILES:
            return False, f"A dispute can have at most {self.config.DISPUTE_MAX_EVIDENCE_FILES} evidence files", None
        if (file_type or "").lower() not in self.config.DISPUTE_ALLOWED_FILE_TYPES:
            return False, f"File type {file_type} is not allowed", None
        if not file_size or int(file_size) <= 0:
            return False, "File is empty", None
        if int(file_size) > self.config.DISPUTE_MAX_FILE_SIZE_BYTES:
            return False, f"File exceeds the {self.config.DISPUTE_MAX_FILE_SIZE_BYTES} byte limit", None
        if not file_url or not file_name:
            return False, "File URL and name are required", None

        evidence = DisputeEvidence(
            disputeID=dispute.disputeID,
            uploaded_by=uploader_id,
            file_url=file_url,
            file_name=sanitize(file_name)[:255],
            file_type=file_type.lower(),
            file_size=int(file_size),
            description=sanitize(description) or None,
        )
        self.db.add(evidence)
        self.db.commit()
        increment_counter("dispute_evidence_uploaded_total")
        return True, "Evidence added", evidence

    def send_message(
        self,
        dispute_id: int,
        sender_id: int,
        message: str,
        attachments: Optional[Iterable[str]] = None,
        is_internal_note: bool = False,
    ) -> Tuple[bool, str, Optional[DisputeMessage]]:
        dispute = self.get_dispute(dispute_id)
        if not dispute:
            return False, "Dispute not found", None
        sender = self.db.get(User, sender_id)
        role = self.sender_role(dispute.order, sender) if sender else None
        if role is None:
            return False, "Not allowed to post on this dispute", None
        if is_internal_note and role != SenderRole.ADMIN:
            return False, "Only admins can post internal notes", None
        if dispute.status == DisputeStatus.CLOSED:
            return False, "Dispute is closed", None

        text = sanitize(message)
        if not MESSAGE_LENGTH[0] <= len(text) <= MESSAGE_LENGTH[1]:
            return False, "Message must be between 1 and 1000 characters", None

        entry = DisputeMessage(
            disputeID=dispute.disputeID,
            sender_id=sender_id,
            sender_role=role,
            message=text,
            attachments=[str(item) for item in (attachments or [])],
            is_internal_note=bool(is_internal_note),
        )
        self.db.add(entry)
        self.db.commit()
        increment_counter("dispute_messages_total", labels={"role": role.value})

        if not entry.is_internal_note:
            publish_dispute_update(
                dispute.order,
                dispute.disputeID,
                f"New message on dispute #{dispute.disputeID}",
                f"New message on the dispute for order #{dispute.order.order_number}: {text[:140]}",
                exclude_user_id=sender_id,
            )
        return True, "Message sent", entry

    def get_messages(self, dispute: Dispute, viewer: User) -> List[Dict[str, Any]]:
        """Messages visible to ``viewer``; internal notes are admin-only."""
        include_internal = viewer.is_admin
        return [m.to_dict() for m in dispute.messages if include_internal or not m.is_internal_note]

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------
    def get_dispute_analytics(
        self,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        query = self.db.query(Dispute)
        if date_from:
            query = query.filter(Dispute.created_at >= date_from)
        if date_to:
            query = query.filter(Dispute.created_at <= date_to)
        disputes = query.all()

        by_category = Counter(DisputeCategory(d.category).value for d in disputes)
        by_status = Counter(DisputeStatus(d.status).value for d in disputes)
        by_priority = Counter(DisputePriority(d.priority).value for d in disputes)
        by_resolution = Counter(d.resolution_type.value for d in disputes if d.resolution_type)
        by_month = Counter(as_utc(d.created_at).strftime("%Y-%m") for d in disputes if d.created_at)

        resolution_hours = [
            (as_utc(d.resolved_at) - as_utc(d.created_at)).total_seconds() / 3600
            for d in disputes
            if d.resolved_at and d.created_at
        ]
        average = round(sum(resolution_hours) / len(resolution_hours), 2) if resolution_hours else 0.0
        now = utcnow()
        return {
            "total_disputes": len(disputes),
            "open_disputes": sum(1 for d in disputes if d.is_active),
            "overdue_disputes": sum(1 for d in disputes if d.is_overdue(now)),
            "by_category": dict(by_category),
            "by_status": dict(by_status),
            "by_priority": dict(by_priority),
            "resolution_types": dict(by_resolution),
            "average_resolution_hours": average,
            "disputes_by_month": dict(sorted(by_month.items())),
        }
