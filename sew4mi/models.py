# sew4mi/models.py
from enum import Enum
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    ForeignKey,
    Boolean,
    Text,
    JSON,
    UniqueConstraint,
    Enum as SAEnum,
)
from sqlalchemy.orm import relationship

# Use a single, shared Base for all models
from sew4mi.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EscrowStage(str, Enum):
    DEPOSIT = "DEPOSIT"
    FITTING = "FITTING"
    FINAL = "FINAL"
    RELEASED = "RELEASED"


class OrderStatus(str, Enum):
    PENDING_DEPOSIT = "PENDING_DEPOSIT"
    IN_PROGRESS = "IN_PROGRESS"
    READY_FOR_DELIVERY = "READY_FOR_DELIVERY"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class EscrowTransactionType(str, Enum):
    DEPOSIT = "DEPOSIT"
    FITTING_PAYMENT = "FITTING_PAYMENT"
    FINAL_PAYMENT = "FINAL_PAYMENT"
    REFUND = "REFUND"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class PaymentType(str, Enum):
    DEPOSIT = "DEPOSIT"
    FITTING_PAYMENT = "FITTING_PAYMENT"
    FINAL_PAYMENT = "FINAL_PAYMENT"
    REFUND = "REFUND"


class MobileNetwork(str, Enum):
    MTN = "MTN"
    VODAFONE = "VODAFONE"
    AIRTELTIGO = "AIRTELTIGO"


class MilestoneStage(str, Enum):
    FABRIC_SELECTED = "FABRIC_SELECTED"
    CUTTING_STARTED = "CUTTING_STARTED"
    INITIAL_ASSEMBLY = "INITIAL_ASSEMBLY"
    FITTING_READY = "FITTING_READY"
    ADJUSTMENTS_COMPLETE = "ADJUSTMENTS_COMPLETE"
    FINAL_PRESSING = "FINAL_PRESSING"
    READY_FOR_DELIVERY = "READY_FOR_DELIVERY"


class MilestoneApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class MilestoneApprovalAction(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    AUTO_APPROVED = "AUTO_APPROVED"


class DisputeCategory(str, Enum):
    QUALITY_ISSUE = "QUALITY_ISSUE"
    DELIVERY_DELAY = "DELIVERY_DELAY"
    PAYMENT_PROBLEM = "PAYMENT_PROBLEM"
    COMMUNICATION_ISSUE = "COMMUNICATION_ISSUE"
    MILESTONE_REJECTION = "MILESTONE_REJECTION"
    OTHER = "OTHER"


class DisputeStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class DisputePriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ResolutionType(str, Enum):
    FULL_REFUND = "FULL_REFUND"
    PARTIAL_REFUND = "PARTIAL_REFUND"
    ORDER_COMPLETION = "ORDER_COMPLETION"
    NO_ACTION = "NO_ACTION"


class SenderRole(str, Enum):
    ADMIN = "ADMIN"
    CUSTOMER = "CUSTOMER"
    TAILOR = "TAILOR"


class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ScheduledNotificationStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


ACTIVE_DISPUTE_STATUSES = (DisputeStatus.OPEN, DisputeStatus.IN_PROGRESS, DisputeStatus.ESCALATED)


class User(Base):
    __tablename__ = 'User'
    userID = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(255), unique=True, nullable=False)
    passwordHash = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, nullable=False)
    full_name = Column(String(255))
    phone = Column(String(20))
    role = Column(String(50), default='customer', nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    customer_orders = relationship("Order", back_populates="customer", foreign_keys="Order.customerID")
    tailor_orders = relationship("Order", back_populates="tailor", foreign_keys="Order.tailorID")

    @property
    def is_admin(self) -> bool:
        return (self.role or '').lower() == 'admin'

    @property
    def is_tailor(self) -> bool:
        return (self.role or '').lower() == 'tailor'

    @property
    def display_name(self) -> str:
        return self.full_name or self.username

    def to_dict(self) -> dict:
        return {
            "id": self.userID,
            "username": self.username,
            "email": self.email,
            "full_name": self.full_name,
            "phone": self.phone,
            "role": self.role,
        }


class Order(Base):
    __tablename__ = 'Order'

    orderID = Column(Integer, primary_key=True, autoincrement=True)
    reference = Column(String(32), unique=True, nullable=False, default=lambda: uuid4().hex)
    customerID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    tailorID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    garment_type = Column(String(100), nullable=False)
    description = Column(Text)
    group_reference = Column(String(32), index=True)
    status = Column(
        SAEnum(OrderStatus, name="order_status", native_enum=False, validate_strings=True),
        default=OrderStatus.PENDING_DEPOSIT,
        nullable=False,
    )
    escrow_stage = Column(
        SAEnum(EscrowStage, name="escrow_stage", native_enum=False, validate_strings=True),
        default=EscrowStage.DEPOSIT,
        nullable=False,
    )
    original_amount = Column(Numeric(10, 2))
    discount_amount = Column(Numeric(10, 2), default=Decimal("0.00"), nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    deposit_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    fitting_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    final_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    funded_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    escrow_balance = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    refunded_amount = Column(Numeric(10, 2), nullable=False, default=Decimal("0.00"))
    deposit_paid_at = Column(DateTime(timezone=True))
    fitting_paid_at = Column(DateTime(timezone=True))
    final_paid_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    customer = relationship("User", back_populates="customer_orders", foreign_keys=[customerID])
    tailor = relationship("User", back_populates="tailor_orders", foreign_keys=[tailorID])
    escrow_transactions = relationship(
        "EscrowTransaction",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="EscrowTransaction.escrowTransactionID",
    )
    payment_transactions = relationship("PaymentTransaction", back_populates="order", cascade="all, delete-orphan")
    milestones = relationship("OrderMilestone", back_populates="order", cascade="all, delete-orphan")
    disputes = relationship("Dispute", back_populates="order")

    _VALID_STAGE_TRANSITIONS = {
        EscrowStage.DEPOSIT: {EscrowStage.FITTING},
        EscrowStage.FITTING: {EscrowStage.FINAL},
        EscrowStage.FINAL: {EscrowStage.RELEASED},
        EscrowStage.RELEASED: set(),
    }

    @property
    def order_number(self) -> str:
        return (self.reference or str(self.orderID))[-8:].upper()

    @property
    def released_amount(self) -> Decimal:
        released = Decimal("0.00")
        if self.deposit_paid_at:
            released += Decimal(self.deposit_amount or 0)
        if self.fitting_paid_at:
            released += Decimal(self.fitting_amount or 0)
        if self.final_paid_at:
            released += Decimal(self.final_amount or 0)
        return released

    @property
    def is_closed(self) -> bool:
        return self.status in {OrderStatus.COMPLETED, OrderStatus.CANCELLED}

    def can_advance_to(self, new_stage: EscrowStage) -> bool:
        allowed = self._VALID_STAGE_TRANSITIONS.get(EscrowStage(self.escrow_stage), set())
        return new_stage in allowed

    def advance_stage(self, new_stage: EscrowStage) -> None:
        if not self.can_advance_to(new_stage):
            raise ValueError(f"Invalid escrow stage transition from {self.escrow_stage} to {new_stage}")
        self.escrow_stage = new_stage

    def has_active_dispute(self) -> bool:
        return any(d.status in ACTIVE_DISPUTE_STATUSES for d in self.disputes)

    def to_dict(self) -> dict:
        return {
            "id": self.orderID,
            "order_number": self.order_number,
            "customer_id": self.customerID,
            "tailor_id": self.tailorID,
            "garment_type": self.garment_type,
            "description": self.description,
            "group_reference": self.group_reference,
            "status": OrderStatus(self.status).value,
            "escrow_stage": EscrowStage(self.escrow_stage).value,
            "original_amount": float(self.original_amount) if self.original_amount is not None else None,
            "discount_amount": float(self.discount_amount or 0),
            "total_amount": float(self.total_amount),
            "deposit_amount": float(self.deposit_amount),
            "fitting_amount": float(self.fitting_amount),
            "final_amount": float(self.final_amount),
            "escrow_balance": float(self.escrow_balance),
            "refunded_amount": float(self.refunded_amount or 0),
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
        }


class PaymentTransaction(Base):
    __tablename__ = 'PaymentTransaction'

    paymentTransactionID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False)
    transaction_id = Column(String(64), unique=True, nullable=False)
    hubtel_transaction_id = Column(String(128), index=True)
    payment_type = Column(
        SAEnum(PaymentType, name="payment_type", native_enum=False, validate_strings=True),
        nullable=False,
    )
    amount = Column(Numeric(10, 2), nullable=False)
    provider = Column(String(20), nullable=False, default="HUBTEL")
    payment_method = Column(String(30), nullable=False, default="MOBILE_MONEY")
    customer_phone = Column(String(20))
    network = Column(
        SAEnum(MobileNetwork, name="mobile_network", native_enum=False, validate_strings=True),
    )
    status = Column(
        SAEnum(PaymentStatus, name="payment_status", native_enum=False, validate_strings=True),
        default=PaymentStatus.PENDING,
        nullable=False,
    )
    failure_reason = Column(Text)
    webhook_received = Column(Boolean, default=False, nullable=False)
    provider_payload = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime(timezone=True))

    order = relationship("Order", back_populates="payment_transactions")

    def mark_completed(self, hubtel_reference: str | None = None) -> None:
        self.status = PaymentStatus.SUCCESS
        if hubtel_reference:
            self.hubtel_transaction_id = hubtel_reference
        self.completed_at = utcnow()
        self.failure_reason = None

    def mark_failed(self, reason: str, status: PaymentStatus = PaymentStatus.FAILED) -> None:
        self.status = status
        self.failure_reason = reason

    def to_dict(self) -> dict:
        return {
            "id": self.paymentTransactionID,
            "order_id": self.orderID,
            "transaction_id": self.transaction_id,
            "hubtel_transaction_id": self.hubtel_transaction_id,
            "payment_type": PaymentType(self.payment_type).value,
            "amount": float(self.amount),
            "status": PaymentStatus(self.status).value,
            "network": MobileNetwork(self.network).value if self.network else None,
            "failure_reason": self.failure_reason,
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
        }


class EscrowTransaction(Base):
    __tablename__ = 'EscrowTransaction'

    escrowTransactionID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False, index=True)
    milestoneID = Column(Integer, ForeignKey('OrderMilestone.milestoneID'), index=True)
    paymentTransactionID = Column(Integer, ForeignKey('PaymentTransaction.paymentTransactionID'))
    transaction_type = Column(
        SAEnum(EscrowTransactionType, name="escrow_transaction_type", native_enum=False, validate_strings=True),
        nullable=False,
    )
    amount = Column(Numeric(10, 2), nullable=False)
    from_stage = Column(SAEnum(EscrowStage, name="escrow_from_stage", native_enum=False, validate_strings=True))
    to_stage = Column(SAEnum(EscrowStage, name="escrow_to_stage", native_enum=False, validate_strings=True))
    approved_by = Column(Integer, ForeignKey('User.userID'))
    notes = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    order = relationship("Order", back_populates="escrow_transactions")
    payment_transaction = relationship("PaymentTransaction")

    def to_dict(self) -> dict:
        return {
            "id": self.escrowTransactionID,
            "type": EscrowTransactionType(self.transaction_type).value,
            "amount": float(self.amount),
            "from_stage": EscrowStage(self.from_stage).value if self.from_stage else None,
            "to_stage": EscrowStage(self.to_stage).value if self.to_stage else None,
            "milestone_id": self.milestoneID,
            "approved_by": self.approved_by,
            "notes": self.notes,
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
        }


class OrderMilestone(Base):
    __tablename__ = 'OrderMilestone'
    __table_args__ = (UniqueConstraint('orderID', 'milestone', name='uq_order_milestone'),)

    milestoneID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False, index=True)
    milestone = Column(
        SAEnum(MilestoneStage, name="milestone_stage", native_enum=False, validate_strings=True),
        nullable=False,
    )
    photo_url = Column(String(512))
    notes = Column(Text)
    verified_by = Column(Integer, ForeignKey('User.userID'))
    verified_at = Column(DateTime(timezone=True))
    approval_status = Column(
        SAEnum(MilestoneApprovalStatus, name="milestone_approval_status", native_enum=False, validate_strings=True),
        default=MilestoneApprovalStatus.PENDING,
        nullable=False,
    )
    customer_reviewed_at = Column(DateTime(timezone=True))
    auto_approval_deadline = Column(DateTime(timezone=True), index=True)
    rejection_reason = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    order = relationship("Order", back_populates="milestones")
    approvals = relationship(
        "MilestoneApproval",
        back_populates="milestone",
        cascade="all, delete-orphan",
        order_by="MilestoneApproval.approvalID",
    )

    def is_past_deadline(self, now: datetime | None = None) -> bool:
        deadline = as_utc(self.auto_approval_deadline)
        if deadline is None:
            return False
        return (now or utcnow()) >= deadline

    def to_dict(self) -> dict:
        return {
            "id": self.milestoneID,
            "order_id": self.orderID,
            "milestone": MilestoneStage(self.milestone).value,
            "photo_url": self.photo_url,
            "notes": self.notes,
            "verified_at": as_utc(self.verified_at).isoformat() if self.verified_at else None,
            "approval_status": MilestoneApprovalStatus(self.approval_status).value,
            "customer_reviewed_at": (
                as_utc(self.customer_reviewed_at).isoformat() if self.customer_reviewed_at else None
            ),
            "auto_approval_deadline": (
                as_utc(self.auto_approval_deadline).isoformat() if self.auto_approval_deadline else None
            ),
            "rejection_reason": self.rejection_reason,
        }


class MilestoneApproval(Base):
    __tablename__ = 'MilestoneApproval'

    approvalID = Column(Integer, primary_key=True, autoincrement=True)
    milestoneID = Column(Integer, ForeignKey('OrderMilestone.milestoneID'), nullable=False, index=True)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False, index=True)
    customerID = Column(Integer, ForeignKey('User.userID'))
    action = Column(
        SAEnum(MilestoneApprovalAction, name="milestone_approval_action", native_enum=False, validate_strings=True),
        nullable=False,
    )
    comment = Column(Text)
    reviewed_at = Column(DateTime(timezone=True), default=utcnow)

    milestone = relationship("OrderMilestone", back_populates="approvals")

    def to_dict(self) -> dict:
        return {
            "id": self.approvalID,
            "milestone_id": self.milestoneID,
            "order_id": self.orderID,
            "customer_id": self.customerID,
            "action": MilestoneApprovalAction(self.action).value,
            "comment": self.comment,
            "reviewed_at": as_utc(self.reviewed_at).isoformat() if self.reviewed_at else None,
        }


class Dispute(Base):
    __tablename__ = 'Dispute'

    disputeID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False, index=True)
    milestoneID = Column(Integer, ForeignKey('OrderMilestone.milestoneID'))
    created_by = Column(Integer, ForeignKey('User.userID'), nullable=False)
    category = Column(
        SAEnum(DisputeCategory, name="dispute_category", native_enum=False, validate_strings=True),
        nullable=False,
    )
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    status = Column(
        SAEnum(DisputeStatus, name="dispute_status", native_enum=False, validate_strings=True),
        default=DisputeStatus.OPEN,
        nullable=False,
    )
    priority = Column(
        SAEnum(DisputePriority, name="dispute_priority", native_enum=False, validate_strings=True),
        default=DisputePriority.MEDIUM,
        nullable=False,
    )
    assigned_admin = Column(Integer, ForeignKey('User.userID'))
    sla_deadline = Column(DateTime(timezone=True))
    resolution_type = Column(
        SAEnum(ResolutionType, name="dispute_resolution_type", native_enum=False, validate_strings=True),
    )
    resolution = Column(Text)
    resolved_by = Column(Integer, ForeignKey('User.userID'))
    resolved_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="disputes")
    evidence = relationship("DisputeEvidence", back_populates="dispute", cascade="all, delete-orphan")
    messages = relationship(
        "DisputeMessage",
        back_populates="dispute",
        cascade="all, delete-orphan",
        order_by="DisputeMessage.messageID",
    )
    resolutions = relationship("DisputeResolution", back_populates="dispute", cascade="all, delete-orphan")

    _VALID_TRANSITIONS = {
        DisputeStatus.OPEN: {
            DisputeStatus.IN_PROGRESS,
            DisputeStatus.ESCALATED,
            DisputeStatus.RESOLVED,
            DisputeStatus.CLOSED,
        },
        DisputeStatus.IN_PROGRESS: {DisputeStatus.ESCALATED, DisputeStatus.RESOLVED, DisputeStatus.CLOSED},
        DisputeStatus.ESCALATED: {
            DisputeStatus.IN_PROGRESS,
            DisputeStatus.ESCALATED,
            DisputeStatus.RESOLVED,
            DisputeStatus.CLOSED,
        },
        DisputeStatus.RESOLVED: {DisputeStatus.CLOSED},
        DisputeStatus.CLOSED: set(),
    }

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_DISPUTE_STATUSES

    def is_overdue(self, now: datetime | None = None) -> bool:
        deadline = as_utc(self.sla_deadline)
        return bool(deadline and self.is_active and deadline < (now or utcnow()))

    def can_transition(self, new_status: DisputeStatus) -> bool:
        allowed = self._VALID_TRANSITIONS.get(DisputeStatus(self.status), set())
        return new_status in allowed

    def transition_to(self, new_status: DisputeStatus) -> None:
        if not self.can_transition(new_status):
            raise ValueError(f"Invalid dispute status transition from {self.status} to {new_status}")
        self.status = new_status

    def to_dict(self) -> dict:
        return {
            "id": self.disputeID,
            "order_id": self.orderID,
            "milestone_id": self.milestoneID,
            "created_by": self.created_by,
            "category": DisputeCategory(self.category).value,
            "title": self.title,
            "description": self.description,
            "status": DisputeStatus(self.status).value,
            "priority": DisputePriority(self.priority).value,
            "assigned_admin": self.assigned_admin,
            "sla_deadline": as_utc(self.sla_deadline).isoformat() if self.sla_deadline else None,
            "is_overdue": self.is_overdue(),
            "resolution_type": ResolutionType(self.resolution_type).value if self.resolution_type else None,
            "resolution": self.resolution,
            "resolved_by": self.resolved_by,
            "resolved_at": as_utc(self.resolved_at).isoformat() if self.resolved_at else None,
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
        }


class DisputeEvidence(Base):
    __tablename__ = 'DisputeEvidence'

    evidenceID = Column(Integer, primary_key=True, autoincrement=True)
    disputeID = Column(Integer, ForeignKey('Dispute.disputeID'), nullable=False, index=True)
    uploaded_by = Column(Integer, ForeignKey('User.userID'), nullable=False)
    file_url = Column(String(512), nullable=False)
    file_name = Column(String(255), nullable=False)
    file_type = Column(String(100), nullable=False)
    file_size = Column(Integer, nullable=False)
    description = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    dispute = relationship("Dispute", back_populates="evidence")

    def to_dict(self) -> dict:
        return {
            "id": self.evidenceID,
            "dispute_id": self.disputeID,
            "uploaded_by": self.uploaded_by,
            "file_url": self.file_url,
            "file_name": self.file_name,
            "file_type": self.file_type,
            "file_size": self.file_size,
            "description": self.description,
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
        }


class DisputeMessage(Base):
    __tablename__ = 'DisputeMessage'

    messageID = Column(Integer, primary_key=True, autoincrement=True)
    disputeID = Column(Integer, ForeignKey('Dispute.disputeID'), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey('User.userID'))
    sender_role = Column(
        SAEnum(SenderRole, name="dispute_sender_role", native_enum=False, validate_strings=True),
        nullable=False,
    )
    message = Column(Text, nullable=False)
    attachments = Column(JSON, default=list)
    is_internal_note = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    dispute = relationship("Dispute", back_populates="messages")

    def to_dict(self) -> dict:
        return {
            "id": self.messageID,
            "dispute_id": self.disputeID,
            "sender_id": self.sender_id,
            "sender_role": SenderRole(self.sender_role).value,
            "message": self.message,
            "attachments": list(self.attachments or []),
            "is_internal_note": bool(self.is_internal_note),
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
        }


class DisputeResolution(Base):
    __tablename__ = 'DisputeResolution'

    resolutionID = Column(Integer, primary_key=True, autoincrement=True)
    disputeID = Column(Integer, ForeignKey('Dispute.disputeID'), nullable=False, index=True)
    resolution_type = Column(
        SAEnum(ResolutionType, name="resolution_type", native_enum=False, validate_strings=True),
        nullable=False,
    )
    outcome = Column(Text, nullable=False)
    reason_code = Column(String(50), nullable=False)
    refund_amount = Column(Numeric(10, 2))
    admin_notes = Column(Text)
    resolved_by = Column(Integer, ForeignKey('User.userID'), nullable=False)
    paymentTransactionID = Column(Integer, ForeignKey('PaymentTransaction.paymentTransactionID'))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    dispute = relationship("Dispute", back_populates="resolutions")

    def to_dict(self) -> dict:
        return {
            "id": self.resolutionID,
            "dispute_id": self.disputeID,
            "resolution_type": ResolutionType(self.resolution_type).value,
            "outcome": self.outcome,
            "reason_code": self.reason_code,
            "refund_amount": float(self.refund_amount) if self.refund_amount is not None else None,
            "admin_notes": self.admin_notes,
            "resolved_by": self.resolved_by,
            "payment_transaction_id": self.paymentTransactionID,
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
        }


class ScheduledNotification(Base):
    __tablename__ = 'ScheduledNotification'

    notificationID = Column(Integer, primary_key=True, autoincrement=True)
    orderID = Column(Integer, ForeignKey('Order.orderID'), nullable=False, index=True)
    recipientID = Column(Integer, ForeignKey('User.userID'), nullable=False)
    recipient_phone = Column(String(20))
    notification_type = Column(String(50), nullable=False)
    stage = Column(SAEnum(EscrowStage, name="notification_stage", native_enum=False, validate_strings=True))
    message = Column(Text, nullable=False)
    priority = Column(
        SAEnum(
            NotificationPriority,
            name="notification_priority",
            native_enum=False,
            validate_strings=True,
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
        ),
        default=NotificationPriority.MEDIUM,
        nullable=False,
    )
    scheduled_for = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(
        SAEnum(ScheduledNotificationStatus, name="scheduled_notification_status", native_enum=False, validate_strings=True),
        default=ScheduledNotificationStatus.PENDING,
        nullable=False,
    )
    attempts = Column(Integer, default=0, nullable=False)
    last_error = Column(Text)
    sent_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=utcnow)

    def mark_sent(self) -> None:
        self.status = ScheduledNotificationStatus.SENT
        self.sent_at = utcnow()
        self.last_error = None

    def mark_attempt_failed(self, reason: str, max_attempts: int) -> None:
        self.attempts = (self.attempts or 0) + 1
        self.last_error = reason
        if self.attempts >= max_attempts:
            self.status = ScheduledNotificationStatus.FAILED

    def to_dict(self) -> dict:
        return {
            "id": self.notificationID,
            "order_id": self.orderID,
            "recipient_id": self.recipientID,
            "type": self.notification_type,
            "stage": EscrowStage(self.stage).value if self.stage else None,
            "message": self.message,
            "priority": NotificationPriority(self.priority).value,
            "scheduled_for": as_utc(self.scheduled_for).isoformat() if self.scheduled_for else None,
            "status": ScheduledNotificationStatus(self.status).value,
            "attempts": self.attempts,
        }
