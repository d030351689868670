"""
Order notifications.

Every escrow and milestone event lands in the recipient's in-app inbox and
is pushed to their phone through the configured messaging provider. The
inbox is a process-local publish/subscribe store; scheduled reminders are
persisted separately by the escrow reminder service.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from itertools import count
from threading import Lock
from typing import Any, Dict, List, Optional

from sew4mi.models import EscrowStage, MilestoneStage, NotificationPriority, Order, User
from sew4mi.observability import increment_counter, record_event
from sew4mi.services.messaging_provider import (
    MessagingError,
    MessagingProvider,
    build_messaging_provider,
)

logger = logging.getLogger(__name__)

MILESTONE_EVENTS = ("milestone_reached", "payment_released", "approval_needed")


@dataclass
class Notification:
    id: str
    user_id: int
    notification_type: str
    title: str
    message: str
    order_id: Optional[int] = None
    priority: str = NotificationPriority.MEDIUM.value
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    read: bool = False
    read_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.notification_type,
            "title": self.title,
            "message": self.message,
            "order_id": self.order_id,
            "priority": self.priority,
            "created_at": self.created_at.isoformat(),
            "read": self.read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
        }


@dataclass
class OutboundMessage:
    """A message addressed to one party of an order."""
    notification_type: str
    recipient: User
    order_id: int
    stage: Optional[EscrowStage]
    message: str
    priority: NotificationPriority


class NotificationService:
    """
    Per-user in-app inbox shared across the process.

    Subscribers are the customer and tailor of each order; publishers are the
    escrow, milestone and dispute services. The newest notification is kept
    first and each inbox is capped at 50 entries.
    """

    _instance: Optional["NotificationService"] = None
    _lock: Lock = Lock()

    def __new__(cls) -> "NotificationService":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return
        self._inbox: Dict[int, List[Notification]] = defaultdict(list)
        self._ids = count(1)
        self._max_per_user = 50
        self._provider: MessagingProvider = build_messaging_provider()
        self.logger = logging.getLogger(__name__)
        self._initialized = True

    @property
    def provider(self) -> MessagingProvider:
        return self._provider

    def use_provider(self, provider: MessagingProvider) -> None:
        self._provider = provider

    def add_notification(
        self,
        user_id: int,
        notification_type: str,
        title: str,
        message: str,
        order_id: Optional[int] = None,
        priority: NotificationPriority | str = NotificationPriority.MEDIUM,
    ) -> Notification:
        with self._lock:
            notification = Notification(
                id=f"notif_{next(self._ids)}",
                user_id=user_id,
                notification_type=notification_type,
                title=title,
                message=message,
                order_id=order_id,
                priority=NotificationPriority(priority).value,
            )
            inbox = self._inbox[user_id]
            inbox.insert(0, notification)
            del inbox[self._max_per_user:]

        increment_counter("notifications_created_total", labels={"type": notification_type})
        self.logger.info("Notification created for user %d: %s", user_id, title)
        return notification

    def deliver(self, outbound: OutboundMessage, title: str) -> Notification:
        """Store ``outbound`` in the recipient's inbox and push it to their phone."""
        notification = self.add_notification(
            user_id=outbound.recipient.userID,
            notification_type=outbound.notification_type,
            title=title,
            message=outbound.message,
            order_id=outbound.order_id,
            priority=outbound.priority,
        )
        self.push(outbound.recipient.phone, outbound.message, outbound.notification_type)
        return notification

    def push(self, phone: Optional[str], text: str, notification_type: str) -> bool:
        if not phone:
            increment_counter("notifications_push_skipped_total", labels={"type": notification_type})
            return False
        try:
            self._provider.send_message(phone, text)
        except MessagingError as exc:
            increment_counter("notifications_push_failed_total", labels={"type": notification_type})
            self.logger.warning(
                "Push delivery failed",
                extra={"type": notification_type, "reason": str(exc)},
            )
            return False
        return True

    def get_notifications(self, user_id: int, unread_only: bool = False, limit: int = 20) -> List[Dict[str, Any]]:
        notifications = self._inbox.get(user_id, [])
        if unread_only:
            notifications = [n for n in notifications if not n.read]
        return [n.to_dict() for n in notifications[:limit]]

    def get_unread_count(self, user_id: int) -> int:
        return sum(1 for n in self._inbox.get(user_id, []) if not n.read)

    def mark_as_read(self, user_id: int, notification_id: str) -> bool:
        for notification in self._inbox.get(user_id, []):
            if notification.id == notification_id:
                notification.read = True
                notification.read_at = datetime.now(timezone.utc)
                return True
        return False

    def mark_all_as_read(self, user_id: int) -> int:
        now = datetime.now(timezone.utc)
        marked = 0
        for notification in self._inbox.get(user_id, []):
            if not notification.read:
                notification.read = True
                notification.read_at = now
                marked += 1
        return marked

    def clear_notifications(self, user_id: Optional[int] = None) -> None:
        """Drop one user's inbox, or every inbox when ``user_id`` is None."""
        with self._lock:
            if user_id is None:
                self._inbox.clear()
            else:
                self._inbox[user_id] = []


# -----------------------------------------------------------------------------
# Message templates
# -----------------------------------------------------------------------------

def _cedis(amount: Any) -> str:
    return f"GH₵ {Decimal(amount or 0):.2f}"


def _stage_value(stage: EscrowStage | str | None) -> Optional[str]:
    if stage is None:
        return None
    return EscrowStage(stage).value


def milestone_progress_message(order: Order, stage: EscrowStage | str, recipient: str) -> str:
    number = order.order_number
    messages = {
        "customer": {
            "FITTING": f"Great news! Your deposit for order #{number} is confirmed. "
                       "Your tailor will now begin creating your garment.",
            "FINAL": f"Fitting approved for order #{number}! {_cedis(order.fitting_amount)} released to tailor. "
                     "Delivery coming soon.",
            "RELEASED": f"Order #{number} completed! Final payment released. Thank you for using Sew4Mi!",
        },
        "tailor": {
            "FITTING": f"Payment received for order #{number}! You can now start production. "
                       "Upload fitting photos when ready.",
            "FINAL": f"Fitting approved for order #{number}! {_cedis(order.fitting_amount)} has been released to you. "
                     "Please arrange delivery.",
            "RELEASED": f"Congratulations! Order #{number} completed. "
                        f"Final payment of {_cedis(order.final_amount)} released.",
        },
    }
    return messages[recipient].get(_stage_value(stage), "Order status updated.")


def payment_released_message(order: Order, stage: EscrowStage | str) -> str:
    amounts = {"FITTING": order.fitting_amount, "FINAL": order.final_amount}
    amount = amounts.get(_stage_value(stage), 0)
    return (
        f"Payment released! {_cedis(amount)} for order #{order.order_number} "
        "has been transferred to your account."
    )


def payment_confirmation_message(order: Order, stage: EscrowStage | str) -> str:
    actions = {"FITTING": "fitting approval", "FINAL": "delivery confirmation"}
    action = actions.get(_stage_value(stage), "milestone completion")
    return f"Payment released to tailor for order #{order.order_number} following your {action}. Thank you!"


def approval_needed_message(order: Order, stage: EscrowStage | str | None) -> str:
    number = order.order_number
    messages = {
        "FITTING": f"Your fitting photos for order #{number} are ready! "
                   "Please review and approve to release payment to your tailor.",
        "FINAL": f"Your garment for order #{number} is ready for delivery. Confirm receipt to complete your order.",
    }
    return messages.get(_stage_value(stage), "Your approval is needed for order progression.")


def generate_milestone_event_notifications(
    order: Order,
    stage: EscrowStage | str,
    event: str,
) -> List[OutboundMessage]:
    if event not in MILESTONE_EVENTS:
        raise ValueError(f"Unknown milestone event: {event}")

    stage_enum = EscrowStage(stage)
    outbound: List[OutboundMessage] = []
    if event == "milestone_reached":
        outbound.append(OutboundMessage(
            "milestone_progress", order.customer, order.orderID, stage_enum,
            milestone_progress_message(order, stage_enum, "customer"), NotificationPriority.MEDIUM,
        ))
        outbound.append(OutboundMessage(
            "milestone_progress", order.tailor, order.orderID, stage_enum,
            milestone_progress_message(order, stage_enum, "tailor"), NotificationPriority.MEDIUM,
        ))
    elif event == "payment_released":
        outbound.append(OutboundMessage(
            "payment_released", order.tailor, order.orderID, stage_enum,
            payment_released_message(order, stage_enum), NotificationPriority.HIGH,
        ))
        outbound.append(OutboundMessage(
            "payment_confirmation", order.customer, order.orderID, stage_enum,
            payment_confirmation_message(order, stage_enum), NotificationPriority.MEDIUM,
        ))
    else:
        outbound.append(OutboundMessage(
            "approval_needed", order.customer, order.orderID, stage_enum,
            approval_needed_message(order, stage_enum), NotificationPriority.HIGH,
        ))
    return outbound


_EVENT_TITLES = {
    "milestone_progress": "Order {number} progress",
    "payment_released": "Payment released for order {number}",
    "payment_confirmation": "Payment released for order {number}",
    "approval_needed": "Approval needed for order {number}",
}


# -----------------------------------------------------------------------------
# Publishers
# -----------------------------------------------------------------------------

def send_milestone_notification(order: Order, stage: EscrowStage | str, event: str) -> List[Notification]:
    """Publish an escrow event to both parties of ``order`` immediately."""
    service = NotificationService()
    delivered = []
    for outbound in generate_milestone_event_notifications(order, stage, event):
        title = _EVENT_TITLES[outbound.notification_type].format(number=order.order_number)
        delivered.append(service.deliver(outbound, title))

    record_event(
        "escrow_notification_sent",
        {"order_id": order.orderID, "stage": EscrowStage(stage).value, "event": event, "recipients": len(delivered)},
    )
    return delivered


def publish_milestone_submitted(order: Order, milestone: MilestoneStage | str, deadline: datetime) -> Notification:
    milestone_enum = MilestoneStage(milestone)
    stage_for_message = {
        MilestoneStage.FITTING_READY: EscrowStage.FITTING,
        MilestoneStage.READY_FOR_DELIVERY: EscrowStage.FINAL,
    }.get(milestone_enum)
    label = milestone_enum.value.replace("_", " ").title()
    if stage_for_message:
        text = approval_needed_message(order, stage_for_message)
    else:
        text = f"Your tailor completed '{label}' for order #{order.order_number}. Please review the photo."
    text += f" It will be approved automatically on {deadline.strftime('%d %b %Y %H:%M')} UTC."

    outbound = OutboundMessage(
        "approval_needed", order.customer, order.orderID, None, text, NotificationPriority.HIGH,
    )
    return NotificationService().deliver(outbound, f"Review '{label}' for order {order.order_number}")


def publish_milestone_reviewed(
    order: Order,
    milestone: MilestoneStage | str,
    action: str,
    comment: Optional[str] = None,
) -> List[Notification]:
    """Tell the tailor (and for auto-approvals the customer too) about a review outcome."""
    label = MilestoneStage(milestone).value.replace("_", " ").title()
    service = NotificationService()
    delivered = []
    if action == "REJECTED":
        text = f"The customer requested changes to '{label}' for order #{order.order_number}: {comment}"
        delivered.append(service.deliver(
            OutboundMessage("milestone_rejected", order.tailor, order.orderID, None, text, NotificationPriority.HIGH),
            f"Changes requested on order {order.order_number}",
        ))
        return delivered

    if action == "AUTO_APPROVED":
        customer_text = (
            f"'{label}' for order #{order.order_number} was approved automatically "
            "after the 48-hour review window."
        )
        delivered.append(service.deliver(
            OutboundMessage("milestone_auto_approved", order.customer, order.orderID, None,
                            customer_text, NotificationPriority.MEDIUM),
            f"Milestone auto-approved for order {order.order_number}",
        ))
        tailor_text = f"'{label}' for order #{order.order_number} was approved automatically."
        notification_type = "milestone_auto_approved"
    else:
        tailor_text = f"The customer approved '{label}' for order #{order.order_number}."
        notification_type = "milestone_approved"

    delivered.append(service.deliver(
        OutboundMessage(notification_type, order.tailor, order.orderID, None, tailor_text, NotificationPriority.MEDIUM),
        f"Milestone approved for order {order.order_number}",
    ))
    return delivered


def publish_dispute_update(order: Order, dispute_id: int, title: str, text: str, exclude_user_id: Optional[int] = None) -> List[Notification]:
    """Notify the order's parties about a dispute, skipping whoever triggered it."""
    service = NotificationService()
    delivered = []
    for party in (order.customer, order.tailor):
        if party is None or party.userID == exclude_user_id:
            continue
        delivered.append(service.deliver(
            OutboundMessage("dispute_update", party, order.orderID, None, text, NotificationPriority.HIGH),
            title,
        ))
    increment_counter("dispute_notifications_total")
    record_event("dispute_notification_sent", {"dispute_id": dispute_id, "order_id": order.orderID})
    return delivered
