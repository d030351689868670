"""
Escrow reminders.

Orders that stall in an escrow stage get nudges: customers are reminded to
fund, review fitting photos or confirm delivery; tailors are reminded to
upload fitting photos or arrange delivery. Reminders are persisted as
ScheduledNotification rows and sent by the cron dispatcher once due.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from sew4mi.config import Config
from sew4mi.models import (
    EscrowStage,
    NotificationPriority,
    Order,
    OrderStatus,
    ScheduledNotification,
    ScheduledNotificationStatus,
    User,
    as_utc,
    utcnow,
)
from sew4mi.observability import increment_counter, record_event
from sew4mi.services.messaging_provider import MessagingError
from sew4mi.services.notification_service import NotificationService

# Hours since the order was last touched before a stage needs a nudge
REMINDER_THRESHOLD_HOURS = {
    EscrowStage.DEPOSIT: 2,
    EscrowStage.FITTING: 24,
    EscrowStage.FINAL: 6,
}

# Days since creation after which an order in the stage counts as overdue
OVERDUE_THRESHOLD_DAYS = {
    EscrowStage.DEPOSIT: 2,
    EscrowStage.FITTING: 14,
    EscrowStage.FINAL: 7,
}

_PAID_AT_FIELD = {
    EscrowStage.DEPOSIT: "deposit_paid_at",
    EscrowStage.FITTING: "fitting_paid_at",
    EscrowStage.FINAL: "final_paid_at",
}

MAX_REPORTED_ERRORS = 10


@dataclass
class PlannedReminder:
    notification_type: str
    recipient: User
    stage: EscrowStage
    message: str
    scheduled_for: datetime
    priority: NotificationPriority


def _cedis(amount: Any) -> str:
    return f"GH₵ {Decimal(amount or 0):.2f}"


def _deposit_reminder(order: Order) -> str:
    return (
        f"Hi {order.customer.display_name}! Your order #{order.order_number} is waiting for deposit payment of "
        f"{_cedis(order.deposit_amount)}. Complete payment to start production. Reply STOP to opt out."
    )


def _deposit_followup(order: Order) -> str:
    return (
        f"Reminder: Your order #{order.order_number} deposit ({_cedis(order.deposit_amount)}) is still pending. "
        "Complete payment within 48 hours or order may be cancelled. Need help? Contact support."
    )


def _fitting_reminder(order: Order, day: int) -> str:
    urgency = {1: "", 2: "Reminder: "}.get(day, "Final reminder: ")
    return (
        f"{urgency}Your fitting photos for order #{order.order_number} are ready for review. "
        "Check your Sew4Mi account to approve and release payment to your tailor."
    )


def _tailor_fitting_reminder(order: Order) -> str:
    return (
        f"Hi {order.tailor.display_name}! Order #{order.order_number} fitting is due. "
        "Please upload fitting photos for customer approval to proceed with payment release."
    )


def _delivery_reminder(order: Order) -> str:
    return (
        f"Your garment for order #{order.order_number} is ready for delivery! Confirm receipt to release "
        f"final payment of {_cedis(order.final_amount)} to your tailor."
    )


def _tailor_delivery_reminder(order: Order) -> str:
    return (
        f"Order #{order.order_number} is ready for delivery to {order.customer.display_name}. "
        f"Arrange delivery to receive final payment of {_cedis(order.final_amount)}."
    )


def generate_milestone_reminders(order: Order, now: Optional[datetime] = None) -> List[PlannedReminder]:
    """Reminders appropriate for the order's current escrow stage, timed from ``now``."""
    now = now or utcnow()
    stage = EscrowStage(order.escrow_stage)
    reminders: List[PlannedReminder] = []

    if stage == EscrowStage.DEPOSIT:
        reminders.append(PlannedReminder(
            "deposit_reminder", order.customer, stage, _deposit_reminder(order),
            now + timedelta(hours=2), NotificationPriority.HIGH,
        ))
        reminders.append(PlannedReminder(
            "deposit_followup", order.customer, stage, _deposit_followup(order),
            now + timedelta(hours=24), NotificationPriority.HIGH,
        ))
    elif stage == EscrowStage.FITTING:
        for day in (1, 2, 3):
            reminders.append(PlannedReminder(
                "fitting_reminder", order.customer, stage, _fitting_reminder(order, day),
                now + timedelta(days=day),
                NotificationPriority.MEDIUM if day == 1 else NotificationPriority.LOW,
            ))
        reminders.append(PlannedReminder(
            "tailor_fitting_reminder", order.tailor, stage, _tailor_fitting_reminder(order),
            now + timedelta(days=7), NotificationPriority.MEDIUM,
        ))
    elif stage == EscrowStage.FINAL:
        reminders.append(PlannedReminder(
            "delivery_reminder", order.customer, stage, _delivery_reminder(order),
            now + timedelta(days=1), NotificationPriority.MEDIUM,
        ))
        reminders.append(PlannedReminder(
            "tailor_delivery_reminder", order.tailor, stage, _tailor_delivery_reminder(order),
            now + timedelta(hours=12), NotificationPriority.MEDIUM,
        ))
    return reminders


def needs_reminder(order: Order, now: Optional[datetime] = None) -> bool:
    stage = EscrowStage(order.escrow_stage)
    threshold = REMINDER_THRESHOLD_HOURS.get(stage)
    if threshold is None or getattr(order, _PAID_AT_FIELD[stage]):
        return False
    last_update = as_utc(order.updated_at or order.created_at)
    if last_update is None:
        return False
    return (now or utcnow()) - last_update >= timedelta(hours=threshold)


def is_order_overdue(order: Order, now: Optional[datetime] = None) -> bool:
    threshold = OVERDUE_THRESHOLD_DAYS.get(EscrowStage(order.escrow_stage))
    created = as_utc(order.created_at)
    if threshold is None or created is None:
        return False
    return ((now or utcnow()) - created).days > threshold


class EscrowReminderService:
    def __init__(
        self,
        db_session: Session,
        notification_service: Optional[NotificationService] = None,
        config: type[Config] = Config,
    ) -> None:
        self.db = db_session
        self.logger = logging.getLogger(__name__)
        self.config = config
        self.notification_service = notification_service or NotificationService()

    def schedule_reminder_notifications(self, order: Order, now: Optional[datetime] = None) -> int:
        """Persist the stage's reminders, skipping types already waiting to go out."""
        if order.status in {OrderStatus.CANCELLED, OrderStatus.COMPLETED}:
            return 0

        pending_types = {
            row.notification_type
            for row in self.db.query(ScheduledNotification.notification_type).filter(
                ScheduledNotification.orderID == order.orderID,
                ScheduledNotification.status == ScheduledNotificationStatus.PENDING,
            )
        }
        scheduled = 0
        for reminder in generate_milestone_reminders(order, now):
            if reminder.notification_type in pending_types:
                continue
            self.db.add(ScheduledNotification(
                orderID=order.orderID,
                recipientID=reminder.recipient.userID,
                recipient_phone=reminder.recipient.phone,
                notification_type=reminder.notification_type,
                stage=reminder.stage,
                message=reminder.message,
                priority=reminder.priority,
                scheduled_for=reminder.scheduled_for,
            ))
            scheduled += 1
        self.db.flush()
        if scheduled:
            increment_counter("escrow_reminders_scheduled_total", amount=scheduled)
            self.logger.info(
                "Scheduled escrow reminders",
                extra={"order_id": order.orderID, "stage": EscrowStage(order.escrow_stage).value, "count": scheduled},
            )
        return scheduled

    def cancel_pending_for_stage(self, order: Order, stage: EscrowStage) -> int:
        return self._cancel_pending(order, stage)

    def cancel_pending_for_order(self, order: Order) -> int:
        return self._cancel_pending(order, None)

    def dispatch_due_notifications(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        due = (
            self.db.query(ScheduledNotification)
            .filter(
                ScheduledNotification.status == ScheduledNotificationStatus.PENDING,
                ScheduledNotification.scheduled_for <= now,
            )
            .order_by(ScheduledNotification.scheduled_for)
            .all()
        )
        sent = 0
        failed = 0
        errors: List[str] = []
        provider = self.notification_service.provider
        for notification in due:
            try:
                if not notification.recipient_phone:
                    raise MessagingError("Recipient has no phone number")
                provider.send_message(notification.recipient_phone, notification.message)
            except MessagingError as exc:
                notification.mark_attempt_failed(str(exc), self.config.NOTIFICATION_MAX_ATTEMPTS)
                failed += 1
                errors.append(f"notification {notification.notificationID}: {exc}")
                continue

            notification.attempts = (notification.attempts or 0) + 1
            notification.mark_sent()
            self.notification_service.add_notification(
                user_id=notification.recipientID,
                notification_type=notification.notification_type,
                title="Order reminder",
                message=notification.message,
                order_id=notification.orderID,
                priority=notification.priority,
            )
            sent += 1

        self.db.commit()
        increment_counter("scheduled_notifications_sent_total", amount=sent)
        if failed:
            increment_counter("scheduled_notifications_failed_total", amount=failed)
        return {"due": len(due), "sent": sent, "failed": failed, "errors": errors[:MAX_REPORTED_ERRORS]}

    def process_escrow_reminders(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Cron entry point: queue reminders for stalled orders, then send whatever is due."""
        now = now or utcnow()
        orders = (
            self.db.query(Order)
            .filter(
                Order.status.notin_([OrderStatus.CANCELLED, OrderStatus.COMPLETED]),
                Order.escrow_stage != EscrowStage.RELEASED,
            )
            .all()
        )
        scheduled = 0
        overdue = 0
        errors: List[str] = []
        for order in orders:
            if is_order_overdue(order, now):
                overdue += 1
            if not needs_reminder(order, now):
                continue
            scheduled += self.schedule_reminder_notifications(order, now)
        self.db.commit()

        dispatch = self.dispatch_due_notifications(now)
        errors.extend(dispatch["errors"])
        summary = {
            "orders_checked": len(orders),
            "reminders_scheduled": scheduled,
            "notifications_sent": dispatch["sent"],
            "notifications_failed": dispatch["failed"],
            "overdue_orders": overdue,
            "errors": errors[:MAX_REPORTED_ERRORS],
        }
        record_event("escrow_reminders_processed", {k: v for k, v in summary.items() if k != "errors"})
        self.logger.info("Escrow reminder run finished", extra=summary)
        return summary

    def get_reminder_overview(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or utcnow()
        active_orders = (
            self.db.query(Order)
            .filter(Order.status.notin_([OrderStatus.CANCELLED, OrderStatus.COMPLETED]))
            .all()
        )
        held = (
            self.db.query(func.coalesce(func.sum(Order.escrow_balance), 0))
            .filter(Order.status != OrderStatus.CANCELLED)
            .scalar()
        )
        by_stage = {stage.value: 0 for stage in EscrowStage}
        for order in active_orders:
            by_stage[EscrowStage(order.escrow_stage).value] += 1
        pending = (
            self.db.query(func.count(ScheduledNotification.notificationID))
            .filter(ScheduledNotification.status == ScheduledNotificationStatus.PENDING)
            .scalar()
        )
        return {
            "total_escrow_funds": float(Decimal(held or 0)),
            "orders_by_stage": by_stage,
            "overdue_orders": sum(1 for order in active_orders if is_order_overdue(order, now)),
            "pending_notifications": pending or 0,
        }

    def _cancel_pending(self, order: Order, stage: Optional[EscrowStage]) -> int:
        query = self.db.query(ScheduledNotification).filter(
            ScheduledNotification.orderID == order.orderID,
            ScheduledNotification.status == ScheduledNotificationStatus.PENDING,
        )
        if stage is not None:
            query = query.filter(ScheduledNotification.stage == stage)
        cancelled = 0
        for notification in query.all():
            notification.status = ScheduledNotificationStatus.CANCELLED
            cancelled += 1
        self.db.flush()
        return cancelled
