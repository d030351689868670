from .bulk_discount_service import BulkDiscountService
from .dispute_resolution_service import DisputeResolutionService
from .dispute_service import DisputeService
from .escrow_reminder_service import EscrowReminderService
from .escrow_service import EscrowService
from .hubtel_client import HubtelClient
from .milestone_service import MilestoneService
from .notification_service import NotificationService
from .order_service import OrderService
from .payment_service import PaymentService

__all__ = [
    "BulkDiscountService",
    "DisputeResolutionService",
    "DisputeService",
    "EscrowReminderService",
    "EscrowService",
    "HubtelClient",
    "MilestoneService",
    "NotificationService",
    "OrderService",
    "PaymentService",
]
