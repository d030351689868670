from decimal import Decimal

import pytest

from sew4mi.models import (
    DisputeMessage,
    DisputeStatus,
    OrderStatus,
    PaymentTransaction,
    PaymentType,
    ResolutionType,
)
from sew4mi.observability import get_counter_value
from sew4mi.services.dispute_resolution_service import RESOLUTION_TEMPLATES, DisputeResolutionService
from sew4mi.services.dispute_service import DisputeService
from sew4mi.services.notification_service import NotificationService


@pytest.fixture
def resolution_service(db_session, escrow_service):
    return DisputeResolutionService(db_session, escrow_service=escrow_service)


@pytest.fixture
def open_dispute(db_session, funded_order, customer):
    success, message, dispute = DisputeService(db_session).create_dispute(
        funded_order.orderID,
        customer.userID,
        "QUALITY_ISSUE",
        "Torn seam",
        "The seam on the left sleeve tore the first time it was worn.",
    )
    assert success, message
    return dispute


def test_full_refund_resolution(db_session, resolution_service, open_dispute, funded_order, admin, customer):
    success, message, resolution = resolution_service.resolve_dispute(
        open_dispute.disputeID,
        admin.userID,
        "FULL_REFUND",
        "Full refund issued due to quality issues. Order cancelled.",
        "QUALITY_ISSUE",
    )

    assert success, message
    assert resolution.refund_amount == Decimal("300.00")
    refund_tx = db_session.get(PaymentTransaction, resolution.paymentTransactionID)
    assert refund_tx.payment_type == PaymentType.REFUND
    db_session.refresh(open_dispute)
    db_session.refresh(funded_order)
    assert open_dispute.status == DisputeStatus.RESOLVED
    assert open_dispute.resolution_type == ResolutionType.FULL_REFUND
    assert open_dispute.resolved_by == admin.userID
    assert funded_order.status == OrderStatus.CANCELLED
    assert funded_order.escrow_balance == Decimal("0.00")
    inbox = NotificationService().get_notifications(customer.userID)
    assert "GH₵ 300.00" in inbox[0]["message"]


def test_partial_refund_requires_amount(resolution_service, open_dispute, admin):
    success, message, _ = resolution_service.resolve_dispute(
        open_dispute.disputeID, admin.userID, "PARTIAL_REFUND", "Partial refund for delay", "DELIVERY_DELAY"
    )

    assert not success
    assert message == "Refund amount is required for a partial refund"


def test_partial_refund_resolution_keeps_order_running(db_session, resolution_service, open_dispute, funded_order, admin):
    success, _, resolution = resolution_service.resolve_dispute(
        open_dispute.disputeID,
        admin.userID,
        "PARTIAL_REFUND",
        "Partial refund for delivery delay.",
        "DELIVERY_DELAY",
        refund_amount="50.00",
    )

    assert success
    assert resolution.refund_amount == Decimal("50.00")
    db_session.refresh(funded_order)
    assert funded_order.status == OrderStatus.IN_PROGRESS
    assert funded_order.total_amount == Decimal("350.00")
    assert funded_order.escrow_balance == Decimal("250.00")


def test_gateway_failure_rolls_back_and_keeps_dispute_open(db_session, resolution_service, open_dispute, funded_order, admin, hubtel_stub):
    hubtel_stub.fail_disbursement = True

    success, message, resolution = resolution_service.resolve_dispute(
        open_dispute.disputeID, admin.userID, "FULL_REFUND", "Refund", "QUALITY_ISSUE"
    )

    assert not success
    assert resolution is None
    assert message.startswith("Refund failed")
    db_session.refresh(open_dispute)
    db_session.refresh(funded_order)
    assert open_dispute.status == DisputeStatus.OPEN
    assert funded_order.escrow_balance == Decimal("300.00")
    assert get_counter_value("dispute_resolutions_failed_total") == 1


def test_order_completion_and_no_action(db_session, resolution_service, open_dispute, funded_order, admin):
    success, _, resolution = resolution_service.resolve_dispute(
        open_dispute.disputeID, admin.userID, "ORDER_COMPLETION", "Order to continue as planned.", "MINOR_ISSUE"
    )

    assert success
    assert resolution.refund_amount is None
    assert resolution.paymentTransactionID is None
    db_session.refresh(funded_order)
    assert funded_order.status == OrderStatus.IN_PROGRESS


def test_refunded_order_stays_cancelled(db_session, resolution_service, open_dispute, funded_order, admin, customer):
    success, message, _ = resolution_service.resolve_dispute(
        open_dispute.disputeID, admin.userID, "FULL_REFUND", "Refunded in full.", "QUALITY_ISSUE"
    )
    assert success, message

    success, message, _ = DisputeService(db_session).create_dispute(
        funded_order.orderID,
        customer.userID,
        "OTHER",
        "Reopen my order",
        "Please continue making the dress after all.",
    )

    assert not success
    assert message == "Cancelled orders cannot be disputed"
    db_session.refresh(funded_order)
    assert funded_order.status == OrderStatus.CANCELLED
    assert len(funded_order.disputes) == 1


def test_order_completion_refused_for_cancelled_order(db_session, resolution_service, open_dispute, funded_order, admin):
    funded_order.status = OrderStatus.CANCELLED
    db_session.commit()

    success, message, resolution = resolution_service.resolve_dispute(
        open_dispute.disputeID, admin.userID, "ORDER_COMPLETION", "Continue the order.", "MINOR_ISSUE"
    )

    assert not success
    assert message == "Cancelled orders cannot be resumed"
    assert resolution is None
    db_session.refresh(funded_order)
    db_session.refresh(open_dispute)
    assert funded_order.status == OrderStatus.CANCELLED
    assert open_dispute.status == DisputeStatus.OPEN


def test_resolve_guards(resolution_service, open_dispute, admin, customer):
    assert resolution_service.resolve_dispute(open_dispute.disputeID, customer.userID, "NO_ACTION", "x", "y")[1] == (
        "Only admins can resolve disputes"
    )
    assert resolution_service.resolve_dispute(open_dispute.disputeID, admin.userID, "REFUND_ALL", "x", "y")[1] == (
        "Unknown resolution type: REFUND_ALL"
    )
    assert resolution_service.resolve_dispute(open_dispute.disputeID, admin.userID, "NO_ACTION", "", "y")[1] == (
        "Outcome is required"
    )
    assert resolution_service.resolve_dispute(9999, admin.userID, "NO_ACTION", "x", "y")[1] == "Dispute not found"

    assert resolution_service.resolve_dispute(open_dispute.disputeID, admin.userID, "NO_ACTION", "Unfounded", "UNFOUNDED")[0]
    success, message, _ = resolution_service.resolve_dispute(
        open_dispute.disputeID, admin.userID, "NO_ACTION", "Unfounded", "UNFOUNDED"
    )
    assert not success
    assert message == "Dispute is not active"


def test_close_dispute(db_session, resolution_service, open_dispute, admin, tailor):
    success, _, dispute = resolution_service.close_dispute(open_dispute.disputeID, admin.userID, "Parties settled")

    assert success
    assert dispute.status == DisputeStatus.CLOSED
    assert dispute.resolution_type == ResolutionType.NO_ACTION
    message = db_session.query(DisputeMessage).filter_by(disputeID=open_dispute.disputeID).one()
    assert not message.is_internal_note
    assert message.message == "Dispute closed: Parties settled"
    assert NotificationService().get_notifications(tailor.userID)[0]["title"] == "Dispute closed"

    assert resolution_service.close_dispute(open_dispute.disputeID, admin.userID, "again")[1] == "Dispute is already closed"


def test_closing_resolved_dispute_keeps_resolution(resolution_service, open_dispute, admin):
    resolution_service.resolve_dispute(
        open_dispute.disputeID, admin.userID, "ORDER_COMPLETION", "Continue as planned.", "MINOR_ISSUE"
    )

    success, _, dispute = resolution_service.close_dispute(open_dispute.disputeID, admin.userID, "Done")

    assert success
    assert dispute.resolution_type == ResolutionType.ORDER_COMPLETION


def test_templates_are_copies(resolution_service):
    templates = resolution_service.get_resolution_templates()
    templates[0]["outcome"] = "changed"

    assert [t["id"] for t in templates] == [
        "quality-full-refund",
        "delay-partial-refund",
        "minor-issue-continue",
        "unfounded-claim",
    ]
    assert RESOLUTION_TEMPLATES[0]["outcome"] != "changed"


def test_resolution_statistics(resolution_service, open_dispute, admin):
    resolution_service.resolve_dispute(
        open_dispute.disputeID, admin.userID, "PARTIAL_REFUND", "Partial refund.", "DELIVERY_DELAY", refund_amount=40
    )

    stats = resolution_service.get_resolution_statistics()

    assert stats["total_resolutions"] == 1
    assert stats["by_type"] == {"PARTIAL_REFUND": 1}
    assert stats["total_refunded"] == 40.0
    assert stats["average_refund"] == 40.0
    assert stats["refund_rate"] == 100.0
