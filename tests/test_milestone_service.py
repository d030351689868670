from datetime import timedelta
from decimal import Decimal

import pytest

from sew4mi.models import (
    Dispute,
    DisputeCategory,
    DisputeStatus,
    EscrowStage,
    EscrowTransaction,
    MilestoneApproval,
    MilestoneApprovalAction,
    MilestoneApprovalStatus,
    MilestoneStage,
    OrderStatus,
    utcnow,
)
from sew4mi.services.escrow_service import EscrowService
from sew4mi.services.milestone_service import AUTO_APPROVAL_COMMENT, MilestoneService
from sew4mi.services.notification_service import NotificationService

PHOTO = "https://cdn.sew4mi.test/photos/fitting.jpg"


@pytest.fixture
def milestone_service(db_session, escrow_service):
    return MilestoneService(db_session, escrow_service=escrow_service)


def _submit(service, order, tailor, milestone=MilestoneStage.FITTING_READY):
    success, message, record = service.submit_milestone(order.orderID, tailor.userID, milestone, PHOTO, "Ready")
    assert success, message
    return record


def _expire(db_session, milestone):
    milestone.auto_approval_deadline = utcnow() - timedelta(minutes=1)
    db_session.commit()


def test_submit_sets_48_hour_deadline(milestone_service, funded_order, tailor, customer):
    record = _submit(milestone_service, funded_order, tailor)

    remaining = milestone_service.time_remaining(record)
    assert record.approval_status == MilestoneApprovalStatus.PENDING
    assert 47 * 3600 < remaining <= 48 * 3600
    inbox = NotificationService().get_notifications(customer.userID)
    assert inbox[0]["type"] == "approval_needed"


def test_submit_rules(milestone_service, funded_order, make_order, tailor, customer):
    assert milestone_service.submit_milestone(funded_order.orderID, customer.userID, "FITTING_READY", PHOTO)[1] == (
        "Only the assigned tailor can update milestones"
    )
    assert milestone_service.submit_milestone(funded_order.orderID, tailor.userID, "SEWING", PHOTO)[1] == (
        "Unknown milestone: SEWING"
    )
    assert milestone_service.submit_milestone(funded_order.orderID, tailor.userID, "FITTING_READY", "ftp://x")[1] == (
        "A valid photo URL is required"
    )
    unfunded = make_order()
    assert milestone_service.submit_milestone(unfunded.orderID, tailor.userID, "FITTING_READY", PHOTO)[1] == (
        "Order has not been funded yet"
    )

    _submit(milestone_service, funded_order, tailor)
    success, message, _ = milestone_service.submit_milestone(funded_order.orderID, tailor.userID, "FITTING_READY", PHOTO)
    assert not success
    assert message == "Milestone has already been submitted"


def test_notes_are_sanitized(milestone_service, funded_order, tailor):
    success, _, record = milestone_service.submit_milestone(
        funded_order.orderID, tailor.userID, "FABRIC_SELECTED", PHOTO, "<script>x</script>Blue kente"
    )

    assert success
    assert "<script>" not in record.notes
    assert record.notes.endswith("Blue kente")


def test_customer_approval_releases_fitting_share(db_session, milestone_service, funded_order, tailor, customer):
    record = _submit(milestone_service, funded_order, tailor)

    success, message, milestone, status = milestone_service.review_milestone(
        record.milestoneID, customer.userID, "APPROVED", "Looks great"
    )

    assert success, message
    assert status == 200
    assert milestone.approval_status == MilestoneApprovalStatus.APPROVED
    db_session.refresh(funded_order)
    assert funded_order.escrow_stage == EscrowStage.FINAL
    assert funded_order.escrow_balance == Decimal("100.00")
    assert milestone_service.time_remaining(milestone) is None
    history = milestone_service.get_approval_history(funded_order.orderID)
    assert history[0]["action"] == "APPROVED"
    assert history[0]["milestone"] == "FITTING_READY"


def test_rejection_requires_comment_and_allows_resubmission(milestone_service, funded_order, tailor, customer):
    record = _submit(milestone_service, funded_order, tailor)

    success, message, _, status = milestone_service.review_milestone(record.milestoneID, customer.userID, "REJECTED")
    assert not success
    assert status == 400
    assert message == "A comment is required when rejecting a milestone"

    success, _, milestone, _ = milestone_service.review_milestone(
        record.milestoneID, customer.userID, "REJECTED", "Sleeves too long"
    )
    assert success
    assert milestone.rejection_reason == "Sleeves too long"
    assert NotificationService().get_notifications(tailor.userID)[0]["type"] == "milestone_rejected"

    resubmitted = _submit(milestone_service, funded_order, tailor)
    assert resubmitted.milestoneID == record.milestoneID
    assert resubmitted.approval_status == MilestoneApprovalStatus.PENDING
    assert resubmitted.rejection_reason is None


def test_review_guards(milestone_service, funded_order, tailor, customer, make_user):
    record = _submit(milestone_service, funded_order, tailor)
    stranger = make_user("customer")

    assert milestone_service.review_milestone(record.milestoneID, stranger.userID, "APPROVED")[3] == 403
    assert milestone_service.review_milestone(record.milestoneID, customer.userID, "AUTO_APPROVED")[3] == 400
    assert milestone_service.review_milestone(9999, customer.userID, "APPROVED")[3] == 404

    milestone_service.review_milestone(record.milestoneID, customer.userID, "APPROVED")
    success, message, _, status = milestone_service.review_milestone(record.milestoneID, customer.userID, "APPROVED")
    assert not success
    assert status == 409
    assert message == "Milestone has already been reviewed"


def test_review_window_closes_at_deadline(db_session, milestone_service, funded_order, tailor, customer):
    record = _submit(milestone_service, funded_order, tailor)
    _expire(db_session, record)

    success, message, _, status = milestone_service.review_milestone(record.milestoneID, customer.userID, "APPROVED")

    assert not success
    assert status == 409
    assert message == "Review window has closed for this milestone"


def test_release_is_idempotent(db_session, milestone_service, funded_order, tailor, customer):
    record = _submit(milestone_service, funded_order, tailor)
    milestone_service.review_milestone(record.milestoneID, customer.userID, "APPROVED")

    success, message, outcome = milestone_service.release_milestone_payment(record.milestoneID)

    assert success
    assert outcome["status"] == "already_released"
    assert outcome["amount_released"] == 200.0
    assert db_session.query(EscrowTransaction).filter_by(milestoneID=record.milestoneID).count() == 1


def test_non_payment_milestone_releases_nothing(db_session, milestone_service, funded_order, tailor, customer):
    record = _submit(milestone_service, funded_order, tailor, MilestoneStage.CUTTING_STARTED)

    milestone_service.review_milestone(record.milestoneID, customer.userID, "APPROVED")

    db_session.refresh(funded_order)
    assert funded_order.escrow_stage == EscrowStage.FITTING
    assert funded_order.escrow_balance == Decimal("300.00")


def test_delivery_approved_before_fitting_is_released_later(db_session, milestone_service, funded_order, tailor, customer):
    delivery = _submit(milestone_service, funded_order, tailor, MilestoneStage.READY_FOR_DELIVERY)
    fitting = _submit(milestone_service, funded_order, tailor, MilestoneStage.FITTING_READY)

    milestone_service.review_milestone(delivery.milestoneID, customer.userID, "APPROVED")
    _, _, outcome = milestone_service.release_milestone_payment(delivery.milestoneID)
    assert outcome["status"] == "deferred"
    db_session.refresh(funded_order)
    assert funded_order.escrow_stage == EscrowStage.FITTING

    milestone_service.review_milestone(fitting.milestoneID, customer.userID, "APPROVED")

    db_session.refresh(funded_order)
    assert funded_order.escrow_stage == EscrowStage.RELEASED
    assert funded_order.status == OrderStatus.COMPLETED
    assert funded_order.escrow_balance == Decimal("0.00")


def test_auto_approval_releases_lapsed_milestones(db_session, milestone_service, funded_order, tailor, customer):
    record = _submit(milestone_service, funded_order, tailor)
    _expire(db_session, record)

    result = milestone_service.auto_approve_due_milestones()

    assert result["processed"] == 1
    assert result["auto_approved"] == 1
    assert result["approved_milestone_ids"] == [record.milestoneID]
    approval = db_session.query(MilestoneApproval).filter_by(milestoneID=record.milestoneID).one()
    assert approval.action == MilestoneApprovalAction.AUTO_APPROVED
    assert approval.customerID is None
    assert approval.comment == AUTO_APPROVAL_COMMENT
    db_session.refresh(funded_order)
    assert funded_order.escrow_stage == EscrowStage.FINAL
    assert NotificationService().get_notifications(customer.userID)[0]["type"] in {
        "milestone_auto_approved",
        "milestone_progress",
        "payment_confirmation",
    }

    again = milestone_service.auto_approve_due_milestones()
    assert again["processed"] == 0


def test_auto_approval_ignores_milestones_still_in_window(milestone_service, funded_order, tailor):
    _submit(milestone_service, funded_order, tailor)

    result = milestone_service.auto_approve_due_milestones()

    assert result["processed"] == 0
    assert result["auto_approved"] == 0


def test_auto_approval_skips_disputed_orders(db_session, milestone_service, funded_order, tailor, customer):
    record = _submit(milestone_service, funded_order, tailor)
    _expire(db_session, record)
    db_session.add(Dispute(
        orderID=funded_order.orderID,
        created_by=customer.userID,
        category=DisputeCategory.QUALITY_ISSUE,
        title="Wrong fabric",
        description="The fabric used is not the one I picked",
        status=DisputeStatus.OPEN,
    ))
    db_session.commit()

    result = milestone_service.auto_approve_due_milestones()

    assert result["skipped"] == 1
    assert result["auto_approved"] == 0
    db_session.refresh(record)
    assert record.approval_status == MilestoneApprovalStatus.PENDING


class _RefusingEscrowService(EscrowService):
    def approve_milestone(self, order_id, current_stage, approved_by=None, notes=None, milestone_id=None):
        return False, "Insufficient escrow balance for release", {"amount_released": 0.0, "new_stage": None}


class _BrokenEscrowService(EscrowService):
    def approve_milestone(self, order_id, current_stage, approved_by=None, notes=None, milestone_id=None):
        raise ValueError("gateway returned garbage")


@pytest.mark.parametrize("escrow_class", [_RefusingEscrowService, _BrokenEscrowService])
def test_failed_auto_release_keeps_milestone_pending_for_next_run(
    db_session, milestone_service, payment_service, funded_order, tailor, escrow_class
):
    record = _submit(milestone_service, funded_order, tailor)
    _expire(db_session, record)
    failing = MilestoneService(db_session, escrow_service=escrow_class(db_session, payment_service=payment_service))

    result = failing.auto_approve_due_milestones()

    assert result["failed"] == 1
    assert result["auto_approved"] == 0
    assert result["errors"][0].startswith(f"milestone {record.milestoneID}:")
    db_session.refresh(record)
    assert record.approval_status == MilestoneApprovalStatus.PENDING
    assert db_session.query(MilestoneApproval).filter_by(milestoneID=record.milestoneID).count() == 0

    retry = milestone_service.auto_approve_due_milestones()

    assert retry["auto_approved"] == 1
    db_session.refresh(funded_order)
    assert funded_order.escrow_stage == EscrowStage.FINAL


def test_one_failure_does_not_stop_the_batch(db_session, payment_service, funded_order, fund_order, make_order, tailor):
    second_order = fund_order(make_order("200.00"))

    class _FailFirstOrder(EscrowService):
        def approve_milestone(self, order_id, current_stage, approved_by=None, notes=None, milestone_id=None):
            if order_id == funded_order.orderID:
                raise ValueError("gateway returned garbage")
            return super().approve_milestone(order_id, current_stage, approved_by, notes, milestone_id)

    service = MilestoneService(db_session, escrow_service=_FailFirstOrder(db_session, payment_service=payment_service))
    for order in (funded_order, second_order):
        _expire(db_session, _submit(service, order, tailor))

    result = service.auto_approve_due_milestones()

    assert result["processed"] == 2
    assert result["failed"] == 1
    assert result["auto_approved"] == 1
    db_session.refresh(second_order)
    assert second_order.escrow_stage == EscrowStage.FINAL


def test_auto_approval_run_retries_stranded_customer_approval(
    db_session, milestone_service, payment_service, funded_order, tailor, customer
):
    refusing = MilestoneService(db_session, escrow_service=_RefusingEscrowService(db_session, payment_service=payment_service))
    record = _submit(refusing, funded_order, tailor)

    success, message, _, _ = refusing.review_milestone(record.milestoneID, customer.userID, "APPROVED")
    assert success
    assert "payment release pending" in message
    assert db_session.query(EscrowTransaction).filter_by(milestoneID=record.milestoneID).count() == 0

    result = milestone_service.auto_approve_due_milestones()

    assert result["releases_retried"] == 1
    assert result["failed"] == 0
    assert db_session.query(EscrowTransaction).filter_by(milestoneID=record.milestoneID).count() == 1
    db_session.refresh(funded_order)
    assert funded_order.escrow_stage == EscrowStage.FINAL
