from decimal import Decimal

from sew4mi.models import (
    EscrowStage,
    EscrowTransaction,
    EscrowTransactionType,
    OrderStatus,
    PaymentStatus,
    PaymentTransaction,
    PaymentType,
    ScheduledNotification,
    ScheduledNotificationStatus,
)
from sew4mi.observability import get_counter_value
from sew4mi.services.notification_service import NotificationService


def _ledger(db_session, order):
    return (
        db_session.query(EscrowTransaction)
        .filter_by(orderID=order.orderID)
        .order_by(EscrowTransaction.escrowTransactionID)
        .all()
    )


def test_initiation_records_pending_payment_without_crediting(db_session, escrow_service, make_order, customer, hubtel_stub):
    order = make_order("400.00")

    success, message, result = escrow_service.initiate_escrow_payment(order.orderID, customer.userID, "0241234567")

    assert success, message
    assert result["deposit_amount"] == 100.0
    assert result["amount_charged"] == 400.0
    assert result["payment_url"] == "https://checkout.hubtel.test/pay"
    assert hubtel_stub.payments[0]["amount"] == Decimal("400.00")

    db_session.refresh(order)
    assert order.escrow_stage == EscrowStage.DEPOSIT
    assert order.escrow_balance == Decimal("0.00")
    assert _ledger(db_session, order) == []


def test_initiation_rejects_other_customers(escrow_service, make_order, make_user):
    order = make_order()
    stranger = make_user("customer")

    success, message, _ = escrow_service.initiate_escrow_payment(order.orderID, stranger.userID, "0241234567")

    assert not success
    assert message == "Order does not belong to this customer"


def test_initiation_rejects_invalid_phone(escrow_service, make_order, customer):
    order = make_order()

    success, message, _ = escrow_service.initiate_escrow_payment(order.orderID, customer.userID, "12345")

    assert not success
    assert "10-digit" in message


def test_initiation_rejected_once_funded(escrow_service, funded_order, customer):
    success, message, _ = escrow_service.initiate_escrow_payment(funded_order.orderID, customer.userID, "0241234567")

    assert not success
    assert message == "Escrow payment already completed for this order"


def test_deposit_confirmation_releases_deposit(db_session, funded_order, tailor):
    assert funded_order.escrow_stage == EscrowStage.FITTING
    assert funded_order.status == OrderStatus.IN_PROGRESS
    assert funded_order.funded_amount == Decimal("400.00")
    assert funded_order.escrow_balance == Decimal("300.00")
    assert funded_order.deposit_paid_at is not None

    ledger = _ledger(db_session, funded_order)
    assert [tx.transaction_type for tx in ledger] == [EscrowTransactionType.DEPOSIT]
    assert ledger[0].amount == Decimal("100.00")
    assert get_counter_value("escrow_deposits_processed_total") == 1

    inbox = NotificationService().get_notifications(tailor.userID)
    assert any(n["type"] == "milestone_progress" for n in inbox)


def test_deposit_confirmation_schedules_fitting_reminders(db_session, funded_order):
    reminders = (
        db_session.query(ScheduledNotification)
        .filter_by(orderID=funded_order.orderID, status=ScheduledNotificationStatus.PENDING)
        .all()
    )

    assert {r.notification_type for r in reminders} == {"fitting_reminder", "tailor_fitting_reminder"}
    assert all(r.stage == EscrowStage.FITTING for r in reminders)


def test_deposit_processing_is_idempotent(db_session, escrow_service, funded_order):
    funding = (
        db_session.query(PaymentTransaction)
        .filter_by(orderID=funded_order.orderID, payment_type=PaymentType.DEPOSIT)
        .first()
    )

    success, message, _ = escrow_service.process_deposit_payment(funded_order.orderID, funding.transaction_id)

    assert success
    assert message == "Deposit already processed"
    assert len(_ledger(db_session, funded_order)) == 1


def test_deposit_requires_confirmed_payment(db_session, escrow_service, make_order, customer):
    order = make_order()
    _, _, result = escrow_service.initiate_escrow_payment(order.orderID, customer.userID, "0241234567")

    success, message, _ = escrow_service.process_deposit_payment(order.orderID, result["payment_intent_id"])

    assert not success
    assert message == "Payment has not been confirmed"


def test_deposit_rejects_amount_mismatch(db_session, escrow_service, make_order, customer):
    order = make_order("400.00")
    _, _, result = escrow_service.initiate_escrow_payment(order.orderID, customer.userID, "0241234567")
    transaction = escrow_service.payment_service.get_transaction(result["payment_intent_id"])
    transaction.amount = Decimal("100.00")
    transaction.mark_completed()
    db_session.commit()

    success, message, _ = escrow_service.process_deposit_payment(order.orderID, transaction.transaction_id)

    assert not success
    assert message == "Paid amount does not match order total"
    db_session.refresh(order)
    assert order.escrow_stage == EscrowStage.DEPOSIT


def test_approve_milestone_walks_through_stages(db_session, escrow_service, funded_order, customer):
    success, _, outcome = escrow_service.approve_milestone(funded_order.orderID, EscrowStage.FITTING, customer.userID)
    assert success
    assert outcome == {"amount_released": 200.0, "new_stage": "FINAL"}

    success, _, outcome = escrow_service.approve_milestone(funded_order.orderID, "FINAL", customer.userID)
    assert success
    assert outcome["new_stage"] == "RELEASED"

    db_session.refresh(funded_order)
    assert funded_order.escrow_balance == Decimal("0.00")
    assert funded_order.status == OrderStatus.COMPLETED
    assert funded_order.released_amount == Decimal("400.00")
    assert [tx.transaction_type for tx in _ledger(db_session, funded_order)] == [
        EscrowTransactionType.DEPOSIT,
        EscrowTransactionType.FITTING_PAYMENT,
        EscrowTransactionType.FINAL_PAYMENT,
    ]
    pending = (
        db_session.query(ScheduledNotification)
        .filter_by(orderID=funded_order.orderID, status=ScheduledNotificationStatus.PENDING)
        .count()
    )
    assert pending == 0


def test_approve_milestone_rejects_stage_mismatch(escrow_service, funded_order):
    success, message, outcome = escrow_service.approve_milestone(funded_order.orderID, EscrowStage.FINAL)

    assert not success
    assert message.startswith("Stage mismatch")
    assert outcome["amount_released"] == 0.0


def test_approve_milestone_refuses_when_balance_short(db_session, escrow_service, funded_order):
    funded_order.escrow_balance = Decimal("50.00")
    db_session.commit()

    success, message, _ = escrow_service.approve_milestone(funded_order.orderID, EscrowStage.FITTING)

    assert not success
    assert message == "Insufficient escrow balance for release"
    db_session.refresh(funded_order)
    assert funded_order.escrow_stage == EscrowStage.FITTING


def test_full_refund_cancels_order(db_session, escrow_service, funded_order, admin, hubtel_stub):
    success, message, amount = escrow_service.refund_full(funded_order, admin.userID, "Quality issue")
    db_session.commit()

    assert success, message
    assert amount == Decimal("300.00")
    assert hubtel_stub.disbursements[0]["phone"] == "233241234567"
    db_session.refresh(funded_order)
    assert funded_order.status == OrderStatus.CANCELLED
    assert funded_order.escrow_balance == Decimal("0.00")
    assert funded_order.refunded_amount == Decimal("300.00")
    assert escrow_service.validate_escrow_state(funded_order.orderID) == (True, [])


def test_partial_refund_cuts_unreleased_stages_last_first(db_session, escrow_service, funded_order, admin):
    success, message, amount = escrow_service.refund_partial(funded_order, "150", admin.userID, "Delay")
    db_session.commit()

    assert success, message
    assert amount == Decimal("150.00")
    db_session.refresh(funded_order)
    assert funded_order.total_amount == Decimal("250.00")
    assert funded_order.final_amount == Decimal("0.00")
    assert funded_order.fitting_amount == Decimal("150.00")
    assert funded_order.deposit_amount == Decimal("100.00")
    assert funded_order.escrow_balance == Decimal("150.00")
    assert funded_order.status == OrderStatus.IN_PROGRESS
    assert escrow_service.validate_escrow_state(funded_order.orderID) == (True, [])


def test_partial_refund_bounds(escrow_service, funded_order, admin):
    assert not escrow_service.refund_partial(funded_order, 0, admin.userID, "x")[0]
    assert not escrow_service.refund_partial(funded_order, 400, admin.userID, "x")[0]
    success, message, _ = escrow_service.refund_partial(funded_order, 350, admin.userID, "x")
    assert not success
    assert "exceeds escrow balance" in message


def test_failed_disbursement_leaves_escrow_untouched(db_session, escrow_service, funded_order, admin, hubtel_stub):
    hubtel_stub.fail_disbursement = True

    success, message, _ = escrow_service.refund_full(funded_order, admin.userID, "Quality issue")
    db_session.rollback()

    assert not success
    assert message.startswith("Refund failed")
    db_session.refresh(funded_order)
    assert funded_order.escrow_balance == Decimal("300.00")
    assert funded_order.status == OrderStatus.IN_PROGRESS


def test_validate_escrow_state_flags_drift(db_session, escrow_service, funded_order):
    funded_order.escrow_balance = Decimal("10.00")
    db_session.commit()

    valid, errors = escrow_service.validate_escrow_state(funded_order.orderID)

    assert not valid
    assert errors[0].startswith("Escrow balance")
    summary = escrow_service.get_escrow_summary()
    assert summary["discrepancies"][0]["order_id"] == funded_order.orderID


def test_escrow_status_and_summary(escrow_service, funded_order, make_order):
    make_order("80.00")

    status = escrow_service.get_escrow_status(funded_order.orderID)
    summary = escrow_service.get_escrow_summary()

    assert status["current_stage"] == "FITTING"
    assert status["deposit_paid"] == 100.0
    assert status["next_stage_amount"] == 200.0
    assert len(status["stage_history"]) == 1
    assert summary["total_escrow_funds"] == 300.0
    assert summary["orders_by_stage"]["DEPOSIT"] == 1
    assert summary["orders_by_stage"]["FITTING"] == 1
    assert summary["discrepancies"] == []


def test_failed_payment_webhook_is_recorded(db_session, escrow_service, make_order, customer):
    order = make_order()
    _, _, result = escrow_service.initiate_escrow_payment(order.orderID, customer.userID, "0241234567")
    transaction = escrow_service.payment_service.get_transaction(result["payment_intent_id"])
    transaction.mark_failed("Insufficient funds")

    handled, message = escrow_service.handle_payment_webhook(transaction)

    assert handled
    assert message == "Payment failed recorded"
    assert get_counter_value("escrow_payments_failed_total", {"status": PaymentStatus.FAILED.value}) == 1
