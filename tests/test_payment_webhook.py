import json
from decimal import Decimal

import pytest

from sew4mi.models import EscrowStage, PaymentStatus
from sew4mi.services.payment_service import map_webhook_status


@pytest.fixture
def pending_payment(db_session, escrow_service, make_order, customer):
    order = make_order("400.00")
    _, _, result = escrow_service.initiate_escrow_payment(order.orderID, customer.userID, "0241234567")
    return order, escrow_service.payment_service.get_transaction(result["payment_intent_id"])


def _body(**fields):
    return json.dumps(fields)


def test_webhook_status_overrides():
    assert map_webhook_status("Completed") == PaymentStatus.SUCCESS
    assert map_webhook_status("rejected") == PaymentStatus.FAILED
    assert map_webhook_status("aborted") == PaymentStatus.CANCELLED
    assert map_webhook_status("0000") == PaymentStatus.SUCCESS


def test_successful_webhook_funds_escrow(db_session, payment_service, escrow_service, pending_payment):
    order, transaction = pending_payment

    success, message, updated = payment_service.process_webhook(
        _body(transactionId=transaction.transaction_id, status="SUCCESS", amount=400, hubtelTransactionId="HT-77"),
        "signature",
    )
    handled, escrow_message = escrow_service.handle_payment_webhook(updated)

    assert success, message
    assert updated.webhook_received
    assert updated.hubtel_transaction_id == "HT-77"
    assert handled
    assert escrow_message == "Deposit processed"
    db_session.refresh(order)
    assert order.escrow_stage == EscrowStage.FITTING
    assert order.escrow_balance == Decimal("300.00")


def test_hubtel_envelope_payload_is_understood(payment_service, pending_payment):
    _, transaction = pending_payment
    body = json.dumps({
        "ResponseCode": "0000",
        "Data": {
            "ClientReference": transaction.transaction_id,
            "TransactionId": "HT-5",
            "Status": "Success",
            "Amount": 400.0,
        },
    })

    success, _, updated = payment_service.process_webhook(body, "signature")

    assert success
    assert updated.status == PaymentStatus.SUCCESS


def test_duplicate_webhook_is_acknowledged(payment_service, pending_payment):
    _, transaction = pending_payment
    body = _body(transactionId=transaction.transaction_id, status="SUCCESS", amount=400)
    payment_service.process_webhook(body, "signature")

    success, message, _ = payment_service.process_webhook(body, "signature")

    assert success
    assert message == "Webhook already processed"


def test_amount_mismatch_fails_payment(payment_service, pending_payment):
    _, transaction = pending_payment

    success, message, updated = payment_service.process_webhook(
        _body(transactionId=transaction.transaction_id, status="SUCCESS", amount=40), "signature"
    )

    assert not success
    assert message == "Webhook amount does not match transaction"
    assert updated.status == PaymentStatus.FAILED


def test_rejections(payment_service, hubtel_stub, pending_payment):
    _, transaction = pending_payment

    assert payment_service.process_webhook("{not json", "signature")[1] == "Invalid JSON payload"
    assert payment_service.process_webhook("[]", "signature")[1] == "Invalid webhook payload structure"
    assert payment_service.process_webhook(_body(status="SUCCESS"), "signature")[1] == (
        "Invalid webhook payload structure"
    )
    assert payment_service.process_webhook(_body(transactionId="PAY-NOPE", status="SUCCESS"), "signature")[1] == (
        "Payment transaction not found"
    )

    hubtel_stub.signature_valid = False
    success, message, _ = payment_service.process_webhook(
        _body(transactionId=transaction.transaction_id, status="SUCCESS"), "signature"
    )
    assert not success
    assert message == "Invalid webhook signature"


def test_verify_payment_status_polls_gateway(db_session, payment_service, hubtel_stub, pending_payment):
    _, transaction = pending_payment
    hubtel_stub.remote_status = PaymentStatus.FAILED

    success, _, updated = payment_service.verify_payment_status(transaction.transaction_id)

    assert success
    assert updated.status == PaymentStatus.FAILED
    assert payment_service.verify_payment_status(transaction.transaction_id)[1] == "Payment already settled"


def test_payment_amount_limits(payment_service):
    assert payment_service.validate_amount("0.001") == (False, "Minimum payment amount is GH₵ 0.01")
    assert payment_service.validate_amount("abc")[0] is False
    assert payment_service.validate_amount("250")[0] is True
