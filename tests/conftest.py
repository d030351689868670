# tests/conftest.py
"""
Shared fixtures: a throwaway SQLite database, users and orders, and a stub
Hubtel gateway so no test ever talks to the network.
"""
import os
import tempfile
from decimal import Decimal
from uuid import uuid4

import pytest

_DB_DIR = tempfile.mkdtemp(prefix="sew4mi-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("ADMIN_SIGNUP_TOKEN", "test-admin-token")
os.environ.setdefault("HUBTEL_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("STRUCTURED_LOGS_ENABLED", "false")
os.environ["WHATSAPP_ENABLED"] = "false"

from sew4mi.database import Base, SessionLocal, engine  # noqa: E402
from sew4mi.models import Order, PaymentStatus, User  # noqa: E402
from sew4mi.observability import reset_metrics  # noqa: E402
from sew4mi.services.escrow_calculator import calculate_escrow_breakdown  # noqa: E402
from sew4mi.services.escrow_service import EscrowService  # noqa: E402
from sew4mi.services.hubtel_client import (  # noqa: E402
    HubtelError,
    HubtelPaymentResponse,
    HubtelTransactionStatus,
)
from sew4mi.services.messaging_provider import LoggingProvider  # noqa: E402
from sew4mi.services.notification_service import NotificationService  # noqa: E402
from sew4mi.services.payment_service import PaymentService  # noqa: E402

CUSTOMER_PHONE = "0241234567"
TAILOR_PHONE = "0201234567"


class _StubHubtelClient:
    """Records gateway calls and answers with canned responses."""

    def __init__(self):
        self.payments = []
        self.disbursements = []
        self.remote_status = PaymentStatus.SUCCESS
        self.payment_status = PaymentStatus.PENDING
        self.fail_disbursement = False
        self.signature_valid = True

    def initiate_mobile_money_payment(self, transaction_id, amount, customer_phone, customer_name=None, description=None):
        self.payments.append({"transaction_id": transaction_id, "amount": amount, "phone": customer_phone})
        return HubtelPaymentResponse(
            transaction_id=transaction_id,
            hubtel_transaction_id=f"HUB-{len(self.payments)}",
            status=self.payment_status,
            payment_url="https://checkout.hubtel.test/pay",
            message="Payment initiated successfully",
        )

    def send_mobile_money(self, transaction_id, amount, recipient_phone, recipient_name=None, description=None):
        if self.fail_disbursement:
            raise HubtelError("Hubtel API error 503: unavailable", status_code=503, retryable=True)
        self.disbursements.append({"transaction_id": transaction_id, "amount": amount, "phone": recipient_phone})
        return HubtelPaymentResponse(
            transaction_id=transaction_id,
            hubtel_transaction_id=f"DIS-{len(self.disbursements)}",
            status=PaymentStatus.SUCCESS,
            payment_url=None,
            message="Disbursement submitted",
        )

    def get_transaction_status(self, transaction_id):
        amount = next((p["amount"] for p in self.payments if p["transaction_id"] == transaction_id), Decimal("0"))
        return HubtelTransactionStatus(
            transaction_id=transaction_id,
            hubtel_transaction_id="HUB-STATUS",
            status=self.remote_status,
            amount=amount,
            customer_phone="233241234567",
            message="Status retrieved",
        )

    def verify_webhook_signature(self, payload, signature):
        return self.signature_valid and bool(signature)


@pytest.fixture(autouse=True)
def _reset_process_state():
    reset_metrics()
    notifications = NotificationService()
    notifications.clear_notifications()
    notifications.use_provider(LoggingProvider())
    yield
    notifications.clear_notifications()


@pytest.fixture
def db_session():
    """Fresh schema per test."""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def hubtel_stub():
    return _StubHubtelClient()


@pytest.fixture
def payment_service(db_session, hubtel_stub):
    return PaymentService(db_session, hubtel_client=hubtel_stub)


@pytest.fixture
def escrow_service(db_session, payment_service):
    return EscrowService(db_session, payment_service=payment_service)


@pytest.fixture
def make_user(db_session):
    def _make(role="customer", phone=CUSTOMER_PHONE, full_name=None):
        suffix = uuid4().hex[:8]
        user = User(
            username=f"{role}_{suffix}",
            email=f"{role}_{suffix}@example.com",
            passwordHash="hashed",
            full_name=full_name or f"Test {role.title()} {suffix}",
            phone=phone,
            role=role,
        )
        db_session.add(user)
        db_session.commit()
        return user
    return _make


@pytest.fixture
def customer(make_user):
    return make_user("customer", phone=CUSTOMER_PHONE, full_name="Ama Mensah")


@pytest.fixture
def tailor(make_user):
    return make_user("tailor", phone=TAILOR_PHONE, full_name="Kofi Boateng")


@pytest.fixture
def admin(make_user):
    return make_user("admin", phone=None, full_name="Support Admin")


@pytest.fixture
def make_order(db_session, customer, tailor):
    def _make(total="400.00", garment_type="Kente dress"):
        breakdown = calculate_escrow_breakdown(total)
        order = Order(
            customerID=customer.userID,
            tailorID=tailor.userID,
            garment_type=garment_type,
            original_amount=breakdown.total_amount,
            total_amount=breakdown.total_amount,
            deposit_amount=breakdown.deposit_amount,
            fitting_amount=breakdown.fitting_amount,
            final_amount=breakdown.final_amount,
        )
        db_session.add(order)
        db_session.commit()
        return order
    return _make


@pytest.fixture
def fund_order(db_session, escrow_service):
    """Run an order through initiation and a confirmed deposit payment."""
    def _fund(order):
        success, message, result = escrow_service.initiate_escrow_payment(
            order.orderID, order.customerID, CUSTOMER_PHONE
        )
        assert success, message
        transaction = escrow_service.payment_service.get_transaction(result["payment_intent_id"])
        transaction.mark_completed("HUB-CONFIRMED")
        db_session.commit()
        success, message, _ = escrow_service.process_deposit_payment(order.orderID, transaction.transaction_id)
        assert success, message
        db_session.refresh(order)
        return order
    return _fund


@pytest.fixture
def funded_order(make_order, fund_order):
    return fund_order(make_order("400.00"))


@pytest.fixture
def app(db_session, hubtel_stub):
    from sew4mi.blueprints.common import HUBTEL_EXTENSION
    from sew4mi.main import app as flask_app

    flask_app.config["TESTING"] = True
    flask_app.extensions[HUBTEL_EXTENSION] = hubtel_stub
    yield flask_app
    flask_app.extensions.pop(HUBTEL_EXTENSION, None)


@pytest.fixture
def client(app):
    with app.test_client() as test_client:
        yield test_client


@pytest.fixture
def login(client):
    def _login(user):
        with client.session_transaction() as sess:
            sess["user_id"] = user.userID
    return _login
