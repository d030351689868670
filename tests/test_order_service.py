from decimal import Decimal

import pytest

from sew4mi.models import EscrowStage, OrderStatus
from sew4mi.services.order_service import OrderService


@pytest.fixture
def order_service(db_session):
    return OrderService(db_session)


def test_create_order_stores_breakdown(order_service, customer, tailor):
    success, message, order = order_service.create_order(
        customer.userID, tailor.userID, "Agbada", "250.00", "<b>Wedding</b> outfit"
    )

    assert success, message
    assert order.status == OrderStatus.PENDING_DEPOSIT
    assert order.escrow_stage == EscrowStage.DEPOSIT
    assert order.deposit_amount == Decimal("62.50")
    assert order.fitting_amount == Decimal("125.00")
    assert order.final_amount == Decimal("62.50")
    assert order.description == "Wedding outfit"
    assert len(order.order_number) == 8


def test_create_order_requires_a_tailor(order_service, customer, make_user):
    other_customer = make_user("customer")

    success, message, _ = order_service.create_order(customer.userID, other_customer.userID, "Agbada", 100)

    assert not success
    assert message == "Tailor not found"


def test_create_order_rejects_bad_amount(order_service, customer, tailor):
    success, message, _ = order_service.create_order(customer.userID, tailor.userID, "Agbada", "-4")

    assert not success
    assert message == "Total amount must be greater than zero"


def test_group_order_applies_bulk_discount(order_service, customer, tailor):
    items = [
        {"garment_type": "Kaba", "amount": 200},
        {"garment_type": "Slit", "amount": 100},
        {"garment_type": "Shirt", "amount": "100.00"},
    ]

    success, message, orders = order_service.create_group_order(customer.userID, tailor.userID, items)

    assert success, message
    assert message == "Group order created with 15% discount"
    assert len({o.group_reference for o in orders}) == 1
    first = orders[0]
    assert first.original_amount == Decimal("200.00")
    assert first.total_amount == Decimal("170.00")
    assert first.discount_amount == Decimal("30.00")
    assert first.deposit_amount + first.fitting_amount + first.final_amount == first.total_amount


def test_group_order_validation(order_service, customer, tailor):
    success, message, orders = order_service.create_group_order(
        customer.userID, tailor.userID, [{"garment_type": "Kaba", "amount": 0}]
    )
    assert not success
    assert orders == []
    assert "positive" in message

    success, message, _ = order_service.create_group_order(
        customer.userID, tailor.userID, [{"garment_type": "", "amount": 10}]
    )
    assert message == "Each item needs a garment type"


def test_listing_is_scoped_to_parties(order_service, make_order, customer, tailor, admin, make_user):
    make_order("100")
    make_order("200")
    outsider = make_user("customer")

    assert len(order_service.list_orders_for_user(customer)) == 2
    assert len(order_service.list_orders_for_user(tailor)) == 2
    assert len(order_service.list_orders_for_user(admin)) == 2
    assert order_service.list_orders_for_user(outsider) == []
