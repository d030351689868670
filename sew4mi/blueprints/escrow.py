from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, jsonify, request

from sew4mi.blueprints.common import (
    current_user,
    ensure_authenticated,
    escrow_service,
    json_body,
    json_error,
    parse_int,
    payment_service,
    require_admin,
)
from sew4mi.database import get_db
from sew4mi.models import Order, User
from sew4mi.services.bulk_discount_service import BulkDiscountService
from sew4mi.services.escrow_calculator import EscrowCalculationError, calculate_escrow_breakdown
from sew4mi.services.order_service import OrderService

escrow_bp = Blueprint("escrow", __name__)


def _can_view(order: Order, user: User) -> bool:
    return user.is_admin or user.userID in {order.customerID, order.tailorID}


def _serialize_order(order: Order) -> Dict[str, Any]:
    data = order.to_dict()
    data["customer_name"] = order.customer.display_name if order.customer else None
    data["tailor_name"] = order.tailor.display_name if order.tailor else None
    return data


# ---------------------------
# Orders
# ---------------------------


@escrow_bp.route("/api/orders", methods=["GET"])
def api_list_orders():
    denied = ensure_authenticated()
    if denied:
        return denied
    orders = OrderService(get_db()).list_orders_for_user(current_user())
    return jsonify({"orders": [_serialize_order(o) for o in orders]})


@escrow_bp.route("/api/orders", methods=["POST"])
def api_create_order():
    denied = ensure_authenticated()
    if denied:
        return denied

    payload = json_body()
    tailor_id = parse_int(payload.get("tailor_id"))
    if tailor_id is None or payload.get("total_amount") in (None, ""):
        return json_error("tailor_id and total_amount are required", 400)

    success, message, order = OrderService(get_db()).create_order(
        customer_id=current_user().userID,
        tailor_id=tailor_id,
        garment_type=payload.get("garment_type"),
        total_amount=payload.get("total_amount"),
        description=payload.get("description"),
    )
    if not success:
        return json_error(message, 400)
    return jsonify({"success": True, "message": message, "order": _serialize_order(order)}), 201


@escrow_bp.route("/api/orders/group", methods=["POST"])
def api_create_group_order():
    denied = ensure_authenticated()
    if denied:
        return denied

    payload = json_body()
    tailor_id = parse_int(payload.get("tailor_id"))
    items = payload.get("items")
    if tailor_id is None or not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
        return json_error("tailor_id and a list of items are required", 400)

    success, message, orders = OrderService(get_db()).create_group_order(
        customer_id=current_user().userID,
        tailor_id=tailor_id,
        items=items,
    )
    if not success:
        return json_error(message, 400)
    return jsonify({
        "success": True,
        "message": message,
        "group_reference": orders[0].group_reference,
        "orders": [_serialize_order(o) for o in orders],
    }), 201


@escrow_bp.route("/api/orders/group-pricing", methods=["POST"])
def api_group_pricing():
    denied = ensure_authenticated()
    if denied:
        return denied

    amounts = json_body().get("order_amounts")
    if not isinstance(amounts, list) or not amounts:
        return json_error("order_amounts must be a non-empty list", 400)

    service = BulkDiscountService()
    valid, errors = service.validate_discount_request(len(amounts), amounts)
    if not valid:
        return jsonify({"success": False, "errors": errors}), 400

    pricing = service.calculate_discount(len(amounts), amounts)
    return jsonify({
        "success": True,
        "pricing": pricing,
        "tier": service.get_discount_tier_info(len(amounts)),
        "potential_savings": service.calculate_potential_savings(len(amounts), pricing["original_total"]),
    })


@escrow_bp.route("/api/orders/<int:order_id>", methods=["GET"])
def api_get_order(order_id: int):
    denied = ensure_authenticated()
    if denied:
        return denied
    order = OrderService(get_db()).get_order(order_id)
    if not order or not _can_view(order, current_user()):
        return json_error("Order not found", 404)
    return jsonify({"order": _serialize_order(order)})


# ---------------------------
# Escrow
# ---------------------------


@escrow_bp.route("/api/orders/<int:order_id>/escrow/initiate", methods=["POST"])
def api_initiate_escrow(order_id: int):
    denied = ensure_authenticated()
    if denied:
        return denied

    phone = json_body().get("customer_phone") or current_user().phone
    if not phone:
        return json_error("customer_phone is required", 400)

    success, message, result = escrow_service().initiate_escrow_payment(
        order_id=order_id,
        customer_id=current_user().userID,
        customer_phone=phone,
    )
    if not success:
        status = 404 if message == "Order not found" else 400
        return json_error(message, status)
    return jsonify({"success": True, "message": message, **result})


@escrow_bp.route("/api/orders/<int:order_id>/escrow/verify", methods=["POST"])
def api_verify_escrow_payment(order_id: int):
    """Poll Hubtel for a payment whose webhook never arrived."""
    denied = ensure_authenticated()
    if denied:
        return denied

    transaction_id = json_body().get("transaction_id")
    if not transaction_id:
        return json_error("transaction_id is required", 400)

    db = get_db()
    order = db.get(Order, order_id)
    if not order or not _can_view(order, current_user()):
        return json_error("Order not found", 404)

    payments = payment_service()
    transaction = payments.get_transaction(transaction_id)
    if not transaction or transaction.orderID != order.orderID:
        return json_error("Payment transaction not found", 404)

    success, message, transaction = payments.verify_payment_status(transaction_id)
    if not success:
        db.commit()
        return json_error(message, 502)
    escrow = escrow_service()
    _, escrow_message = escrow.handle_payment_webhook(transaction)
    return jsonify({
        "success": True,
        "message": escrow_message,
        "payment": transaction.to_dict(),
        "escrow": escrow.get_escrow_status(order_id),
    })


@escrow_bp.route("/api/orders/<int:order_id>/escrow", methods=["GET"])
def api_escrow_status(order_id: int):
    denied = ensure_authenticated()
    if denied:
        return denied
    order = get_db().get(Order, order_id)
    if not order or not _can_view(order, current_user()):
        return json_error("Order not found", 404)
    return jsonify({"escrow": escrow_service().get_escrow_status(order_id)})


@escrow_bp.route("/api/escrow/breakdown", methods=["GET", "POST"])
def api_escrow_breakdown():
    raw_total = request.args.get("total") if request.method == "GET" else json_body().get("total_amount")
    try:
        breakdown = calculate_escrow_breakdown(raw_total)
    except EscrowCalculationError as exc:
        return json_error(str(exc), 400)
    return jsonify({"breakdown": breakdown.to_dict()})


@escrow_bp.route("/api/admin/escrow/reconciliation", methods=["GET"])
def api_admin_escrow_reconciliation():
    denied = require_admin()
    if denied:
        return denied
    return jsonify(escrow_service().get_escrow_summary())


@escrow_bp.route("/api/admin/orders/<int:order_id>/escrow/validate", methods=["GET"])
def api_admin_validate_escrow(order_id: int):
    denied = require_admin()
    if denied:
        return denied
    valid, errors = escrow_service().validate_escrow_state(order_id)
    if errors == ["Order not found"]:
        return json_error("Order not found", 404)
    return jsonify({"order_id": order_id, "valid": valid, "errors": errors})

