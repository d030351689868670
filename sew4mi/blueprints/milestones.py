from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, jsonify, request

from sew4mi.blueprints.common import (
    current_user,
    ensure_authenticated,
    escrow_service,
    json_body,
    json_error,
    parse_datetime,
    parse_int,
    require_admin,
)
from sew4mi.database import get_db
from sew4mi.models import Order, OrderMilestone
from sew4mi.observability.analytics import resolve_time_range
from sew4mi.services.milestone_service import MilestoneService

milestones_bp = Blueprint("milestones", __name__)


def _get_milestone_service() -> MilestoneService:
    return MilestoneService(get_db(), escrow_service=escrow_service())


def _serialize_milestone(service: MilestoneService, milestone: OrderMilestone) -> Dict[str, Any]:
    data = milestone.to_dict()
    data["seconds_until_auto_approval"] = service.time_remaining(milestone)
    return data


def _visible_order(order_id: int):
    order = get_db().get(Order, order_id)
    user = current_user()
    if not order or not (user.is_admin or user.userID in {order.customerID, order.tailorID}):
        return None
    return order


@milestones_bp.route("/api/orders/<int:order_id>/milestones", methods=["GET"])
def api_list_milestones(order_id: int):
    denied = ensure_authenticated()
    if denied:
        return denied
    if not _visible_order(order_id):
        return json_error("Order not found", 404)

    service = _get_milestone_service()
    milestones = service.get_order_milestones(order_id)
    return jsonify({"milestones": [_serialize_milestone(service, m) for m in milestones]})


@milestones_bp.route("/api/orders/<int:order_id>/milestones", methods=["POST"])
def api_submit_milestone(order_id: int):
    denied = ensure_authenticated()
    if denied:
        return denied

    payload = json_body()
    if not payload.get("milestone") or not payload.get("photo_url"):
        return json_error("milestone and photo_url are required", 400)

    service = _get_milestone_service()
    success, message, milestone = service.submit_milestone(
        order_id=order_id,
        tailor_id=current_user().userID,
        milestone=payload["milestone"],
        photo_url=payload["photo_url"],
        notes=payload.get("notes"),
    )
    if not success:
        if message == "Order not found":
            return json_error(message, 404)
        if message.startswith("Only the assigned tailor"):
            return json_error(message, 403)
        if message.startswith("Milestone has already"):
            return json_error(message, 409)
        return json_error(message, 400)
    return jsonify({"success": True, "message": message, "milestone": _serialize_milestone(service, milestone)}), 201


@milestones_bp.route("/api/milestones/<int:milestone_id>/review", methods=["POST"])
def api_review_milestone(milestone_id: int):
    denied = ensure_authenticated()
    if denied:
        return denied

    payload = json_body()
    if not payload.get("action"):
        return json_error("action is required", 400)

    service = _get_milestone_service()
    success, message, milestone, status = service.review_milestone(
        milestone_id=milestone_id,
        customer_id=current_user().userID,
        action=str(payload["action"]).upper(),
        comment=payload.get("comment"),
    )
    if not success:
        return json_error(message, status)
    return jsonify({"success": True, "message": message, "milestone": _serialize_milestone(service, milestone)}), status


@milestones_bp.route("/api/orders/<int:order_id>/milestones/history", methods=["GET"])
def api_milestone_history(order_id: int):
    denied = ensure_authenticated()
    if denied:
        return denied
    if not _visible_order(order_id):
        return json_error("Order not found", 404)
    return jsonify({"history": _get_milestone_service().get_approval_history(order_id)})


@milestones_bp.route("/api/admin/milestones/analytics", methods=["GET"])
def api_admin_milestone_analytics():
    denied = require_admin()
    if denied:
        return denied

    try:
        date_from = parse_datetime(request.args.get("date_from"))
        date_to = parse_datetime(request.args.get("date_to"))
        if date_from is None and date_to is None:
            date_from = resolve_time_range(request.args.get("time_range"))
    except ValueError as exc:
        return json_error(str(exc), 400)

    tailor_id = request.args.get("tailor_id")
    if tailor_id is not None and parse_int(tailor_id) is None:
        return json_error("tailor_id must be an integer", 400)

    return jsonify(_get_milestone_service().get_milestone_analytics(date_from, date_to, parse_int(tailor_id)))
