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
from sew4mi.models import Dispute, User
from sew4mi.services.dispute_resolution_service import DisputeResolutionService
from sew4mi.services.dispute_service import DisputeService

disputes_bp = Blueprint("disputes", __name__)

_LIST_FILTERS = ("status", "priority", "category", "assigned_admin", "customer_id", "tailor_id", "limit", "offset")


def _get_dispute_service() -> DisputeService:
    return DisputeService(get_db())


def _get_resolution_service() -> DisputeResolutionService:
    return DisputeResolutionService(get_db(), escrow_service=escrow_service())


def _serialize_dispute(service: DisputeService, dispute: Dispute, viewer: User, detailed: bool = False) -> Dict[str, Any]:
    data = dispute.to_dict()
    data["order_number"] = dispute.order.order_number
    if detailed:
        data["evidence"] = [e.to_dict() for e in dispute.evidence]
        data["messages"] = service.get_messages(dispute, viewer)
        if viewer.is_admin:
            data["resolutions"] = [r.to_dict() for r in dispute.resolutions]
    return data


def _load_visible(service: DisputeService, dispute_id: int):
    dispute = service.get_dispute(dispute_id)
    if not dispute or not service.can_view(dispute, current_user()):
        return None
    return dispute


def _status_for(message: str) -> int:
    if message.endswith("not found"):
        return 404
    if message.startswith(("Only", "Not allowed")):
        return 403
    if "already" in message or "no longer active" in message or "not active" in message:
        return 409
    if message.startswith("Cancelled orders"):
        return 409
    return 400


@disputes_bp.route("/api/disputes", methods=["POST"])
def api_create_dispute():
    denied = ensure_authenticated()
    if denied:
        return denied

    payload = json_body()
    order_id = parse_int(payload.get("order_id"))
    if order_id is None or not payload.get("category"):
        return json_error("order_id and category are required", 400)

    service = _get_dispute_service()
    success, message, dispute = service.create_dispute(
        order_id=order_id,
        raised_by=current_user().userID,
        category=str(payload["category"]).upper(),
        title=payload.get("title"),
        description=payload.get("description"),
        milestone_id=parse_int(payload.get("milestone_id")),
    )
    if not success:
        return json_error(message, _status_for(message))
    return jsonify({"success": True, "message": message, "dispute": _serialize_dispute(service, dispute, current_user())}), 201


@disputes_bp.route("/api/disputes", methods=["GET"])
def api_my_disputes():
    denied = ensure_authenticated()
    if denied:
        return denied
    service = _get_dispute_service()
    disputes = service.disputes_for_user(current_user())
    return jsonify({"disputes": [_serialize_dispute(service, d, current_user()) for d in disputes]})


@disputes_bp.route("/api/disputes/<int:dispute_id>", methods=["GET"])
def api_dispute_details(dispute_id: int):
    denied = ensure_authenticated()
    if denied:
        return denied
    service = _get_dispute_service()
    dispute = _load_visible(service, dispute_id)
    if not dispute:
        return json_error("Dispute not found", 404)
    return jsonify({"dispute": _serialize_dispute(service, dispute, current_user(), detailed=True)})


@disputes_bp.route("/api/disputes/<int:dispute_id>/messages", methods=["GET"])
def api_dispute_messages(dispute_id: int):
    denied = ensure_authenticated()
    if denied:
        return denied
    service = _get_dispute_service()
    dispute = _load_visible(service, dispute_id)
    if not dispute:
        return json_error("Dispute not found", 404)
    return jsonify({"messages": service.get_messages(dispute, current_user())})


@disputes_bp.route("/api/disputes/<int:dispute_id>/messages", methods=["POST"])
def api_send_dispute_message(dispute_id: int):
    denied = ensure_authenticated()
    if denied:
        return denied

    payload = json_body()
    attachments = payload.get("attachments") or []
    if not isinstance(attachments, list):
        return json_error("attachments must be a list", 400)

    success, message, entry = _get_dispute_service().send_message(
        dispute_id=dispute_id,
        sender_id=current_user().userID,
        message=payload.get("message"),
        attachments=attachments,
        is_internal_note=bool(payload.get("is_internal_note")),
    )
    if not success:
        return json_error(message, _status_for(message))
    return jsonify({"success": True, "message": entry.to_dict()}), 201


@disputes_bp.route("/api/disputes/<int:dispute_id>/evidence", methods=["POST"])
def api_add_dispute_evidence(dispute_id: int):
    denied = ensure_authenticated()
    if denied:
        return denied

    payload = json_body()
    file_size = parse_int(payload.get("file_size"))
    if file_size is None:
        return json_error("file_size must be an integer", 400)

    success, message, evidence = _get_dispute_service().add_evidence(
        dispute_id=dispute_id,
        uploader_id=current_user().userID,
        file_url=payload.get("file_url"),
        file_name=payload.get("file_name"),
        file_type=payload.get("file_type"),
        file_size=file_size,
        description=payload.get("description"),
    )
    if not success:
        return json_error(message, _status_for(message))
    return jsonify({"success": True, "evidence": evidence.to_dict()}), 201


# ---------------------------
# Admin JSON APIs
# ---------------------------


@disputes_bp.route("/api/admin/disputes", methods=["GET"])
def api_admin_list_disputes():
    denied = require_admin()
    if denied:
        return denied

    filters: Dict[str, Any] = {key: request.args[key] for key in _LIST_FILTERS if request.args.get(key)}
    filters["overdue"] = request.args.get("overdue", "").lower() in {"1", "true", "yes"}
    service = _get_dispute_service()
    try:
        disputes = service.list_disputes(filters)
    except ValueError as exc:
        return json_error(f"Invalid filter: {exc}", 400)
    return jsonify({"disputes": [_serialize_dispute(service, d, current_user()) for d in disputes]})


@disputes_bp.route("/api/admin/disputes/<int:dispute_id>/assign", methods=["POST"])
def api_admin_assign_dispute(dispute_id: int):
    denied = require_admin()
    if denied:
        return denied

    admin_id = parse_int(json_body().get("admin_id")) or current_user().userID
    service = _get_dispute_service()
    success, message, dispute = service.assign_dispute(dispute_id, admin_id)
    if not success:
        return json_error(message, _status_for(message))
    return jsonify({"success": True, "message": message, "dispute": _serialize_dispute(service, dispute, current_user())})


@disputes_bp.route("/api/admin/disputes/<int:dispute_id>/escalate", methods=["POST"])
def api_admin_escalate_dispute(dispute_id: int):
    denied = require_admin()
    if denied:
        return denied

    reason = json_body().get("reason")
    if not reason:
        return json_error("reason is required", 400)
    service = _get_dispute_service()
    success, message, dispute = service.escalate_dispute(dispute_id, current_user().userID, reason)
    if not success:
        return json_error(message, _status_for(message))
    return jsonify({"success": True, "message": message, "dispute": _serialize_dispute(service, dispute, current_user())})


@disputes_bp.route("/api/admin/disputes/<int:dispute_id>/resolve", methods=["POST"])
def api_admin_resolve_dispute(dispute_id: int):
    denied = require_admin()
    if denied:
        return denied

    payload = json_body()
    if not payload.get("resolution_type"):
        return json_error("resolution_type is required", 400)

    success, message, resolution = _get_resolution_service().resolve_dispute(
        dispute_id=dispute_id,
        admin_id=current_user().userID,
        resolution_type=str(payload["resolution_type"]).upper(),
        outcome=payload.get("outcome"),
        reason_code=payload.get("reason_code"),
        admin_notes=payload.get("admin_notes"),
        refund_amount=payload.get("refund_amount"),
    )
    if not success:
        return json_error(message, _status_for(message))
    return jsonify({"success": True, "message": message, "resolution": resolution.to_dict()})


@disputes_bp.route("/api/admin/disputes/<int:dispute_id>/close", methods=["POST"])
def api_admin_close_dispute(dispute_id: int):
    denied = require_admin()
    if denied:
        return denied

    service = _get_dispute_service()
    success, message, dispute = _get_resolution_service().close_dispute(
        dispute_id, current_user().userID, json_body().get("reason")
    )
    if not success:
        return json_error(message, _status_for(message))
    return jsonify({"success": True, "message": message, "dispute": _serialize_dispute(service, dispute, current_user())})


@disputes_bp.route("/api/admin/disputes/templates", methods=["GET"])
def api_admin_resolution_templates():
    denied = require_admin()
    if denied:
        return denied
    return jsonify({"templates": _get_resolution_service().get_resolution_templates()})


@disputes_bp.route("/api/admin/disputes/analytics", methods=["GET"])
def api_admin_dispute_analytics():
    denied = require_admin()
    if denied:
        return denied

    try:
        date_from = parse_datetime(request.args.get("date_from"))
        date_to = parse_datetime(request.args.get("date_to"))
    except ValueError as exc:
        return json_error(str(exc), 400)

    return jsonify({
        "disputes": _get_dispute_service().get_dispute_analytics(date_from, date_to),
        "resolutions": _get_resolution_service().get_resolution_statistics(date_from, date_to),
    })
