"""In-app notification inbox for the signed-in user."""
from __future__ import annotations

from flask import Blueprint, jsonify, request

from sew4mi.blueprints.common import current_user, ensure_authenticated, json_error
from sew4mi.services.notification_service import NotificationService

notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")

MAX_PAGE_SIZE = 50


@notifications_bp.route("", methods=["GET"])
def list_notifications():
    denied = ensure_authenticated()
    if denied:
        return denied

    try:
        limit = int(request.args.get("limit", 20))
    except ValueError:
        return json_error("limit must be an integer", 400)
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    unread_only = request.args.get("unread_only", "false").lower() == "true"

    inbox = NotificationService()
    user_id = current_user().userID
    return jsonify({
        "notifications": inbox.get_notifications(user_id, unread_only=unread_only, limit=limit),
        "unread_count": inbox.get_unread_count(user_id),
    })


@notifications_bp.route("/<notification_id>/read", methods=["POST"])
def mark_read(notification_id: str):
    denied = ensure_authenticated()
    if denied:
        return denied

    inbox = NotificationService()
    user_id = current_user().userID
    if not inbox.mark_as_read(user_id, notification_id):
        return json_error("Notification not found", 404)
    return jsonify({"success": True, "unread_count": inbox.get_unread_count(user_id)})


@notifications_bp.route("/mark-all-read", methods=["POST"])
def mark_all_read():
    denied = ensure_authenticated()
    if denied:
        return denied
    marked = NotificationService().mark_all_as_read(current_user().userID)
    return jsonify({"success": True, "marked_count": marked, "unread_count": 0})
