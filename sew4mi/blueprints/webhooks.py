from __future__ import annotations

import logging

from flask import Blueprint, jsonify, request

from sew4mi.blueprints.common import escrow_service, json_error, payment_service
from sew4mi.database import get_db
from sew4mi.models import PaymentStatus
from sew4mi.observability import increment_counter

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")
logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("X-Hubtel-Signature", "X-Signature")


@webhooks_bp.route("/hubtel", methods=["POST"])
def hubtel_webhook():
    raw_body = request.get_data()
    signature = next((request.headers[h] for h in SIGNATURE_HEADERS if request.headers.get(h)), None)
    increment_counter("hubtel_webhooks_received_total")

    db = get_db()
    success, message, transaction = payment_service().process_webhook(raw_body, signature)
    if not success:
        db.commit()
        status = 401 if message == "Invalid webhook signature" else 404 if message.endswith("not found") else 400
        return json_error(message, status)

    handled, escrow_message = escrow_service().handle_payment_webhook(transaction)
    if not handled:
        logger.error(
            "Escrow update failed for settled payment",
            extra={"transaction_id": transaction.transaction_id, "reason": escrow_message},
        )
        db.commit()
    return jsonify({
        "success": True,
        "message": message,
        "escrow": escrow_message,
        "transaction_id": transaction.transaction_id,
        "status": PaymentStatus(transaction.status).value,
    })
