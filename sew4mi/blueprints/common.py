"""Request helpers shared by the JSON blueprints."""
from __future__ import annotations

import hmac
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from flask import current_app, g, jsonify, request

from sew4mi.config import Config
from sew4mi.database import get_db
from sew4mi.models import User
from sew4mi.services.escrow_service import EscrowService
from sew4mi.services.hubtel_client import HubtelClient
from sew4mi.services.payment_service import PaymentService

HUBTEL_EXTENSION = "sew4mi.hubtel_client"


def json_error(message: str, status: int) -> Tuple[Any, int]:
    return jsonify({"success": False, "error": message}), status


def current_user() -> Optional[User]:
    return getattr(g, "current_user", None)


def ensure_authenticated() -> Optional[Tuple[Any, int]]:
    if current_user() is None:
        return json_error("Not authenticated", 401)
    return None


def require_admin() -> Optional[Tuple[Any, int]]:
    denied = ensure_authenticated()
    if denied:
        return denied
    if not current_user().is_admin:
        return json_error("Forbidden", 403)
    return None


def require_cron_secret() -> Optional[Tuple[Any, int]]:
    """Cron endpoints take ``Authorization: Bearer <CRON_SECRET>``; unset secret locks them."""
    secret = current_app.config.get("CRON_SECRET") or ""
    header = request.headers.get("Authorization", "")
    token = header[7:] if header.startswith("Bearer ") else ""
    if not secret or not token or not hmac.compare_digest(token.encode(), secret.encode()):
        return json_error("Unauthorized", 401)
    return None


def hubtel_client() -> HubtelClient:
    """The app-wide gateway client; tests swap in a stub through ``app.extensions``."""
    client = current_app.extensions.get(HUBTEL_EXTENSION)
    if client is None:
        client = HubtelClient(config=Config)
        current_app.extensions[HUBTEL_EXTENSION] = client
    return client


def payment_service() -> PaymentService:
    return PaymentService(get_db(), hubtel_client=hubtel_client())


def escrow_service() -> EscrowService:
    return EscrowService(get_db(), payment_service=payment_service())


def json_body() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def parse_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 query parameter to an aware datetime; raises ValueError when malformed."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return parsed.astimezone(timezone.utc) if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
