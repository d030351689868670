from __future__ import annotations

from typing import Dict

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from sew4mi.config import Config
from sew4mi.database import engine


def check_database_health() -> Dict[str, str]:
    """Run ``SELECT 1`` against the configured engine."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"status": "UP"}
    except SQLAlchemyError as exc:
        return {"status": "DOWN", "detail": str(exc)}


def check_integrations(config: type[Config] = Config) -> Dict[str, str]:
    """Report which outbound integrations have credentials; never contacts them."""
    hubtel_ready = bool(config.HUBTEL_CLIENT_ID and config.HUBTEL_CLIENT_SECRET and config.HUBTEL_MERCHANT_ACCOUNT)
    whatsapp_ready = bool(config.WHATSAPP_ACCESS_TOKEN and config.WHATSAPP_PHONE_NUMBER_ID)
    return {
        "hubtel": "CONFIGURED" if hubtel_ready else "NOT_CONFIGURED",
        "hubtel_webhooks": "SIGNED" if config.HUBTEL_WEBHOOK_SECRET else "UNSIGNED",
        "whatsapp": (
            "CONFIGURED" if config.WHATSAPP_ENABLED and whatsapp_ready
            else "DISABLED" if not config.WHATSAPP_ENABLED
            else "NOT_CONFIGURED"
        ),
    }
