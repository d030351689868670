from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict
from uuid import uuid4

from flask import Flask, g, has_request_context, request, session

from sew4mi.config import Config

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {
    "message",
    "asctime",
    "request_id",
    "path",
    "method",
    "user_id",
}


class RequestContextFilter(logging.Filter):
    """Stamp records with the current request id, route and user."""

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        in_request = has_request_context()
        record.request_id = getattr(g, "request_id", None) if in_request else None
        record.path = request.path if in_request else None
        record.method = request.method if in_request else None
        record.user_id = session.get("user_id") if in_request else None
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
            "path": getattr(record, "path", None),
            "method": getattr(record, "method", None),
            "user_id": getattr(record, "user_id", None),
        }
        context = {key: value for key, value in vars(record).items() if key not in _RESERVED_ATTRS}
        if context:
            payload["context"] = context
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(app: Flask, config: type[Config] = Config) -> None:
    """Install the JSON handler on the root logger, or just set levels when disabled."""
    if not config.STRUCTURED_LOGS_ENABLED:
        logging.getLogger("sew4mi").setLevel(config.LOG_LEVEL)
        app.logger.setLevel(config.LOG_LEVEL)
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestContextFilter())

    root_logger = logging.getLogger()
    root_logger.setLevel(config.LOG_LEVEL)
    root_logger.handlers = [handler]
    app.logger.handlers = [handler]
    app.logger.debug("Structured logging configured.")


def ensure_request_id() -> str:
    """Return the active request id, taking it from the inbound header when present."""
    if getattr(g, "request_id", None):
        return g.request_id
    g.request_id = request.headers.get(Config.REQUEST_ID_HEADER) or uuid4().hex
    return g.request_id
