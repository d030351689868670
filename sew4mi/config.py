"""Settings for the Sew4Mi backend, read once from the environment (and ``.env``)."""
from __future__ import annotations

import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

PROJECT_ROOT: Final[Path] = Path(__file__).resolve().parent.parent

# Values already in the process environment win over the file
load_dotenv(dotenv_path=PROJECT_ROOT / ".env", override=False)


def _str_to_bool(value: str | bool | None, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _postgres_url_from_parts() -> str | None:
    parts = [os.getenv(key) for key in ("DB_USERNAME", "DB_PASSWORD", "DB_HOST", "DB_PORT", "DB_NAME")]
    if not all(parts):
        return None
    user, password, host, port, name = parts
    driver = os.getenv("DB_DRIVER", "postgresql+psycopg2")
    return f"{driver}://{user}:{password}@{host}:{port}/{name}"


def _determine_database_url() -> str:
    """DATABASE_URL if set, else a Postgres URL built from DB_* parts, else a local SQLite file."""
    url = os.getenv("DATABASE_URL") or _postgres_url_from_parts()
    if url:
        return url
    sqlite_file = PROJECT_ROOT / "db" / "sew4mi.db"
    sqlite_file.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{sqlite_file.as_posix()}"


class Config:
    APP_ENV: Final[str] = os.getenv("APP_ENV", "development")
    APP_BASE_URL: Final[str] = os.getenv("APP_BASE_URL", "http://localhost:5000")

    SECRET_KEY: Final[str] = os.getenv("SECRET_KEY", "change-me-in-prod")
    DEBUG: Final[bool] = _str_to_bool(os.getenv("FLASK_DEBUG"), default=APP_ENV == "development")
    TESTING: Final[bool] = _str_to_bool(os.getenv("FLASK_TESTING"))

    # run.py and the container entrypoint
    FLASK_RUN_HOST: Final[str] = os.getenv("FLASK_RUN_HOST", "0.0.0.0")
    FLASK_RUN_PORT: Final[int] = _env_int("FLASK_RUN_PORT", 5000)

    DATABASE_URL: Final[str] = _determine_database_url()
    SQL_ECHO: Final[bool] = _str_to_bool(os.getenv("SQL_ECHO"))
    DB_POOL_SIZE: Final[int] = _env_int("DB_POOL_SIZE", 10)
    DB_MAX_OVERFLOW: Final[int] = _env_int("DB_MAX_OVERFLOW", 20)

    # Escrow split (must sum to 1)
    ESCROW_DEPOSIT_PERCENTAGE: Final[Decimal] = Decimal(os.getenv("ESCROW_DEPOSIT_PERCENTAGE", "0.25"))
    ESCROW_FITTING_PERCENTAGE: Final[Decimal] = Decimal(os.getenv("ESCROW_FITTING_PERCENTAGE", "0.50"))
    ESCROW_FINAL_PERCENTAGE: Final[Decimal] = Decimal(os.getenv("ESCROW_FINAL_PERCENTAGE", "0.25"))

    # Milestone approval
    MILESTONE_AUTO_APPROVAL_HOURS: Final[int] = _env_int("MILESTONE_AUTO_APPROVAL_HOURS", 48)
    MILESTONE_NOTES_MAX_LENGTH: Final[int] = _env_int("MILESTONE_NOTES_MAX_LENGTH", 1000)
    MILESTONE_COMMENT_MAX_LENGTH: Final[int] = _env_int("MILESTONE_COMMENT_MAX_LENGTH", 500)

    # Disputes
    DISPUTE_AUTO_ESCALATION_HOURS: Final[int] = _env_int("DISPUTE_AUTO_ESCALATION_HOURS", 24)
    DISPUTE_MAX_EVIDENCE_FILES: Final[int] = _env_int("DISPUTE_MAX_EVIDENCE_FILES", 5)
    DISPUTE_MAX_FILE_SIZE_BYTES: Final[int] = _env_int("DISPUTE_MAX_FILE_SIZE_BYTES", 10 * 1024 * 1024)
    _allowed_types = [
        file_type.strip().lower()
        for file_type in os.getenv(
            "DISPUTE_ALLOWED_FILE_TYPES",
            "image/jpeg,image/png,image/webp,application/pdf,text/plain",
        ).split(",")
        if file_type.strip()
    ]
    DISPUTE_ALLOWED_FILE_TYPES: Final[tuple[str, ...]] = tuple(_allowed_types) or (
        "image/jpeg",
        "image/png",
        "image/webp",
        "application/pdf",
        "text/plain",
    )

    # Bulk (group order) discounts
    BULK_MIN_ITEMS: Final[int] = _env_int("BULK_MIN_ITEMS", 3)
    BULK_MAX_ORDERS_PER_GROUP: Final[int] = _env_int("BULK_MAX_ORDERS_PER_GROUP", 20)

    # Hubtel mobile money
    HUBTEL_CLIENT_ID: Final[str] = os.getenv("HUBTEL_CLIENT_ID", "")
    HUBTEL_CLIENT_SECRET: Final[str] = os.getenv("HUBTEL_CLIENT_SECRET", "")
    HUBTEL_MERCHANT_ACCOUNT: Final[str] = os.getenv("HUBTEL_MERCHANT_ACCOUNT", "")
    HUBTEL_BASE_URL: Final[str] = os.getenv("HUBTEL_BASE_URL", "https://api.hubtel.com/v1/merchantaccount")
    HUBTEL_WEBHOOK_SECRET: Final[str] = os.getenv("HUBTEL_WEBHOOK_SECRET", "")
    HUBTEL_CALLBACK_URL: Final[str] = os.getenv(
        "HUBTEL_CALLBACK_URL", f"{APP_BASE_URL}/api/webhooks/hubtel"
    )
    HUBTEL_TIMEOUT_SECONDS: Final[float] = float(os.getenv("HUBTEL_TIMEOUT_SECONDS", "30"))
    HUBTEL_MAX_ATTEMPTS: Final[int] = _env_int("HUBTEL_MAX_ATTEMPTS", 3)
    HUBTEL_RETRY_DELAY_SECONDS: Final[float] = float(os.getenv("HUBTEL_RETRY_DELAY_SECONDS", "1"))
    PAYMENT_MIN_AMOUNT: Final[Decimal] = Decimal(os.getenv("PAYMENT_MIN_AMOUNT", "0.01"))
    PAYMENT_MAX_AMOUNT: Final[Decimal] = Decimal(os.getenv("PAYMENT_MAX_AMOUNT", "100000"))

    # WhatsApp Cloud API messaging
    WHATSAPP_ENABLED: Final[bool] = _str_to_bool(os.getenv("WHATSAPP_ENABLED"), default=False)
    WHATSAPP_API_URL: Final[str] = os.getenv("WHATSAPP_API_URL", "https://graph.facebook.com/v18.0")
    WHATSAPP_PHONE_NUMBER_ID: Final[str] = os.getenv("WHATSAPP_PHONE_NUMBER_ID", "")
    WHATSAPP_ACCESS_TOKEN: Final[str] = os.getenv("WHATSAPP_ACCESS_TOKEN", "")
    WHATSAPP_TIMEOUT_SECONDS: Final[float] = float(os.getenv("WHATSAPP_TIMEOUT_SECONDS", "10"))
    NOTIFICATION_MAX_ATTEMPTS: Final[int] = _env_int("NOTIFICATION_MAX_ATTEMPTS", 3)

    # Scheduled jobs
    CRON_SECRET: Final[str] = os.getenv("CRON_SECRET", "")

    # Logging
    STRUCTURED_LOGS_ENABLED: Final[bool] = _str_to_bool(os.getenv("STRUCTURED_LOGS_ENABLED"), default=True)
    LOG_LEVEL: Final[str] = os.getenv("LOG_LEVEL", "INFO")
    REQUEST_ID_HEADER: Final[str] = os.getenv("REQUEST_ID_HEADER", "X-Request-ID")

    ADMIN_SIGNUP_TOKEN: Final[str] = os.getenv("ADMIN_SIGNUP_TOKEN", "")

    _FLASK_KEYS = {
        "SECRET_KEY": "SECRET_KEY",
        "ENV": "APP_ENV",
        "DEBUG": "DEBUG",
        "TESTING": "TESTING",
        "SQLALCHEMY_DATABASE_URI": "DATABASE_URL",
        "MILESTONE_AUTO_APPROVAL_HOURS": "MILESTONE_AUTO_APPROVAL_HOURS",
        "STRUCTURED_LOGS_ENABLED": "STRUCTURED_LOGS_ENABLED",
        "CRON_SECRET": "CRON_SECRET",
        "ADMIN_SIGNUP_TOKEN": "ADMIN_SIGNUP_TOKEN",
    }

    @classmethod
    def configure_app(cls, app: Any) -> None:
        """Copy the settings Flask code reads through ``app.config``."""
        for flask_key, attribute in cls._FLASK_KEYS.items():
            app.config[flask_key] = getattr(cls, attribute)
