"""
Outbound messaging channels for customer and tailor notifications.

``WhatsAppCloudProvider`` talks to the Meta WhatsApp Cloud API; the
``LoggingProvider`` is used when WhatsApp is disabled (local development,
tests) and only records what would have been sent.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

import requests

from sew4mi.config import Config
from sew4mi.observability import increment_counter

logger = logging.getLogger(__name__)


class MessagingError(RuntimeError):
    """Raised when a message could not be delivered."""


class MessagingProvider(ABC):
    """Interface every outbound channel implements."""

    channel: str = "unknown"

    @abstractmethod
    def send_message(self, phone: str, text: str) -> str:
        """Send ``text`` to ``phone``; return the provider message id."""


class LoggingProvider(MessagingProvider):
    channel = "log"

    def __init__(self) -> None:
        self.sent: List[Tuple[str, str]] = []

    def send_message(self, phone: str, text: str) -> str:
        if not phone:
            raise MessagingError("Recipient has no phone number")
        self.sent.append((phone, text))
        logger.info("Message queued for delivery", extra={"phone": phone, "chars": len(text)})
        return f"log-{len(self.sent)}"


class WhatsAppCloudProvider(MessagingProvider):
    channel = "whatsapp"

    def __init__(
        self,
        access_token: str,
        phone_number_id: str,
        api_url: str = "https://graph.facebook.com/v18.0",
        timeout: float = 10.0,
        http_session: Optional[requests.Session] = None,
    ) -> None:
        if not access_token or not phone_number_id:
            raise ValueError("WhatsApp access token and phone number id are required")
        self._access_token = access_token
        self._phone_number_id = phone_number_id
        self._api_url = api_url.rstrip("/")
        self._timeout = timeout
        self._http = http_session or requests.Session()

    def send_message(self, phone: str, text: str) -> str:
        if not phone:
            raise MessagingError("Recipient has no phone number")
        clean_phone = phone.replace("+", "").replace(" ", "").replace("-", "")
        try:
            response = self._http.post(
                f"{self._api_url}/{self._phone_number_id}/messages",
                headers={
                    "Authorization": f"Bearer {self._access_token}",
                    "Content-Type": "application/json",
                },
                json={
                    "messaging_product": "whatsapp",
                    "to": clean_phone,
                    "type": "text",
                    "text": {"body": text},
                },
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            increment_counter("whatsapp_messages_failed_total")
            raise MessagingError(f"WhatsApp request failed: {exc}") from exc

        if response.status_code != 200:
            increment_counter("whatsapp_messages_failed_total")
            raise MessagingError(f"WhatsApp API error {response.status_code}: {response.text[:200]}")

        try:
            body = response.json()
        except ValueError as exc:
            increment_counter("whatsapp_messages_failed_total")
            raise MessagingError("WhatsApp returned a non-JSON response") from exc

        increment_counter("whatsapp_messages_sent_total")
        messages = body.get("messages") or [{}]
        return messages[0].get("id", "")


def build_messaging_provider(config: type[Config] = Config) -> MessagingProvider:
    if config.WHATSAPP_ENABLED:
        return WhatsAppCloudProvider(
            access_token=config.WHATSAPP_ACCESS_TOKEN,
            phone_number_id=config.WHATSAPP_PHONE_NUMBER_ID,
            api_url=config.WHATSAPP_API_URL,
            timeout=config.WHATSAPP_TIMEOUT_SECONDS,
        )
    return LoggingProvider()
