"""
Hubtel mobile-money gateway client.

Wraps the Hubtel merchant API used to collect escrow funding from customers
and to disburse refunds back to their wallets. Calls go through ``requests``
with a bounded retry loop for transient failures (timeouts, dropped
connections, HTTP 408/429/5xx).
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import requests

from sew4mi.config import Config
from sew4mi.models import MobileNetwork, PaymentStatus
from sew4mi.observability import increment_counter, observe_latency

logger = logging.getLogger(__name__)

MOBILE_MONEY_PATH = "/{merchant}/receive/mobilemoney"
DISBURSEMENT_PATH = "/{merchant}/send/mobilemoney"
TRANSACTION_STATUS_PATH = "/{merchant}/transactions/{transaction_id}"

NETWORK_PREFIXES: Dict[MobileNetwork, tuple[str, ...]] = {
    MobileNetwork.MTN: ("024", "054", "055", "059", "025", "053"),
    MobileNetwork.VODAFONE: ("020", "050"),
    MobileNetwork.AIRTELTIGO: ("026", "056", "027", "057"),
}

NETWORK_CHANNELS: Dict[MobileNetwork, str] = {
    MobileNetwork.MTN: "mtn-gh",
    MobileNetwork.VODAFONE: "vodafone-gh",
    MobileNetwork.AIRTELTIGO: "tigo-gh",
}

_STATUS_MAP: Dict[str, PaymentStatus] = {
    "0000": PaymentStatus.SUCCESS,
    "success": PaymentStatus.SUCCESS,
    "successful": PaymentStatus.SUCCESS,
    "paid": PaymentStatus.SUCCESS,
    "0001": PaymentStatus.PENDING,
    "pending": PaymentStatus.PENDING,
    "processing": PaymentStatus.PENDING,
    "failed": PaymentStatus.FAILED,
    "error": PaymentStatus.FAILED,
    "declined": PaymentStatus.FAILED,
    "insufficient_funds": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELLED,
    "canceled": PaymentStatus.CANCELLED,
}

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class HubtelError(RuntimeError):
    """Raised when the gateway rejects a call or stays unreachable after retries."""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


@dataclass(frozen=True)
class PhoneValidation:
    is_valid: bool
    network: Optional[MobileNetwork] = None
    formatted_number: Optional[str] = None
    error: Optional[str] = None


@dataclass
class HubtelPaymentResponse:
    transaction_id: str
    hubtel_transaction_id: Optional[str]
    status: PaymentStatus
    payment_url: Optional[str]
    message: str


@dataclass
class HubtelTransactionStatus:
    transaction_id: str
    hubtel_transaction_id: Optional[str]
    status: PaymentStatus
    amount: Decimal
    customer_phone: str
    message: str


def validate_ghana_phone_number(phone: Optional[str]) -> PhoneValidation:
    """Detect the mobile network and normalise to the 233XXXXXXXXX form."""
    digits = re.sub(r"\D", "", phone or "")
    if digits.startswith("233") and len(digits) == 12:
        local = "0" + digits[3:]
    elif len(digits) == 10 and digits.startswith("0"):
        local = digits
    elif len(digits) == 9:
        local = "0" + digits
    else:
        return PhoneValidation(False, error="Phone number must be a 10-digit Ghana mobile number")

    prefix = local[:3]
    for network, prefixes in NETWORK_PREFIXES.items():
        if prefix in prefixes:
            return PhoneValidation(True, network=network, formatted_number="233" + local[1:])
    return PhoneValidation(False, error=f"Unsupported mobile network prefix {prefix}")


def map_hubtel_status(raw_status: Optional[str]) -> PaymentStatus:
    if raw_status is None:
        return PaymentStatus.PENDING
    return _STATUS_MAP.get(str(raw_status).strip().lower(), PaymentStatus.PENDING)


class HubtelClient:
    """Thin HTTP client for the Hubtel merchant account API."""

    def __init__(
        self,
        config: type[Config] = Config,
        http_session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.http = http_session or requests.Session()
        self._sleep = sleep
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def initiate_mobile_money_payment(
        self,
        transaction_id: str,
        amount: Decimal,
        customer_phone: str,
        customer_name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> HubtelPaymentResponse:
        phone = validate_ghana_phone_number(customer_phone)
        if not phone.is_valid or phone.network is None:
            raise HubtelError(f"Invalid Ghana phone number: {customer_phone}")

        payload = {
            "CustomerName": customer_name or "Customer",
            "CustomerMsisdn": phone.formatted_number,
            "CustomerEmail": "",
            "Channel": NETWORK_CHANNELS[phone.network],
            "Amount": float(amount),
            "PrimaryCallbackUrl": self.config.HUBTEL_CALLBACK_URL,
            "Description": description or "Payment for Sew4Mi order",
            "ClientReference": transaction_id,
        }
        data = self._request("POST", MOBILE_MONEY_PATH.format(merchant=self.config.HUBTEL_MERCHANT_ACCOUNT), payload)
        inner = data.get("Data") or {}
        return HubtelPaymentResponse(
            transaction_id=transaction_id,
            hubtel_transaction_id=inner.get("TransactionId") or data.get("TransactionId"),
            status=map_hubtel_status(data.get("ResponseCode") or inner.get("Status")),
            payment_url=inner.get("CheckoutDirectUrl") or inner.get("CheckoutUrl"),
            message=data.get("Message") or inner.get("Description") or "Payment initiated successfully",
        )

    def send_mobile_money(
        self,
        transaction_id: str,
        amount: Decimal,
        recipient_phone: str,
        recipient_name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> HubtelPaymentResponse:
        """Disburse funds to a wallet; used for escrow refunds."""
        phone = validate_ghana_phone_number(recipient_phone)
        if not phone.is_valid or phone.network is None:
            raise HubtelError(f"Invalid Ghana phone number: {recipient_phone}")

        payload = {
            "RecipientName": recipient_name or "Customer",
            "RecipientMsisdn": phone.formatted_number,
            "Channel": NETWORK_CHANNELS[phone.network],
            "Amount": float(amount),
            "PrimaryCallbackUrl": self.config.HUBTEL_CALLBACK_URL,
            "Description": description or "Sew4Mi escrow refund",
            "ClientReference": transaction_id,
        }
        data = self._request("POST", DISBURSEMENT_PATH.format(merchant=self.config.HUBTEL_MERCHANT_ACCOUNT), payload)
        inner = data.get("Data") or {}
        return HubtelPaymentResponse(
            transaction_id=transaction_id,
            hubtel_transaction_id=inner.get("TransactionId") or data.get("TransactionId"),
            status=map_hubtel_status(data.get("ResponseCode") or inner.get("Status")),
            payment_url=None,
            message=data.get("Message") or "Disbursement submitted",
        )

    def get_transaction_status(self, transaction_id: str) -> HubtelTransactionStatus:
        path = TRANSACTION_STATUS_PATH.format(
            merchant=self.config.HUBTEL_MERCHANT_ACCOUNT,
            transaction_id=transaction_id,
        )
        data = self._request("GET", path)
        inner = data.get("Data") or data
        return HubtelTransactionStatus(
            transaction_id=transaction_id,
            hubtel_transaction_id=inner.get("TransactionId"),
            status=map_hubtel_status(inner.get("Status") or inner.get("ResponseCode")),
            amount=Decimal(str(inner.get("Amount") or "0")),
            customer_phone=inner.get("CustomerMsisdn") or "",
            message=inner.get("Description") or inner.get("Message") or "Status retrieved",
        )

    def verify_webhook_signature(self, payload: bytes | str, signature: Optional[str]) -> bool:
        """Check an HMAC-SHA256 hex signature (optionally ``sha256=`` prefixed)."""
        secret = self.config.HUBTEL_WEBHOOK_SECRET
        if not secret or not signature:
            return False
        body = payload.encode("utf-8") if isinstance(payload, str) else payload
        expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        provided = signature.strip()
        if provided.lower().startswith("sha256="):
            provided = provided[len("sha256="):]
        return hmac.compare_digest(expected, provided.lower())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _auth_header(self) -> str:
        credentials = f"{self.config.HUBTEL_CLIENT_ID}:{self.config.HUBTEL_CLIENT_SECRET}".encode("utf-8")
        return "Basic " + base64.b64encode(credentials).decode("ascii")

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.config.HUBTEL_BASE_URL.rstrip('/')}{path}"
        headers = {
            "Authorization": self._auth_header(),
            "Content-Type": "application/json",
        }
        attempts = max(1, self.config.HUBTEL_MAX_ATTEMPTS)
        last_error: Optional[HubtelError] = None

        for attempt in range(1, attempts + 1):
            started = time.perf_counter()
            try:
                response = self.http.request(
                    method,
                    url,
                    json=payload,
                    headers=headers,
                    timeout=self.config.HUBTEL_TIMEOUT_SECONDS,
                )
            except (requests.Timeout, requests.ConnectionError) as exc:
                last_error = HubtelError(f"Hubtel request failed: {exc}", retryable=True)
            else:
                observe_latency(
                    "hubtel_request_latency_ms",
                    (time.perf_counter() - started) * 1000,
                    labels={"method": method, "status": str(response.status_code)},
                )
                if response.ok:
                    try:
                        return response.json()
                    except ValueError as exc:
                        raise HubtelError("Hubtel returned a non-JSON response", response.status_code) from exc
                retryable = response.status_code in RETRYABLE_STATUS_CODES or response.status_code >= 500
                last_error = HubtelError(
                    f"Hubtel API error {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                    retryable=retryable,
                )
                if not retryable:
                    break

            increment_counter("hubtel_request_failures_total", labels={"method": method})
            if attempt < attempts:
                delay = self.config.HUBTEL_RETRY_DELAY_SECONDS * (2 ** (attempt - 1))
                self.logger.warning(
                    "Hubtel call failed, retrying",
                    extra={"attempt": attempt, "url": url, "reason": str(last_error)},
                )
                self._sleep(delay)

        raise last_error or HubtelError("Hubtel request failed")
