"""
Payunit REST client for MTN MoMo and Orange Money payments.

Auth is HTTP Basic (API user + password) plus the application key in
x-api-key and a mode header (test | live). Every response is wrapped in an
envelope: {status, statusCode, message, data}.

Environment variables:
    PAYUNIT_API_USER
    PAYUNIT_API_PASSWORD
    PAYUNIT_API_KEY
    PAYUNIT_MODE             test | live (derived from the key prefix if unset)
    PAYUNIT_BASE_URL         defaults to https://gateway.payunit.net
    PAYUNIT_DEFAULT_GATEWAY  used when the carrier cannot be detected
    PAYUNIT_TIMEOUT_SECONDS  defaults to 15
"""

import logging
import os
import re
from dataclasses import dataclass, field
from urllib.parse import urlsplit

import httpx

from momo_billing.errors import GatewayError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://gateway.payunit.net"
PROVIDER_NAME = "payunit"

MTN_GATEWAY = "CM_MTN"
ORANGE_GATEWAY = "CM_ORANGE"


def resolve_mode(api_key: str, configured_mode: str | None = None) -> str:
    normalized = (configured_mode or "").strip().lower()
    if normalized in ("test", "live"):
        return normalized
    if api_key.startswith("live_"):
        return "live"
    return "test"


@dataclass
class GatewayConfig:
    api_user: str
    api_password: str
    api_key: str
    mode: str = "test"
    base_url: str = DEFAULT_BASE_URL
    default_gateway: str | None = None
    timeout: float = 15

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        api_user = os.getenv("PAYUNIT_API_USER")
        api_password = os.getenv("PAYUNIT_API_PASSWORD")
        api_key = os.getenv("PAYUNIT_API_KEY")
        if not api_user or not api_password or not api_key:
            raise GatewayError(
                "PAYUNIT_API_USER, PAYUNIT_API_PASSWORD, and PAYUNIT_API_KEY must be configured."
            )
        return cls(
            api_user=api_user,
            api_password=api_password,
            api_key=api_key,
            mode=resolve_mode(api_key, os.getenv("PAYUNIT_MODE")),
            base_url=os.getenv("PAYUNIT_BASE_URL", DEFAULT_BASE_URL).rstrip("/"),
            default_gateway=os.getenv("PAYUNIT_DEFAULT_GATEWAY") or None,
            timeout=float(os.getenv("PAYUNIT_TIMEOUT_SECONDS", "15")),
        )


@dataclass
class InitializeResult:
    transaction_id: str
    transaction_url: str | None = None
    providers: list[str] = field(default_factory=list)


@dataclass
class PushResult:
    transaction_id: str
    payment_status: str | None = None
    t_id: str | None = None
    gateway: str | None = None


@dataclass
class StatusResult:
    transaction_id: str | None
    status: str
    gateway: str | None = None
    currency: str | None = None
    amount: str | None = None


# ---------------------------------------------------------------------------
# Phone numbers and carrier resolution
# ---------------------------------------------------------------------------

def normalize_phone(phone: str) -> str:
    cleaned = re.sub(r"[\s\-()]", "", phone or "")
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]
    if cleaned.startswith("237"):
        cleaned = cleaned[3:]
    return cleaned


def detect_carrier(phone: str) -> str | None:
    """Classify a normalized Cameroonian number as MTN, ORANGE or None."""
    cleaned = re.sub(r"^\+?237", "", phone)
    prefix = cleaned[:3]
    if len(prefix) < 3 or not prefix.isdigit():
        return None

    number = int(prefix)
    if prefix.startswith("67") or 650 <= number <= 654 or 680 <= number <= 689:
        return "MTN"
    if prefix.startswith("69") or 655 <= number <= 659:
        return "ORANGE"
    return None


def resolve_gateway(phone: str, override: str | None = None, default: str | None = None) -> str:
    if override:
        return override

    carrier = detect_carrier(phone)
    if carrier == "MTN":
        return MTN_GATEWAY
    if carrier == "ORANGE":
        return ORANGE_GATEWAY
    if default:
        return default

    raise ValidationError(
        "Unable to detect a supported Mobile Money provider. Use an MTN or Orange number."
    )


def build_provider_transaction_id(transaction_id: str) -> str:
    return "jbl" + re.sub(r"[^a-zA-Z0-9]", "", transaction_id)


# ---------------------------------------------------------------------------
# Log sanitizing
# ---------------------------------------------------------------------------

def _summarize_url(value):
    if not isinstance(value, str) or not value:
        return value
    parts = urlsplit(value)
    if not parts.scheme:
        return value
    return f"{parts.scheme}://{parts.netloc}{parts.path}"


def summarize_request_body(body: dict | None) -> dict | None:
    if body is None:
        return None
    summary = {}
    for key, value in body.items():
        if key == "phone_number" and isinstance(value, str):
            summary["phone_number_suffix"] = value[-4:]
        elif key in ("return_url", "notify_url"):
            summary[key] = _summarize_url(value)
        else:
            summary[key] = value
    return summary


def summarize_response_text(text: str) -> str:
    compact = " ".join(text.split())
    return compact[:400] if compact else "<empty>"


def is_html_payload(text: str, content_type: str | None) -> bool:
    trimmed = text.lstrip()
    return bool(content_type and "text/html" in content_type) or trimmed.startswith(
        ("<!DOCTYPE", "<html", "<HTML")
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class GatewayClient:
    def __init__(self, config: GatewayConfig, transport: httpx.BaseTransport | None = None):
        self.config = config
        self._transport = transport

    def _headers(self) -> dict:
        return {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "x-api-key": self.config.api_key,
            "mode": self.config.mode,
        }

    def _request(self, method: str, path: str, body: dict | None = None, context: str = "") -> dict:
        url = f"{self.config.base_url}{path}"
        try:
            with httpx.Client(
                timeout=self.config.timeout,
                auth=(self.config.api_user, self.config.api_password),
                transport=self._transport,
            ) as client:
                response = client.request(method, url, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error("Payunit request %s %s failed: %s", method, path, e)
            raise GatewayError(f"Payunit request failed: {e}") from e

        text = response.text
        content_type = response.headers.get("content-type")

        if response.is_error:
            html = is_html_payload(text, content_type)
            summary = "HTML response omitted" if html else summarize_response_text(text)
            logger.error(
                "Payunit HTTP request failed: method=%s path=%s status=%s content_type=%s request=%s response=%s",
                method,
                path,
                response.status_code,
                content_type,
                summarize_request_body(body),
                summary,
            )
            if html:
                message = "Upstream gateway blocked the request before returning JSON."
            else:
                message = summary
            raise GatewayError(
                f"Payunit API error ({response.status_code}): {message}",
                fallback_eligible=True,
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            logger.error(
                "Payunit API returned invalid JSON: method=%s path=%s status=%s response=%s",
                method,
                path,
                response.status_code,
                summarize_response_text(text),
            )
            raise GatewayError(
                "Payunit API returned invalid JSON.",
                fallback_eligible=True,
                status_code=response.status_code,
            ) from e

        if not isinstance(payload, dict):
            raise GatewayError(f"{context} failed: unexpected response shape")

        status = payload.get("status")
        if status and status != "SUCCESS":
            message = payload.get("message") or status
            logger.error(
                "Payunit API returned a failed payload: context=%s status=%s statusCode=%s message=%s",
                context,
                status,
                payload.get("statusCode"),
                message,
            )
            raise GatewayError(f"{context} failed: {message}", status_code=payload.get("statusCode"))

        return payload.get("data") or {}

    def initialize(
        self,
        amount: int,
        currency: str,
        transaction_id: str,
        return_url: str,
        notify_url: str | None = None,
        country: str = "CM",
    ) -> InitializeResult:
        body = {
            "total_amount": amount,
            "currency": currency,
            "transaction_id": transaction_id,
            "return_url": return_url,
            "payment_country": country,
        }
        if notify_url:
            body["notify_url"] = notify_url

        data = self._request("POST", "/api/gateway/initialize", body, context="Payunit initialize")
        providers = [p.get("shortcode") for p in data.get("providers") or [] if p.get("shortcode")]
        return InitializeResult(
            transaction_id=data.get("transaction_id") or transaction_id,
            transaction_url=data.get("transaction_url"),
            providers=providers,
        )

    def push(
        self,
        amount: int,
        currency: str,
        transaction_id: str,
        phone: str,
        gateway: str,
        return_url: str,
        notify_url: str | None = None,
    ) -> PushResult:
        """Trigger the mobile money prompt on the payer's handset."""
        body = {
            "gateway": gateway,
            "amount": amount,
            "transaction_id": transaction_id,
            "phone_number": phone,
            "return_url": return_url,
            "currency": currency,
            "paymentType": "button",
        }
        if notify_url:
            body["notify_url"] = notify_url

        data = self._request("POST", "/api/gateway/makepayment", body, context="Payunit make payment")
        return PushResult(
            transaction_id=data.get("transaction_id") or transaction_id,
            payment_status=data.get("payment_status"),
            t_id=data.get("t_id"),
            gateway=data.get("gateway"),
        )

    def status(self, transaction_id: str) -> StatusResult:
        data = self._request(
            "GET",
            f"/api/gateway/paymentstatus/{transaction_id}",
            context="Payunit payment status",
        )
        return StatusResult(
            transaction_id=data.get("transaction_id"),
            status=(data.get("transaction_status") or "").upper(),
            gateway=data.get("gateway"),
            currency=data.get("currency"),
            amount=data.get("amount"),
        )
