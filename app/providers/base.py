from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict

import httpx

from app.config import Settings
from app.domain.errors import AuthenticationFailed, GatewayError, GatewayTimeout
from app.domain.models import GatewayConfig, Payment
from app.domain.statuses import PaymentStatus, RefundStatus

from .auth import TokenProvider

logger = logging.getLogger(__name__)

MONEY_QUANT = Decimal("0.01")

# Vocabulary shared by every gateway; adapters extend it with their own words
CANONICAL_STATUS_MAP: Dict[str, PaymentStatus] = {
    "success": PaymentStatus.COMPLETED,
    "completed": PaymentStatus.COMPLETED,
    "Completed": PaymentStatus.COMPLETED,
    "failed": PaymentStatus.FAILED,
    "error": PaymentStatus.FAILED,
}

REFUND_STATUS_MAP: Dict[str, RefundStatus] = {
    "completed": RefundStatus.COMPLETED,
    "success": RefundStatus.COMPLETED,
    "succeeded": RefundStatus.COMPLETED,
    "refunded": RefundStatus.COMPLETED,
    "pending": RefundStatus.PROCESSING,
    "processing": RefundStatus.PROCESSING,
    "initiated": RefundStatus.PROCESSING,
    "failed": RefundStatus.FAILED,
    "error": RefundStatus.FAILED,
    "rejected": RefundStatus.FAILED,
    "canceled": RefundStatus.FAILED,
    "cancelled": RefundStatus.FAILED,
}


def format_amount(amount: Decimal) -> str:
    return str(Decimal(amount).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP))


def parse_amount(value: Any) -> Decimal | None:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return None


def sorted_json_digest(payload: bytes, secret: str) -> str | None:
    """HMAC-SHA256 over the compact JSON of a payload with its top-level keys sorted."""
    try:
        data = json.loads(payload or b"{}")
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    canonical = json.dumps(dict(sorted(data.items())), separators=(",", ":"))
    return hmac.new(secret.encode(), canonical.encode(), hashlib.sha256).hexdigest()


def signatures_match(expected: str | None, provided: str | None) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.lower(), provided.strip().lower())


@dataclass
class GatewayResponse:
    """Normalized result of an outbound gateway call.

    ``payload`` keeps the provider body verbatim for the audit trail; the other
    fields carry only canonical values.
    """

    ok: bool
    status: str | None = None
    transaction_ref: str | None = None
    transaction_id: str | None = None
    redirect_url: str | None = None
    refund_id: str | None = None
    amount: Decimal | None = None
    settled: bool = True
    payload: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    error_code: str | None = None


@dataclass
class GatewayNotification:
    """Canonical view of an inbound callback or webhook."""

    kind: str  # "payment" | "refund"
    reference: str | None
    status: str | None = None
    transaction_id: str | None = None
    refund_reference: str | None = None
    amount: Decimal | None = None
    payload: dict[str, Any] = field(default_factory=dict)


class GatewayAdapter(ABC):
    """Translate canonical payment operations to one provider's protocol."""

    code: str = ""
    signature_header: str | None = None
    STATUS_MAP: Dict[str, PaymentStatus] = {}

    def __init__(self, config: GatewayConfig, settings: Settings, *, event_log: Any | None = None):
        self.config = config
        self.settings = settings
        self.event_log = event_log

    @abstractmethod
    async def initiate(self, payment: Payment) -> GatewayResponse:
        """Start a payment and return the redirect target and gateway reference."""

    @abstractmethod
    async def verify_status(self, transaction_ref: str) -> GatewayResponse:
        """Query the gateway for the current status of a payment."""

    @abstractmethod
    async def refund(self, transaction_ref: str, amount: Decimal, reason: str | None) -> GatewayResponse:
        """Refund ``amount`` of a settled payment."""

    @abstractmethod
    def verify_signature(self, payload: bytes, signature: str | None) -> bool:
        """Return True when ``signature`` authenticates the raw ``payload``."""

    @abstractmethod
    def parse_notification(self, payload: dict[str, Any]) -> GatewayNotification:
        """Translate a webhook body into a canonical notification."""

    def callback_reference(self, payload: dict[str, Any]) -> str | None:
        """Gateway reference carried by the browser return, if the gateway sends one."""
        return None

    async def confirm_callback(self, reference: str, payload: dict[str, Any]) -> GatewayNotification:
        """Ask the gateway for the status of ``reference``; the redirect itself proves nothing."""
        result = await self.verify_status(reference)
        return GatewayNotification(
            kind="payment",
            reference=reference,
            status=result.status if result.ok else None,
            transaction_id=result.transaction_id,
            amount=result.amount,
            payload={"callback": payload, "verification": result.payload},
        )

    async def complete_callback(self, payload: dict[str, Any]) -> GatewayNotification:
        """Handle a browser redirect confirmation.

        The redirect is unauthenticated: any status in its query string is
        ignored and the outcome comes from the gateway. Without a gateway
        reference the notification carries no status.
        """
        reference = self.callback_reference(payload)
        if not reference:
            return GatewayNotification(kind="payment", reference=None, payload={"callback": payload})
        return await self.confirm_callback(str(reference), payload)

    def map_status(self, raw: str | None) -> PaymentStatus | None:
        if raw is None:
            return None
        value = str(raw).strip()
        status = self.STATUS_MAP.get(value) or CANONICAL_STATUS_MAP.get(value)
        if status is None:
            lowered = value.lower()
            status = self.STATUS_MAP.get(lowered) or CANONICAL_STATUS_MAP.get(lowered)
        return status

    def map_refund_status(self, raw: str | None) -> RefundStatus | None:
        if raw is None:
            return None
        return REFUND_STATUS_MAP.get(str(raw).strip().lower())

    def _log_event(
        self,
        *,
        operation: str,
        request_url: str,
        reference: str | None = None,
        request_headers: Dict[str, str] | None = None,
        request_body: Dict[str, Any] | None = None,
        response_status: int | None = None,
        response_body: Dict[str, Any] | None = None,
        error_message: str | None = None,
        latency_ms: int | None = None,
    ) -> None:
        logger.info(
            "gateway call",
            extra={
                "gateway": self.code,
                "event": operation,
                "response_code": response_status,
                "latency_ms": latency_ms,
                "transaction_id": reference,
            },
        )
        if not self.settings.log_provider_events or self.event_log is None:
            return
        try:
            self.event_log.log_provider_event(
                provider=self.code,
                direction="OUTBOUND",
                operation=operation,
                request_url=request_url,
                reference=reference,
                response_status=response_status,
                error_message=error_message,
                latency_ms=latency_ms,
                request_headers=request_headers,
                request_body=request_body,
                response_body=response_body,
            )
        except Exception as exc:  # noqa: BLE001
            logger.info(
                "provider event log error",
                extra={"gateway": self.code, "event": str(exc)},
            )


class HttpGatewayAdapter(GatewayAdapter):
    """Adapter base for gateways reached over JSON/HTTP with a bearer-style token."""

    MASKED_HEADERS = {"authorization", "password", "username", "x-app-key"}
    MASKED_FIELDS = {"app_secret", "client_secret", "password", "assertion"}

    def __init__(
        self,
        config: GatewayConfig,
        settings: Settings,
        *,
        token_provider: TokenProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        event_log: Any | None = None,
    ):
        super().__init__(config, settings, event_log=event_log)
        self.token_provider = token_provider
        self.transport = transport
        self.timeout = settings.gateway_timeout_seconds

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        json_body: Dict[str, Any] | None = None,
        headers: Dict[str, str] | None = None,
        reference: str | None = None,
    ) -> httpx.Response:
        """Send one call, retrying once with a fresh token when the gateway answers 401."""
        url = path if path.startswith("http") else f"{self.config.base_url}{path}"
        for attempt in range(2):
            request_headers: Dict[str, str] = {"Content-Type": "application/json", "Accept": "application/json"}
            if self.token_provider is not None:
                token = await self.token_provider.get_token(force=attempt > 0)
                request_headers.update(self._auth_headers(token))
            request_headers.update(headers or {})
            started = time.monotonic()
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                    resp = await client.request(method, url, headers=request_headers, json=json_body)
            except httpx.TimeoutException as exc:
                latency_ms = int((time.monotonic() - started) * 1000)
                self._log_event(
                    operation=operation,
                    request_url=url,
                    reference=reference,
                    request_headers=self._mask_headers(request_headers),
                    request_body=self._mask_fields(json_body),
                    error_message="timeout",
                    latency_ms=latency_ms,
                )
                raise GatewayTimeout(f"{self.config.name} did not answer within {self.timeout}s") from exc
            except httpx.HTTPError as exc:
                latency_ms = int((time.monotonic() - started) * 1000)
                self._log_event(
                    operation=operation,
                    request_url=url,
                    reference=reference,
                    request_headers=self._mask_headers(request_headers),
                    request_body=self._mask_fields(json_body),
                    error_message=str(exc),
                    latency_ms=latency_ms,
                )
                raise GatewayError(f"{self.config.name} unreachable: {exc}", code="transport_error") from exc

            latency_ms = int((time.monotonic() - started) * 1000)
            self._log_event(
                operation=operation,
                request_url=url,
                reference=reference,
                request_headers=self._mask_headers(request_headers),
                request_body=self._mask_fields(json_body),
                response_status=resp.status_code,
                response_body=self._json(resp),
                error_message=None if resp.status_code < 400 else f"HTTP {resp.status_code}",
                latency_ms=latency_ms,
            )
            if resp.status_code == 401 and self.token_provider is not None:
                if attempt == 0:
                    logger.info("gateway token rejected; refreshing", extra={"gateway": self.code})
                    continue
                raise AuthenticationFailed(
                    f"{self.config.name} rejected refreshed credentials",
                    payload=self._json(resp),
                )
            return resp
        raise AuthenticationFailed(f"{self.config.name} rejected credentials")  # pragma: no cover

    @staticmethod
    def _json(resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError:
            return {"text": resp.text[:512]}
        return data if isinstance(data, dict) else {"data": data}

    def _mask_headers(self, headers: Dict[str, str]) -> Dict[str, str]:
        masked: Dict[str, str] = {}
        for key, value in (headers or {}).items():
            masked[key] = "***" if key.lower() in self.MASKED_HEADERS else value
        return masked

    def _mask_fields(self, body: Dict[str, Any] | None) -> Dict[str, Any]:
        return {key: ("***" if key in self.MASKED_FIELDS else value) for key, value in (body or {}).items()}
