from __future__ import annotations

import hashlib
import hmac
import json
import logging
from decimal import Decimal
from typing import Any, Dict

from app.config import Settings
from app.domain.models import GatewayConfig, Payment
from app.domain.statuses import PaymentStatus, RefundStatus

from .auth import ClientCredentialsTokenProvider, TokenProvider
from .base import (
    GatewayNotification,
    GatewayResponse,
    HttpGatewayAdapter,
    format_amount,
    parse_amount,
    signatures_match,
)

logger = logging.getLogger(__name__)


def rocket_digest(fields: Dict[str, Any], store_password: str) -> str:
    """HMAC-SHA256 over ``key+value`` pairs of scalar fields sorted by key."""
    message = "".join(
        f"{key}{value}"
        for key, value in sorted(fields.items())
        if key != "signature" and not isinstance(value, (dict, list)) and value is not None
    )
    return hmac.new(store_password.encode(), message.encode(), hashlib.sha256).hexdigest()


class RocketAdapter(HttpGatewayAdapter):
    """Rocket (DBBL mobile banking) REST API with OAuth client credentials.

    The return URL only carries our own ``payment_id``, so callbacks are
    confirmed against the stored Rocket reference with a status query.
    """

    code = "rocket"
    signature_header = "X-Rocket-Signature"
    STATUS_MAP = {
        "success": PaymentStatus.COMPLETED,
        "completed": PaymentStatus.COMPLETED,
        "failed": PaymentStatus.FAILED,
        "error": PaymentStatus.FAILED,
        "cancelled": PaymentStatus.CANCELLED,
        "canceled": PaymentStatus.CANCELLED,
        "pending": PaymentStatus.PENDING,
        "expired": PaymentStatus.EXPIRED,
    }

    def __init__(
        self,
        config: GatewayConfig,
        settings: Settings,
        *,
        token_provider: TokenProvider | None = None,
        **kwargs: Any,
    ):
        creds = config.credentials
        if token_provider is None:
            token_provider = ClientCredentialsTokenProvider(
                url=f"{config.base_url}/api/v1/token",
                client_id=creds.get("client_id", ""),
                client_secret=creds.get("client_secret", ""),
                margin_seconds=settings.token_cache_margin_seconds,
                timeout=settings.gateway_timeout_seconds,
                transport=kwargs.get("transport"),
            )
        super().__init__(config, settings, token_provider=token_provider, **kwargs)

    @staticmethod
    def _error(data: Dict[str, Any], fallback: str) -> str:
        return str(data.get("message") or data.get("error") or fallback)

    async def initiate(self, payment: Payment) -> GatewayResponse:
        body = {
            "order_id": payment.invoice_number,
            "amount": format_amount(payment.amount),
            "currency": payment.currency,
            "callback_url": self.config.callback_for(payment),
        }
        resp = await self._request("CREATE", "POST", "/api/v1/payment", json_body=body, reference=payment.invoice_number)
        data = self._json(resp)
        if resp.status_code >= 400 or not data.get("payment_id"):
            return GatewayResponse(
                ok=False,
                payload=data,
                error=self._error(data, "Payment initiation failed"),
                error_code=str(data.get("code") or resp.status_code),
            )
        return GatewayResponse(
            ok=True,
            status=data.get("status"),
            transaction_ref=str(data["payment_id"]),
            redirect_url=data.get("redirect_url"),
            payload=data,
        )

    async def verify_status(self, transaction_ref: str) -> GatewayResponse:
        resp = await self._request("STATUS", "GET", f"/api/v1/payment/{transaction_ref}", reference=transaction_ref)
        data = self._json(resp)
        if resp.status_code >= 400:
            return GatewayResponse(
                ok=False,
                transaction_ref=transaction_ref,
                payload=data,
                error=self._error(data, "Status query failed"),
                error_code=str(resp.status_code),
            )
        return GatewayResponse(
            ok=True,
            status=data.get("status"),
            transaction_ref=transaction_ref,
            transaction_id=data.get("transaction_id"),
            amount=parse_amount(data.get("amount")),
            payload=data,
        )

    async def refund(self, transaction_ref: str, amount: Decimal, reason: str | None) -> GatewayResponse:
        body = {
            "transaction_id": transaction_ref,
            "amount": format_amount(amount),
            "reason": (reason or "Refund")[:255],
        }
        resp = await self._request("REFUND", "POST", "/api/v1/refund", json_body=body, reference=transaction_ref)
        data = self._json(resp)
        status = str(data.get("status") or "")
        refund_status = self.map_refund_status(status)
        if resp.status_code >= 400 or refund_status is RefundStatus.FAILED or not data.get("refund_id"):
            return GatewayResponse(
                ok=False,
                status=status or None,
                transaction_ref=transaction_ref,
                payload=data,
                error=self._error(data, "Refund failed"),
                error_code=str(resp.status_code),
            )
        return GatewayResponse(
            ok=True,
            status=status,
            transaction_ref=transaction_ref,
            refund_id=str(data["refund_id"]),
            amount=amount,
            settled=refund_status is RefundStatus.COMPLETED,
            payload=data,
        )

    def verify_signature(self, payload: bytes, signature: str | None) -> bool:
        secret = self.config.credentials.get("store_password") or self.config.webhook_secret
        if not secret:
            return False
        try:
            data = json.loads(payload or b"{}")
        except ValueError:
            return False
        if not isinstance(data, dict):
            return False
        provided = signature or data.get("signature")
        return signatures_match(rocket_digest(data, secret), provided)

    def parse_notification(self, payload: Dict[str, Any]) -> GatewayNotification:
        if payload.get("refund_id"):
            return GatewayNotification(
                kind="refund",
                reference=payload.get("transaction_id"),
                status=payload.get("status"),
                transaction_id=payload.get("refund_id"),
                refund_reference=payload.get("refund_id"),
                amount=parse_amount(payload.get("refund_amount")),
                payload=payload,
            )
        return GatewayNotification(
            kind="payment",
            reference=payload.get("payment_id") or payload.get("transaction_id"),
            status=payload.get("status"),
            transaction_id=payload.get("transaction_id"),
            amount=parse_amount(payload.get("amount")),
            payload=payload,
        )
