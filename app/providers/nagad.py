from __future__ import annotations

import base64
import json
import logging
import secrets
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding

from app.config import Settings
from app.domain.errors import GatewayNotConfigured
from app.domain.models import GatewayConfig, Payment
from app.domain.statuses import PaymentStatus, RefundStatus

from .auth import SignedAssertionTokenProvider, TokenProvider
from .base import (
    GatewayNotification,
    GatewayResponse,
    HttpGatewayAdapter,
    format_amount,
    parse_amount,
    signatures_match,
    sorted_json_digest,
)

logger = logging.getLogger(__name__)


class NagadAdapter(HttpGatewayAdapter):
    """Nagad remote payment gateway.

    Requests carry a ``sensitiveData`` block signed with the merchant RSA key;
    API access uses a token obtained with a signed JWT assertion.
    """

    code = "nagad"
    signature_header = "X-Nagad-Signature"
    STATUS_MAP = {
        "Success": PaymentStatus.COMPLETED,
        "Failed": PaymentStatus.FAILED,
        "Aborted": PaymentStatus.FAILED,
        "Cancelled": PaymentStatus.CANCELLED,
        "Initiated": PaymentStatus.PENDING,
        "Ready": PaymentStatus.PENDING,
        "OrderCreated": PaymentStatus.PENDING,
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
        self.merchant_id = creds.get("merchant_id", "")
        pem = creds.get("private_key", "")
        if not pem:
            raise GatewayNotConfigured("Nagad merchant private key not configured")
        try:
            self._private_key = serialization.load_pem_private_key(pem.encode(), password=None)
        except (ValueError, TypeError) as exc:
            raise GatewayNotConfigured(f"Nagad merchant private key is invalid: {exc}") from exc
        if token_provider is None:
            token_provider = SignedAssertionTokenProvider(
                url=f"{config.base_url}/oauth/token",
                issuer=self.merchant_id,
                private_key=pem,
                margin_seconds=settings.token_cache_margin_seconds,
                timeout=settings.gateway_timeout_seconds,
                transport=kwargs.get("transport"),
            )
        super().__init__(config, settings, token_provider=token_provider, **kwargs)

    def _km_headers(self) -> Dict[str, str]:
        return {
            "X-KM-Api-Version": "v-0.2.0",
            "X-KM-IP-V4": str(self.config.extra.get("client_ip", "127.0.0.1")),
            "X-KM-Client-Type": "PC_WEB",
        }

    def sign(self, data: bytes) -> str:
        signature = self._private_key.sign(data, padding.PKCS1v15(), hashes.SHA256())
        return base64.b64encode(signature).decode()

    def _signed_block(self, sensitive: Dict[str, Any]) -> Dict[str, str]:
        raw = json.dumps(sensitive, separators=(",", ":")).encode()
        return {
            "sensitiveData": base64.b64encode(raw).decode(),
            "signature": self.sign(raw),
        }

    @staticmethod
    def _error(data: Dict[str, Any], fallback: str) -> str:
        return str(data.get("reason") or data.get("message") or fallback)

    async def initiate(self, payment: Payment) -> GatewayResponse:
        now = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        order_id = payment.invoice_number
        sensitive = {
            "merchantId": self.merchant_id,
            "datetime": now,
            "orderId": order_id,
            "challenge": secrets.token_hex(20),
            "amount": format_amount(payment.amount),
            "currencyCode": payment.currency,
        }
        body: Dict[str, Any] = {
            "dateTime": now,
            "merchantCallbackURL": self.config.callback_for(payment),
            **self._signed_block(sensitive),
        }
        resp = await self._request(
            "CREATE",
            "POST",
            f"/checkout/initialize/{self.merchant_id}/{order_id}",
            json_body=body,
            headers=self._km_headers(),
            reference=order_id,
        )
        data = self._json(resp)
        reference = data.get("paymentReferenceId")
        if resp.status_code >= 400 or not reference:
            return GatewayResponse(
                ok=False,
                payload=data,
                error=self._error(data, "Payment initiation failed"),
                error_code=str(data.get("status") or resp.status_code),
            )
        logger.info(
            "nagad payment initialized",
            extra={"invoice_number": payment.invoice_number, "transaction_id": reference},
        )
        return GatewayResponse(
            ok=True,
            status=data.get("status"),
            transaction_ref=str(reference),
            redirect_url=data.get("callBackUrl"),
            payload=data,
        )

    async def verify_status(self, transaction_ref: str) -> GatewayResponse:
        resp = await self._request(
            "STATUS",
            "GET",
            f"/verify/payment/{transaction_ref}",
            headers=self._km_headers(),
            reference=transaction_ref,
        )
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
            transaction_ref=str(data.get("paymentRefId") or transaction_ref),
            transaction_id=data.get("issuerPaymentRefNo"),
            amount=parse_amount(data.get("amount")),
            payload=data,
        )

    async def refund(self, transaction_ref: str, amount: Decimal, reason: str | None) -> GatewayResponse:
        sensitive = {
            "merchantId": self.merchant_id,
            "originalRequestDate": datetime.now(timezone.utc).strftime("%Y%m%d"),
            "originalAmount": format_amount(amount),
            "cancelAmount": format_amount(amount),
            "referenceNo": transaction_ref,
            "referenceMessage": (reason or "Refund")[:255],
        }
        resp = await self._request(
            "REFUND",
            "POST",
            f"/purchase/refund/{transaction_ref}",
            json_body={"paymentRefId": transaction_ref, **self._signed_block(sensitive)},
            headers=self._km_headers(),
            reference=transaction_ref,
        )
        data = self._json(resp)
        status = str(data.get("status") or "")
        refund_status = self.map_refund_status(status)
        if resp.status_code >= 400 or refund_status is RefundStatus.FAILED:
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
            status=status or None,
            transaction_ref=transaction_ref,
            refund_id=data.get("refundTrxID") or data.get("refundRefNo"),
            amount=amount,
            settled=refund_status is RefundStatus.COMPLETED,
            payload=data,
        )

    def verify_signature(self, payload: bytes, signature: str | None) -> bool:
        secret = self.config.webhook_secret
        if not secret:
            return False
        return signatures_match(sorted_json_digest(payload, secret), signature)

    def parse_notification(self, payload: Dict[str, Any]) -> GatewayNotification:
        if payload.get("refundStatus") is not None:
            return GatewayNotification(
                kind="refund",
                reference=payload.get("paymentRefId"),
                status=payload.get("refundStatus"),
                transaction_id=payload.get("refundTrxID"),
                refund_reference=payload.get("refundRefNo") or payload.get("refundTrxID"),
                amount=parse_amount(payload.get("amount")),
                payload=payload,
            )
        return GatewayNotification(
            kind="payment",
            reference=payload.get("paymentRefId") or payload.get("payment_ref_id"),
            status=payload.get("status"),
            transaction_id=payload.get("issuerPaymentRefNo"),
            amount=parse_amount(payload.get("amount")),
            payload=payload,
        )

    def callback_reference(self, payload: Dict[str, Any]) -> str | None:
        return payload.get("payment_ref_id") or payload.get("paymentRefId")
