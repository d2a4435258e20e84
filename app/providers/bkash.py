from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict

from app.config import Settings
from app.domain.models import GatewayConfig, Payment
from app.domain.statuses import PaymentStatus, RefundStatus

from .auth import PasswordGrantTokenProvider, TokenProvider
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

SUCCESS_CODE = "0000"


class BkashAdapter(HttpGatewayAdapter):
    """bKash tokenized checkout.

    - initiate(): ``checkout/create`` and returns the bKash URL and paymentID
    - confirm_callback(): ``checkout/execute`` when the customer returns with status=success,
      otherwise the status query decides
    - refund(): looks up the trxID, then ``checkout/payment/refund``
    """

    code = "bkash"
    signature_header = "X-Webhook-Signature"
    STATUS_MAP = {
        "Initiated": PaymentStatus.PENDING,
        "Incomplete": PaymentStatus.PROCESSING,
        "Completed": PaymentStatus.COMPLETED,
        "Failed": PaymentStatus.FAILED,
        "Canceled": PaymentStatus.CANCELLED,
        "Cancelled": PaymentStatus.CANCELLED,
        "Expired": PaymentStatus.EXPIRED,
        "Refunded": PaymentStatus.REFUNDED,
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
            token_provider = PasswordGrantTokenProvider(
                url=f"{config.base_url}/checkout/token/grant",
                username=creds.get("username", ""),
                password=creds.get("password", ""),
                app_key=creds.get("app_key", ""),
                app_secret=creds.get("app_secret", ""),
                margin_seconds=settings.token_cache_margin_seconds,
                timeout=settings.gateway_timeout_seconds,
                transport=kwargs.get("transport"),
            )
        super().__init__(config, settings, token_provider=token_provider, **kwargs)

    def _auth_headers(self, token: str) -> Dict[str, str]:
        return {"Authorization": token, "X-APP-Key": self.config.credentials.get("app_key", "")}

    @staticmethod
    def _error(data: Dict[str, Any], fallback: str) -> str:
        return str(data.get("statusMessage") or data.get("errorMessage") or fallback)

    @staticmethod
    def _is_error(status_code: int, data: Dict[str, Any]) -> bool:
        if status_code >= 400:
            return True
        code = data.get("statusCode")
        return code is not None and str(code) != SUCCESS_CODE

    async def initiate(self, payment: Payment) -> GatewayResponse:
        body = {
            "mode": "0011",
            "payerReference": payment.invoice_number,
            "callbackURL": self.config.callback_for(payment),
            "amount": format_amount(payment.amount),
            "currency": payment.currency,
            "intent": "sale",
            "merchantInvoiceNumber": payment.invoice_number,
        }
        resp = await self._request("CREATE", "POST", "/checkout/create", json_body=body, reference=payment.invoice_number)
        data = self._json(resp)
        if self._is_error(resp.status_code, data) or not data.get("paymentID"):
            return GatewayResponse(
                ok=False,
                payload=data,
                error=self._error(data, "Payment initiation failed"),
                error_code=str(data.get("statusCode") or resp.status_code),
            )
        logger.info(
            "bkash payment created",
            extra={"invoice_number": payment.invoice_number, "transaction_id": data["paymentID"]},
        )
        return GatewayResponse(
            ok=True,
            status=data.get("transactionStatus"),
            transaction_ref=str(data["paymentID"]),
            redirect_url=data.get("bkashURL"),
            payload=data,
        )

    async def execute(self, payment_ref: str) -> GatewayResponse:
        resp = await self._request(
            "EXECUTE", "POST", "/checkout/execute", json_body={"paymentID": payment_ref}, reference=payment_ref
        )
        return self._status_response(resp.status_code, self._json(resp), payment_ref)

    async def verify_status(self, transaction_ref: str) -> GatewayResponse:
        resp = await self._request(
            "STATUS",
            "POST",
            "/checkout/payment/status",
            json_body={"paymentID": transaction_ref},
            reference=transaction_ref,
        )
        return self._status_response(resp.status_code, self._json(resp), transaction_ref)

    def _status_response(self, status_code: int, data: Dict[str, Any], payment_ref: str) -> GatewayResponse:
        if self._is_error(status_code, data):
            return GatewayResponse(
                ok=False,
                transaction_ref=payment_ref,
                payload=data,
                error=self._error(data, "Status query failed"),
                error_code=str(data.get("statusCode") or status_code),
            )
        return GatewayResponse(
            ok=True,
            status=data.get("transactionStatus"),
            transaction_ref=str(data.get("paymentID") or payment_ref),
            transaction_id=data.get("trxID"),
            amount=parse_amount(data.get("amount")),
            payload=data,
        )

    async def refund(self, transaction_ref: str, amount: Decimal, reason: str | None) -> GatewayResponse:
        lookup = await self.verify_status(transaction_ref)
        if not lookup.ok or not lookup.transaction_id:
            return GatewayResponse(
                ok=False,
                transaction_ref=transaction_ref,
                payload=lookup.payload,
                error=lookup.error or "Transaction id missing",
                error_code=lookup.error_code or "TRX_MISSING",
            )
        body = {
            "paymentID": transaction_ref,
            "trxID": lookup.transaction_id,
            "amount": format_amount(amount),
            "reason": (reason or "Refund")[:255],
            "sku": "payment",
        }
        resp = await self._request("REFUND", "POST", "/checkout/payment/refund", json_body=body, reference=transaction_ref)
        data = self._json(resp)
        if self._is_error(resp.status_code, data):
            return GatewayResponse(
                ok=False,
                transaction_ref=transaction_ref,
                payload=data,
                error=self._error(data, "Refund failed"),
                error_code=str(data.get("statusCode") or resp.status_code),
            )
        status = str(data.get("transactionStatus") or "")
        refund_status = self.map_refund_status(status)
        if refund_status is RefundStatus.FAILED:
            return GatewayResponse(
                ok=False,
                status=status,
                transaction_ref=transaction_ref,
                payload=data,
                error=self._error(data, f"Refund {status}"),
                error_code=str(data.get("statusCode") or "REFUND_FAILED"),
            )
        return GatewayResponse(
            ok=True,
            status=status or None,
            transaction_ref=transaction_ref,
            refund_id=data.get("refundTrxID"),
            amount=parse_amount(data.get("amount")) or amount,
            settled=refund_status is None or refund_status is RefundStatus.COMPLETED,
            payload=data,
        )

    def verify_signature(self, payload: bytes, signature: str | None) -> bool:
        secret = self.config.webhook_secret
        if not secret:
            return False
        return signatures_match(sorted_json_digest(payload, secret), signature)

    def parse_notification(self, payload: Dict[str, Any]) -> GatewayNotification:
        if payload.get("refundTrxID"):
            return GatewayNotification(
                kind="refund",
                reference=payload.get("paymentID"),
                status=payload.get("transactionStatus"),
                transaction_id=payload.get("refundTrxID"),
                refund_reference=payload.get("refundTrxID"),
                amount=parse_amount(payload.get("amount")),
                payload=payload,
            )
        return GatewayNotification(
            kind="payment",
            reference=payload.get("paymentID"),
            status=payload.get("transactionStatus") or payload.get("status"),
            transaction_id=payload.get("trxID"),
            amount=parse_amount(payload.get("amount")),
            payload=payload,
        )

    def callback_reference(self, payload: Dict[str, Any]) -> str | None:
        return payload.get("paymentID")

    async def confirm_callback(self, reference: str, payload: Dict[str, Any]) -> GatewayNotification:
        if str(payload.get("status") or "") != "success":
            # cancel and failure returns are settled by the status query alone
            return await super().confirm_callback(reference, payload)
        result = await self.execute(reference)
        if not result.ok:
            # execute already consumed or failed; fall back to the status query
            result = await self.verify_status(reference)
        return GatewayNotification(
            kind="payment",
            reference=reference,
            status=result.status if result.ok else None,
            transaction_id=result.transaction_id,
            amount=result.amount,
            payload={"callback": payload, "execute": result.payload},
        )
