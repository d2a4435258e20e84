from __future__ import annotations

import asyncio
import logging
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict

import stripe  # type: ignore[import-untyped]

from app.config import Settings
from app.domain.errors import GatewayError, GatewayNotConfigured, GatewayTimeout
from app.domain.models import GatewayConfig, Payment
from app.domain.statuses import PaymentStatus, RefundStatus

from .base import GatewayAdapter, GatewayNotification, GatewayResponse

logger = logging.getLogger(__name__)

REFUND_EVENTS = {"charge.refund.updated", "refund.created", "refund.updated", "refund.failed"}


class StripeCheckoutAdapter(GatewayAdapter):
    """Stripe Checkout as the generic online card gateway.

    The secret key is passed on every SDK call instead of being set on the
    ``stripe`` module, so several configurations can coexist in one process.
    """

    code = "stripe"
    signature_header = "Stripe-Signature"
    ZERO_DECIMAL_CURRENCIES = {"CLP", "JPY", "VND", "KRW"}
    STATUS_MAP = {
        "paid": PaymentStatus.COMPLETED,
        "succeeded": PaymentStatus.COMPLETED,
        "complete": PaymentStatus.COMPLETED,
        "no_payment_required": PaymentStatus.COMPLETED,
        "unpaid": PaymentStatus.PENDING,
        "open": PaymentStatus.PENDING,
        "processing": PaymentStatus.PENDING,
        "expired": PaymentStatus.EXPIRED,
        "canceled": PaymentStatus.CANCELLED,
        "requires_payment_method": PaymentStatus.FAILED,
    }

    @classmethod
    def _to_minor_units(cls, amount: Decimal, currency: str) -> int:
        if currency.upper() in cls.ZERO_DECIMAL_CURRENCIES:
            return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        quantized = amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        return int((quantized * Decimal("100")).to_integral_value(rounding=ROUND_HALF_UP))

    @classmethod
    def _from_minor_units(cls, amount: int, currency: str) -> Decimal:
        if currency.upper() in cls.ZERO_DECIMAL_CURRENCIES:
            return Decimal(amount).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
        return (Decimal(amount) / Decimal("100")).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    def __init__(self, config: GatewayConfig, settings: Settings, *, event_log: Any | None = None):
        super().__init__(config, settings, event_log=event_log)
        self.api_key = config.credentials.get("secret_key", "")
        if not self.api_key:
            raise GatewayNotConfigured("Stripe secret key not configured")

    async def _call(self, operation: str, request_url: str, fn: Callable[[], Any], *, reference: str | None = None,
                    request_body: Dict[str, Any] | None = None) -> Any:
        started = time.monotonic()
        try:
            result = await asyncio.wait_for(asyncio.to_thread(fn), timeout=self.settings.gateway_timeout_seconds)
        except asyncio.TimeoutError as exc:
            self._log_event(
                operation=operation,
                request_url=request_url,
                reference=reference,
                request_body=request_body,
                error_message="timeout",
                latency_ms=int((time.monotonic() - started) * 1000),
            )
            raise GatewayTimeout(f"Stripe did not answer within {self.settings.gateway_timeout_seconds}s") from exc
        except Exception as exc:  # noqa: BLE001
            self._log_event(
                operation=operation,
                request_url=request_url,
                reference=reference,
                request_body=request_body,
                response_status=getattr(exc, "http_status", None),
                error_message=str(exc),
                latency_ms=int((time.monotonic() - started) * 1000),
            )
            raise GatewayError(
                getattr(exc, "user_message", None) or str(exc),
                code=str(getattr(exc, "code", None) or "stripe_error"),
            ) from exc
        self._log_event(
            operation=operation,
            request_url=request_url,
            reference=reference,
            request_body=request_body,
            response_status=200,
            latency_ms=int((time.monotonic() - started) * 1000),
        )
        return result

    async def initiate(self, payment: Payment) -> GatewayResponse:
        callback = self.config.callback_for(payment)
        session_kwargs: Dict[str, Any] = {
            "mode": "payment",
            "success_url": callback + ("&" if "?" in callback else "?") + "session_id={CHECKOUT_SESSION_ID}",
            "cancel_url": self.config.extra.get("cancel_url") or callback,
            "line_items": [
                {
                    "price_data": {
                        "currency": payment.currency.lower(),
                        "product_data": {"name": payment.invoice_number},
                        "unit_amount": self._to_minor_units(payment.amount, payment.currency),
                    },
                    "quantity": 1,
                }
            ],
            "metadata": {"invoice_number": payment.invoice_number, "payment_id": payment.id or ""},
        }

        def _create_session() -> Any:
            return stripe.checkout.Session.create(api_key=self.api_key, **session_kwargs)

        try:
            session = await self._call(
                "CREATE",
                "stripe.checkout.Session.create",
                _create_session,
                reference=payment.invoice_number,
                request_body={"metadata": session_kwargs["metadata"]},
            )
        except GatewayTimeout:
            raise
        except GatewayError as exc:
            return GatewayResponse(ok=False, error=exc.message, error_code=exc.code, payload={"error": exc.message})
        logger.info(
            "stripe session created",
            extra={"invoice_number": payment.invoice_number, "transaction_id": session.id},
        )
        return GatewayResponse(
            ok=True,
            status=getattr(session, "payment_status", None),
            transaction_ref=session.id,
            redirect_url=session.url,
            payload={"id": session.id, "url": session.url, "payment_status": getattr(session, "payment_status", None)},
        )

    async def verify_status(self, transaction_ref: str) -> GatewayResponse:
        def _retrieve() -> Dict[str, Any]:
            session = stripe.checkout.Session.retrieve(
                transaction_ref, api_key=self.api_key, expand=["payment_intent"]
            )
            pi = getattr(session, "payment_intent", None)
            return {
                "session_id": session.id,
                "session_status": getattr(session, "status", None),
                "payment_status": getattr(session, "payment_status", None),
                "payment_intent_id": getattr(pi, "id", None),
                "payment_intent_status": getattr(pi, "status", None),
                "amount_total": getattr(session, "amount_total", None),
                "currency": getattr(session, "currency", None),
            }

        try:
            result = await self._call(
                "STATUS", "stripe.checkout.Session.retrieve", _retrieve, reference=transaction_ref
            )
        except GatewayTimeout:
            raise
        except GatewayError as exc:
            return GatewayResponse(ok=False, transaction_ref=transaction_ref, error=exc.message, error_code=exc.code)
        status = result.get("payment_status")
        if result.get("session_status") == "expired":
            status = "expired"
        amount = None
        if result.get("amount_total") is not None:
            amount = self._from_minor_units(int(result["amount_total"]), str(result.get("currency") or "usd"))
        return GatewayResponse(
            ok=True,
            status=status,
            transaction_ref=transaction_ref,
            transaction_id=result.get("payment_intent_id"),
            amount=amount,
            payload=result,
        )

    async def refund(self, transaction_ref: str, amount: Decimal, reason: str | None) -> GatewayResponse:
        def _refund() -> GatewayResponse:
            session = stripe.checkout.Session.retrieve(
                transaction_ref, api_key=self.api_key, expand=["payment_intent"]
            )
            pi = getattr(session, "payment_intent", None)
            if not pi:
                return GatewayResponse(
                    ok=False,
                    transaction_ref=transaction_ref,
                    error="Payment intent missing",
                    error_code="PAYMENT_INTENT_MISSING",
                )
            currency = str(getattr(pi, "currency", "") or self.config.currency)
            refund = stripe.Refund.create(
                api_key=self.api_key,
                payment_intent=pi.id,
                amount=self._to_minor_units(amount, currency),
                metadata={"checkout_session": transaction_ref, "reason": (reason or "")[:500]},
            )
            status = str(getattr(refund, "status", "") or "")
            payload = {"refund_id": refund.id, "status": status, "payment_intent": pi.id}
            refund_status = self.map_refund_status(status)
            ok = refund_status in {RefundStatus.COMPLETED, RefundStatus.PROCESSING}
            return GatewayResponse(
                ok=ok,
                status=status or None,
                transaction_ref=transaction_ref,
                refund_id=refund.id,
                amount=amount,
                settled=refund_status is RefundStatus.COMPLETED,
                payload=payload,
                error=None if ok else f"Refund {status or 'not accepted'}",
                error_code=None if ok else "REFUND_REJECTED",
            )

        try:
            return await self._call(
                "REFUND",
                "stripe.Refund.create",
                _refund,
                reference=transaction_ref,
                request_body={"amount": str(amount)},
            )
        except GatewayTimeout:
            raise
        except GatewayError as exc:
            return GatewayResponse(ok=False, transaction_ref=transaction_ref, error=exc.message, error_code=exc.code)

    def verify_signature(self, payload: bytes, signature: str | None) -> bool:
        secret = self.config.webhook_secret
        if not secret or not signature:
            return False
        try:
            stripe.WebhookSignature.verify_header(payload.decode("utf-8"), signature, secret)
        except Exception:  # noqa: BLE001  # includes decode and signature errors
            return False
        return True

    def parse_notification(self, payload: Dict[str, Any]) -> GatewayNotification:
        event_type = str(payload.get("type", ""))
        obj = (payload.get("data") or {}).get("object") or {}
        if event_type in REFUND_EVENTS or obj.get("object") == "refund":
            metadata = obj.get("metadata") or {}
            currency = str(obj.get("currency") or self.config.currency)
            amount = self._from_minor_units(int(obj["amount"]), currency) if obj.get("amount") is not None else None
            return GatewayNotification(
                kind="refund",
                reference=metadata.get("checkout_session"),
                status=obj.get("status"),
                transaction_id=obj.get("id"),
                refund_reference=obj.get("id"),
                amount=amount,
                payload=payload,
            )
        status = obj.get("payment_status")
        if event_type == "checkout.session.expired":
            status = "expired"
        elif event_type == "checkout.session.async_payment_failed":
            status = "failed"
        return GatewayNotification(
            kind="payment",
            reference=obj.get("id"),
            status=status,
            transaction_id=obj.get("payment_intent") if isinstance(obj.get("payment_intent"), str) else None,
            payload=payload,
        )

    def callback_reference(self, payload: Dict[str, Any]) -> str | None:
        return payload.get("session_id")
