from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict

from app.config import Settings, settings
from app.domain.errors import (
    GatewayError,
    IneligibleError,
    InvalidSignature,
    PaymentNotFound,
    UnknownGatewayStatus,
    ValidationError,
)
from app.domain.models import GatewayConfig, Payment, PaymentFilters
from app.domain.statuses import PaymentStatus
from app.providers.base import GatewayNotification
from app.providers.factory import GatewayRegistry

from .concurrency import ConcurrencyGuard
from .webhook_verifier import WebhookVerifier

SettlementListener = Callable[[Payment], Any]

# Non-terminal statuses may only move forward; terminal ones are final
_RANK = {PaymentStatus.PENDING: 0, PaymentStatus.PROCESSING: 1}


def _rank(status: PaymentStatus) -> int:
    return _RANK.get(status, 2)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class InitResult:
    success: bool
    redirect_url: str | None = None
    error_code: str | None = None
    message: str | None = None
    instructions: str | None = None


class PaymentsService:
    """Business logic for payments."""

    def __init__(
        self,
        store: Any,
        registry: GatewayRegistry,
        guard: ConcurrencyGuard,
        verifier: WebhookVerifier,
        cfg: Settings = settings,
    ):
        self.store = store
        self.registry = registry
        self.guard = guard
        self.verifier = verifier
        self.settings = cfg
        self.refunds: Any = None  # RefundsService, wired by the container
        self.logger = logging.getLogger(__name__)
        self._listeners: list[SettlementListener] = []

    def on_settled(self, listener: SettlementListener) -> None:
        """Register a callable run once when a payment first reaches ``completed``."""
        self._listeners.append(listener)

    def create_payment(
        self,
        invoice_number: str,
        amount: Any,
        currency: str | None,
        gateway_code: str,
        metadata: Dict[str, Any] | None = None,
    ) -> Payment:
        try:
            value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValidationError("Invalid payment amount") from exc
        if not value.is_finite() or value <= 0:
            raise ValidationError("Amount must be positive")
        config = self.registry.config_for(gateway_code)
        payment = Payment(
            invoice_number=invoice_number,
            amount=value.quantize(Decimal("0.01")),
            currency=(currency or config.currency).upper(),
            gateway=config.code,
            metadata=dict(metadata or {}),
        )
        self.store.add_payment(payment)
        self.logger.info(
            "payment created",
            extra={
                "payment_id": payment.id,
                "invoice_number": invoice_number,
                "amount": payment.amount,
                "currency": payment.currency,
                "gateway": payment.gateway,
            },
        )
        return payment

    def get_payment(self, ref: str) -> Payment:
        payment = self.store.get_payment_by_ref(ref)
        if payment is None:
            raise PaymentNotFound(f"Unknown payment {ref}")
        return payment

    def get_status(self, payment_id: str) -> Dict[str, Any]:
        payment = self.get_payment(payment_id)
        refundable = self.refunds.get_refundable_amount(payment) if self.refunds is not None else None
        return {"payment": payment, "refundable_amount": refundable}

    def list_gateways(self) -> list[GatewayConfig]:
        return [c for c in self.registry.gateways.list_active() if c.is_offline or c.is_configured]

    def list_payments(self, filters: PaymentFilters) -> list[Payment]:
        return self.store.list_payments(filters)

    async def record_offline_payment(
        self,
        payment: Payment,
        actor: str | None,
        reference: str | None = None,
        notes: str | None = None,
    ) -> Payment:
        """Operator confirmation that an offline (cash, bank, cheque) payment was received."""
        config = self.registry.config_for(payment.gateway)
        if not config.is_offline:
            raise IneligibleError(f"{config.name} payments are confirmed by the gateway, not recorded")
        notification = GatewayNotification(
            kind="payment",
            reference=reference,
            status=PaymentStatus.COMPLETED.value,
            transaction_id=reference,
            amount=payment.amount,
            payload={
                "recorded_by": actor,
                "recorded_at": _now().isoformat(),
                "reference_number": reference,
                "notes": notes,
            },
        )
        async with self.guard.hold(payment.id) as tx:
            current: Payment = tx.payment
            if current.status not in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
                raise IneligibleError(f"Payment is {current.status.value} and cannot be recorded as paid")
            current.assign_transaction_id(reference)
            settled = self._transition(current, PaymentStatus.COMPLETED, notification, "offline_record")
            tx.save_payment(current)
        self.logger.info(
            "offline payment recorded",
            extra={"payment_id": current.id, "gateway": current.gateway, "actor": actor, "transaction_id": reference},
        )
        if settled:
            self._fire_settled(current)
        return current

    async def initialize_payment(self, payment: Payment, gateway_code: str) -> InitResult:
        config = self.registry.config_for(gateway_code)
        if config.is_offline:
            self.logger.info(
                "offline payment instructions issued",
                extra={"payment_id": payment.id, "gateway": config.code},
            )
            return InitResult(success=True, instructions=config.instructions)
        if payment.status != PaymentStatus.PENDING:
            return InitResult(
                success=False,
                error_code="invalid_state",
                message=f"Payment is {payment.status.value} and cannot be initiated",
            )
        if payment.gateway != config.code:
            async with self.guard.hold(payment.id) as tx:
                tx.payment.gateway = config.code
                tx.save_payment(tx.payment)
            payment.gateway = config.code
        adapter = self.registry.get(config.code)

        error: GatewayError | None = None
        response = None
        try:
            response = await adapter.initiate(payment)
        except GatewayError as exc:
            error = exc
        if error is None and response is not None and not response.ok:
            error = GatewayError(
                response.error or "Gateway rejected the payment",
                code=response.error_code,
                payload=response.payload,
            )

        async with self.guard.hold(payment.id) as tx:
            current: Payment = tx.payment
            if error is not None:
                current.status = PaymentStatus.FAILED
                current.metadata["error"] = error.as_metadata()
                if response is not None:
                    current.metadata["init_response"] = response.payload
                tx.save_payment(current)
            else:
                assert response is not None
                current.metadata["init_response"] = response.payload
                current.assign_transaction_id(response.transaction_ref)
                tx.save_payment(current)

        if error is not None:
            self.logger.info(
                "payment initiation failed",
                extra={"payment_id": payment.id, "gateway": config.code, "reason": error.code},
            )
            return InitResult(success=False, error_code="payment_failed", message=error.message)
        self.logger.info(
            "payment initiated",
            extra={
                "payment_id": payment.id,
                "gateway": config.code,
                "transaction_id": response.transaction_ref if response else None,
            },
        )
        return InitResult(success=True, redirect_url=response.redirect_url if response else None)

    async def process_callback(self, gateway_code: str, payload: Dict[str, Any]) -> Payment:
        """Browser return from the gateway.

        Nothing in the redirect is trusted: the status always comes from the
        gateway, either through the adapter's own reference or, when the
        return only names our payment, through the stored gateway reference.
        """
        adapter = self.registry.get(gateway_code)
        notification = await adapter.complete_callback(payload)
        payment = None
        if notification.reference:
            payment = self.store.get_payment_by_transaction(gateway_code, str(notification.reference))
        if payment is None:
            payment = self._resolve_hint(gateway_code, payload)
            if payment.transaction_id:
                notification = await adapter.confirm_callback(payment.transaction_id, payload)
            else:
                notification = GatewayNotification(kind="payment", reference=None, payload={"callback": payload})
        return await self._apply_notification(gateway_code, notification, "callback_data", payment=payment)

    async def process_webhook(self, gateway_code: str, raw_body: bytes, signature: str | None) -> Payment:
        if not self.verifier.verify(gateway_code, raw_body, signature):
            raise InvalidSignature(f"Invalid {gateway_code} webhook signature")
        try:
            payload = json.loads(raw_body or b"{}")
        except ValueError as exc:
            raise ValidationError("Malformed webhook body") from exc
        if not isinstance(payload, dict):
            raise ValidationError("Malformed webhook body")
        adapter = self.registry.get(gateway_code)
        notification = adapter.parse_notification(payload)
        self.store.record_webhook(
            gateway=gateway_code,
            kind=notification.kind,
            reference=notification.reference,
            status=notification.status,
            payload=payload,
        )
        if notification.kind == "refund":
            return await self.refunds.apply_refund_notification(gateway_code, notification)
        return await self._apply_notification(gateway_code, notification, "webhook_data")

    async def verify_payment(self, payment: Payment) -> Payment:
        """Poll the gateway for the payment status and apply it."""
        if not payment.transaction_id:
            raise ValidationError("Payment has not been initiated at a gateway")
        adapter = self.registry.get(payment.gateway)
        try:
            response = await adapter.verify_status(payment.transaction_id)
        except GatewayError as exc:
            self.logger.warning(
                "payment verification failed",
                extra={"payment_id": payment.id, "gateway": payment.gateway, "reason": exc.code},
            )
            async with self.guard.hold(payment.id) as tx:
                tx.payment.metadata["verification_error"] = exc.as_metadata()
                tx.save_payment(tx.payment)
                return tx.payment
        notification = GatewayNotification(
            kind="payment",
            reference=payment.transaction_id,
            status=response.status if response.ok else None,
            transaction_id=response.transaction_id,
            amount=response.amount,
            payload=response.payload,
        )
        return await self._apply_notification(payment.gateway, notification, "verification_response", payment=payment)

    def _resolve(self, gateway_code: str, notification: GatewayNotification) -> Payment:
        payment = None
        if notification.reference:
            payment = self.store.get_payment_by_transaction(gateway_code, str(notification.reference))
        if payment is None:
            raise PaymentNotFound(f"No {gateway_code} payment for reference {notification.reference}")
        return payment

    def _resolve_hint(self, gateway_code: str, payload: Dict[str, Any]) -> Payment:
        # our own callback URL carries the payment id
        hint = payload.get("payment_id")
        payment = None
        if hint:
            payment = self.store.get_payment(str(hint)) or self.store.get_payment_by_transaction(gateway_code, str(hint))
        if payment is None or payment.gateway != gateway_code:
            raise PaymentNotFound(f"No {gateway_code} payment for callback {hint}")
        return payment

    async def _apply_notification(
        self,
        gateway_code: str,
        notification: GatewayNotification,
        key: str,
        *,
        payment: Payment | None = None,
    ) -> Payment:
        target = payment or self._resolve(gateway_code, notification)
        adapter = self.registry.get(gateway_code)
        async with self.guard.hold(target.id) as tx:
            current: Payment = tx.payment
            settled = self._transition(current, adapter.map_status(notification.status), notification, key)
            tx.save_payment(current)
        if settled:
            self._fire_settled(current)
        return current

    def _transition(
        self,
        payment: Payment,
        target: PaymentStatus | None,
        notification: GatewayNotification,
        key: str,
    ) -> bool:
        """Apply a gateway-reported status; returns True when the payment just settled."""
        payment.metadata[key] = notification.payload
        log_extra = {"payment_id": payment.id, "gateway": payment.gateway, "event": key}
        if notification.status is None:
            self.logger.info("gateway reported no status", extra=log_extra)
            return False
        if target is None:
            payment.metadata["unmapped_status"] = notification.status
            self.logger.warning("unmapped gateway status", extra={**log_extra, "status": notification.status})
            if self.settings.unknown_status_policy == "raise":
                raise UnknownGatewayStatus(f"{payment.gateway} reported unknown status {notification.status!r}")
            return False
        if target == payment.status:
            self.logger.info("duplicate status report ignored", extra={**log_extra, "status": target.value})
            return False
        if payment.status.is_terminal and not (
            payment.status == PaymentStatus.COMPLETED and target == PaymentStatus.REFUNDED
        ):
            self.logger.warning(
                "status report for finalised payment ignored",
                extra={**log_extra, "status": payment.status.value, "reason": target.value},
            )
            return False
        if _rank(target) < _rank(payment.status):
            self.logger.info("stale status report ignored", extra={**log_extra, "status": target.value})
            return False
        if target == PaymentStatus.COMPLETED and notification.amount is not None and notification.amount != payment.amount:
            payment.metadata["amount_mismatch"] = {
                "expected": str(payment.amount),
                "reported": str(notification.amount),
            }
            self.logger.warning(
                "settlement amount mismatch; held for review",
                extra={**log_extra, "amount": notification.amount},
            )
            return False

        if notification.transaction_id:
            payment.metadata["gateway_transaction_id"] = str(notification.transaction_id)
        previous = payment.status
        payment.status = target
        if target == PaymentStatus.COMPLETED:
            payment.paid_at = _now()
        self.logger.info(
            "payment status changed",
            extra={**log_extra, "status": target.value, "reason": previous.value},
        )
        return target == PaymentStatus.COMPLETED

    def _fire_settled(self, payment: Payment) -> None:
        for listener in self._listeners:
            try:
                listener(payment)
            except Exception as exc:  # noqa: BLE001
                self.logger.info(
                    "settlement listener error",
                    extra={"payment_id": payment.id, "event": str(exc)},
                )
