from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Iterable

from app.config import Settings
from app.domain.errors import (
    GatewayError,
    GatewayTimeout,
    LockTimeout,
    PaymentNotFound,
    RefundNotFound,
    RefundStateError,
    ValidationError,
)
from app.domain.models import Payment, Refund, RefundFilters
from app.domain.statuses import (
    REFUND_IN_FLIGHT,
    PaymentStatus,
    RefundStatus,
    RefundSummary,
)
from app.providers.base import GatewayAdapter, GatewayNotification, GatewayResponse
from app.providers.factory import GatewayRegistry

from .concurrency import ConcurrencyGuard

MONEY_QUANT = Decimal("0.01")
ZERO = Decimal("0.00")

NOT_ELIGIBLE = "This payment is not eligible for a refund"
ALREADY_PROCESSING = "A refund is already processing for this payment"
ONLY_PENDING = "Only pending refunds can be processed"
PAYMENT_BUSY = "Another operation is updating this payment, please retry"


@dataclass
class RefundOutcome:
    """Structured result for refund operations; business failures never raise."""

    success: bool
    message: str
    refund: Refund | None = None
    error_code: str | None = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def refundable_amount(payment: Payment, refunds: Iterable[Refund]) -> Decimal:
    held = sum((r.amount for r in refunds if r.status.holds_balance), ZERO)
    remaining = (payment.amount - held).quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)
    return max(remaining, ZERO)


class RefundsService:
    """Refund lifecycle: eligibility, balance accounting, gateway calls, reconciliation."""

    def __init__(self, store: Any, registry: GatewayRegistry, guard: ConcurrencyGuard, cfg: Settings):
        self.store = store
        self.registry = registry
        self.guard = guard
        self.settings = cfg
        self.logger = logging.getLogger(__name__)

    # Read side

    def get_refundable_amount(self, payment: Payment) -> Decimal:
        return refundable_amount(payment, self.store.list_refunds_for(payment.id))

    def get_refund(self, refund_id: str) -> Refund:
        refund = self.store.get_refund(refund_id)
        if refund is None:
            raise RefundNotFound(f"Unknown refund {refund_id}")
        return refund

    def list_refunds(self, filters: RefundFilters) -> list[Refund]:
        return self.store.list_refunds(filters)

    def statistics(self) -> dict[str, Any]:
        return self.store.refund_statistics()

    # Write side

    @staticmethod
    def _normalize_amount(amount: Any) -> Decimal:
        try:
            value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        except (InvalidOperation, TypeError, ValueError) as exc:
            raise ValidationError("Invalid refund amount") from exc
        if not value.is_finite() or value <= 0:
            raise ValidationError("Refund amount must be greater than zero")
        if value != value.quantize(MONEY_QUANT):
            raise ValidationError("Refund amount supports at most two decimal places")
        return value.quantize(MONEY_QUANT)

    async def initiate_refund(
        self,
        payment: Payment,
        amount: Any,
        reason: str | None,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> RefundOutcome:
        """Create a refund and send it to the gateway in one locked section."""
        return await self._create(payment, amount, reason, actor, metadata, process=True)

    async def request_refund(
        self,
        payment: Payment,
        amount: Any,
        reason: str | None,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> RefundOutcome:
        """Create a pending refund that waits for ``process_refund``."""
        return await self._create(payment, amount, reason, actor, metadata, process=False)

    async def _create(
        self,
        payment: Payment,
        amount: Any,
        reason: str | None,
        actor: str | None,
        metadata: dict[str, Any] | None,
        *,
        process: bool,
    ) -> RefundOutcome:
        try:
            value = self._normalize_amount(amount)
        except ValidationError as exc:
            return RefundOutcome(False, str(exc), error_code="invalid_amount")
        if payment.status != PaymentStatus.COMPLETED:
            return RefundOutcome(False, NOT_ELIGIBLE, error_code="not_eligible")
        refundable = self.get_refundable_amount(payment)
        if value > refundable:
            return RefundOutcome(False, f"Maximum refundable amount is {refundable}", error_code="exceeds_refundable")
        adapter = self._adapter_for(payment) if process else None

        try:
            async with self.guard.hold(payment.id) as tx:
                return await self._create_locked(tx, value, reason, actor, metadata, adapter, process=process)
        except LockTimeout as exc:
            return self._busy(payment.id, exc)

    def _adapter_for(self, payment: Payment) -> GatewayAdapter | None:
        """Gateway adapter used to send money back; None for offline payments."""
        if self.registry.config_for(payment.gateway).is_offline:
            return None
        return self.registry.get(payment.gateway)

    async def _create_locked(
        self,
        tx: Any,
        value: Decimal,
        reason: str | None,
        actor: str | None,
        metadata: dict[str, Any] | None,
        adapter: GatewayAdapter | None,
        *,
        process: bool,
    ) -> RefundOutcome:
        current: Payment = tx.payment
        refunds = tx.refunds()
        # the unlocked checks may be stale by now
        if current.status != PaymentStatus.COMPLETED:
            return RefundOutcome(False, NOT_ELIGIBLE, error_code="not_eligible")
        if any(r.status in REFUND_IN_FLIGHT for r in refunds):
            return RefundOutcome(False, ALREADY_PROCESSING, error_code="refund_in_progress")
        refundable = refundable_amount(current, refunds)
        if value > refundable:
            self.logger.info(
                "refund rejected after lock",
                extra={"payment_id": current.id, "amount": value, "reason": "exceeds_refundable"},
            )
            return RefundOutcome(False, f"Maximum refundable amount is {refundable}", error_code="exceeds_refundable")

        refund = Refund(
            payment_id=current.id or "",
            amount=value,
            currency=current.currency,
            reason=reason,
            requested_by=actor,
            metadata={
                **(metadata or {}),
                "original_payment": {
                    "id": current.id,
                    "invoice_number": current.invoice_number,
                    "amount": str(current.amount),
                    "gateway": current.gateway,
                },
            },
        )
        tx.save_refund(refund)
        self.logger.info(
            "refund created",
            extra={"payment_id": current.id, "refund_id": refund.id, "amount": value, "actor": actor},
        )
        if not process:
            self._update_summary(tx, current)
            return RefundOutcome(True, "Refund request submitted", refund)
        if adapter is None:
            return self._settle_offline(tx, current, refund, actor)
        return await self._execute(tx, current, refund, adapter, actor)

    def _settle_offline(self, tx: Any, payment: Payment, refund: Refund, actor: str | None) -> RefundOutcome:
        """Money taken outside a gateway is paid back by hand; record the refund as settled."""
        refund.status = RefundStatus.COMPLETED
        refund.processed_by = actor
        refund.processed_at = _now()
        refund.metadata["settled_offline"] = True
        tx.save_refund(refund)
        self._update_summary(tx, payment)
        self.logger.info(
            "offline refund recorded",
            extra={"payment_id": payment.id, "refund_id": refund.id, "gateway": payment.gateway, "amount": refund.amount},
        )
        return RefundOutcome(True, "Refund recorded for manual payout", refund)

    def _busy(self, payment_id: str | None, exc: LockTimeout) -> RefundOutcome:
        self.logger.warning("payment lock wait timed out", extra={"payment_id": payment_id, "event": str(exc)})
        return RefundOutcome(False, PAYMENT_BUSY, error_code="payment_busy")

    async def process_refund(self, refund: Refund, actor: str | None) -> RefundOutcome:
        if refund.status != RefundStatus.PENDING:
            raise RefundStateError(ONLY_PENDING)
        payment = self.store.get_payment(refund.payment_id)
        if payment is None:
            raise PaymentNotFound(f"Unknown payment {refund.payment_id}")
        adapter = self._adapter_for(payment)
        try:
            async with self.guard.hold(payment.id) as tx:
                current = tx.get_refund(refund.id)
                if current is None:
                    raise RefundNotFound(f"Unknown refund {refund.id}")
                if current.status != RefundStatus.PENDING:
                    raise RefundStateError(ONLY_PENDING)
                if tx.payment.status != PaymentStatus.COMPLETED:
                    return RefundOutcome(False, NOT_ELIGIBLE, current, error_code="not_eligible")
                if adapter is None:
                    return self._settle_offline(tx, tx.payment, current, actor)
                return await self._execute(tx, tx.payment, current, adapter, actor)
        except LockTimeout as exc:
            return self._busy(payment.id, exc)

    async def _execute(
        self,
        tx: Any,
        payment: Payment,
        refund: Refund,
        adapter: GatewayAdapter,
        actor: str | None,
    ) -> RefundOutcome:
        """Run the gateway refund while the payment lock is held and persist the outcome."""
        refund.status = RefundStatus.PROCESSING
        refund.processed_by = actor
        tx.save_refund(refund)

        response: GatewayResponse | None = None
        error: GatewayError | None = None
        if not payment.transaction_id:
            error = GatewayError("Payment has no gateway transaction reference", code="missing_transaction")
        else:
            try:
                response = await asyncio.wait_for(
                    adapter.refund(payment.transaction_id, refund.amount, refund.reason),
                    timeout=self.settings.gateway_timeout_seconds,
                )
            except asyncio.TimeoutError:
                error = GatewayTimeout(f"Gateway did not answer within {self.settings.gateway_timeout_seconds}s")
            except GatewayError as exc:
                error = exc

        if error is None and response is not None and not response.ok:
            error = GatewayError(
                response.error or "Refund rejected by gateway",
                code=response.error_code or "gateway_rejected",
                payload=response.payload,
            )

        if error is not None:
            refund.status = RefundStatus.FAILED
            refund.processed_at = _now()
            refund.metadata["error"] = error.as_metadata()
            tx.save_refund(refund)
            self._update_summary(tx, payment)
            self.logger.info(
                "refund failed",
                extra={
                    "payment_id": payment.id,
                    "refund_id": refund.id,
                    "gateway": payment.gateway,
                    "reason": error.code,
                },
            )
            return RefundOutcome(False, f"Failed to process refund: {error.message}", refund, error_code=error.code)

        assert response is not None
        refund.transaction_id = response.refund_id or refund.transaction_id
        refund.metadata["gateway_response"] = response.payload
        if response.settled:
            refund.status = RefundStatus.COMPLETED
            refund.processed_at = _now()
            message = "Refund processed successfully"
        else:
            message = "Refund accepted by the gateway and awaiting confirmation"
        tx.save_refund(refund)
        self._update_summary(tx, payment)
        self.logger.info(
            "refund sent",
            extra={
                "payment_id": payment.id,
                "refund_id": refund.id,
                "gateway": payment.gateway,
                "status": refund.status.value,
                "amount": refund.amount,
                "transaction_id": refund.transaction_id,
            },
        )
        return RefundOutcome(True, message, refund)

    async def cancel_refund(self, refund: Refund, reason: str | None, actor: str | None = None) -> bool:
        async with self.guard.hold(refund.payment_id) as tx:
            current = tx.get_refund(refund.id)
            if current is None:
                raise RefundNotFound(f"Unknown refund {refund.id}")
            if current.status != RefundStatus.PENDING:
                self.logger.info(
                    "refund cancel rejected",
                    extra={"refund_id": current.id, "status": current.status.value},
                )
                return False
            current.status = RefundStatus.CANCELLED
            current.metadata.update(
                {
                    "cancellation_reason": reason,
                    "cancelled_at": _now().isoformat(),
                    "cancelled_by": actor,
                }
            )
            tx.save_refund(current)
            self._update_summary(tx, tx.payment)
        self.logger.info("refund cancelled", extra={"refund_id": refund.id, "actor": actor, "reason": reason})
        return True

    async def apply_refund_notification(self, gateway_code: str, notification: GatewayNotification) -> Payment:
        """Reconcile an asynchronous gateway verdict for a refund."""
        adapter = self.registry.get(gateway_code)
        payment = None
        if notification.reference:
            payment = self.store.get_payment_by_transaction(gateway_code, str(notification.reference))
        if payment is None:
            raise PaymentNotFound(f"No {gateway_code} payment for reference {notification.reference}")
        target = adapter.map_refund_status(notification.status)

        async with self.guard.hold(payment.id) as tx:
            current_payment: Payment = tx.payment
            refund = self._match_refund(tx.refunds(), notification)
            if refund is None:
                self.logger.warning(
                    "refund notification without matching refund",
                    extra={"payment_id": current_payment.id, "gateway": gateway_code, "transaction_id": notification.refund_reference},
                )
                current_payment.metadata["unmatched_refund_notification"] = notification.payload
                tx.save_payment(current_payment)
                return current_payment
            if target is None:
                self.logger.warning(
                    "unmapped refund status",
                    extra={"refund_id": refund.id, "gateway": gateway_code, "status": notification.status},
                )
                refund.metadata["unmapped_status"] = notification.status
                refund.metadata["webhook_data"] = notification.payload
                tx.save_refund(refund)
                return current_payment
            if refund.status.is_terminal or refund.status == RefundStatus.PENDING or refund.status == target:
                # duplicate delivery, a verdict after settlement, or a refund never sent to the gateway
                self.logger.info(
                    "refund notification ignored",
                    extra={"refund_id": refund.id, "status": refund.status.value, "event": target.value},
                )
                return current_payment

            refund.status = target
            refund.metadata["webhook_data"] = notification.payload
            if notification.transaction_id:
                refund.transaction_id = str(notification.transaction_id)
            if target == RefundStatus.FAILED:
                refund.metadata["error"] = {"code": "gateway_rejected", "message": f"Gateway reported {notification.status}"}
            if target.is_terminal:
                refund.processed_at = _now()
            tx.save_refund(refund)
            self._update_summary(tx, current_payment)
            self.logger.info(
                "refund reconciled",
                extra={"refund_id": refund.id, "payment_id": current_payment.id, "status": target.value},
            )
            return current_payment

    @staticmethod
    def _match_refund(refunds: list[Refund], notification: GatewayNotification) -> Refund | None:
        references = {str(r) for r in (notification.refund_reference, notification.transaction_id) if r}
        if references:
            for refund in refunds:
                if refund.transaction_id in references:
                    return refund
            return None
        # Without a gateway reference, only a refund already submitted to the gateway can match
        in_flight = [r for r in refunds if r.status == RefundStatus.PROCESSING and r.transaction_id]
        if notification.amount is not None:
            in_flight = [r for r in in_flight if r.amount == notification.amount] or in_flight
        return in_flight[0] if len(in_flight) == 1 else None

    def _update_summary(self, tx: Any, payment: Payment) -> None:
        refunds = tx.refunds()
        if not any(r.status.holds_balance for r in refunds):
            payment.refund_status = None
        elif refundable_amount(payment, refunds) > ZERO:
            payment.refund_status = RefundSummary.PARTIALLY_REFUNDED
        else:
            payment.refund_status = RefundSummary.FULLY_REFUNDED
        tx.save_payment(payment)
