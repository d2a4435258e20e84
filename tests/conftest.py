from __future__ import annotations

import asyncio
import pathlib
import sys
import uuid
from decimal import Decimal
from typing import Any, Callable

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from app.config import Settings
from app.domain.models import GatewayConfig, Payment
from app.domain.statuses import PaymentStatus
from app.providers.base import (
    GatewayAdapter,
    GatewayNotification,
    GatewayResponse,
    parse_amount,
    signatures_match,
    sorted_json_digest,
)
from app.repositories.gateway_store import SettingsGatewayStore
from app.repositories.memory_store import InMemoryPaymentStore
from app.services.container import Container, build_container

WEBHOOK_SECRET = "whsec_test"


class FakeGateway(GatewayAdapter):
    """In-process stand-in for a mobile-money gateway speaking bKash vocabulary."""

    code = "bkash"
    signature_header = "X-Webhook-Signature"
    STATUS_MAP = {
        "Initiated": PaymentStatus.PENDING,
        "Incomplete": PaymentStatus.PROCESSING,
        "Completed": PaymentStatus.COMPLETED,
        "Failed": PaymentStatus.FAILED,
        "Refunded": PaymentStatus.REFUNDED,
    }

    def __init__(self, config: GatewayConfig, settings: Settings):
        super().__init__(config, settings)
        self.refund_delay = 0.0
        self.settled = True
        self.refund_error: Exception | None = None
        self.initiate_ok = True
        self.next_status = "Completed"
        self.initiated: list[str | None] = []
        self.refund_calls: list[tuple[str, Decimal]] = []

    async def initiate(self, payment: Payment) -> GatewayResponse:
        self.initiated.append(payment.id)
        if not self.initiate_ok:
            return GatewayResponse(
                ok=False,
                payload={"statusCode": "2001", "statusMessage": "Invalid App Key"},
                error="Invalid App Key",
                error_code="2001",
            )
        ref = f"TR-{payment.id}"
        return GatewayResponse(
            ok=True,
            transaction_ref=ref,
            redirect_url=f"https://pay.example/{ref}",
            payload={"paymentID": ref, "transactionStatus": "Initiated"},
        )

    async def verify_status(self, transaction_ref: str) -> GatewayResponse:
        return GatewayResponse(
            ok=True,
            status=self.next_status,
            transaction_ref=transaction_ref,
            transaction_id="TRX-VERIFIED",
            payload={"paymentID": transaction_ref, "transactionStatus": self.next_status},
        )

    async def refund(self, transaction_ref: str, amount: Decimal, reason: str | None) -> GatewayResponse:
        self.refund_calls.append((transaction_ref, amount))
        number = len(self.refund_calls)
        if self.refund_delay:
            await asyncio.sleep(self.refund_delay)
        if self.refund_error is not None:
            raise self.refund_error
        return GatewayResponse(
            ok=True,
            status="Completed" if self.settled else "Initiated",
            transaction_ref=transaction_ref,
            refund_id=f"RF-{number}",
            amount=amount,
            settled=self.settled,
            payload={"refundTrxID": f"RF-{number}", "amount": str(amount)},
        )

    def verify_signature(self, payload: bytes, signature: str | None) -> bool:
        return signatures_match(sorted_json_digest(payload, WEBHOOK_SECRET), signature)

    def callback_reference(self, payload: dict[str, Any]) -> str | None:
        return payload.get("paymentID")

    def parse_notification(self, payload: dict[str, Any]) -> GatewayNotification:
        if payload.get("refundTrxID"):
            return GatewayNotification(
                kind="refund",
                reference=payload.get("paymentID"),
                status=payload.get("transactionStatus"),
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


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "db_host": "",
        "gateway_timeout_seconds": 2.0,
        "lock_timeout_seconds": 10.0,
        "bkash_app_key": "app-key",
        "bkash_app_secret": "app-secret",
        "bkash_username": "merchant",
        "bkash_password": "secret",
        "bkash_webhook_secret": WEBHOOK_SECRET,
    }
    values.update(overrides)
    return Settings(**values)


def make_container(**overrides: Any) -> tuple[Container, FakeGateway]:
    cfg = make_settings(**overrides)
    gateways = SettingsGatewayStore(cfg)
    container = build_container(cfg, store=InMemoryPaymentStore(), gateways=gateways)
    fake = FakeGateway(gateways.get("bkash"), cfg)  # type: ignore[arg-type]
    container.registry.register("bkash", fake)
    return container, fake


@pytest.fixture
def container_and_gateway() -> tuple[Container, FakeGateway]:
    return make_container()


@pytest.fixture
def container(container_and_gateway: tuple[Container, FakeGateway]) -> Container:
    return container_and_gateway[0]


@pytest.fixture
def gateway(container_and_gateway: tuple[Container, FakeGateway]) -> FakeGateway:
    return container_and_gateway[1]


@pytest.fixture
def make_payment(container: Container) -> Callable[..., Payment]:
    def _make(
        amount: str = "1000.00",
        status: PaymentStatus = PaymentStatus.COMPLETED,
        transaction_id: str | None = None,
    ) -> Payment:
        payment = Payment(
            invoice_number=f"INV-{uuid.uuid4().hex[:8]}",
            amount=Decimal(amount),
            currency="BDT",
            gateway="bkash",
            status=status,
            transaction_id=transaction_id or f"TR-{uuid.uuid4().hex[:10]}",
        )
        return container.store.add_payment(payment)

    return _make
