from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from .enums import OFFLINE_GATEWAYS
from .errors import ImmutablePaymentError
from .statuses import PaymentStatus, RefundStatus, RefundSummary

MAX_PAGE_SIZE = 500


@dataclass
class Payment:
    """Internal representation of a payment."""

    invoice_number: str
    amount: Decimal
    currency: str
    gateway: str
    id: str | None = None
    status: PaymentStatus = PaymentStatus.PENDING
    transaction_id: str | None = None
    refund_status: RefundSummary | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    paid_at: datetime | None = None

    def assign_transaction_id(self, transaction_id: str | None) -> None:
        if not transaction_id or transaction_id == self.transaction_id:
            return
        if self.status.is_terminal and self.transaction_id:
            raise ImmutablePaymentError(
                f"Payment {self.id} is {self.status.value}; transaction id is immutable"
            )
        self.transaction_id = transaction_id


@dataclass
class Refund:
    """A (partial) reversal of a completed payment."""

    payment_id: str
    amount: Decimal
    currency: str
    id: str | None = None
    status: RefundStatus = RefundStatus.PENDING
    reason: str | None = None
    requested_by: str | None = None
    processed_by: str | None = None
    transaction_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    processed_at: datetime | None = None


@dataclass
class GatewayConfig:
    """Read-only gateway settings owned by the administration side."""

    code: str
    name: str
    type: str
    is_active: bool = True
    is_online: bool = True
    test_mode: bool = True
    sandbox_url: str | None = None
    live_url: str | None = None
    credentials: dict[str, str] = field(default_factory=dict)
    required_credentials: tuple[str, ...] = ()
    callback_url: str | None = None
    webhook_secret: str | None = None
    currency: str = "BDT"
    instructions: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def base_url(self) -> str:
        url = self.sandbox_url if self.test_mode else self.live_url
        return (url or "").rstrip("/")

    @property
    def is_offline(self) -> bool:
        return self.code in OFFLINE_GATEWAYS or not self.is_online

    @property
    def is_configured(self) -> bool:
        if self.is_offline:
            return True
        return all(self.credentials.get(key) for key in self.required_credentials)

    def callback_for(self, payment: Payment) -> str:
        """Render the callback URL template for a payment."""
        template = self.callback_url or ""
        return template.format(
            gateway=self.code,
            payment_id=payment.id or "",
            invoice_number=payment.invoice_number,
        )


@dataclass
class RefundFilters:
    """Read-side filters for refund listings; dates are inclusive."""

    status: RefundStatus | None = None
    payment_id: str | None = None
    requested_by: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    limit: int = 50

    def __post_init__(self) -> None:
        self.limit = max(1, min(int(self.limit), MAX_PAGE_SIZE))

    def matches(self, refund: Refund) -> bool:
        if self.status is not None and refund.status != self.status:
            return False
        if self.payment_id is not None and refund.payment_id != self.payment_id:
            return False
        if self.requested_by is not None and refund.requested_by != self.requested_by:
            return False
        created = refund.created_at.date() if refund.created_at else None
        if self.date_from is not None and (created is None or created < self.date_from):
            return False
        if self.date_to is not None and (created is None or created > self.date_to):
            return False
        return True


@dataclass
class PaymentFilters:
    """Read-side filters for payment listings; ``search`` matches invoice or gateway reference."""

    status: PaymentStatus | None = None
    gateway: str | None = None
    search: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    limit: int = 50

    def __post_init__(self) -> None:
        self.limit = max(1, min(int(self.limit), MAX_PAGE_SIZE))
        self.search = (self.search or "").strip() or None

    def matches(self, payment: Payment) -> bool:
        if self.status is not None and payment.status != self.status:
            return False
        if self.gateway is not None and payment.gateway != self.gateway:
            return False
        if self.search is not None:
            needle = self.search.lower()
            haystack = (payment.invoice_number, payment.transaction_id or "")
            if not any(needle in value.lower() for value in haystack):
                return False
        created = payment.created_at.date() if payment.created_at else None
        if self.date_from is not None and (created is None or created < self.date_from):
            return False
        if self.date_to is not None and (created is None or created > self.date_to):
            return False
        return True
