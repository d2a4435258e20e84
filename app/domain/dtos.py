from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from pydantic import BaseModel, Field

from .statuses import PaymentStatus, RefundStatus, RefundSummary


class PaymentCreateRequest(BaseModel):
    """Request body for registering a payment before initiation."""

    invoice_number: str = Field(..., min_length=1, description="Externally visible reference")
    amount: Decimal = Field(..., description="Amount in major currency units")
    currency: str | None = Field(default=None, description="ISO currency, defaults to the gateway currency")
    gateway_code: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class InitiateRequest(BaseModel):
    """Request body for starting a payment at its gateway."""

    payment_ref: str = Field(..., description="Payment id or invoice number")
    gateway_code: str


class InitiateResponse(BaseModel):
    success: bool
    redirect_url: str | None = None
    error_code: str | None = None
    message: str | None = None
    instructions: str | None = None


class PaymentSummary(BaseModel):
    id: str
    invoice_number: str
    amount: Decimal
    currency: str
    gateway: str
    status: PaymentStatus
    status_label: str
    transaction_id: str | None = None
    refund_status: RefundSummary | None = None
    refundable_amount: Decimal | None = None
    created_at: datetime | None = None
    paid_at: datetime | None = None


class OfflinePaymentRequest(BaseModel):
    """Operator record of money received outside any gateway."""

    reference_number: str | None = Field(default=None, max_length=100, description="Receipt, slip or cheque number")
    notes: str | None = Field(default=None, max_length=500)


class GatewaySummary(BaseModel):
    code: str
    name: str
    type: str
    is_online: bool
    currency: str
    instructions: str | None = None


class RefundCreateRequest(BaseModel):
    amount: Decimal
    reason: str = Field(..., min_length=1, max_length=500)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    defer: bool = Field(default=False, description="Create as pending and wait for processing")


class RefundActionRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class RefundView(BaseModel):
    id: str
    payment_id: str
    amount: Decimal
    currency: str
    status: RefundStatus
    reason: str | None = None
    requested_by: str | None = None
    processed_by: str | None = None
    transaction_id: str | None = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    processed_at: datetime | None = None


class RefundResult(BaseModel):
    success: bool
    message: str
    refund: RefundView | None = None
