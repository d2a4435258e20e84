from __future__ import annotations

from enum import Enum


class PaymentStatus(str, Enum):
    """Status of a payment."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in PAYMENT_TERMINAL

    @property
    def display_name(self) -> str:
        """Human-friendly label for dashboards and statements."""

        mapping = {
            self.PENDING: "Pending",
            self.PROCESSING: "Processing",
            self.COMPLETED: "Paid",
            self.FAILED: "Failed",
            self.CANCELLED: "Cancelled",
            self.EXPIRED: "Expired",
            self.REFUNDED: "Refunded",
        }
        return mapping.get(self, self.value)


PAYMENT_TERMINAL = frozenset(
    {
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
        PaymentStatus.EXPIRED,
        PaymentStatus.REFUNDED,
    }
)


class RefundStatus(str, Enum):
    """Status of a refund."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in REFUND_TERMINAL

    @property
    def holds_balance(self) -> bool:
        """Whether the refund counts against the payment's refundable amount."""
        return self in REFUND_HOLDS_BALANCE


REFUND_TERMINAL = frozenset({RefundStatus.COMPLETED, RefundStatus.FAILED, RefundStatus.CANCELLED})
REFUND_HOLDS_BALANCE = frozenset({RefundStatus.PENDING, RefundStatus.PROCESSING, RefundStatus.COMPLETED})
REFUND_IN_FLIGHT = frozenset({RefundStatus.PENDING, RefundStatus.PROCESSING})


class RefundSummary(str, Enum):
    """Aggregate refund state stored on the payment."""

    PARTIALLY_REFUNDED = "partially_refunded"
    FULLY_REFUNDED = "fully_refunded"
