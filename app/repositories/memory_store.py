from __future__ import annotations

import copy
import threading
import uuid
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterator, Optional

from app.domain.errors import LockTimeout, PaymentNotFound
from app.domain.models import Payment, PaymentFilters, Refund, RefundFilters
from app.domain.statuses import RefundStatus


def _now() -> datetime:
    return datetime.now(timezone.utc)


class MemoryTransaction:
    """Writes staged under a payment lock; applied on commit, dropped otherwise."""

    def __init__(self, store: InMemoryPaymentStore, payment: Payment):
        self.store = store
        self.payment = payment
        self._payments: Dict[str, Payment] = {}
        self._refunds: Dict[str, Refund] = {}

    def refunds(self) -> list[Refund]:
        current = {r.id: r for r in self.store.list_refunds_for(self.payment.id or "")}
        for rid, refund in self._refunds.items():
            current[rid] = copy.deepcopy(refund)
        return sorted(current.values(), key=lambda r: r.created_at or _now())

    def get_refund(self, refund_id: str) -> Optional[Refund]:
        for refund in self.refunds():
            if refund.id == refund_id:
                return refund
        return None

    def save_payment(self, payment: Payment) -> None:
        payment.updated_at = _now()
        self._payments[payment.id or ""] = copy.deepcopy(payment)

    def save_refund(self, refund: Refund) -> Refund:
        now = _now()
        if refund.id is None:
            refund.id = uuid.uuid4().hex
            refund.created_at = now
        refund.updated_at = now
        self._refunds[refund.id] = copy.deepcopy(refund)
        return refund

    def commit(self) -> None:
        with self.store._guard:
            self.store._payments.update(self._payments)
            self.store._refunds.update(self._refunds)
        self._payments.clear()
        self._refunds.clear()

    def rollback(self) -> None:
        self._payments.clear()
        self._refunds.clear()


class InMemoryPaymentStore:
    """In-process payment and refund repository.

    ``locked`` serialises writers per payment with a ``threading.Lock``; it is
    only valid while a single process owns the data. Reads hand out copies.
    """

    def __init__(self) -> None:
        self._payments: Dict[str, Payment] = {}
        self._refunds: Dict[str, Refund] = {}
        self._locks: Dict[str, threading.Lock] = defaultdict(threading.Lock)
        self._guard = threading.RLock()
        self.provider_events: list[dict[str, Any]] = []
        self.webhooks: list[dict[str, Any]] = []

    def add_payment(self, payment: Payment) -> Payment:
        now = _now()
        payment.id = payment.id or uuid.uuid4().hex
        payment.created_at = payment.created_at or now
        payment.updated_at = now
        with self._guard:
            self._payments[payment.id] = copy.deepcopy(payment)
        return payment

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        with self._guard:
            payment = self._payments.get(payment_id)
            return copy.deepcopy(payment) if payment else None

    def get_payment_by_ref(self, ref: str) -> Optional[Payment]:
        payment = self.get_payment(ref)
        if payment is not None:
            return payment
        with self._guard:
            for candidate in self._payments.values():
                if candidate.invoice_number == ref:
                    return copy.deepcopy(candidate)
        return None

    def get_payment_by_transaction(self, gateway: str, transaction_ref: str) -> Optional[Payment]:
        with self._guard:
            for candidate in self._payments.values():
                if candidate.gateway == gateway and candidate.transaction_id == transaction_ref:
                    return copy.deepcopy(candidate)
        return None

    def list_payments(self, filters: PaymentFilters) -> list[Payment]:
        with self._guard:
            items = [copy.deepcopy(p) for p in self._payments.values() if filters.matches(p)]
        items.sort(key=lambda p: p.created_at or _now(), reverse=True)
        return items[: filters.limit]

    def get_refund(self, refund_id: str) -> Optional[Refund]:
        with self._guard:
            refund = self._refunds.get(refund_id)
            return copy.deepcopy(refund) if refund else None

    def list_refunds_for(self, payment_id: str) -> list[Refund]:
        with self._guard:
            items = [copy.deepcopy(r) for r in self._refunds.values() if r.payment_id == payment_id]
        return sorted(items, key=lambda r: r.created_at or _now())

    def list_refunds(self, filters: RefundFilters) -> list[Refund]:
        with self._guard:
            items = [copy.deepcopy(r) for r in self._refunds.values() if filters.matches(r)]
        items.sort(key=lambda r: r.created_at or _now(), reverse=True)
        return items[: filters.limit]

    @contextmanager
    def locked(self, payment_id: str, timeout: float) -> Iterator[MemoryTransaction]:
        with self._guard:
            if payment_id not in self._payments:
                raise PaymentNotFound(f"Unknown payment {payment_id}")
            lock = self._locks[payment_id]
        if not lock.acquire(timeout=timeout):
            raise LockTimeout(f"Payment {payment_id} is locked by another operation")
        try:
            tx = MemoryTransaction(self, self.get_payment(payment_id))  # type: ignore[arg-type]
            try:
                yield tx
            except BaseException:
                tx.rollback()
                raise
            tx.commit()
        finally:
            lock.release()

    def refund_statistics(self) -> dict[str, Any]:
        with self._guard:
            refunds = [copy.deepcopy(r) for r in self._refunds.values()]
            gateways = {pid: p.gateway for pid, p in self._payments.items()}
        counts = {status.value: 0 for status in RefundStatus}
        by_status: Dict[str, dict[str, Any]] = {}
        by_month: Dict[str, dict[str, Any]] = {}
        by_method: Dict[str, dict[str, Any]] = {}
        total = Decimal("0.00")
        for refund in refunds:
            counts[refund.status.value] += 1
            row = by_status.setdefault(refund.status.value, {"status": refund.status.value, "count": 0, "amount": Decimal("0.00")})
            row["count"] += 1
            row["amount"] += refund.amount
            month = (refund.created_at or _now()).strftime("%Y-%m")
            month_row = by_month.setdefault(month, {"month": month, "count": 0, "amount": Decimal("0.00")})
            month_row["count"] += 1
            gateway = gateways.get(refund.payment_id, "unknown")
            method_row = by_method.setdefault(gateway, {"gateway": gateway, "count": 0, "amount": Decimal("0.00")})
            method_row["count"] += 1
            if refund.status == RefundStatus.COMPLETED:
                total += refund.amount
                month_row["amount"] += refund.amount
                method_row["amount"] += refund.amount
        return {
            "total_refunded": total,
            "counts": counts,
            "by_status": sorted(by_status.values(), key=lambda r: r["status"]),
            "by_month": sorted(by_month.values(), key=lambda r: r["month"], reverse=True),
            "by_payment_method": sorted(by_method.values(), key=lambda r: r["gateway"]),
        }

    def log_provider_event(self, **event: Any) -> None:
        with self._guard:
            self.provider_events.append({**event, "created_at": _now()})

    def record_webhook(self, **event: Any) -> None:
        with self._guard:
            self.webhooks.append({**event, "created_at": _now()})
