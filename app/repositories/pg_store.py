from __future__ import annotations

import json
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from functools import partial
from typing import Any, Iterator, Optional

from psycopg2 import errors as pg_errors
from psycopg2.extras import Json

from app.db.client import get_conn
from app.domain.errors import ConfigurationError, LockTimeout, PaymentNotFound
from app.domain.models import Payment, PaymentFilters, Refund, RefundFilters
from app.domain.statuses import PaymentStatus, RefundStatus, RefundSummary

logger = logging.getLogger(__name__)

MONEY_QUANT = Decimal("0.01")

_dumps = partial(json.dumps, default=str)

PAYMENT_COLUMNS = """
    id, invoice_number, amount, currency, gateway, status, transaction_id,
    refund_status, metadata, created_at, updated_at, paid_at
"""

REFUND_COLUMNS = """
    id, payment_id, amount, currency, status, reason, requested_by, processed_by,
    transaction_id, metadata, created_at, updated_at, processed_at
"""


def _jsonb(value: Any) -> Json:
    return Json(value or {}, dumps=_dumps)


def _normalize_amount(value: Any) -> Decimal:
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValueError("Invalid monetary amount") from exc
    return amount.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def _hydrate_payment(row: tuple[Any, ...]) -> Payment:
    (pid, invoice, amount, currency, gateway, status, transaction_id,
     refund_status, metadata, created_at, updated_at, paid_at) = row
    return Payment(
        id=str(pid),
        invoice_number=str(invoice),
        amount=_normalize_amount(amount),
        currency=str(currency),
        gateway=str(gateway),
        status=PaymentStatus(str(status)),
        transaction_id=transaction_id,
        refund_status=RefundSummary(refund_status) if refund_status else None,
        metadata=dict(metadata or {}),
        created_at=created_at,
        updated_at=updated_at,
        paid_at=paid_at,
    )


def _hydrate_refund(row: tuple[Any, ...]) -> Refund:
    (rid, payment_id, amount, currency, status, reason, requested_by, processed_by,
     transaction_id, metadata, created_at, updated_at, processed_at) = row
    return Refund(
        id=str(rid),
        payment_id=str(payment_id),
        amount=_normalize_amount(amount),
        currency=str(currency),
        status=RefundStatus(str(status)),
        reason=reason,
        requested_by=requested_by,
        processed_by=processed_by,
        transaction_id=transaction_id,
        metadata=dict(metadata or {}),
        created_at=created_at,
        updated_at=updated_at,
        processed_at=processed_at,
    )


class PgTransaction:
    """Writes issued on the connection that holds the payment row lock."""

    def __init__(self, conn: Any, payment: Payment):
        self.conn = conn
        self.payment = payment

    def refunds(self) -> list[Refund]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"SELECT {REFUND_COLUMNS} FROM refund WHERE payment_id=%s ORDER BY created_at",
                (self.payment.id,),
            )
            return [_hydrate_refund(row) for row in cur.fetchall() or []]

    def get_refund(self, refund_id: str) -> Optional[Refund]:
        with self.conn.cursor() as cur:
            cur.execute(
                f"SELECT {REFUND_COLUMNS} FROM refund WHERE id=%s AND payment_id=%s",
                (refund_id, self.payment.id),
            )
            row = cur.fetchone()
        return _hydrate_refund(row) if row else None

    def save_payment(self, payment: Payment) -> None:
        payment.updated_at = datetime.now(timezone.utc)
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE payment
                   SET status=%s, transaction_id=%s, refund_status=%s, metadata=%s,
                       paid_at=%s, updated_at=%s
                 WHERE id=%s
                """,
                (
                    payment.status.value,
                    payment.transaction_id,
                    payment.refund_status.value if payment.refund_status else None,
                    _jsonb(payment.metadata),
                    payment.paid_at,
                    payment.updated_at,
                    payment.id,
                ),
            )

    def save_refund(self, refund: Refund) -> Refund:
        now = datetime.now(timezone.utc)
        refund.updated_at = now
        with self.conn.cursor() as cur:
            if refund.id is None:
                refund.id = uuid.uuid4().hex
                refund.created_at = now
                cur.execute(
                    f"""
                    INSERT INTO refund ({REFUND_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        refund.id,
                        refund.payment_id,
                        _normalize_amount(refund.amount),
                        refund.currency,
                        refund.status.value,
                        refund.reason,
                        refund.requested_by,
                        refund.processed_by,
                        refund.transaction_id,
                        _jsonb(refund.metadata),
                        refund.created_at,
                        refund.updated_at,
                        refund.processed_at,
                    ),
                )
            else:
                cur.execute(
                    """
                    UPDATE refund
                       SET status=%s, processed_by=%s, transaction_id=%s, metadata=%s,
                           updated_at=%s, processed_at=%s
                     WHERE id=%s
                    """,
                    (
                        refund.status.value,
                        refund.processed_by,
                        refund.transaction_id,
                        _jsonb(refund.metadata),
                        refund.updated_at,
                        refund.processed_at,
                        refund.id,
                    ),
                )
        return refund


class PgPaymentStore:
    """PostgreSQL-backed store for payments and refunds using raw psycopg2.

    ``locked`` takes ``SELECT ... FOR UPDATE`` on the payment row, so the lock
    holds across processes and hosts sharing the database.
    """

    def add_payment(self, payment: Payment) -> Payment:
        now = datetime.now(timezone.utc)
        payment.id = payment.id or uuid.uuid4().hex
        payment.created_at = payment.created_at or now
        payment.updated_at = now
        with get_conn() as conn:
            if conn is None:
                raise ConfigurationError("Database not configured")
            with conn.cursor() as cur:
                cur.execute(
                    f"""
                    INSERT INTO payment ({PAYMENT_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        payment.id,
                        payment.invoice_number,
                        _normalize_amount(payment.amount),
                        payment.currency,
                        payment.gateway,
                        payment.status.value,
                        payment.transaction_id,
                        payment.refund_status.value if payment.refund_status else None,
                        _jsonb(payment.metadata),
                        payment.created_at,
                        payment.updated_at,
                        payment.paid_at,
                    ),
                )
        return payment

    def _fetch_payment(self, where: str, params: tuple[Any, ...]) -> Optional[Payment]:
        with get_conn() as conn:
            if conn is None:
                return None
            with conn.cursor() as cur:
                cur.execute(f"SELECT {PAYMENT_COLUMNS} FROM payment WHERE {where} LIMIT 1", params)
                row = cur.fetchone()
        return _hydrate_payment(row) if row else None

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        return self._fetch_payment("id=%s", (payment_id,))

    def get_payment_by_ref(self, ref: str) -> Optional[Payment]:
        return self._fetch_payment("id=%s OR invoice_number=%s ORDER BY created_at DESC", (ref, ref))

    def get_payment_by_transaction(self, gateway: str, transaction_ref: str) -> Optional[Payment]:
        return self._fetch_payment("gateway=%s AND transaction_id=%s", (gateway, transaction_ref))

    def list_payments(self, filters: PaymentFilters) -> list[Payment]:
        clauses: list[str] = []
        params: list[Any] = []
        if filters.status is not None:
            clauses.append("status=%s")
            params.append(filters.status.value)
        if filters.gateway is not None:
            clauses.append("gateway=%s")
            params.append(filters.gateway)
        if filters.search is not None:
            clauses.append("(invoice_number ILIKE %s OR transaction_id ILIKE %s)")
            params.extend([f"%{filters.search}%"] * 2)
        if filters.date_from is not None:
            clauses.append("created_at::date >= %s")
            params.append(filters.date_from)
        if filters.date_to is not None:
            clauses.append("created_at::date <= %s")
            params.append(filters.date_to)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(filters.limit)
        with get_conn() as conn:
            if conn is None:
                return []
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {PAYMENT_COLUMNS} FROM payment {where} ORDER BY created_at DESC LIMIT %s",
                    tuple(params),
                )
                rows = cur.fetchall() or []
        return [_hydrate_payment(row) for row in rows]

    def get_refund(self, refund_id: str) -> Optional[Refund]:
        with get_conn() as conn:
            if conn is None:
                return None
            with conn.cursor() as cur:
                cur.execute(f"SELECT {REFUND_COLUMNS} FROM refund WHERE id=%s", (refund_id,))
                row = cur.fetchone()
        return _hydrate_refund(row) if row else None

    def list_refunds_for(self, payment_id: str) -> list[Refund]:
        """Every refund of a payment, oldest first; balance checks need all of them."""
        with get_conn() as conn:
            if conn is None:
                return []
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {REFUND_COLUMNS} FROM refund WHERE payment_id=%s ORDER BY created_at",
                    (payment_id,),
                )
                rows = cur.fetchall() or []
        return [_hydrate_refund(row) for row in rows]

    def list_refunds(self, filters: RefundFilters) -> list[Refund]:
        clauses: list[str] = []
        params: list[Any] = []
        if filters.status is not None:
            clauses.append("status=%s")
            params.append(filters.status.value)
        if filters.payment_id is not None:
            clauses.append("payment_id=%s")
            params.append(filters.payment_id)
        if filters.requested_by is not None:
            clauses.append("requested_by=%s")
            params.append(filters.requested_by)
        if filters.date_from is not None:
            clauses.append("created_at::date >= %s")
            params.append(filters.date_from)
        if filters.date_to is not None:
            clauses.append("created_at::date <= %s")
            params.append(filters.date_to)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(filters.limit)
        with get_conn() as conn:
            if conn is None:
                return []
            with conn.cursor() as cur:
                cur.execute(
                    f"SELECT {REFUND_COLUMNS} FROM refund {where} ORDER BY created_at DESC LIMIT %s",
                    tuple(params),
                )
                rows = cur.fetchall() or []
        return [_hydrate_refund(row) for row in rows]

    @contextmanager
    def locked(self, payment_id: str, timeout: float) -> Iterator[PgTransaction]:
        with get_conn() as conn:
            if conn is None:
                raise ConfigurationError("Database not configured")
            with conn.cursor() as cur:
                cur.execute("SET LOCAL lock_timeout = %s", (f"{int(timeout * 1000)}ms",))
                try:
                    cur.execute(
                        f"SELECT {PAYMENT_COLUMNS} FROM payment WHERE id=%s FOR UPDATE",
                        (payment_id,),
                    )
                except pg_errors.LockNotAvailable as exc:
                    raise LockTimeout(f"Payment {payment_id} is locked by another operation") from exc
                row = cur.fetchone()
            if row is None:
                raise PaymentNotFound(f"Unknown payment {payment_id}")
            yield PgTransaction(conn, _hydrate_payment(row))

    def refund_statistics(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "total_refunded": Decimal("0.00"),
            "counts": {status.value: 0 for status in RefundStatus},
            "by_status": [],
            "by_month": [],
            "by_payment_method": [],
        }
        with get_conn() as conn:
            if conn is None:
                return stats
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT status, COUNT(*), COALESCE(SUM(amount), 0)
                      FROM refund
                     GROUP BY status
                     ORDER BY status
                    """
                )
                for status_value, count, amount in cur.fetchall() or []:
                    stats["counts"][str(status_value)] = int(count)
                    stats["by_status"].append(
                        {"status": str(status_value), "count": int(count), "amount": _normalize_amount(amount)}
                    )
                    if status_value == RefundStatus.COMPLETED.value:
                        stats["total_refunded"] = _normalize_amount(amount)
                cur.execute(
                    """
                    SELECT to_char(created_at, 'YYYY-MM') AS month, COUNT(*),
                           COALESCE(SUM(amount) FILTER (WHERE status = 'completed'), 0)
                      FROM refund
                     GROUP BY month
                     ORDER BY month DESC
                    """
                )
                stats["by_month"] = [
                    {"month": str(month), "count": int(count), "amount": _normalize_amount(amount)}
                    for month, count, amount in cur.fetchall() or []
                ]
                cur.execute(
                    """
                    SELECT p.gateway, COUNT(*),
                           COALESCE(SUM(r.amount) FILTER (WHERE r.status = 'completed'), 0)
                      FROM refund r
                      JOIN payment p ON p.id = r.payment_id
                     GROUP BY p.gateway
                     ORDER BY p.gateway
                    """
                )
                stats["by_payment_method"] = [
                    {"gateway": str(gateway), "count": int(count), "amount": _normalize_amount(amount)}
                    for gateway, count, amount in cur.fetchall() or []
                ]
        return stats

    def log_provider_event(
        self,
        *,
        provider: str,
        operation: str,
        direction: str,
        request_url: str | None = None,
        reference: str | None = None,
        response_status: int | None = None,
        error_message: str | None = None,
        latency_ms: int | None = None,
        request_headers: dict[str, Any] | None = None,
        request_body: dict[str, Any] | None = None,
        response_body: dict[str, Any] | None = None,
    ) -> None:
        with get_conn() as conn:
            if conn is None:
                return
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO provider_event_log (
                        provider, direction, operation, request_url, reference,
                        request_headers, request_body, response_status, response_body,
                        error_message, latency_ms, created_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NOW())
                    """,
                    (
                        provider,
                        direction,
                        operation,
                        request_url,
                        reference,
                        _jsonb(request_headers),
                        _jsonb(request_body),
                        response_status,
                        _jsonb(response_body),
                        error_message,
                        latency_ms,
                    ),
                )

    def record_webhook(
        self,
        *,
        gateway: str,
        kind: str,
        reference: str | None,
        status: str | None,
        payload: dict[str, Any] | None,
    ) -> None:
        with get_conn() as conn:
            if conn is None:
                return
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO webhook_event (gateway, kind, reference, status, payload, received_at)
                    VALUES (%s, %s, %s, %s, %s, NOW())
                    """,
                    (gateway, kind, reference, status, _jsonb(payload)),
                )
