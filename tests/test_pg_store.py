from __future__ import annotations

import pathlib
import sys
from contextlib import contextmanager
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from app.domain.models import PaymentFilters
from app.domain.statuses import PaymentStatus
from app.repositories import pg_store
from app.repositories.pg_store import PgPaymentStore

CREATED = datetime(2026, 3, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows
        self.executed: list[tuple[str, tuple]] = []

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def execute(self, sql, params=()):
        self.executed.append((" ".join(sql.split()), tuple(params)))

    def fetchall(self):
        return self.rows


class FakeConnection:
    def __init__(self, rows):
        self.cur = FakeCursor(rows)

    def cursor(self):
        return self.cur


@pytest.fixture
def connection(monkeypatch: pytest.MonkeyPatch):
    conn = FakeConnection([])

    @contextmanager
    def fake_get_conn():
        yield conn

    monkeypatch.setattr(pg_store, "get_conn", fake_get_conn)
    return conn


def _refund_row(index: int) -> tuple:
    return (
        f"rf-{index}", "pay-1", "1.00", "BDT", "completed", "split", "ops", "ops",
        f"RF-{index}", {}, CREATED, CREATED, CREATED,
    )


def test_list_refunds_for_returns_every_refund(connection) -> None:
    connection.cur.rows = [_refund_row(i) for i in range(750)]

    refunds = PgPaymentStore().list_refunds_for("pay-1")

    assert len(refunds) == 750
    assert sum((r.amount for r in refunds), Decimal("0.00")) == Decimal("750.00")
    sql, params = connection.cur.executed[0]
    assert "LIMIT" not in sql
    assert sql.endswith("WHERE payment_id=%s ORDER BY created_at")
    assert params == ("pay-1",)


def test_list_payments_builds_filters(connection) -> None:
    connection.cur.rows = [
        ("pay-1", "INV-1", "10.00", "BDT", "cash", "pending", None, None, {}, CREATED, CREATED, None)
    ]
    filters = PaymentFilters(
        status=PaymentStatus.PENDING,
        gateway="cash",
        search=" inv ",
        date_from=date(2026, 1, 1),
        limit=5,
    )

    payments = PgPaymentStore().list_payments(filters)

    assert [p.id for p in payments] == ["pay-1"]
    assert payments[0].amount == Decimal("10.00")
    sql, params = connection.cur.executed[0]
    assert "status=%s AND gateway=%s AND (invoice_number ILIKE %s OR transaction_id ILIKE %s)" in sql
    assert sql.endswith("ORDER BY created_at DESC LIMIT %s")
    assert params == ("pending", "cash", "%inv%", "%inv%", date(2026, 1, 1), 5)
