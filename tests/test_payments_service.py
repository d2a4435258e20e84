from __future__ import annotations

import asyncio
import json
import pathlib
import sys
from decimal import Decimal

import pytest

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from app.domain.errors import (
    IneligibleError,
    InvalidSignature,
    PaymentNotFound,
    UnknownGateway,
    UnknownGatewayStatus,
    ValidationError,
)
from app.domain.models import PaymentFilters
from app.domain.statuses import PaymentStatus, RefundStatus, RefundSummary
from app.providers.base import sorted_json_digest
from app.repositories.gateway_store import OFFLINE_INSTRUCTIONS

from conftest import WEBHOOK_SECRET, make_container


def _signed(payload: dict) -> tuple[bytes, str]:
    body = json.dumps(payload).encode()
    return body, sorted_json_digest(body, WEBHOOK_SECRET)


def test_create_payment_defaults_currency(container) -> None:
    payment = container.payments.create_payment("INV-100", "1500.5", None, "bkash", {"student": "S-1"})

    assert payment.id
    assert payment.amount == Decimal("1500.50")
    assert payment.currency == "BDT"
    assert payment.status == PaymentStatus.PENDING
    assert container.store.get_payment_by_ref("INV-100").id == payment.id


def test_create_payment_validation(container) -> None:
    with pytest.raises(ValidationError):
        container.payments.create_payment("INV-1", "0", None, "bkash")
    with pytest.raises(UnknownGateway):
        container.payments.create_payment("INV-1", "10", None, "paypal")


def test_list_gateways_only_usable_ones(container) -> None:
    codes = [config.code for config in container.payments.list_gateways()]

    assert "bkash" in codes
    assert "cash" in codes
    assert "stripe" not in codes  # no secret key configured
    assert codes == sorted(codes)


def test_initialize_payment_records_reference(container, gateway) -> None:
    payment = container.payments.create_payment("INV-200", "100.00", None, "bkash")

    result = asyncio.run(container.payments.initialize_payment(payment, "bkash"))

    assert result.success
    assert result.redirect_url == f"https://pay.example/TR-{payment.id}"
    stored = container.store.get_payment(payment.id)
    assert stored.transaction_id == f"TR-{payment.id}"
    assert stored.metadata["init_response"]["paymentID"] == f"TR-{payment.id}"
    assert stored.status == PaymentStatus.PENDING


def test_initialize_payment_gateway_failure(container, gateway) -> None:
    gateway.initiate_ok = False
    payment = container.payments.create_payment("INV-201", "100.00", None, "bkash")

    result = asyncio.run(container.payments.initialize_payment(payment, "bkash"))

    assert result.success is False
    assert result.error_code == "payment_failed"
    assert result.message == "Invalid App Key"
    stored = container.store.get_payment(payment.id)
    assert stored.status == PaymentStatus.FAILED
    assert stored.metadata["error"]["code"] == "2001"


def test_initialize_offline_gateway_returns_instructions(container, gateway) -> None:
    payment = container.payments.create_payment("INV-202", "100.00", None, "cash")

    result = asyncio.run(container.payments.initialize_payment(payment, "cash"))

    assert result.success
    assert result.redirect_url is None
    assert result.instructions == OFFLINE_INSTRUCTIONS["cash"]
    assert gateway.initiated == []
    assert container.store.get_payment(payment.id).status == PaymentStatus.PENDING


def test_initialize_rejects_non_pending(container, make_payment) -> None:
    payment = make_payment()

    result = asyncio.run(container.payments.initialize_payment(payment, "bkash"))

    assert not result.success
    assert result.error_code == "invalid_state"


def test_callback_completes_payment(container, make_payment, gateway) -> None:
    payment = make_payment(status=PaymentStatus.PENDING)
    gateway.next_status = "Completed"

    updated = asyncio.run(
        container.payments.process_callback(
            "bkash", {"paymentID": payment.transaction_id, "status": "success", "trxID": "TRX-1"}
        )
    )

    assert updated.status == PaymentStatus.COMPLETED
    assert updated.paid_at is not None
    assert updated.metadata["callback_data"]["callback"]["trxID"] == "TRX-1"
    assert updated.metadata["callback_data"]["verification"]["transactionStatus"] == "Completed"
    # the gateway's own transaction id wins over the one in the redirect
    assert updated.metadata["gateway_transaction_id"] == "TRX-VERIFIED"


def test_callback_status_in_redirect_is_not_trusted(container, make_payment, gateway) -> None:
    payment = make_payment(status=PaymentStatus.PENDING)
    gateway.next_status = "Initiated"

    updated = asyncio.run(
        container.payments.process_callback("bkash", {"payment_id": payment.id, "status": "success"})
    )

    assert updated.id == payment.id
    assert updated.status == PaymentStatus.PENDING
    assert updated.paid_at is None
    assert updated.metadata["callback_data"]["verification"]["transactionStatus"] == "Initiated"


def test_callback_resolves_payment_by_id_hint(container, make_payment, gateway) -> None:
    payment = make_payment(status=PaymentStatus.PENDING)
    gateway.next_status = "Failed"

    updated = asyncio.run(
        container.payments.process_callback("bkash", {"payment_id": payment.id, "status": "success"})
    )

    assert updated.id == payment.id
    assert updated.status == PaymentStatus.FAILED


def test_callback_for_uninitiated_payment_changes_nothing(container) -> None:
    payment = container.payments.create_payment("INV-150", "10.00", None, "bkash")

    updated = asyncio.run(
        container.payments.process_callback("bkash", {"payment_id": payment.id, "status": "success"})
    )

    assert updated.status == PaymentStatus.PENDING
    assert updated.metadata["callback_data"] == {"callback": {"payment_id": payment.id, "status": "success"}}


def test_callback_hint_for_other_gateway_is_rejected(container) -> None:
    payment = container.payments.create_payment("INV-151", "10.00", None, "cash")

    with pytest.raises(PaymentNotFound):
        asyncio.run(container.payments.process_callback("bkash", {"payment_id": payment.id, "status": "success"}))


def test_unknown_status_leaves_payment_untouched(container, make_payment, gateway) -> None:
    payment = make_payment(status=PaymentStatus.PENDING)
    gateway.next_status = "OnHold"

    updated = asyncio.run(
        container.payments.process_callback("bkash", {"paymentID": payment.transaction_id, "status": "success"})
    )

    assert updated.status == PaymentStatus.PENDING
    assert updated.metadata["unmapped_status"] == "OnHold"


def test_unknown_status_can_raise_for_triage() -> None:
    container, fake = make_container(unknown_status_policy="raise")
    fake.next_status = "OnHold"
    payment = container.payments.create_payment("INV-300", "10.00", None, "bkash")
    asyncio.run(container.payments.initialize_payment(payment, "bkash"))

    with pytest.raises(UnknownGatewayStatus):
        asyncio.run(
            container.payments.process_callback("bkash", {"paymentID": f"TR-{payment.id}", "status": "success"})
        )
    assert "callback_data" not in container.store.get_payment(payment.id).metadata


def test_webhook_with_bad_signature_mutates_nothing(container, make_payment) -> None:
    payment = make_payment(status=PaymentStatus.PENDING)
    body, _ = _signed({"paymentID": payment.transaction_id, "transactionStatus": "Completed"})

    with pytest.raises(InvalidSignature):
        asyncio.run(container.payments.process_webhook("bkash", body, "0" * 64))

    stored = container.store.get_payment(payment.id)
    assert stored.status == PaymentStatus.PENDING
    assert stored.metadata == {}
    assert container.store.webhooks == []


def test_duplicate_webhook_settles_once(container, make_payment) -> None:
    payment = make_payment(status=PaymentStatus.PENDING)
    settled: list[str] = []
    container.payments.on_settled(lambda p: settled.append(p.id))
    body, signature = _signed(
        {"paymentID": payment.transaction_id, "transactionStatus": "Completed", "trxID": "TRX-9", "amount": "1000.00"}
    )

    first = asyncio.run(container.payments.process_webhook("bkash", body, signature))
    second = asyncio.run(container.payments.process_webhook("bkash", body, signature))

    assert first.status == second.status == PaymentStatus.COMPLETED
    assert settled == [payment.id]
    assert second.paid_at == first.paid_at
    assert second.metadata["webhook_data"]["trxID"] == "TRX-9"
    assert len(container.store.webhooks) == 2


def test_settlement_listener_errors_do_not_break_processing(container, make_payment) -> None:
    payment = make_payment(status=PaymentStatus.PENDING)

    def broken(_payment) -> None:
        raise RuntimeError("ledger offline")

    container.payments.on_settled(broken)
    body, signature = _signed({"paymentID": payment.transaction_id, "transactionStatus": "Completed"})

    updated = asyncio.run(container.payments.process_webhook("bkash", body, signature))

    assert updated.status == PaymentStatus.COMPLETED


def test_terminal_payment_ignores_conflicting_report(container, make_payment) -> None:
    payment = make_payment(status=PaymentStatus.COMPLETED)
    body, signature = _signed({"paymentID": payment.transaction_id, "transactionStatus": "Failed"})

    updated = asyncio.run(container.payments.process_webhook("bkash", body, signature))

    assert updated.status == PaymentStatus.COMPLETED


def test_completed_payment_can_become_refunded(container, make_payment) -> None:
    payment = make_payment(status=PaymentStatus.COMPLETED)
    body, signature = _signed({"paymentID": payment.transaction_id, "transactionStatus": "Refunded"})

    updated = asyncio.run(container.payments.process_webhook("bkash", body, signature))

    assert updated.status == PaymentStatus.REFUNDED


def test_processing_report_does_not_regress_to_pending(container, make_payment) -> None:
    payment = make_payment(status=PaymentStatus.PROCESSING)
    body, signature = _signed({"paymentID": payment.transaction_id, "transactionStatus": "Initiated"})

    updated = asyncio.run(container.payments.process_webhook("bkash", body, signature))

    assert updated.status == PaymentStatus.PROCESSING


def test_amount_mismatch_is_held_for_review(container, make_payment) -> None:
    payment = make_payment(status=PaymentStatus.PENDING, amount="1000.00")
    body, signature = _signed(
        {"paymentID": payment.transaction_id, "transactionStatus": "Completed", "amount": "10.00"}
    )

    updated = asyncio.run(container.payments.process_webhook("bkash", body, signature))

    assert updated.status == PaymentStatus.PENDING
    assert updated.metadata["amount_mismatch"] == {"expected": "1000.00", "reported": "10.00"}


def test_refund_webhook_is_routed_to_refunds(container, make_payment, gateway) -> None:
    payment = make_payment()
    gateway.settled = False
    outcome = asyncio.run(container.refunds.initiate_refund(payment, "1000.00", "x", "ops"))
    body, signature = _signed(
        {"paymentID": payment.transaction_id, "refundTrxID": "RF-1", "transactionStatus": "Completed"}
    )

    updated = asyncio.run(container.payments.process_webhook("bkash", body, signature))

    assert updated.refund_status == RefundSummary.FULLY_REFUNDED
    assert container.store.get_refund(outcome.refund.id).status == RefundStatus.COMPLETED


def test_verify_payment_polls_gateway(container, make_payment, gateway) -> None:
    payment = make_payment(status=PaymentStatus.PENDING)
    gateway.next_status = "Incomplete"

    processing = asyncio.run(container.payments.verify_payment(payment))
    assert processing.status == PaymentStatus.PROCESSING

    gateway.next_status = "Completed"
    completed = asyncio.run(container.payments.verify_payment(payment))
    assert completed.status == PaymentStatus.COMPLETED
    assert completed.metadata["verification_response"]["transactionStatus"] == "Completed"
    assert completed.metadata["gateway_transaction_id"] == "TRX-VERIFIED"


def test_get_status_includes_refundable_amount(container, make_payment) -> None:
    payment = make_payment()
    asyncio.run(container.refunds.initiate_refund(payment, "250.00", "x", "ops"))

    view = container.payments.get_status(payment.id)

    assert view["payment"].id == payment.id
    assert view["refundable_amount"] == Decimal("750.00")


def test_record_offline_payment_settles_once(container) -> None:
    payment = container.payments.create_payment("INV-400", "2500.00", None, "cash")
    settled: list[str] = []
    container.payments.on_settled(lambda p: settled.append(p.id))

    recorded = asyncio.run(
        container.payments.record_offline_payment(payment, "cashier@example.com", reference="RCPT-77", notes="front desk")
    )

    assert recorded.status == PaymentStatus.COMPLETED
    assert recorded.paid_at is not None
    assert recorded.transaction_id == "RCPT-77"
    assert recorded.metadata["offline_record"]["recorded_by"] == "cashier@example.com"
    assert recorded.metadata["offline_record"]["notes"] == "front desk"
    assert settled == [payment.id]
    assert container.store.get_payment(payment.id).status == PaymentStatus.COMPLETED


def test_record_offline_payment_twice_is_ineligible(container) -> None:
    payment = container.payments.create_payment("INV-401", "100.00", None, "bank_transfer")
    asyncio.run(container.payments.record_offline_payment(payment, "ops"))

    with pytest.raises(IneligibleError):
        asyncio.run(container.payments.record_offline_payment(payment, "ops", reference="SLIP-2"))

    assert container.store.get_payment(payment.id).transaction_id is None


def test_record_offline_payment_rejects_gateway_payments(container, make_payment) -> None:
    payment = make_payment(status=PaymentStatus.PENDING)

    with pytest.raises(IneligibleError):
        asyncio.run(container.payments.record_offline_payment(payment, "ops"))

    assert container.store.get_payment(payment.id).status == PaymentStatus.PENDING


def test_recorded_offline_payment_can_be_refunded(container) -> None:
    payment = container.payments.create_payment("INV-402", "800.00", None, "cheque")
    recorded = asyncio.run(container.payments.record_offline_payment(payment, "ops", reference="CHQ-1"))

    outcome = asyncio.run(container.refunds.initiate_refund(recorded, "300.00", "overpaid", "ops"))

    assert outcome.success
    assert outcome.message == "Refund recorded for manual payout"
    assert outcome.refund.status == RefundStatus.COMPLETED
    assert outcome.refund.metadata["settled_offline"] is True
    stored = container.store.get_payment(payment.id)
    assert stored.refund_status == RefundSummary.PARTIALLY_REFUNDED
    assert container.refunds.get_refundable_amount(stored) == Decimal("500.00")


def test_deferred_offline_refund_is_settled_on_processing(container) -> None:
    payment = container.payments.create_payment("INV-403", "50.00", None, "cash")
    recorded = asyncio.run(container.payments.record_offline_payment(payment, "ops"))
    pending = asyncio.run(container.refunds.request_refund(recorded, "50.00", "cancelled enrolment", "ops"))

    outcome = asyncio.run(container.refunds.process_refund(pending.refund, "approver"))

    assert outcome.success
    assert outcome.refund.processed_by == "approver"
    assert container.store.get_payment(payment.id).refund_status == RefundSummary.FULLY_REFUNDED


def test_list_payments_filters(container, make_payment) -> None:
    pending = make_payment(status=PaymentStatus.PENDING, transaction_id="TR-FIND-ME")
    make_payment(status=PaymentStatus.COMPLETED)
    cash = container.payments.create_payment("INV-CASH-1", "10.00", None, "cash")

    assert [p.id for p in container.payments.list_payments(PaymentFilters(search="find-me"))] == [pending.id]
    assert [p.id for p in container.payments.list_payments(PaymentFilters(gateway="cash"))] == [cash.id]
    by_status = container.payments.list_payments(PaymentFilters(status=PaymentStatus.PENDING))
    assert {p.id for p in by_status} == {pending.id, cash.id}
    assert len(container.payments.list_payments(PaymentFilters(limit=1))) == 1
