from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import pathlib
import sys
import time
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest
import stripe  # type: ignore[import-untyped]
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from app.config import Settings
from app.domain.errors import AuthenticationFailed, GatewayNotConfigured, GatewayTimeout
from app.domain.models import GatewayConfig, Payment
from app.domain.statuses import PaymentStatus
from app.providers.base import sorted_json_digest
from app.providers.bkash import BkashAdapter
from app.providers.nagad import NagadAdapter
from app.providers.rocket import RocketAdapter, rocket_digest
from app.providers.stripe_checkout import StripeCheckoutAdapter

from conftest import make_container

CALLBACK = "https://shop.test/payments/callback/{gateway}?payment_id={payment_id}"


def _settings(**overrides) -> Settings:
    return Settings(db_host="", gateway_timeout_seconds=5.0, **overrides)


def _payment(**overrides) -> Payment:
    values = dict(invoice_number="INV-9", amount=Decimal("1000.50"), currency="BDT", gateway="bkash", id="pay-1")
    values.update(overrides)
    return Payment(**values)


class Recorder:
    """MockTransport handler that answers by path and keeps every request."""

    def __init__(self, routes):
        self.routes = routes
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for suffix, responder in self.routes.items():
            if request.url.path.endswith(suffix):
                if callable(responder):
                    return responder(request)
                # a fresh response per request, canned ones may be served twice
                return httpx.Response(responder.status_code, content=responder.content, headers=responder.headers)
        return httpx.Response(404, json={"message": "no route"})

    def to(self, suffix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]


# bKash


def _bkash(routes) -> tuple[BkashAdapter, Recorder]:
    recorder = Recorder({"/checkout/token/grant": httpx.Response(200, json={"id_token": "bk-token", "expires_in": 3600}), **routes})
    config = GatewayConfig(
        code="bkash",
        name="bKash",
        type="mobile_banking",
        sandbox_url="https://bkash.test/tokenized",
        credentials={"app_key": "app-key", "app_secret": "s", "username": "u", "password": "p"},
        webhook_secret="bk-secret",
        callback_url=CALLBACK,
    )
    return BkashAdapter(config, _settings(), transport=httpx.MockTransport(recorder)), recorder


def test_bkash_initiate() -> None:
    adapter, recorder = _bkash(
        {"/checkout/create": httpx.Response(200, json={"statusCode": "0000", "paymentID": "P-1", "bkashURL": "https://bkash/pay"})}
    )

    result = asyncio.run(adapter.initiate(_payment()))

    assert result.ok
    assert result.transaction_ref == "P-1"
    assert result.redirect_url == "https://bkash/pay"
    create = recorder.to("/checkout/create")[0]
    body = json.loads(create.content)
    assert body["amount"] == "1000.50"
    assert body["callbackURL"] == "https://shop.test/payments/callback/bkash?payment_id=pay-1"
    assert body["merchantInvoiceNumber"] == "INV-9"
    assert create.headers["Authorization"] == "bk-token"
    assert create.headers["X-APP-Key"] == "app-key"


def test_bkash_semantic_error_in_2xx_body() -> None:
    adapter, _ = _bkash(
        {"/checkout/create": httpx.Response(200, json={"statusCode": "2001", "statusMessage": "Invalid App Key"})}
    )

    result = asyncio.run(adapter.initiate(_payment()))

    assert not result.ok
    assert result.error == "Invalid App Key"
    assert result.error_code == "2001"


def test_bkash_refund_looks_up_trx_id() -> None:
    adapter, recorder = _bkash(
        {
            "/checkout/payment/status": httpx.Response(
                200, json={"statusCode": "0000", "paymentID": "P-1", "trxID": "TRX-7", "transactionStatus": "Completed"}
            ),
            "/checkout/payment/refund": httpx.Response(
                200,
                json={"statusCode": "0000", "refundTrxID": "RF-7", "transactionStatus": "Completed", "amount": "250.00"},
            ),
        }
    )

    result = asyncio.run(adapter.refund("P-1", Decimal("250"), "damaged item"))

    assert result.ok
    assert result.settled
    assert result.refund_id == "RF-7"
    body = json.loads(recorder.to("/checkout/payment/refund")[0].content)
    assert body == {"paymentID": "P-1", "trxID": "TRX-7", "amount": "250.00", "reason": "damaged item", "sku": "payment"}


def test_bkash_refund_rejected() -> None:
    adapter, _ = _bkash(
        {
            "/checkout/payment/status": httpx.Response(200, json={"statusCode": "0000", "trxID": "TRX-7"}),
            "/checkout/payment/refund": httpx.Response(
                200, json={"statusCode": "2071", "statusMessage": "Duplicate for all transactions"}
            ),
        }
    )

    result = asyncio.run(adapter.refund("P-1", Decimal("10"), None))

    assert not result.ok
    assert result.error == "Duplicate for all transactions"


def test_bkash_retries_once_with_fresh_token_on_401() -> None:
    answers = iter(
        [
            httpx.Response(401, json={"message": "token expired"}),
            httpx.Response(200, json={"statusCode": "0000", "paymentID": "P-1", "transactionStatus": "Completed"}),
        ]
    )
    adapter, recorder = _bkash({"/checkout/payment/status": lambda request: next(answers)})

    result = asyncio.run(adapter.verify_status("P-1"))

    assert result.ok
    assert adapter.map_status(result.status) == PaymentStatus.COMPLETED
    assert len(recorder.to("/checkout/token/grant")) == 2


def test_bkash_second_401_is_authentication_failure() -> None:
    adapter, _ = _bkash({"/checkout/payment/status": httpx.Response(401, json={"message": "nope"})})

    with pytest.raises(AuthenticationFailed):
        asyncio.run(adapter.verify_status("P-1"))


def test_bkash_timeout_is_gateway_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/checkout/token/grant"):
            return httpx.Response(200, json={"id_token": "t", "expires_in": 3600})
        raise httpx.ReadTimeout("timed out", request=request)

    config = GatewayConfig(
        code="bkash", name="bKash", type="mobile_banking", sandbox_url="https://bkash.test",
        credentials={"app_key": "k"},
    )
    adapter = BkashAdapter(config, _settings(), transport=httpx.MockTransport(handler))

    with pytest.raises(GatewayTimeout):
        asyncio.run(adapter.verify_status("P-1"))


def test_bkash_callback_executes_payment() -> None:
    adapter, recorder = _bkash(
        {
            "/checkout/execute": httpx.Response(
                200,
                json={"statusCode": "0000", "paymentID": "P-1", "trxID": "TRX-1", "transactionStatus": "Completed", "amount": "1000.50"},
            )
        }
    )

    notification = asyncio.run(adapter.complete_callback({"paymentID": "P-1", "status": "success"}))

    assert notification.reference == "P-1"
    assert notification.status == "Completed"
    assert notification.transaction_id == "TRX-1"
    assert notification.amount == Decimal("1000.50")
    assert len(recorder.to("/checkout/execute")) == 1


def test_bkash_callback_cancel_is_confirmed_by_status_query() -> None:
    adapter, recorder = _bkash(
        {
            "/checkout/payment/status": httpx.Response(
                200, json={"statusCode": "0000", "paymentID": "P-1", "transactionStatus": "Initiated"}
            )
        }
    )

    notification = asyncio.run(adapter.complete_callback({"paymentID": "P-1", "status": "cancel"}))

    assert notification.status == "Initiated"
    assert adapter.map_status("cancel") is None
    assert recorder.to("/checkout/execute") == []
    assert len(recorder.to("/checkout/payment/status")) == 1


def test_callback_without_gateway_reference_has_no_status() -> None:
    adapter, recorder = _bkash({})

    notification = asyncio.run(adapter.complete_callback({"payment_id": "pay-1", "status": "success"}))

    assert notification.reference is None
    assert notification.status is None
    assert recorder.requests == []


def test_forged_bkash_redirect_leaves_payment_pending() -> None:
    container, _ = make_container()
    adapter, recorder = _bkash(
        {
            "/checkout/execute": httpx.Response(200, json={"statusCode": "2056", "statusMessage": "Invalid Payment State"}),
            "/checkout/payment/status": httpx.Response(
                200, json={"statusCode": "0000", "paymentID": "P-9", "transactionStatus": "Initiated"}
            ),
        }
    )
    container.registry.register("bkash", adapter)
    payment = container.store.add_payment(_payment(id=None, transaction_id="P-9", status=PaymentStatus.PENDING))

    by_id = asyncio.run(container.payments.process_callback("bkash", {"payment_id": payment.id, "status": "success"}))
    by_ref = asyncio.run(container.payments.process_callback("bkash", {"paymentID": "P-9", "status": "success"}))

    assert by_id.status == by_ref.status == PaymentStatus.PENDING
    assert container.store.get_payment(payment.id).paid_at is None
    assert len(recorder.to("/checkout/payment/status")) == 2


def test_forged_rocket_redirect_leaves_payment_pending() -> None:
    container, _ = make_container()
    adapter, recorder = _rocket({"/api/v1/payment/RK-5": httpx.Response(200, json={"status": "pending"})})
    container.registry.register("rocket", adapter)
    payment = container.store.add_payment(
        _payment(id=None, gateway="rocket", transaction_id="RK-5", status=PaymentStatus.PENDING)
    )

    updated = asyncio.run(
        container.payments.process_callback("rocket", {"payment_id": payment.id, "status": "success", "amount": "1000.50"})
    )

    assert updated.status == PaymentStatus.PENDING
    assert len(recorder.to("/api/v1/payment/RK-5")) == 1


def test_rocket_redirect_completes_when_gateway_confirms() -> None:
    container, _ = make_container()
    adapter, _ = _rocket(
        {"/api/v1/payment/RK-6": httpx.Response(200, json={"status": "success", "transaction_id": "RT-6", "amount": "1000.50"})}
    )
    container.registry.register("rocket", adapter)
    payment = container.store.add_payment(
        _payment(id=None, gateway="rocket", transaction_id="RK-6", status=PaymentStatus.PENDING)
    )

    updated = asyncio.run(container.payments.process_callback("rocket", {"payment_id": payment.id}))

    assert updated.status == PaymentStatus.COMPLETED
    assert updated.metadata["gateway_transaction_id"] == "RT-6"


def test_bkash_webhook_signature() -> None:
    adapter, _ = _bkash({})
    body = json.dumps({"trxID": "T", "paymentID": "P-1", "transactionStatus": "Completed"}).encode()
    signature = sorted_json_digest(body, "bk-secret")

    assert adapter.verify_signature(body, signature)
    assert adapter.verify_signature(body, signature.upper())
    assert not adapter.verify_signature(body, sorted_json_digest(body, "other"))
    assert not adapter.verify_signature(body, None)


def test_bkash_refund_notification() -> None:
    adapter, _ = _bkash({})

    notification = adapter.parse_notification(
        {"paymentID": "P-1", "refundTrxID": "RF-1", "transactionStatus": "Completed", "amount": "20"}
    )

    assert notification.kind == "refund"
    assert notification.refund_reference == "RF-1"
    assert notification.amount == Decimal("20.00")


# Nagad


@pytest.fixture(scope="module")
def nagad_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _nagad(key, routes) -> tuple[NagadAdapter, Recorder]:
    pem = key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
    ).decode()
    recorder = Recorder({"/oauth/token": httpx.Response(200, json={"access_token": "ng-token", "expires_in": 3600}), **routes})
    config = GatewayConfig(
        code="nagad",
        name="Nagad",
        type="mobile_banking",
        sandbox_url="https://nagad.test/api/dfs",
        credentials={"merchant_id": "683002007104225", "private_key": pem},
        webhook_secret="ng-secret",
        callback_url=CALLBACK,
    )
    return NagadAdapter(config, _settings(), transport=httpx.MockTransport(recorder)), recorder


def test_nagad_initiate_signs_sensitive_data(nagad_key) -> None:
    adapter, recorder = _nagad(
        nagad_key,
        {"/checkout/initialize/683002007104225/INV-9": httpx.Response(
            200, json={"paymentReferenceId": "NR-1", "callBackUrl": "https://nagad/pay"}
        )},
    )

    result = asyncio.run(adapter.initiate(_payment(gateway="nagad")))

    assert result.ok
    assert result.transaction_ref == "NR-1"
    assert result.redirect_url == "https://nagad/pay"
    request = recorder.to("/checkout/initialize/683002007104225/INV-9")[0]
    assert request.headers["Authorization"] == "Bearer ng-token"
    assert request.headers["X-KM-Api-Version"] == "v-0.2.0"
    body = json.loads(request.content)
    raw = base64.b64decode(body["sensitiveData"])
    nagad_key.public_key().verify(base64.b64decode(body["signature"]), raw, padding.PKCS1v15(), hashes.SHA256())
    sensitive = json.loads(raw)
    assert sensitive["orderId"] == "INV-9"
    assert sensitive["amount"] == "1000.50"
    assert recorder.to("/oauth/token")[0].headers["content-type"].startswith("application/x-www-form-urlencoded")


def test_nagad_refund_failure_is_reported(nagad_key) -> None:
    adapter, _ = _nagad(
        nagad_key,
        {"/purchase/refund/NR-1": httpx.Response(400, json={"reason": "Refund amount exceeds"})},
    )

    result = asyncio.run(adapter.refund("NR-1", Decimal("5"), None))

    assert not result.ok
    assert result.error == "Refund amount exceeds"


def test_nagad_refund_success(nagad_key) -> None:
    adapter, _ = _nagad(
        nagad_key,
        {"/purchase/refund/NR-1": httpx.Response(200, json={"status": "Success", "refundTrxID": "NRF-1"})},
    )

    result = asyncio.run(adapter.refund("NR-1", Decimal("5"), "late"))

    assert result.ok
    assert result.settled
    assert result.refund_id == "NRF-1"


def test_nagad_missing_key_is_configuration_error() -> None:
    config = GatewayConfig(code="nagad", name="Nagad", type="mobile_banking", credentials={"merchant_id": "m"})

    with pytest.raises(GatewayNotConfigured):
        NagadAdapter(config, _settings())


def test_nagad_webhook_signature_and_refund_notification(nagad_key) -> None:
    adapter, _ = _nagad(nagad_key, {})
    payload = {"paymentRefId": "NR-1", "refundTrxID": "NRF-1", "refundStatus": "Success", "amount": "5.00"}
    body = json.dumps(payload).encode()

    assert adapter.verify_signature(body, sorted_json_digest(body, "ng-secret"))
    assert not adapter.verify_signature(body, "deadbeef")
    notification = adapter.parse_notification(payload)
    assert notification.kind == "refund"
    assert notification.reference == "NR-1"


# Rocket


def _rocket(routes) -> tuple[RocketAdapter, Recorder]:
    recorder = Recorder({"/api/v1/token": httpx.Response(200, json={"access_token": "rk-token", "expires_in": 3600}), **routes})
    config = GatewayConfig(
        code="rocket",
        name="Rocket",
        type="mobile_banking",
        sandbox_url="https://rocket.test",
        credentials={"client_id": "cid", "client_secret": "cs", "store_password": "store-pw"},
        callback_url=CALLBACK,
    )
    return RocketAdapter(config, _settings(), transport=httpx.MockTransport(recorder)), recorder


def test_rocket_initiate_and_refund_pending() -> None:
    adapter, recorder = _rocket(
        {
            "/api/v1/payment": httpx.Response(200, json={"payment_id": "RK-1", "redirect_url": "https://rocket/pay"}),
            "/api/v1/refund": httpx.Response(200, json={"status": "pending", "refund_id": "RRF-1"}),
        }
    )

    initiated = asyncio.run(adapter.initiate(_payment(gateway="rocket")))
    refunded = asyncio.run(adapter.refund("RK-1", Decimal("100"), None))

    assert initiated.transaction_ref == "RK-1"
    assert recorder.to("/api/v1/payment")[0].headers["Authorization"] == "Bearer rk-token"
    assert refunded.ok
    assert refunded.settled is False
    assert len(recorder.to("/api/v1/token")) == 1


def test_rocket_signature_from_body_field() -> None:
    adapter, _ = _rocket({})
    fields = {"payment_id": "RK-1", "status": "success", "amount": "100.00", "transaction_id": "T-1"}
    fields["signature"] = rocket_digest(fields, "store-pw")
    body = json.dumps(fields).encode()

    assert adapter.verify_signature(body, None)
    tampered = json.dumps({**fields, "amount": "1.00"}).encode()
    assert not adapter.verify_signature(tampered, None)


def test_rocket_digest_ignores_nested_and_signature_fields() -> None:
    expected = hmac.new(b"pw", b"a1b2", hashlib.sha256).hexdigest()

    assert rocket_digest({"b": 2, "a": 1, "signature": "x", "extra": {"n": 1}}, "pw") == expected


# Stripe


def _stripe() -> StripeCheckoutAdapter:
    config = GatewayConfig(
        code="stripe",
        name="Card",
        type="card",
        credentials={"secret_key": "sk_test_123"},
        webhook_secret="whsec_stripe",
        callback_url=CALLBACK,
        currency="USD",
    )
    return StripeCheckoutAdapter(config, _settings())


def test_stripe_initiate_uses_per_call_key(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[dict] = []

    def fake_create(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(id="cs_1", url="https://checkout.stripe/cs_1", payment_status="unpaid")

    monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)

    result = asyncio.run(_stripe().initiate(_payment(currency="USD", gateway="stripe")))

    assert result.transaction_ref == "cs_1"
    assert calls[0]["api_key"] == "sk_test_123"
    assert calls[0]["line_items"][0]["price_data"]["unit_amount"] == 100050
    assert calls[0]["success_url"].endswith("&session_id={CHECKOUT_SESSION_ID}")


def test_stripe_refund(monkeypatch: pytest.MonkeyPatch) -> None:
    created: list[dict] = []

    def fake_retrieve(session_id, **kwargs):
        return SimpleNamespace(id=session_id, payment_intent=SimpleNamespace(id="pi_1", currency="usd"))

    def fake_refund(**kwargs):
        created.append(kwargs)
        return SimpleNamespace(id="re_1", status="succeeded")

    monkeypatch.setattr(stripe.checkout.Session, "retrieve", fake_retrieve)
    monkeypatch.setattr(stripe.Refund, "create", fake_refund)

    result = asyncio.run(_stripe().refund("cs_1", Decimal("12.34"), "requested_by_customer"))

    assert result.ok and result.settled
    assert result.refund_id == "re_1"
    assert created[0]["amount"] == 1234
    assert created[0]["metadata"]["checkout_session"] == "cs_1"


def test_stripe_sdk_error_becomes_failed_response(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_retrieve(session_id, **kwargs):
        raise stripe.InvalidRequestError("No such checkout.session: cs_missing", "id")

    monkeypatch.setattr(stripe.checkout.Session, "retrieve", fake_retrieve)

    result = asyncio.run(_stripe().verify_status("cs_missing"))

    assert not result.ok
    assert "No such checkout.session" in result.error


def test_stripe_webhook_signature() -> None:
    adapter = _stripe()
    body = json.dumps({"id": "evt_1", "type": "checkout.session.completed"}).encode()
    timestamp = int(time.time())
    digest = hmac.new(b"whsec_stripe", f"{timestamp}.".encode() + body, hashlib.sha256).hexdigest()

    assert adapter.verify_signature(body, f"t={timestamp},v1={digest}")
    assert not adapter.verify_signature(body, f"t={timestamp},v1={'0' * 64}")
    assert not adapter.verify_signature(body, None)


def test_stripe_refund_event_notification() -> None:
    adapter = _stripe()
    event = {
        "type": "refund.updated",
        "data": {"object": {"object": "refund", "id": "re_1", "status": "succeeded", "amount": 1234,
                            "currency": "usd", "metadata": {"checkout_session": "cs_1"}}},
    }

    notification = adapter.parse_notification(event)

    assert notification.kind == "refund"
    assert notification.reference == "cs_1"
    assert notification.amount == Decimal("12.34")
