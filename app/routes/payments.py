from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from app.domain.dtos import (
    GatewaySummary,
    InitiateRequest,
    InitiateResponse,
    OfflinePaymentRequest,
    PaymentCreateRequest,
    PaymentSummary,
    RefundCreateRequest,
    RefundResult,
    RefundView,
)
from app.domain.errors import PaymentsError
from app.domain.models import MAX_PAGE_SIZE, Payment, PaymentFilters, Refund
from app.domain.statuses import PaymentStatus
from app.services.container import Container, get_container
from app.utils.http_errors import to_http_exception
from app.utils.security import get_actor, verify_bearer_token

router = APIRouter(prefix="/payments")
logger = logging.getLogger(__name__)


def _payment_to_summary(payment: Payment, refundable: Decimal | None = None) -> PaymentSummary:
    return PaymentSummary(
        id=payment.id or "",
        invoice_number=payment.invoice_number,
        amount=payment.amount,
        currency=payment.currency,
        gateway=payment.gateway,
        status=payment.status,
        status_label=payment.status.display_name,
        transaction_id=payment.transaction_id,
        refund_status=payment.refund_status,
        refundable_amount=refundable,
        created_at=payment.created_at,
        paid_at=payment.paid_at,
    )


def _refund_to_view(refund: Refund) -> RefundView:
    return RefundView(
        id=refund.id or "",
        payment_id=refund.payment_id,
        amount=refund.amount,
        currency=refund.currency,
        status=refund.status,
        reason=refund.reason,
        requested_by=refund.requested_by,
        processed_by=refund.processed_by,
        transaction_id=refund.transaction_id,
        metadata=refund.metadata,
        created_at=refund.created_at,
        processed_at=refund.processed_at,
    )


@router.get("", response_model=list[PaymentSummary], dependencies=[Depends(verify_bearer_token)])
async def list_payments(
    status_filter: PaymentStatus | None = Query(None, alias="status", description="Filter by payment status"),
    gateway: str | None = Query(None),
    search: str | None = Query(None, description="Invoice number or gateway reference"),
    date_from: date | None = Query(None, description="Created on or after (inclusive)"),
    date_to: date | None = Query(None, description="Created on or before (inclusive)"),
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    container: Container = Depends(get_container),
) -> list[PaymentSummary]:
    if date_from and date_to and date_from > date_to:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="date_from is after date_to")
    filters = PaymentFilters(
        status=status_filter,
        gateway=gateway.lower() if gateway else None,
        search=search,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
    )
    return [_payment_to_summary(p) for p in container.payments.list_payments(filters)]


@router.get("/gateways", response_model=list[GatewaySummary])
async def list_gateways(container: Container = Depends(get_container)) -> list[GatewaySummary]:
    return [
        GatewaySummary(
            code=config.code,
            name=config.name,
            type=config.type,
            is_online=not config.is_offline,
            currency=config.currency,
            instructions=config.instructions,
        )
        for config in container.payments.list_gateways()
    ]


@router.post(
    "",
    response_model=PaymentSummary,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_bearer_token)],
)
async def create_payment(
    request: PaymentCreateRequest,
    container: Container = Depends(get_container),
) -> PaymentSummary:
    logger.info(
        "create_payment received",
        extra={
            "endpoint": "/payments",
            "method": "POST",
            "invoice_number": request.invoice_number,
            "amount": request.amount,
            "gateway": request.gateway_code,
        },
    )
    try:
        payment = container.payments.create_payment(
            request.invoice_number,
            request.amount,
            request.currency,
            request.gateway_code,
            request.metadata,
        )
    except PaymentsError as exc:
        raise to_http_exception(exc) from exc
    return _payment_to_summary(payment, payment.amount)


@router.post("/initiate", response_model=InitiateResponse, dependencies=[Depends(verify_bearer_token)])
async def initiate_payment(
    request: InitiateRequest,
    container: Container = Depends(get_container),
) -> InitiateResponse:
    try:
        payment = container.payments.get_payment(request.payment_ref)
        result = await container.payments.initialize_payment(payment, request.gateway_code)
    except PaymentsError as exc:
        raise to_http_exception(exc) from exc
    logger.info(
        "initiate responded",
        extra={
            "endpoint": "/payments/initiate",
            "method": "POST",
            "payment_id": payment.id,
            "gateway": request.gateway_code,
            "status": "ok" if result.success else result.error_code,
        },
    )
    return InitiateResponse(
        success=result.success,
        redirect_url=result.redirect_url,
        error_code=result.error_code,
        message=result.message,
        instructions=result.instructions,
    )


async def _callback_payload(request: Request) -> dict[str, Any]:
    payload: dict[str, Any] = dict(request.query_params)
    if request.method != "POST":
        return payload
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            payload.update(body)
    elif content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        form = await request.form()
        payload.update({key: value for key, value in form.items() if isinstance(value, str)})
    return payload


@router.api_route("/callback/{gateway}", methods=["GET", "POST"], response_model=PaymentSummary)
async def payment_callback(
    gateway: str,
    request: Request,
    container: Container = Depends(get_container),
) -> PaymentSummary:
    payload = await _callback_payload(request)
    logger.info(
        "callback received",
        extra={"endpoint": f"/payments/callback/{gateway}", "method": request.method, "gateway": gateway},
    )
    try:
        payment = await container.payments.process_callback(gateway, payload)
    except PaymentsError as exc:
        raise to_http_exception(exc) from exc
    return _payment_to_summary(payment)


@router.post("/webhook/{gateway}")
async def payment_webhook(
    gateway: str,
    request: Request,
    container: Container = Depends(get_container),
) -> dict[str, Any]:
    raw_body = await request.body()
    try:
        header = container.verifier.signature_header(gateway)
        signature = request.headers.get(header) if header else None
        payment = await container.payments.process_webhook(gateway, raw_body, signature)
    except PaymentsError as exc:
        logger.info(
            "webhook rejected",
            extra={"endpoint": f"/payments/webhook/{gateway}", "gateway": gateway, "event": type(exc).__name__},
        )
        raise to_http_exception(exc) from exc
    return {
        "received": True,
        "payment_id": payment.id,
        "status": payment.status.value,
        "refund_status": payment.refund_status.value if payment.refund_status else None,
    }


@router.get("/status/{payment}", response_model=PaymentSummary, dependencies=[Depends(verify_bearer_token)])
async def payment_status(payment: str, container: Container = Depends(get_container)) -> PaymentSummary:
    try:
        view = container.payments.get_status(payment)
    except PaymentsError as exc:
        raise to_http_exception(exc) from exc
    return _payment_to_summary(view["payment"], view["refundable_amount"])


@router.post("/{payment}/offline", response_model=PaymentSummary, dependencies=[Depends(verify_bearer_token)])
async def record_offline_payment(
    payment: str,
    request: OfflinePaymentRequest | None = None,
    actor: str | None = Depends(get_actor),
    container: Container = Depends(get_container),
) -> PaymentSummary:
    body = request or OfflinePaymentRequest()
    try:
        current = container.payments.get_payment(payment)
        updated = await container.payments.record_offline_payment(
            current, actor, reference=body.reference_number, notes=body.notes
        )
    except PaymentsError as exc:
        raise to_http_exception(exc) from exc
    return _payment_to_summary(updated, container.refunds.get_refundable_amount(updated))


@router.post("/{payment}/verify", response_model=PaymentSummary, dependencies=[Depends(verify_bearer_token)])
async def verify_payment(payment: str, container: Container = Depends(get_container)) -> PaymentSummary:
    try:
        current = container.payments.get_payment(payment)
        updated = await container.payments.verify_payment(current)
    except PaymentsError as exc:
        raise to_http_exception(exc) from exc
    return _payment_to_summary(updated, container.refunds.get_refundable_amount(updated))


@router.post(
    "/{payment}/refunds",
    response_model=RefundResult,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_bearer_token)],
)
async def create_refund(
    payment: str,
    request: RefundCreateRequest,
    actor: str | None = Depends(get_actor),
    container: Container = Depends(get_container),
) -> Any:
    try:
        current = container.payments.get_payment(payment)
        submit = container.refunds.request_refund if request.defer else container.refunds.initiate_refund
        outcome = await submit(current, request.amount, request.reason, actor, request.metadata)
    except PaymentsError as exc:
        raise to_http_exception(exc) from exc
    logger.info(
        "refund request responded",
        extra={
            "endpoint": f"/payments/{payment}/refunds",
            "method": "POST",
            "payment_id": current.id,
            "amount": request.amount,
            "actor": actor,
            "status": "ok" if outcome.success else outcome.error_code,
        },
    )
    result = RefundResult(
        success=outcome.success,
        message=outcome.message,
        refund=_refund_to_view(outcome.refund) if outcome.refund else None,
    )
    if not outcome.success:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=result.model_dump(mode="json"),
        )
    return result


@router.get("/{payment}/refunds", response_model=list[RefundView], dependencies=[Depends(verify_bearer_token)])
async def list_payment_refunds(payment: str, container: Container = Depends(get_container)) -> list[RefundView]:
    try:
        current = container.payments.get_payment(payment)
    except PaymentsError as exc:
        raise to_http_exception(exc) from exc
    if current.id is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown payment")
    return [_refund_to_view(r) for r in container.store.list_refunds_for(current.id)]
