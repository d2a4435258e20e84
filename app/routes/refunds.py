from __future__ import annotations

import logging
from datetime import date
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from app.domain.dtos import RefundActionRequest, RefundResult, RefundView
from app.domain.errors import PaymentsError
from app.domain.models import MAX_PAGE_SIZE, RefundFilters
from app.domain.statuses import RefundStatus
from app.services.container import Container, get_container
from app.utils.http_errors import to_http_exception
from app.utils.security import get_actor, verify_bearer_token

from .payments import _refund_to_view

router = APIRouter(prefix="/refunds", dependencies=[Depends(verify_bearer_token)])
logger = logging.getLogger(__name__)


@router.get("", response_model=list[RefundView])
async def list_refunds(
    status_filter: RefundStatus | None = Query(None, alias="status", description="Filter by refund status"),
    payment_id: str | None = Query(None),
    requested_by: str | None = Query(None),
    date_from: date | None = Query(None, description="Created on or after (inclusive)"),
    date_to: date | None = Query(None, description="Created on or before (inclusive)"),
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    container: Container = Depends(get_container),
) -> list[RefundView]:
    if date_from and date_to and date_from > date_to:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="date_from is after date_to")
    filters = RefundFilters(
        status=status_filter,
        payment_id=payment_id,
        requested_by=requested_by,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
    )
    return [_refund_to_view(r) for r in container.refunds.list_refunds(filters)]


@router.get("/statistics")
async def refund_statistics(container: Container = Depends(get_container)) -> dict[str, Any]:
    return container.refunds.statistics()


@router.get("/{refund}", response_model=RefundView)
async def get_refund(refund: str, container: Container = Depends(get_container)) -> RefundView:
    try:
        return _refund_to_view(container.refunds.get_refund(refund))
    except PaymentsError as exc:
        raise to_http_exception(exc) from exc


@router.post("/{refund}/process", response_model=RefundResult)
async def process_refund(
    refund: str,
    actor: str | None = Depends(get_actor),
    container: Container = Depends(get_container),
) -> Any:
    try:
        current = container.refunds.get_refund(refund)
        outcome = await container.refunds.process_refund(current, actor)
    except PaymentsError as exc:
        raise to_http_exception(exc) from exc
    logger.info(
        "refund process responded",
        extra={
            "endpoint": f"/refunds/{refund}/process",
            "method": "POST",
            "refund_id": refund,
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
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=result.model_dump(mode="json"))
    return result


@router.post("/{refund}/cancel", response_model=RefundResult)
async def cancel_refund(
    refund: str,
    request: RefundActionRequest | None = None,
    actor: str | None = Depends(get_actor),
    container: Container = Depends(get_container),
) -> Any:
    reason = request.reason if request else None
    try:
        current = container.refunds.get_refund(refund)
        cancelled = await container.refunds.cancel_refund(current, reason, actor)
        updated = container.refunds.get_refund(refund)
    except PaymentsError as exc:
        raise to_http_exception(exc) from exc
    if not cancelled:
        result = RefundResult(
            success=False,
            message="Only pending refunds can be cancelled",
            refund=_refund_to_view(updated),
        )
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=result.model_dump(mode="json"))
    return RefundResult(success=True, message="Refund cancelled", refund=_refund_to_view(updated))
