from __future__ import annotations

from fastapi import HTTPException, status

from app.domain import errors

_STATUS_BY_ERROR: list[tuple[type[errors.PaymentsError], int]] = [
    (errors.PaymentNotFound, status.HTTP_404_NOT_FOUND),
    (errors.RefundNotFound, status.HTTP_404_NOT_FOUND),
    (errors.UnknownGateway, status.HTTP_404_NOT_FOUND),
    (errors.InvalidSignature, status.HTTP_400_BAD_REQUEST),
    (errors.RefundStateError, status.HTTP_400_BAD_REQUEST),
    (errors.GatewayNotAvailable, status.HTTP_400_BAD_REQUEST),
    (errors.ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (errors.IneligibleError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (errors.LockTimeout, status.HTTP_409_CONFLICT),
    (errors.ImmutablePaymentError, status.HTTP_409_CONFLICT),
    (errors.GatewayNotConfigured, status.HTTP_503_SERVICE_UNAVAILABLE),
    (errors.GatewayError, status.HTTP_502_BAD_GATEWAY),
    (errors.UnknownGatewayStatus, status.HTTP_502_BAD_GATEWAY),
]


def to_http_exception(exc: errors.PaymentsError) -> HTTPException:
    """Translate a domain error raised by a service into an HTTP response."""
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
