from __future__ import annotations

from typing import Any


class PaymentsError(Exception):
    """Base class for errors raised by the payment core."""


class ValidationError(PaymentsError):
    """Request rejected by a business rule (amount, balance, missing field)."""


class IneligibleError(PaymentsError):
    """Entity is not in a state that allows the requested operation."""


class GatewayError(PaymentsError):
    """A gateway rejected a call or answered with an error payload."""

    code = "gateway_error"

    def __init__(self, message: str, *, code: str | None = None, payload: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.payload = payload or {}

    def as_metadata(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.payload:
            data["response"] = self.payload
        return data


class GatewayTimeout(GatewayError):
    code = "gateway_timeout"


class AuthenticationFailed(GatewayError):
    """Credential exchange with the gateway failed, even after a refresh."""

    code = "authentication_failed"


class InvalidSignature(PaymentsError):
    """Inbound notification failed authenticity checks."""


class ConfigurationError(PaymentsError):
    """Misconfiguration; never converted to a business result."""


class UnknownGateway(ConfigurationError):
    pass


class GatewayNotAvailable(ConfigurationError):
    pass


class GatewayNotConfigured(ConfigurationError):
    pass


class UnknownGatewayStatus(PaymentsError):
    """Gateway reported a status outside its known vocabulary."""


class PaymentNotFound(PaymentsError):
    pass


class RefundNotFound(PaymentsError):
    pass


class RefundStateError(PaymentsError):
    pass


class LockTimeout(PaymentsError):
    """The per-payment lock could not be acquired in time."""


class ImmutablePaymentError(PaymentsError):
    """Attempt to change amount or transaction id of a finalised payment."""
