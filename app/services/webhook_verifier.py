from __future__ import annotations

import logging

from app.providers.factory import GatewayRegistry

logger = logging.getLogger(__name__)


class WebhookVerifier:
    """Authenticate inbound gateway notifications before anything is written."""

    def __init__(self, registry: GatewayRegistry):
        self.registry = registry

    def signature_header(self, gateway_code: str) -> str | None:
        return self.registry.get(gateway_code).signature_header

    def verify(self, gateway_code: str, raw_payload: bytes, signature_header: str | None) -> bool:
        adapter = self.registry.get(gateway_code)
        try:
            valid = adapter.verify_signature(raw_payload, signature_header)
        except (ValueError, TypeError, UnicodeDecodeError) as exc:
            logger.warning("webhook signature check errored", extra={"gateway": gateway_code, "event": str(exc)})
            valid = False
        if not valid:
            logger.warning("webhook signature rejected", extra={"gateway": gateway_code})
        return valid
