from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from app.config import Settings
from app.db.client import get_conn
from app.domain.enums import GatewayCode, GatewayType
from app.domain.models import GatewayConfig

logger = logging.getLogger(__name__)

REQUIRED_CREDENTIALS: Dict[str, tuple[str, ...]] = {
    GatewayCode.STRIPE.value: ("secret_key",),
    GatewayCode.BKASH.value: ("app_key", "app_secret", "username", "password"),
    GatewayCode.NAGAD.value: ("merchant_id", "private_key"),
    GatewayCode.ROCKET.value: ("client_id", "client_secret", "store_password"),
}

OFFLINE_INSTRUCTIONS = {
    GatewayCode.CASH.value: "Pay in cash at the accounts office and keep the receipt.",
    GatewayCode.BANK_TRANSFER.value: "Transfer to the account shown on the invoice and quote the invoice number.",
    GatewayCode.CHEQUE.value: "Write the cheque to the institution and note the invoice number on the back.",
}


def configs_from_settings(settings: Settings) -> Dict[str, GatewayConfig]:
    """Gateway definitions used when no database is configured."""
    callback = f"{settings.callback_base_url.rstrip('/')}/payments/callback/{{gateway}}?payment_id={{payment_id}}"
    currency = settings.default_currency
    configs = [
        GatewayConfig(
            code=GatewayCode.STRIPE.value,
            name="Card (Stripe)",
            type=GatewayType.CARD.value,
            sandbox_url="https://api.stripe.com",
            live_url="https://api.stripe.com",
            credentials={"secret_key": settings.stripe_secret_key},
            webhook_secret=settings.stripe_webhook_secret,
            callback_url=callback,
            currency=currency,
        ),
        GatewayConfig(
            code=GatewayCode.BKASH.value,
            name="bKash",
            type=GatewayType.MOBILE_BANKING.value,
            test_mode=settings.app_env != "production",
            sandbox_url=settings.bkash_base_url,
            live_url=settings.bkash_base_url,
            credentials={
                "app_key": settings.bkash_app_key,
                "app_secret": settings.bkash_app_secret,
                "username": settings.bkash_username,
                "password": settings.bkash_password,
            },
            webhook_secret=settings.bkash_webhook_secret,
            callback_url=callback,
            currency=currency,
        ),
        GatewayConfig(
            code=GatewayCode.NAGAD.value,
            name="Nagad",
            type=GatewayType.MOBILE_BANKING.value,
            test_mode=settings.app_env != "production",
            sandbox_url=settings.nagad_base_url,
            live_url=settings.nagad_base_url,
            credentials={"merchant_id": settings.nagad_merchant_id, "private_key": settings.nagad_private_key},
            webhook_secret=settings.nagad_webhook_secret,
            callback_url=callback,
            currency=currency,
        ),
        GatewayConfig(
            code=GatewayCode.ROCKET.value,
            name="Rocket",
            type=GatewayType.MOBILE_BANKING.value,
            test_mode=settings.app_env != "production",
            sandbox_url=settings.rocket_base_url,
            live_url=settings.rocket_base_url,
            credentials={
                "client_id": settings.rocket_client_id,
                "client_secret": settings.rocket_client_secret,
                "store_password": settings.rocket_store_password,
            },
            webhook_secret=settings.rocket_store_password,
            callback_url=callback,
            currency=currency,
        ),
    ]
    for code, text in OFFLINE_INSTRUCTIONS.items():
        configs.append(
            GatewayConfig(
                code=code,
                name=code.replace("_", " ").title(),
                type=GatewayType.OFFLINE.value,
                is_online=False,
                currency=currency,
                instructions=text,
            )
        )
    for config in configs:
        config.required_credentials = REQUIRED_CREDENTIALS.get(config.code, ())
    return {config.code: config for config in configs}


class SettingsGatewayStore:
    """Gateway configuration built from environment settings."""

    def __init__(self, settings: Settings, overrides: Dict[str, GatewayConfig] | None = None):
        self._configs = configs_from_settings(settings)
        self._configs.update(overrides or {})

    def get(self, code: str) -> Optional[GatewayConfig]:
        return self._configs.get(code)

    def list_active(self) -> list[GatewayConfig]:
        return sorted((c for c in self._configs.values() if c.is_active), key=lambda c: c.code)


class PgGatewayStore:
    """Gateway configuration read from the ``payment_gateway`` table."""

    @staticmethod
    def _hydrate(row: tuple[Any, ...]) -> GatewayConfig:
        (
            code,
            name,
            gw_type,
            is_active,
            is_online,
            test_mode,
            sandbox_url,
            live_url,
            credentials,
            callback_url,
            webhook_secret,
            currency,
            instructions,
            extra,
        ) = row
        return GatewayConfig(
            code=str(code),
            name=str(name),
            type=str(gw_type),
            is_active=bool(is_active),
            is_online=bool(is_online),
            test_mode=bool(test_mode),
            sandbox_url=sandbox_url,
            live_url=live_url,
            credentials={str(k): str(v) for k, v in (credentials or {}).items()},
            required_credentials=REQUIRED_CREDENTIALS.get(str(code), ()),
            callback_url=callback_url,
            webhook_secret=webhook_secret,
            currency=str(currency or "BDT"),
            instructions=instructions,
            extra=dict(extra or {}),
        )

    _COLUMNS = """
        code, name, type, is_active, is_online, test_mode, sandbox_url, live_url,
        credentials, callback_url, webhook_secret, currency, instructions, extra_attributes
    """

    def get(self, code: str) -> Optional[GatewayConfig]:
        with get_conn() as conn:
            if conn is None:
                return None
            with conn.cursor() as cur:
                cur.execute(f"SELECT {self._COLUMNS} FROM payment_gateway WHERE code=%s", (code,))
                row = cur.fetchone()
        return self._hydrate(row) if row else None

    def list_active(self) -> list[GatewayConfig]:
        with get_conn() as conn:
            if conn is None:
                return []
            with conn.cursor() as cur:
                cur.execute(f"SELECT {self._COLUMNS} FROM payment_gateway WHERE is_active ORDER BY code")
                rows = cur.fetchall() or []
        return [self._hydrate(row) for row in rows]
