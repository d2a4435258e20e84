from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from app.config import Settings, settings
from app.providers.factory import GatewayRegistry
from app.repositories.gateway_store import PgGatewayStore, SettingsGatewayStore
from app.repositories.memory_store import InMemoryPaymentStore
from app.repositories.pg_store import PgPaymentStore

from .concurrency import ConcurrencyGuard
from .payments_service import PaymentsService
from .refunds_service import RefundsService
from .webhook_verifier import WebhookVerifier

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    store: Any
    registry: GatewayRegistry
    guard: ConcurrencyGuard
    verifier: WebhookVerifier
    payments: PaymentsService
    refunds: RefundsService


def build_container(
    cfg: Settings = settings,
    *,
    store: Any | None = None,
    gateways: Any | None = None,
) -> Container:
    """Wire stores, gateway registry and services for one application instance."""
    if store is None:
        store = PgPaymentStore() if cfg.db_enabled else InMemoryPaymentStore()
    if gateways is None:
        gateways = PgGatewayStore() if cfg.db_enabled else SettingsGatewayStore(cfg)
    registry = GatewayRegistry(cfg, gateways, adapter_options={"event_log": store})
    guard = ConcurrencyGuard(store, cfg.lock_timeout_seconds)
    verifier = WebhookVerifier(registry)
    payments = PaymentsService(store, registry, guard, verifier, cfg)
    refunds = RefundsService(store, registry, guard, cfg)
    payments.refunds = refunds
    logger.info(
        "service container ready",
        extra={"event": type(store).__name__, "gateway": type(gateways).__name__},
    )
    return Container(cfg, store, registry, guard, verifier, payments, refunds)


_container: Container | None = None


def get_container() -> Container:
    """FastAPI dependency returning the process-wide container."""
    global _container
    if _container is None:
        _container = build_container()
    return _container
