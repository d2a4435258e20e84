from __future__ import annotations

import threading
from typing import Any, Callable, Dict

from app.config import Settings
from app.domain.errors import GatewayNotAvailable, GatewayNotConfigured, UnknownGateway
from app.domain.models import GatewayConfig

from .base import GatewayAdapter

AdapterFactory = Callable[..., GatewayAdapter]


def _stripe(config: GatewayConfig, settings: Settings, **kwargs: Any) -> GatewayAdapter:
    from .stripe_checkout import StripeCheckoutAdapter

    return StripeCheckoutAdapter(config, settings, event_log=kwargs.get("event_log"))


def _bkash(config: GatewayConfig, settings: Settings, **kwargs: Any) -> GatewayAdapter:
    from .bkash import BkashAdapter

    return BkashAdapter(config, settings, **kwargs)


def _nagad(config: GatewayConfig, settings: Settings, **kwargs: Any) -> GatewayAdapter:
    from .nagad import NagadAdapter

    return NagadAdapter(config, settings, **kwargs)


def _rocket(config: GatewayConfig, settings: Settings, **kwargs: Any) -> GatewayAdapter:
    from .rocket import RocketAdapter

    return RocketAdapter(config, settings, **kwargs)


DEFAULT_FACTORIES: Dict[str, AdapterFactory] = {
    "stripe": _stripe,
    "bkash": _bkash,
    "nagad": _nagad,
    "rocket": _rocket,
}


class GatewayRegistry:
    """Resolve gateway codes to adapter instances.

    Adapters are built lazily and cached per code so token caches survive
    across requests. ``register`` replaces the adapter for a code (tests use
    it to plug fakes in).
    """

    def __init__(
        self,
        settings: Settings,
        gateways: Any,
        *,
        factories: Dict[str, AdapterFactory] | None = None,
        adapter_options: Dict[str, Any] | None = None,
    ):
        self.settings = settings
        self.gateways = gateways
        self.factories = dict(DEFAULT_FACTORIES if factories is None else factories)
        self.adapter_options = adapter_options or {}
        self._adapters: Dict[str, GatewayAdapter] = {}
        self._lock = threading.Lock()

    def register(self, code: str, adapter: GatewayAdapter) -> None:
        with self._lock:
            self._adapters[code.lower()] = adapter

    def config_for(self, code: str) -> GatewayConfig:
        normalized = (code or "").lower()
        config = self.gateways.get(normalized)
        if config is None:
            raise UnknownGateway(f"Unknown gateway {code}")
        if not config.is_active:
            raise GatewayNotAvailable(f"Gateway {code} is not active")
        return config

    def get(self, code: str) -> GatewayAdapter:
        normalized = (code or "").lower()
        with self._lock:
            adapter = self._adapters.get(normalized)
        if adapter is not None:
            return adapter
        config = self.config_for(normalized)
        if config.is_offline:
            raise GatewayNotAvailable(f"Gateway {code} is offline and has no API")
        if not config.is_configured:
            raise GatewayNotConfigured(f"Gateway {code} is missing credentials")
        factory = self.factories.get(normalized)
        if factory is None:
            raise UnknownGateway(f"No adapter for gateway {code}")
        adapter = factory(config, self.settings, **self.adapter_options)
        with self._lock:
            return self._adapters.setdefault(normalized, adapter)
