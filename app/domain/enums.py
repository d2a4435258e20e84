from __future__ import annotations

from enum import Enum


class GatewayCode(str, Enum):
    """Known gateway codes (strategy selector)."""

    STRIPE = "stripe"
    BKASH = "bkash"
    NAGAD = "nagad"
    ROCKET = "rocket"
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"


class GatewayType(str, Enum):
    """How a gateway collects money."""

    CARD = "card"
    MOBILE_BANKING = "mobile_banking"
    OFFLINE = "offline"


OFFLINE_GATEWAYS = frozenset({GatewayCode.CASH.value, GatewayCode.BANK_TRANSFER.value, GatewayCode.CHEQUE.value})
