from __future__ import annotations

import logging
import math
from decimal import Decimal, InvalidOperation
from typing import Protocol, Sequence

import httpx

from escrow_orders.core.config import Settings, get_settings
from escrow_orders.domain.errors import ShippingUnavailable
from escrow_orders.domain.money import ZERO, to_money
from escrow_orders.domain.orders.aggregates import PlannedLine, ShippingMethod

logger = logging.getLogger(__name__)

DEFAULT_ITEM_WEIGHT_GRAMS = 200
BASE_FEES: dict[ShippingMethod, Decimal] = {
    ShippingMethod.NOVA_POSHTA: Decimal("3.00"),
    ShippingMethod.UKRPOSHTA: Decimal("2.00"),
}
PER_KILOGRAM_FEE = Decimal("0.50")


class ShippingResolver(Protocol):
    resolver_name: str

    def quote(self, lines: Sequence[PlannedLine], method: ShippingMethod) -> Decimal:
        ...


def parcel_weight_grams(lines: Sequence[PlannedLine]) -> int:
    return sum((line.weight_grams or DEFAULT_ITEM_WEIGHT_GRAMS) * line.quantity for line in lines)


class TariffShippingResolver:
    """Flat carrier tariff: base fee plus a fee per started kilogram."""

    resolver_name = "tariff"

    def quote(self, lines: Sequence[PlannedLine], method: ShippingMethod) -> Decimal:
        base = BASE_FEES.get(ShippingMethod(method))
        if base is None:
            raise ShippingUnavailable(f"no tariff for shipping method {method}")
        kilograms = math.ceil(parcel_weight_grams(lines) / 1000)
        return to_money(base + PER_KILOGRAM_FEE * kilograms)


class HttpShippingResolver:
    resolver_name = "http"

    def __init__(self, settings: Settings | None = None, transport: httpx.BaseTransport | None = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.shipping_base_url.rstrip("/")
        self.timeout = self.settings.shipping_timeout_seconds
        self.transport = transport

    def quote(self, lines: Sequence[PlannedLine], method: ShippingMethod) -> Decimal:
        body = {
            "method": ShippingMethod(method).value,
            "weight_grams": parcel_weight_grams(lines),
            "items": [
                {"product_id": line.product_id, "quantity": line.quantity}
                for line in lines
            ],
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(f"{self.base_url}/quotes", json=body)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ShippingUnavailable(f"carrier rate lookup failed: {exc}") from exc

        raw_cost = payload.get("cost") if isinstance(payload, dict) else None
        if raw_cost is None:
            raise ShippingUnavailable(f"carrier rate lookup returned no cost: {payload}")
        try:
            return to_money(str(raw_cost))
        except (InvalidOperation, TypeError) as exc:
            raise ShippingUnavailable(f"carrier rate lookup returned malformed cost: {raw_cost!r}") from exc


def quote_shipping(resolver: ShippingResolver, lines: Sequence[PlannedLine], method: ShippingMethod) -> Decimal:
    """Ask the resolver for a cost and enforce the non-negative contract."""
    try:
        cost = resolver.quote(lines, method)
    except ShippingUnavailable:
        raise
    except Exception as exc:
        logger.warning("shipping resolver=%s failed: %s", getattr(resolver, "resolver_name", "?"), exc)
        raise ShippingUnavailable(f"shipping quote failed: {exc}") from exc
    if cost is None or cost < ZERO:
        raise ShippingUnavailable(f"shipping resolver returned invalid cost: {cost}")
    return to_money(cost)


def build_shipping_resolver(settings: Settings | None = None) -> ShippingResolver:
    settings = settings or get_settings()
    mode = settings.shipping_resolver.strip().lower()
    if mode == "tariff":
        return TariffShippingResolver()
    if mode == "http":
        return HttpShippingResolver(settings)
    raise ValueError(f"unsupported shipping resolver: {settings.shipping_resolver}")
