from __future__ import annotations

from escrow_orders.connectors.carriers import ShippingResolver, build_shipping_resolver
from escrow_orders.connectors.payment_rail import PaymentRail, build_payment_rail


def get_shipping_resolver() -> ShippingResolver:
    return build_shipping_resolver()


def get_payment_rail() -> PaymentRail:
    return build_payment_rail()
