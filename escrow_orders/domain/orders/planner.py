"""
Cart segmentation.

A flat cart is grouped into one partition per seller. Each partition is resolved
against the catalog into an ``OrderPlan`` that snapshots product titles and the
prices captured when the item was added to the cart. Nothing here writes.
"""
from __future__ import annotations

import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Iterable, Sequence

from escrow_orders.connectors.directory import Catalog, IdentityDirectory
from escrow_orders.domain.errors import OutOfStock, ReferenceNotFound
from escrow_orders.domain.money import ZERO, to_money
from escrow_orders.domain.orders.aggregates import CartLine, OrderPlan, PlannedLine, PurchaseType

logger = logging.getLogger(__name__)


def partition_cart(items: Iterable[CartLine]) -> "OrderedDict[str, list[CartLine]]":
    """Group cart lines by seller, keeping first-seen seller order and cart order."""
    partitions: OrderedDict[str, list[CartLine]] = OrderedDict()
    for item in items:
        partitions.setdefault(item.seller_id, []).append(item)
    return partitions


def _check_line(item: CartLine) -> None:
    if item.quantity < 1:
        raise ValueError(f"quantity must be >= 1 for product {item.product_id}")
    if item.price_at_time_of_addition < ZERO:
        raise ValueError(f"price must be >= 0 for product {item.product_id}")


def plan_partition(
    seller_id: str,
    items: Sequence[CartLine],
    catalog: Catalog,
    identity: IdentityDirectory,
) -> OrderPlan:
    if not items:
        raise ValueError(f"partition for seller {seller_id} has no items")
    if identity.get_user(seller_id) is None:
        raise ReferenceNotFound(f"seller {seller_id} not found")

    products = catalog.get_products(item.product_id for item in items)
    requested: dict[str, int] = {}
    for item in items:
        _check_line(item)
        product = products.get(item.product_id)
        if product is None or not product.is_active:
            raise ReferenceNotFound(f"product {item.product_id} not found")
        if product.seller_id != seller_id:
            raise ReferenceNotFound(f"product {item.product_id} is not sold by seller {seller_id}")
        requested[product.id] = requested.get(product.id, 0) + item.quantity

    for product_id, quantity in requested.items():
        stock = products[product_id].stock
        if stock is not None and quantity > stock:
            raise OutOfStock(f"product {product_id} has {stock} in stock, {quantity} requested")

    lines: list[PlannedLine] = []
    for item in items:
        product = products[item.product_id]
        gift_wrap_fee = ZERO
        if item.gift_wrap and product.gift_wrap_available and product.gift_wrap_price:
            gift_wrap_fee = to_money(Decimal(product.gift_wrap_price) * item.quantity)
        lines.append(
            PlannedLine(
                product_id=product.id,
                product_title=product.title,
                category=product.category,
                weight_grams=product.weight_grams,
                quantity=item.quantity,
                unit_price=to_money(item.price_at_time_of_addition),
                purchase_type=PurchaseType(item.purchase_type),
                variant=item.variant,
                gift_wrap_fee=gift_wrap_fee,
                authentication_available=product.authentication_available,
            )
        )
    return OrderPlan(seller_id=seller_id, lines=lines)


def plan_orders(
    buyer_id: str,
    items: Sequence[CartLine],
    catalog: Catalog,
    identity: IdentityDirectory,
) -> list[OrderPlan]:
    """Plan every partition or none: the first unresolved reference aborts the whole cart."""
    if not items:
        raise ValueError("cart is empty")
    if identity.get_user(buyer_id) is None:
        raise ReferenceNotFound(f"buyer {buyer_id} not found")
    plans = [
        plan_partition(seller_id, partition, catalog, identity)
        for seller_id, partition in partition_cart(items).items()
    ]
    logger.debug("planned %s orders for buyer=%s", len(plans), buyer_id)
    return plans
