"""
Checkout orchestration.

Each seller partition is planned, priced and committed on its own. A failure in
one partition rolls back only that partition and is reported in its outcome;
partitions that already committed stay committed. A promo code that does not
validate is reported on the outcome and the order is placed without discount.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from escrow_orders.api.utils import now_utc
from escrow_orders.connectors.carriers import ShippingResolver, quote_shipping
from escrow_orders.connectors.directory import Catalog, IdentityDirectory
from escrow_orders.core.config import Settings, get_settings
from escrow_orders.core.security import Actor
from escrow_orders.domain.errors import EngineError, PromoInvalid, ReferenceNotFound
from escrow_orders.domain.money import ZERO, to_money
from escrow_orders.domain.orders.aggregates import (
    CartLine,
    OrderPlan,
    OrderStatus,
    PaymentMethod,
    PricedOrder,
    ShippingMethod,
)
from escrow_orders.domain.orders.commands import record_event
from escrow_orders.domain.orders.planner import partition_cart, plan_partition
from escrow_orders.domain.promotions.engine import PromoSource, compute_discount, normalize_code, validate_promo
from escrow_orders.persistence.models import OrderItemModel, OrderModel
from escrow_orders.persistence.queries import get_order_with_items

logger = logging.getLogger(__name__)

PLACED = "PLACED"
SKIPPED = "SKIPPED"


@dataclass
class CheckoutRequest:
    buyer_id: str
    items: Sequence[CartLine]
    shipping_method: ShippingMethod
    shipping_address: dict[str, Any]
    payment_method: PaymentMethod
    promo_code: str | None = None
    promo_codes: Mapping[str, str] = field(default_factory=dict)
    authentication_requested: bool = False
    transaction_reference: str | None = None

    def promo_for(self, seller_id: str) -> str | None:
        return self.promo_codes.get(seller_id) or self.promo_code


@dataclass
class PartitionOutcome:
    seller_id: str
    status: str
    item_count: int
    order_id: str | None = None
    total: Decimal | None = None
    error: str | None = None
    detail: str | None = None
    promo_error: str | None = None

    @property
    def placed(self) -> bool:
        return self.status == PLACED


@dataclass
class CheckoutResult:
    outcomes: list[PartitionOutcome]
    orders: list[OrderModel]

    @property
    def placed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.placed)

    @property
    def requested(self) -> int:
        return len(self.outcomes)

    @property
    def success(self) -> bool:
        return self.placed > 0

    @property
    def order_ids(self) -> list[str]:
        return [order.id for order in self.orders]


def price_partition(
    plan: OrderPlan,
    promo_code: str | None,
    promos: PromoSource,
    shipping: ShippingResolver,
    shipping_method: ShippingMethod,
    authentication_requested: bool,
    settings: Settings,
    now: datetime | None = None,
) -> tuple[PricedOrder, PromoInvalid | None]:
    discount = ZERO
    applied_code = None
    promo_error = None
    if normalize_code(promo_code):
        try:
            promo = validate_promo(promo_code, plan.seller_id, plan.lines, promos, now=now)
        except PromoInvalid as exc:
            promo_error = exc
        else:
            discount = compute_discount(plan.subtotal, promo)
            applied_code = promo.code

    shipping_cost = quote_shipping(shipping, plan.lines, shipping_method)

    authenticate = authentication_requested and plan.authentication_available
    addons = plan.gift_wrap_total
    if authenticate:
        addons = to_money(addons + settings.authentication_fee)

    priced = PricedOrder(
        plan=plan,
        discount_amount=discount,
        shipping_cost=shipping_cost,
        addons_total=addons,
        promo_code=applied_code,
        authentication_requested=authenticate,
    )
    return priced, promo_error


def persist_order(
    session: Session,
    request: CheckoutRequest,
    priced: PricedOrder,
    actor: Actor,
    now: datetime,
) -> OrderModel:
    order = OrderModel(
        buyer_id=request.buyer_id,
        seller_id=priced.plan.seller_id,
        status=OrderStatus.PENDING.value,
        subtotal=priced.subtotal,
        discount_amount=priced.discount_amount,
        shipping_cost=priced.shipping_cost,
        addons_total=priced.addons_total,
        total=priced.total,
        promo_code=priced.promo_code,
        shipping_method=ShippingMethod(request.shipping_method).value,
        shipping_address=dict(request.shipping_address),
        payment_method=PaymentMethod(request.payment_method).value,
        authentication_requested=priced.authentication_requested,
        created_at=now,
        updated_at=now,
    )
    order.items = [
        OrderItemModel(
            position=position,
            product_id=line.product_id,
            product_title=line.product_title,
            quantity=line.quantity,
            unit_price=line.unit_price,
            variant=line.variant,
            purchase_type=line.purchase_type.value,
            gift_wrap_fee=line.gift_wrap_fee,
        )
        for position, line in enumerate(priced.plan.lines)
    ]
    session.add(order)
    session.flush()
    record_event(session, order, "PLACE", None, OrderStatus.PENDING.value, actor, now)
    return order


def place_orders(
    session: Session,
    request: CheckoutRequest,
    actor: Actor,
    catalog: Catalog,
    identity: IdentityDirectory,
    promos: PromoSource,
    shipping: ShippingResolver,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> CheckoutResult:
    settings = settings or get_settings()
    now = now or now_utc()
    if not request.items:
        raise ValueError("cart is empty")
    if identity.get_user(request.buyer_id) is None:
        raise ReferenceNotFound(f"buyer {request.buyer_id} not found")

    outcomes: list[PartitionOutcome] = []
    orders: list[OrderModel] = []
    for seller_id, lines in partition_cart(request.items).items():
        outcome = PartitionOutcome(seller_id=seller_id, status=SKIPPED, item_count=len(lines))
        try:
            plan = plan_partition(seller_id, lines, catalog, identity)
            priced, promo_error = price_partition(
                plan,
                request.promo_for(seller_id),
                promos,
                shipping,
                request.shipping_method,
                request.authentication_requested,
                settings,
                now=now,
            )
            order = persist_order(session, request, priced, actor, now)
            session.commit()
        except (EngineError, ValueError) as exc:
            session.rollback()
            outcome.error = exc.code if isinstance(exc, EngineError) else "invalid_item"
            outcome.detail = exc.message if isinstance(exc, EngineError) else str(exc)
            logger.warning("checkout buyer=%s skipped seller=%s: %s", request.buyer_id, seller_id, outcome.detail)
        except SQLAlchemyError as exc:
            session.rollback()
            outcome.error = "persistence_error"
            outcome.detail = "order could not be stored"
            logger.exception("checkout buyer=%s failed to store order for seller=%s: %s", request.buyer_id, seller_id, exc)
        else:
            outcome.status = PLACED
            outcome.order_id = order.id
            outcome.total = order.total
            if promo_error is not None:
                outcome.promo_error = promo_error.reason
            orders.append(order)
        outcomes.append(outcome)

    # A rollback in a later partition expires the orders committed before it.
    orders = [get_order_with_items(session, order.id) for order in orders]
    result = CheckoutResult(outcomes=outcomes, orders=orders)
    logger.info(
        "checkout buyer=%s placed %s of %s orders",
        request.buyer_id,
        result.placed,
        result.requested,
    )
    return result
