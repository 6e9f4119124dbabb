from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from escrow_orders.api.deps import get_shipping_resolver
from escrow_orders.api.serializers import money
from escrow_orders.connectors.carriers import ShippingResolver, quote_shipping
from escrow_orders.connectors.directory import SqlCatalog, SqlIdentityDirectory
from escrow_orders.core.security import Actor, get_actor
from escrow_orders.domain.orders.aggregates import CartLine, OrderPlan, PurchaseType, ShippingMethod
from escrow_orders.domain.orders.planner import plan_partition
from escrow_orders.domain.promotions.engine import SqlPromoSource, compute_discount, validate_promo
from escrow_orders.persistence.pg import get_session

router = APIRouter(tags=["pricing"])


class PricingItemRequest(BaseModel):
    product_id: str = Field(min_length=1, max_length=64)
    quantity: int = Field(ge=1, le=10_000)
    price_at_time_of_addition: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    purchase_type: PurchaseType = PurchaseType.RETAIL


class PromoValidationRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    seller_id: str = Field(min_length=1, max_length=64)
    items: list[PricingItemRequest] = Field(min_length=1, max_length=200)


class ShippingQuoteRequest(BaseModel):
    seller_id: str = Field(min_length=1, max_length=64)
    shipping_method: ShippingMethod
    items: list[PricingItemRequest] = Field(min_length=1, max_length=200)


def _plan(session: Session, seller_id: str, items: list[PricingItemRequest]) -> OrderPlan:
    lines = [
        CartLine(
            product_id=item.product_id,
            seller_id=seller_id,
            quantity=item.quantity,
            price_at_time_of_addition=item.price_at_time_of_addition,
            purchase_type=item.purchase_type,
        )
        for item in items
    ]
    return plan_partition(seller_id, lines, SqlCatalog(session), SqlIdentityDirectory(session))


@router.post("/promocodes/validate")
def validate_promo_route(
    body: PromoValidationRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    plan = _plan(session, body.seller_id, body.items)
    promo = validate_promo(body.code, body.seller_id, plan.lines, SqlPromoSource(session))
    discount = compute_discount(plan.subtotal, promo)
    return {
        "valid": True,
        "code_id": promo.code_id,
        "code": promo.code,
        "discount_type": promo.discount_type.value,
        "discount_value": money(promo.discount_value),
        "subtotal": money(plan.subtotal),
        "discount_amount": money(discount),
    }


@router.post("/shipping/quote")
def shipping_quote_route(
    body: ShippingQuoteRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    shipping: ShippingResolver = Depends(get_shipping_resolver),
):
    plan = _plan(session, body.seller_id, body.items)
    cost = quote_shipping(shipping, plan.lines, body.shipping_method)
    return {
        "seller_id": body.seller_id,
        "shipping_method": body.shipping_method.value,
        "resolver": getattr(shipping, "resolver_name", "custom"),
        "cost": money(cost),
    }
