from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.orm import Session

from escrow_orders.api.deps import get_payment_rail, get_shipping_resolver
from escrow_orders.api.idempotency import find_replay, request_fingerprint, store_response
from escrow_orders.api.serializers import serialize_event, serialize_order, serialize_outcome
from escrow_orders.connectors.carriers import ShippingResolver
from escrow_orders.connectors.directory import SqlCatalog, SqlIdentityDirectory
from escrow_orders.connectors.payment_rail import PaymentRail
from escrow_orders.core.security import Actor, get_actor, require_user
from escrow_orders.domain.errors import EngineError, PaymentNotConfirmed
from escrow_orders.domain.orders.aggregates import (
    CartLine,
    OrderStatus,
    PaymentMethod,
    PurchaseType,
    ShippingMethod,
)
from escrow_orders.domain.orders.checkout import CheckoutRequest, place_orders
from escrow_orders.domain.orders.commands import (
    check_can_view,
    complete_reviewed,
    generate_waybill,
    update_order,
)
from escrow_orders.domain.promotions.engine import SqlPromoSource
from escrow_orders.persistence.pg import get_session
from escrow_orders.persistence.queries import (
    get_order_with_items,
    list_order_events,
    list_purchases,
    list_sales,
)
from escrow_orders.settlement.coordinator import settle_payment
from escrow_orders.settlement.poller import start_settlement_poll

logger = logging.getLogger(__name__)

router = APIRouter(tags=["orders"])

PLACE_ORDERS_OPERATION = "place_orders"


class CartItemRequest(BaseModel):
    product_id: str = Field(min_length=1, max_length=64)
    seller_id: str = Field(min_length=1, max_length=64)
    quantity: int = Field(ge=1, le=10_000)
    price_at_time_of_addition: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    variant: dict[str, Any] | None = None
    purchase_type: PurchaseType = PurchaseType.RETAIL
    gift_wrap: bool = False

    def to_cart_line(self) -> CartLine:
        return CartLine(
            product_id=self.product_id,
            seller_id=self.seller_id,
            quantity=self.quantity,
            price_at_time_of_addition=self.price_at_time_of_addition,
            purchase_type=self.purchase_type,
            variant=self.variant,
            gift_wrap=self.gift_wrap,
        )


class ShippingAddressRequest(BaseModel):
    city: str = Field(min_length=1, max_length=128)
    post_office: str = Field(min_length=1, max_length=128)
    recipient_name: str = Field(min_length=1, max_length=255)
    phone_number: str = Field(min_length=5, max_length=32, pattern=r"^\+?[0-9 ()-]+$")


class PlaceOrdersRequest(BaseModel):
    items: list[CartItemRequest] = Field(min_length=1, max_length=200)
    shipping_method: ShippingMethod
    shipping_address: ShippingAddressRequest
    payment_method: PaymentMethod = PaymentMethod.ESCROW
    promo_code: str | None = Field(default=None, max_length=64)
    promo_codes: dict[str, str] = Field(default_factory=dict)
    authentication_requested: bool = False
    transaction_reference: str | None = Field(default=None, min_length=1, max_length=128)


class UpdateOrderRequest(BaseModel):
    status: OrderStatus | None = None
    tracking_number: str | None = Field(default=None, min_length=4, max_length=32, pattern=r"^[A-Za-z0-9-]+$")

    @model_validator(mode="after")
    def _something_to_update(self) -> "UpdateOrderRequest":
        if self.status is None and self.tracking_number is None:
            raise ValueError("status or tracking_number is required")
        return self


def _settle_after_checkout(
    session: Session,
    reference: str,
    order_ids: list[str],
    actor: Actor,
    rail: PaymentRail,
) -> dict:
    try:
        result = settle_payment(session, reference, order_ids, actor, rail=rail)
    except PaymentNotConfirmed as exc:
        start_settlement_poll(reference, order_ids, actor, rail=rail)
        return {"status": "AWAITING_CONFIRMATION", "transaction_reference": reference, "detail": exc.message}
    except EngineError as exc:
        logger.warning("checkout settlement reference=%s failed: %s", reference, exc.message)
        return {
            "status": "FAILED",
            "transaction_reference": reference,
            "error": exc.code,
            "detail": exc.message,
        }
    return {
        "status": "SETTLED",
        "transaction_reference": reference,
        "replayed": result.replayed,
    }


@router.post("/orders")
def place_orders_route(
    body: PlaceOrdersRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    shipping: ShippingResolver = Depends(get_shipping_resolver),
    rail: PaymentRail = Depends(get_payment_rail),
):
    require_user(actor)
    fingerprint = request_fingerprint(body.model_dump(mode="json"))
    if idempotency_key:
        stored = find_replay(session, idempotency_key, actor.id, PLACE_ORDERS_OPERATION, fingerprint)
        if stored is not None:
            return JSONResponse(status_code=stored.status_code, content=stored.response_payload)

    request = CheckoutRequest(
        buyer_id=actor.id,
        items=[item.to_cart_line() for item in body.items],
        shipping_method=body.shipping_method,
        shipping_address=body.shipping_address.model_dump(),
        payment_method=body.payment_method,
        promo_code=body.promo_code,
        promo_codes=body.promo_codes,
        authentication_requested=body.authentication_requested,
        transaction_reference=body.transaction_reference,
    )
    result = place_orders(
        session,
        request,
        actor,
        catalog=SqlCatalog(session),
        identity=SqlIdentityDirectory(session),
        promos=SqlPromoSource(session),
        shipping=shipping,
    )

    settlement = None
    if body.transaction_reference and result.order_ids:
        settlement = _settle_after_checkout(session, body.transaction_reference, result.order_ids, actor, rail)

    payload = {
        "success": result.success,
        "placed": result.placed,
        "requested": result.requested,
        "outcomes": [serialize_outcome(outcome) for outcome in result.outcomes],
        "orders": [serialize_order(get_order_with_items(session, order_id)) for order_id in result.order_ids],
        "settlement": settlement,
    }
    status_code = 201 if result.success else 422
    if idempotency_key:
        store_response(session, idempotency_key, actor.id, PLACE_ORDERS_OPERATION, fingerprint, status_code, payload)
    return JSONResponse(status_code=status_code, content=payload)


@router.get("/orders/purchases")
def list_purchases_route(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_user(actor)
    orders = list_purchases(session, actor.id, limit=limit, offset=offset)
    return {"count": len(orders), "orders": [serialize_order(order) for order in orders]}


@router.get("/orders/sales")
def list_sales_route(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_user(actor)
    orders = list_sales(session, actor.id, limit=limit, offset=offset)
    return {"count": len(orders), "orders": [serialize_order(order) for order in orders]}


@router.post("/orders/complete-reviewed")
def complete_reviewed_route(
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    completed = complete_reviewed(session, actor)
    return {"completed": completed, "count": len(completed)}


@router.get("/orders/{order_id}")
def get_order_route(
    order_id: str,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    order = get_order_with_items(session, order_id)
    check_can_view(order, actor)
    return serialize_order(order)


@router.get("/orders/{order_id}/events")
def list_order_events_route(
    order_id: str,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    order = get_order_with_items(session, order_id)
    check_can_view(order, actor)
    events = list_order_events(session, order_id)
    return {"order_id": order_id, "events": [serialize_event(event) for event in events]}


@router.patch("/orders/{order_id}")
def update_order_route(
    order_id: str,
    body: UpdateOrderRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    order = update_order(session, order_id, actor, status=body.status, tracking_number=body.tracking_number)
    return serialize_order(get_order_with_items(session, order.id))


@router.post("/orders/{order_id}/generate-waybill")
def generate_waybill_route(
    order_id: str,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    result = generate_waybill(session, order_id, actor)
    order = get_order_with_items(session, result.order.id)
    return {
        "order": serialize_order(order),
        "tracking_number": order.tracking_number,
        "applied": result.applied,
    }
