from __future__ import annotations

from decimal import Decimal

import pytest

from escrow_orders.api.deps import get_shipping_resolver
from escrow_orders.connectors.carriers import TariffShippingResolver
from escrow_orders.connectors.directory import SqlCatalog, SqlIdentityDirectory
from escrow_orders.core.security import Actor
from escrow_orders.domain.errors import ReferenceNotFound, ShippingUnavailable
from escrow_orders.domain.orders.aggregates import CartLine, PaymentMethod, ShippingMethod
from escrow_orders.domain.orders.checkout import PLACED, SKIPPED, CheckoutRequest, place_orders
from escrow_orders.domain.promotions.engine import SqlPromoSource
from escrow_orders.persistence.queries import list_order_events


class RefusingResolver(TariffShippingResolver):
    """Tariff quotes, except for parcels holding one refused product."""

    def __init__(self, refused_product_id: str):
        self.refused_product_id = refused_product_id

    def quote(self, lines, method):
        if any(line.product_id == self.refused_product_id for line in lines):
            raise ShippingUnavailable("carrier does not serve this parcel")
        return super().quote(lines, method)


def _request(marketplace, **overrides) -> CheckoutRequest:
    items = [
        CartLine(
            product_id=item["product_id"],
            seller_id=item["seller_id"],
            quantity=item["quantity"],
            price_at_time_of_addition=Decimal(item["price_at_time_of_addition"]),
        )
        for item in marketplace.cart_a_and_b()
    ]
    fields = {
        "buyer_id": marketplace.buyer,
        "items": items,
        "shipping_method": ShippingMethod.NOVA_POSHTA,
        "shipping_address": {"city": "Kyiv", "post_office": "12", "recipient_name": "B", "phone_number": "+380501"},
        "payment_method": PaymentMethod.ESCROW,
    }
    fields.update(overrides)
    return CheckoutRequest(**fields)


def _place(session, marketplace, shipping=None, **overrides):
    return place_orders(
        session,
        _request(marketplace, **overrides),
        Actor(type="user", id=marketplace.buyer),
        catalog=SqlCatalog(session),
        identity=SqlIdentityDirectory(session),
        promos=SqlPromoSource(session),
        shipping=shipping or TariffShippingResolver(),
    )


def test_two_seller_cart_with_seller_promo(session, marketplace):
    result = _place(session, marketplace, promo_code=marketplace.promo_a.lower())

    assert result.placed == 2
    assert result.success
    order_a, order_b = result.orders

    assert order_a.seller_id == marketplace.seller_a
    assert order_a.status == "PENDING"
    assert order_a.subtotal == Decimal("100.00")
    assert order_a.discount_amount == Decimal("10.00")
    assert order_a.shipping_cost == Decimal("4.00")
    assert order_a.total == Decimal("94.00")
    assert order_a.promo_code == marketplace.promo_a
    assert [item.position for item in order_a.items] == [0, 1]

    assert order_b.subtotal == Decimal("50.00")
    assert order_b.discount_amount == Decimal("0.00")
    assert order_b.total == Decimal("53.50")
    assert order_b.promo_code is None

    outcome_b = result.outcomes[1]
    assert outcome_b.status == PLACED
    assert outcome_b.promo_error is not None

    events = list_order_events(session, order_a.id)
    assert [(event.action, event.to_status) for event in events] == [("PLACE", "PENDING")]


def test_failed_partition_does_not_undo_the_others(session, marketplace):
    result = _place(session, marketplace, shipping=RefusingResolver(marketplace.b1))

    assert result.placed == 1
    assert result.requested == 2
    placed, skipped = result.outcomes
    assert placed.status == PLACED
    assert placed.order_id == result.orders[0].id
    assert skipped.status == SKIPPED
    assert skipped.error == "shipping_unavailable"
    assert skipped.order_id is None


def test_out_of_stock_partition_is_skipped(session, marketplace):
    items = [
        CartLine(marketplace.a1, marketplace.seller_a, 1, Decimal("40.00")),
        CartLine(marketplace.limited, marketplace.seller_b, 2, Decimal("99.00")),
    ]
    result = _place(session, marketplace, items=items)

    assert [outcome.status for outcome in result.outcomes] == [PLACED, SKIPPED]
    assert result.outcomes[1].error == "out_of_stock"


def test_unknown_product_only_fails_its_partition(session, marketplace):
    items = [
        CartLine(marketplace.a1, marketplace.seller_a, 1, Decimal("40.00")),
        CartLine("no-such-product", marketplace.seller_b, 1, Decimal("5.00")),
    ]
    result = _place(session, marketplace, items=items)

    assert result.placed == 1
    assert result.outcomes[1].error == "reference_not_found"


def test_unknown_buyer_fails_whole_checkout(session, marketplace):
    with pytest.raises(ReferenceNotFound):
        _place(session, marketplace, buyer_id="nobody")


def test_addons_gift_wrap_and_authentication(session, marketplace):
    items = [
        CartLine(marketplace.a1, marketplace.seller_a, 1, Decimal("40.00")),
        CartLine(marketplace.a2, marketplace.seller_a, 2, Decimal("60.00"), gift_wrap=True),
        CartLine(marketplace.b1, marketplace.seller_b, 1, Decimal("50.00")),
    ]
    result = _place(session, marketplace, items=items, authentication_requested=True)
    order_a, order_b = result.orders

    # 2 x 2.50 gift wrap plus one authentication fee.
    assert order_a.addons_total == Decimal("20.00")
    assert order_a.authentication_requested
    assert order_a.items[1].gift_wrap_fee == Decimal("5.00")
    # Seller B offers no authentication.
    assert order_b.addons_total == Decimal("0.00")
    assert not order_b.authentication_requested


def test_checkout_api_places_orders(shop, marketplace):
    response = shop.checkout(promo_codes={marketplace.seller_a: marketplace.promo_a})
    assert response.status_code == 201
    payload = response.json()

    assert payload["success"] is True
    assert payload["placed"] == 2
    assert payload["settlement"] is None
    assert [order["total"] for order in payload["orders"]] == ["94.00", "53.50"]
    assert payload["orders"][0]["items"][0]["product_title"] == "Vintage camera"


def test_checkout_api_reports_422_when_nothing_is_placed(shop, marketplace):
    items = [
        {
            "product_id": marketplace.limited,
            "seller_id": marketplace.seller_b,
            "quantity": 5,
            "price_at_time_of_addition": "99.00",
        }
    ]
    response = shop.checkout(items)
    assert response.status_code == 422
    payload = response.json()
    assert payload["success"] is False
    assert payload["outcomes"][0]["error"] == "out_of_stock"


def test_checkout_api_partition_isolation(client, shop, marketplace):
    client.app.dependency_overrides[get_shipping_resolver] = lambda: RefusingResolver(marketplace.b1)
    response = shop.checkout()

    assert response.status_code == 201
    payload = response.json()
    assert payload["placed"] == 1
    assert [outcome["status"] for outcome in payload["outcomes"]] == ["PLACED", "SKIPPED"]


def test_checkout_idempotency_key(shop):
    headers = {**shop.buyer, "Idempotency-Key": "cart-42"}
    first = shop.checkout(headers=headers)
    again = shop.checkout(headers=headers)

    assert first.status_code == again.status_code == 201
    assert [o["id"] for o in first.json()["orders"]] == [o["id"] for o in again.json()["orders"]]

    purchases = shop.client.get("/orders/purchases", headers=shop.buyer).json()
    assert purchases["count"] == 2

    changed = shop.checkout(headers=headers, promo_code="OTHER")
    assert changed.status_code == 409


def test_only_users_check_out(shop, auth_headers):
    response = shop.checkout(headers=auth_headers["system"])
    assert response.status_code == 403


def test_purchases_and_sales_listing(shop, marketplace, as_user):
    first = shop.place_single()
    second = shop.place_single()

    purchases = shop.client.get("/orders/purchases", headers=shop.buyer).json()["orders"]
    assert [order["id"] for order in purchases] == [second["id"], first["id"]]

    sales = shop.client.get("/orders/sales", headers=as_user(marketplace.seller_a)).json()["orders"]
    assert {order["id"] for order in sales} == {first["id"], second["id"]}

    assert shop.client.get("/orders/sales", headers=as_user(marketplace.seller_b)).json()["count"] == 0


def test_strangers_cannot_read_orders(shop, as_user):
    order = shop.place_single()
    response = shop.client.get(f"/orders/{order['id']}", headers=as_user("stranger"))
    assert response.status_code == 403
