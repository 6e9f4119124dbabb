from __future__ import annotations

from decimal import Decimal

import pytest

from escrow_orders.connectors.directory import ProductRecord, UserRecord
from escrow_orders.domain.errors import OutOfStock, ReferenceNotFound
from escrow_orders.domain.orders.aggregates import CartLine, PricedOrder, order_total
from escrow_orders.domain.orders.planner import partition_cart, plan_orders, plan_partition


class StaticDirectory:
    def __init__(self, *user_ids: str):
        self.users = {user_id: UserRecord(id=user_id, display_name=user_id) for user_id in user_ids}

    def get_user(self, user_id):
        return self.users.get(user_id)


class StaticCatalog:
    def __init__(self, *products: ProductRecord):
        self.products = {product.id: product for product in products}

    def get_products(self, product_ids):
        return {pid: self.products[pid] for pid in product_ids if pid in self.products}


def line(product_id: str, seller_id: str, quantity: int = 1, price: str = "10.00", **kwargs) -> CartLine:
    return CartLine(
        product_id=product_id,
        seller_id=seller_id,
        quantity=quantity,
        price_at_time_of_addition=Decimal(price),
        **kwargs,
    )


@pytest.fixture()
def directory():
    return StaticDirectory("buyer", "s1", "s2")


@pytest.fixture()
def catalog():
    return StaticCatalog(
        ProductRecord(id="p1", seller_id="s1", title="Mug", category="Home", stock=3),
        ProductRecord(
            id="p2",
            seller_id="s1",
            title="Teapot",
            category="Home",
            gift_wrap_available=True,
            gift_wrap_price=Decimal("1.25"),
        ),
        ProductRecord(id="p3", seller_id="s2", title="Poster", category="Art"),
        ProductRecord(id="gone", seller_id="s2", title="Retired", is_active=False),
    )


def test_partition_cart_groups_by_seller_in_first_seen_order():
    items = [line("p1", "s1"), line("p3", "s2"), line("p2", "s1")]
    partitions = partition_cart(items)

    assert list(partitions) == ["s1", "s2"]
    assert [item.product_id for item in partitions["s1"]] == ["p1", "p2"]
    # Every cart line lands in exactly one partition.
    assert sum(len(lines) for lines in partitions.values()) == len(items)


def test_plan_partition_snapshots_titles_and_cart_prices(catalog, directory):
    plan = plan_partition("s1", [line("p1", "s1", 2, "12.50"), line("p2", "s1", 1, "30")], catalog, directory)

    assert [planned.product_title for planned in plan.lines] == ["Mug", "Teapot"]
    assert plan.lines[0].unit_price == Decimal("12.50")
    assert plan.subtotal == Decimal("55.00")


def test_gift_wrap_fee_only_where_offered(catalog, directory):
    plan = plan_partition(
        "s1",
        [line("p1", "s1", gift_wrap=True), line("p2", "s1", 2, gift_wrap=True)],
        catalog,
        directory,
    )
    assert plan.lines[0].gift_wrap_fee == Decimal("0.00")
    assert plan.lines[1].gift_wrap_fee == Decimal("2.50")
    assert plan.gift_wrap_total == Decimal("2.50")


def test_missing_or_foreign_product_is_reference_not_found(catalog, directory):
    with pytest.raises(ReferenceNotFound):
        plan_partition("s1", [line("nope", "s1")], catalog, directory)
    with pytest.raises(ReferenceNotFound):
        plan_partition("s1", [line("p3", "s1")], catalog, directory)
    with pytest.raises(ReferenceNotFound):
        plan_partition("s2", [line("gone", "s2")], catalog, directory)
    with pytest.raises(ReferenceNotFound):
        plan_partition("ghost", [line("p1", "ghost")], catalog, directory)


def test_stock_is_checked_against_summed_quantity(catalog, directory):
    plan_partition("s1", [line("p1", "s1", 3)], catalog, directory)
    with pytest.raises(OutOfStock):
        plan_partition("s1", [line("p1", "s1", 2), line("p1", "s1", 2)], catalog, directory)


def test_quantity_must_be_positive(catalog, directory):
    with pytest.raises(ValueError):
        plan_partition("s1", [line("p1", "s1", 0)], catalog, directory)


def test_plan_orders_is_all_or_nothing(catalog, directory):
    plans = plan_orders("buyer", [line("p1", "s1"), line("p3", "s2")], catalog, directory)
    assert [plan.seller_id for plan in plans] == ["s1", "s2"]

    with pytest.raises(ReferenceNotFound):
        plan_orders("buyer", [line("p1", "s1"), line("nope", "s2")], catalog, directory)
    with pytest.raises(ReferenceNotFound):
        plan_orders("stranger", [line("p1", "s1")], catalog, directory)
    with pytest.raises(ValueError):
        plan_orders("buyer", [], catalog, directory)


def test_order_total_never_negative(catalog, directory):
    plan = plan_partition("s1", [line("p1", "s1", 1, "5.00")], catalog, directory)
    priced = PricedOrder(
        plan=plan,
        discount_amount=Decimal("5.00"),
        shipping_cost=Decimal("3.50"),
        addons_total=Decimal("0.00"),
    )
    assert priced.total == Decimal("3.50")
    assert order_total(Decimal("1.00"), Decimal("9.00"), Decimal("0.00")) == Decimal("0.00")
