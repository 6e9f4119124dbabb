from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import escrow_orders.persistence.pg as pg
from escrow_orders.api.deps import get_payment_rail
from escrow_orders.connectors.payment_rail import FakePaymentRail
from escrow_orders.core.config import get_settings
from escrow_orders.core.security import issue_access_token
from escrow_orders.persistence.models import Base, ProductModel, PromoCodeModel, UserModel


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("db") / "test.sqlite"


@pytest.fixture(scope="session", autouse=True)
def configure_test_engine(test_db_path: Path):
    settings = get_settings()
    settings.payment_rail = "fake"
    settings.shipping_resolver = "tariff"
    settings.settlement_poll_interval_seconds = 0.01
    settings.settlement_poll_max_attempts = 3

    engine = create_engine(
        f"sqlite+pysqlite:///{test_db_path}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    TestSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

    pg.engine = engine
    pg.SessionLocal = TestSessionLocal

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def rail() -> FakePaymentRail:
    return FakePaymentRail()


@pytest.fixture()
def client(configure_test_engine, rail):
    from escrow_orders.main import app

    app.dependency_overrides[get_payment_rail] = lambda: rail
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def session(configure_test_engine):
    with pg.session_scope() as s:
        yield s


@pytest.fixture()
def auth_headers():
    settings = get_settings()
    return {
        "moderator": {"X-API-Key": settings.moderator_api_key},
        "system": {"X-API-Key": settings.system_api_key},
    }


def _bearer(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_access_token(user_id)}"}


@pytest.fixture()
def as_user():
    return _bearer


@dataclass
class Marketplace:
    buyer: str
    seller_a: str
    seller_b: str
    a1: str
    a2: str
    b1: str
    limited: str
    promo_a: str
    seller_b_wallet: str

    def cart_a_and_b(self) -> list[dict]:
        return [
            {"product_id": self.a1, "seller_id": self.seller_a, "quantity": 1, "price_at_time_of_addition": "40.00"},
            {"product_id": self.a2, "seller_id": self.seller_a, "quantity": 1, "price_at_time_of_addition": "60.00"},
            {"product_id": self.b1, "seller_id": self.seller_b, "quantity": 1, "price_at_time_of_addition": "50.00"},
        ]


@pytest.fixture()
def marketplace(configure_test_engine) -> Marketplace:
    suffix = uuid.uuid4().hex[:8]
    m = Marketplace(
        buyer=f"buyer-{suffix}",
        seller_a=f"seller-a-{suffix}",
        seller_b=f"seller-b-{suffix}",
        a1=f"a1-{suffix}",
        a2=f"a2-{suffix}",
        b1=f"b1-{suffix}",
        limited=f"limited-{suffix}",
        promo_a=f"SAVE10-{suffix}".upper(),
        seller_b_wallet=f"UQ-wallet-b-{suffix}",
    )
    with pg.session_scope() as s:
        s.add_all(
            [
                UserModel(id=m.buyer, display_name="Buyer"),
                UserModel(id=m.seller_a, display_name="Seller A", payout_address=f"UQ-wallet-a-{suffix}"),
                UserModel(id=m.seller_b, display_name="Seller B", payout_address=m.seller_b_wallet),
            ]
        )
        s.add_all(
            [
                ProductModel(
                    id=m.a1,
                    seller_id=m.seller_a,
                    title="Vintage camera",
                    category="Electronics",
                    weight_grams=500,
                    stock=5,
                    authentication_available=True,
                ),
                ProductModel(
                    id=m.a2,
                    seller_id=m.seller_a,
                    title="Lens",
                    category="Electronics",
                    weight_grams=700,
                    stock=5,
                    gift_wrap_available=True,
                    gift_wrap_price=Decimal("2.50"),
                ),
                ProductModel(id=m.b1, seller_id=m.seller_b, title="Wool scarf", category="Clothing", stock=3),
                ProductModel(id=m.limited, seller_id=m.seller_b, title="Rare coin", category="Collectibles", stock=1),
            ]
        )
        s.add(
            PromoCodeModel(
                code=m.promo_a,
                seller_id=m.seller_a,
                is_active=True,
                discount_type="PERCENTAGE",
                discount_value=Decimal("10"),
                scope="SELLER",
            )
        )
    return m


SHIPPING_ADDRESS = {
    "city": "Kyiv",
    "post_office": "Branch 12",
    "recipient_name": "Olena Buyer",
    "phone_number": "+380501234567",
}


def checkout_body(items: list[dict], **extra) -> dict:
    body = {
        "items": items,
        "shipping_method": "NOVA_POSHTA",
        "shipping_address": SHIPPING_ADDRESS,
        "payment_method": "ESCROW",
    }
    body.update(extra)
    return body


class Shop:
    """Drives orders through the HTTP API for one seeded marketplace."""

    def __init__(self, client: TestClient, rail: FakePaymentRail, market: Marketplace):
        self.client = client
        self.rail = rail
        self.market = market

    @property
    def buyer(self) -> dict[str, str]:
        return _bearer(self.market.buyer)

    def seller(self, order: dict) -> dict[str, str]:
        return _bearer(order["seller_id"])

    def checkout(self, items: list[dict] | None = None, headers: dict | None = None, **extra):
        body = checkout_body(items if items is not None else self.market.cart_a_and_b(), **extra)
        return self.client.post("/orders", json=body, headers=headers or self.buyer)

    def place(self, items: list[dict] | None = None, **extra) -> list[dict]:
        response = self.checkout(items, **extra)
        assert response.status_code == 201, response.text
        return response.json()["orders"]

    def place_single(self, **extra) -> dict:
        items = [
            {
                "product_id": self.market.a1,
                "seller_id": self.market.seller_a,
                "quantity": 1,
                "price_at_time_of_addition": "40.00",
            }
        ]
        return self.place(items, **extra)[0]

    def pay(
        self,
        orders: list[dict],
        amount: Decimal | str | None = None,
        recipient: str | None = None,
        reference: str | None = None,
        confirmed: bool = True,
    ):
        reference = reference or f"tx-{uuid.uuid4().hex}"
        if amount is None:
            amount = sum((Decimal(order["total"]) for order in orders), Decimal("0.00"))
        self.rail.record(
            reference,
            amount,
            recipient or get_settings().treasury_address,
            sender=self.market.buyer,
            confirmed=confirmed,
        )
        return self.client.post(
            "/settlements",
            json={"transaction_reference": reference, "order_ids": [order["id"] for order in orders]},
            headers=self.buyer,
        )

    def paid_order(self) -> dict:
        order = self.place_single()
        response = self.pay([order])
        assert response.status_code == 200, response.text
        return self.get(order["id"])

    def shipped_order(self) -> dict:
        order = self.paid_order()
        response = self.client.post(f"/orders/{order['id']}/generate-waybill", headers=self.seller(order))
        assert response.status_code == 200, response.text
        return response.json()["order"]

    def delivered_order(self) -> dict:
        order = self.shipped_order()
        response = self.client.patch(f"/orders/{order['id']}", json={"status": "DELIVERED"}, headers=self.buyer)
        assert response.status_code == 200, response.text
        return response.json()

    def get(self, order_id: str) -> dict:
        response = self.client.get(f"/orders/{order_id}", headers=self.buyer)
        assert response.status_code == 200, response.text
        return response.json()

    def balances(self, account_id: str) -> dict[str, str]:
        response = self.client.get(f"/ledger/balances/{account_id}", headers=_bearer(account_id))
        assert response.status_code == 200, response.text
        return response.json()["balances"]


@pytest.fixture()
def shop(client, rail, marketplace) -> Shop:
    return Shop(client, rail, marketplace)
