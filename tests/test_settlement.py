from __future__ import annotations

import uuid
from decimal import Decimal

from escrow_orders.connectors.payment_rail import FakePaymentRail
from escrow_orders.core.config import get_settings
from escrow_orders.core.security import Actor
from escrow_orders.settlement.poller import SettlementPoller, get_settlement_poll


class ConfirmsLater(FakePaymentRail):
    """Reports the transaction unconfirmed until it has been looked up a few times."""

    def __init__(self, confirm_after: int):
        super().__init__()
        self.confirm_after = confirm_after
        self.lookups = 0

    def lookup(self, reference):
        self.lookups += 1
        if self.lookups == self.confirm_after:
            self.confirm(reference)
        return super().lookup(reference)


def _ledger_count(client, auth_headers, order_id: str) -> int:
    response = client.get("/ledger/entries", params={"order_id": order_id}, headers=auth_headers["moderator"])
    return response.json()["count"]


def test_escrow_settlement_holds_funds(shop, marketplace, auth_headers):
    orders = shop.place()
    response = shop.pay(orders)
    assert response.status_code == 200, response.text
    payload = response.json()

    assert payload["replayed"] is False
    assert payload["settlement"]["expected_amount"] == "157.50"
    assert {order["status"] for order in payload["orders"]} == {"PAID"}

    assert shop.balances(marketplace.seller_a)["ESCROW_HELD"] == "104.00"
    assert shop.balances(marketplace.seller_b)["ESCROW_HELD"] == "53.50"
    assert shop.balances(marketplace.buyer)["REFUNDABLE"] == "0.00"

    events = shop.client.get(f"/orders/{orders[0]['id']}/events", headers=shop.buyer).json()["events"]
    assert [event["action"] for event in events] == ["PLACE", "MARK_PAID"]


def test_settlement_replay_is_idempotent(shop, auth_headers):
    orders = shop.place()
    reference = f"tx-{uuid.uuid4().hex}"
    assert shop.pay(orders, reference=reference).status_code == 200
    entries_before = _ledger_count(shop.client, auth_headers, orders[0]["id"])

    body = {"transaction_reference": reference, "order_ids": [order["id"] for order in reversed(orders)]}
    replay = shop.client.post("/settlements", json=body, headers=shop.buyer)

    assert replay.status_code == 200
    assert replay.json()["replayed"] is True
    assert _ledger_count(shop.client, auth_headers, orders[0]["id"]) == entries_before


def test_reference_cannot_pay_a_different_order_set(shop):
    orders = shop.place()
    reference = f"tx-{uuid.uuid4().hex}"
    assert shop.pay(orders[:1], reference=reference).status_code == 200

    body = {"transaction_reference": reference, "order_ids": [order["id"] for order in orders]}
    response = shop.client.post("/settlements", json=body, headers=shop.buyer)
    assert response.status_code == 402
    assert response.json()["error"] == "payment_verification_failed"
    assert shop.get(orders[1]["id"])["status"] == "PENDING"


def test_underpayment_leaves_orders_untouched(shop, marketplace):
    orders = shop.place()
    response = shop.pay(orders, amount="100.00")

    assert response.status_code == 402
    assert response.json()["error"] == "payment_verification_failed"
    assert {shop.get(order["id"])["status"] for order in orders} == {"PENDING"}
    assert shop.balances(marketplace.seller_a)["ESCROW_HELD"] == "0.00"


def test_wrong_recipient_is_rejected(shop):
    orders = shop.place()
    response = shop.pay(orders, recipient="UQ-somebody-else")
    assert response.status_code == 402


def test_unknown_or_unconfirmed_transaction_is_not_confirmed(shop):
    orders = shop.place()
    body = {"transaction_reference": f"tx-{uuid.uuid4().hex}", "order_ids": [orders[0]["id"]]}
    response = shop.client.post("/settlements", json=body, headers=shop.buyer)
    assert response.status_code == 402
    assert response.json()["error"] == "payment_not_confirmed"

    response = shop.pay(orders, confirmed=False)
    assert response.json()["error"] == "payment_not_confirmed"


def test_overpayment_is_credited_to_buyer(shop, marketplace):
    orders = shop.place()
    response = shop.pay(orders, amount="160.00")

    assert response.status_code == 200
    assert response.json()["settlement"]["excess_amount"] == "2.50"
    assert shop.balances(marketplace.buyer)["REFUNDABLE"] == "2.50"


def test_direct_payment_goes_to_seller_wallet(shop, marketplace):
    items = [
        {"product_id": marketplace.b1, "seller_id": marketplace.seller_b, "quantity": 1, "price_at_time_of_addition": "50.00"}
    ]
    orders = shop.place(items, payment_method="DIRECT")

    assert shop.pay(orders).status_code == 402
    response = shop.pay(orders, recipient=marketplace.seller_b_wallet)
    assert response.status_code == 200
    assert response.json()["settlement"]["payment_method"] == "DIRECT"
    assert shop.balances(marketplace.seller_b)["ESCROW_HELD"] == "0.00"


def test_only_the_buyer_settles(shop, marketplace, as_user):
    orders = shop.place()
    reference = f"tx-{uuid.uuid4().hex}"
    shop.rail.record(reference, "157.50", get_settings().treasury_address)
    body = {"transaction_reference": reference, "order_ids": [order["id"] for order in orders]}

    response = shop.client.post("/settlements", json=body, headers=as_user(marketplace.seller_a))
    assert response.status_code == 403


def test_paid_order_cannot_be_settled_again(shop):
    order = shop.paid_order()
    response = shop.pay([order])
    assert response.status_code == 409
    assert response.json()["current_status"] == "PAID"


def test_checkout_with_confirmed_transaction_settles(shop, rail):
    reference = f"tx-{uuid.uuid4().hex}"
    rail.record(reference, "43.50", get_settings().treasury_address)
    order = shop.place_single(transaction_reference=reference)

    assert shop.get(order["id"])["status"] == "PAID"
    settlement = shop.client.get(f"/settlements/{reference}", headers=shop.buyer).json()
    assert settlement["status"] == "SETTLED"


def test_checkout_with_pending_transaction_starts_poll(shop, rail, auth_headers, monkeypatch):
    monkeypatch.setattr(get_settings(), "settlement_poll_max_attempts", 10_000)
    reference = f"tx-{uuid.uuid4().hex}"
    rail.record(reference, "43.50", get_settings().treasury_address, confirmed=False)

    response = shop.checkout(
        [
            {
                "product_id": shop.market.a1,
                "seller_id": shop.market.seller_a,
                "quantity": 1,
                "price_at_time_of_addition": "40.00",
            }
        ],
        transaction_reference=reference,
    )
    assert response.status_code == 201
    assert response.json()["settlement"]["status"] == "AWAITING_CONFIRMATION"

    poller = get_settlement_poll(reference)
    assert poller is not None
    cancelled = shop.client.delete(f"/settlements/{reference}/poll", headers=auth_headers["moderator"])
    assert cancelled.status_code == 200
    assert poller.wait(timeout=5)
    assert poller.result is None
    order_id = response.json()["orders"][0]["id"]
    assert shop.get(order_id)["status"] == "PENDING"


def test_poller_settles_once_rail_confirms(shop, marketplace):
    order = shop.place_single()
    reference = f"tx-{uuid.uuid4().hex}"
    rail = ConfirmsLater(confirm_after=2)
    rail.record(reference, Decimal(order["total"]), get_settings().treasury_address, confirmed=False)

    poller = SettlementPoller(reference, [order["id"]], Actor(type="user", id=marketplace.buyer), rail=rail)
    result = poller.run()

    assert result is not None
    assert rail.lookups == 2
    assert poller.done
    assert shop.get(order["id"])["status"] == "PAID"
