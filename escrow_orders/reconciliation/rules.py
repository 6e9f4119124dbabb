from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session

from escrow_orders.domain.money import ZERO
from escrow_orders.domain.orders.aggregates import OrderStatus, PaymentMethod
from escrow_orders.ledger.store import Bucket
from escrow_orders.persistence.models import LedgerEntryModel, OrderModel, SettlementModel


@dataclass
class ReconciliationResult:
    rule: str
    passed: bool
    detail: str


def check_balances_non_negative(entries: Iterable[LedgerEntryModel]) -> ReconciliationResult:
    balances: dict[tuple[str, str], Decimal] = defaultdict(lambda: ZERO)
    for entry in entries:
        key = (entry.account_id, entry.bucket)
        balances[key] += entry.amount
        if balances[key] < ZERO:
            return ReconciliationResult(
                rule="balances_non_negative",
                passed=False,
                detail=f"negative {entry.bucket} balance for account={entry.account_id} at seq={entry.seq_id}",
            )
    return ReconciliationResult(rule="balances_non_negative", passed=True, detail="ok")


def check_escrow_custody(orders: Iterable[OrderModel], entries: Iterable[LedgerEntryModel]) -> ReconciliationResult:
    """Every settled escrow order is fully held, released to its seller, or refunded to its buyer."""
    positions: dict[tuple[str, str, str], Decimal] = defaultdict(lambda: ZERO)
    for entry in entries:
        if entry.order_id:
            positions[(entry.order_id, entry.account_id, entry.bucket)] += entry.amount

    checked = 0
    for order in orders:
        if order.payment_method != PaymentMethod.ESCROW.value or not order.transaction_reference:
            continue
        checked += 1
        held = positions[(order.id, order.seller_id, Bucket.ESCROW_HELD.value)]
        released = positions[(order.id, order.seller_id, Bucket.WITHDRAWABLE.value)]
        refunded = positions[(order.id, order.buyer_id, Bucket.REFUNDABLE.value)]
        if order.status == OrderStatus.CANCELLED.value:
            ok = held == ZERO and released == ZERO and refunded == order.total
        else:
            ok = refunded == ZERO and held + released == order.total
        if not ok:
            return ReconciliationResult(
                rule="escrow_custody",
                passed=False,
                detail=(
                    f"order={order.id} status={order.status} total={order.total} "
                    f"held={held} released={released} refunded={refunded}"
                ),
            )
    return ReconciliationResult(rule="escrow_custody", passed=True, detail=f"orders_checked={checked}")


def check_settlement_amounts(
    settlements: Iterable[SettlementModel],
    orders: Iterable[OrderModel],
) -> ReconciliationResult:
    totals = {order.id: order.total for order in orders}
    for settlement in settlements:
        expected = sum((totals.get(order_id, ZERO) for order_id in settlement.order_ids), ZERO)
        if expected != settlement.expected_amount or settlement.verified_amount < expected:
            return ReconciliationResult(
                rule="settlement_amounts",
                passed=False,
                detail=(
                    f"reference={settlement.transaction_reference} expected={settlement.expected_amount} "
                    f"orders={expected} verified={settlement.verified_amount}"
                ),
            )
    return ReconciliationResult(rule="settlement_amounts", passed=True, detail="ok")


def run_minimum_reconciliation(session: Session) -> list[ReconciliationResult]:
    entries = list(session.scalars(select(LedgerEntryModel).order_by(LedgerEntryModel.seq_id.asc())).all())
    orders = list(session.scalars(select(OrderModel)).all())
    settlements = list(session.scalars(select(SettlementModel)).all())
    return [
        check_balances_non_negative(entries),
        check_escrow_custody(orders, entries),
        check_settlement_amounts(settlements, orders),
    ]
