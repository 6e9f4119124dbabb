"""
Payment settlement.

A settlement ties one external transaction reference to the set of orders it
paid for. Verification happens entirely before the first write, so a failed
verification leaves every order untouched. The reference is unique: replaying
it with the same orders returns the stored settlement, and replaying it with
different orders is rejected.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from escrow_orders.api.utils import now_utc
from escrow_orders.connectors.directory import IdentityDirectory, SqlIdentityDirectory
from escrow_orders.connectors.payment_rail import PaymentRail, PaymentRailError, build_payment_rail
from escrow_orders.core.config import Settings, get_settings
from escrow_orders.core.security import Actor
from escrow_orders.domain.errors import (
    ActionNotPermitted,
    InvalidState,
    PaymentNotConfirmed,
    PaymentVerificationFailed,
)
from escrow_orders.domain.money import ZERO, to_money
from escrow_orders.domain.orders.aggregates import OrderStatus, PaymentMethod
from escrow_orders.domain.orders.commands import transition_locked
from escrow_orders.domain.orders.state_machine import OrderAction
from escrow_orders.ledger.store import BalanceLedger
from escrow_orders.persistence.locks import ledger_lock, order_locks
from escrow_orders.persistence.models import OrderModel, SettlementModel
from escrow_orders.persistence.queries import get_orders_for_update, get_settlement

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    settlement: SettlementModel
    orders: list[OrderModel]
    replayed: bool = False


def _normalize_ids(order_ids: Iterable[str]) -> list[str]:
    ids = sorted({str(order_id).strip() for order_id in order_ids if str(order_id).strip()})
    if not ids:
        raise ValueError("settlement needs at least one order id")
    return ids


def _replay(session: Session, existing: SettlementModel, ids: list[str], actor: Actor) -> SettlementResult:
    if sorted(existing.order_ids) != ids:
        raise PaymentVerificationFailed(
            f"transaction {existing.transaction_reference} already settled a different set of orders"
        )
    if actor.type == "user" and actor.id != existing.buyer_id:
        raise ActionNotPermitted(f"settlement {existing.transaction_reference} belongs to another buyer")
    orders = get_orders_for_update(session, ids)
    logger.info("settlement replay reference=%s orders=%s", existing.transaction_reference, len(ids))
    return SettlementResult(settlement=existing, orders=orders, replayed=True)


def _check_orders(orders: Sequence[OrderModel], actor: Actor) -> tuple[str, PaymentMethod]:
    buyers = {order.buyer_id for order in orders}
    methods = {order.payment_method for order in orders}
    if len(buyers) != 1:
        raise PaymentVerificationFailed("orders in one settlement must share a buyer")
    if len(methods) != 1:
        raise PaymentVerificationFailed("orders in one settlement must share a payment method")
    buyer_id = buyers.pop()
    if actor.type == "user" and actor.id != buyer_id:
        raise ActionNotPermitted("only the buyer may settle these orders")
    for order in orders:
        if order.status != OrderStatus.PENDING.value:
            raise InvalidState(
                f"order {order.id} is {order.status}; only PENDING orders can be settled",
                current_status=order.status,
            )
    return buyer_id, PaymentMethod(methods.pop())


def expected_recipient(
    orders: Sequence[OrderModel],
    method: PaymentMethod,
    identity: IdentityDirectory,
    settings: Settings,
) -> str:
    if method == PaymentMethod.ESCROW:
        return settings.treasury_address
    sellers = {order.seller_id for order in orders}
    if len(sellers) != 1:
        raise PaymentVerificationFailed("a direct payment can only pay a single seller")
    seller = identity.get_user(sellers.pop())
    if seller is None or not seller.payout_address:
        raise PaymentVerificationFailed("seller has no payout wallet for direct payment")
    return seller.payout_address


def verify_transaction(rail: PaymentRail, reference: str, recipient: str, expected: Decimal) -> Decimal:
    """Return the verified amount or raise; never writes."""
    try:
        tx = rail.lookup(reference)
    except PaymentRailError as exc:
        raise PaymentNotConfirmed(f"payment rail unavailable: {exc}") from exc
    if tx is None:
        raise PaymentNotConfirmed(f"transaction {reference} is not known to the payment rail yet")
    if not tx.confirmed:
        raise PaymentNotConfirmed(f"transaction {reference} is not confirmed yet")
    if tx.recipient != recipient:
        raise PaymentVerificationFailed(f"transaction {reference} was not sent to the expected recipient")
    amount = to_money(tx.amount)
    if amount < expected:
        raise PaymentVerificationFailed(
            f"transaction {reference} pays {amount}, orders require {expected}"
        )
    return amount


def settle_payment(
    session: Session,
    reference: str,
    order_ids: Iterable[str],
    actor: Actor,
    rail: PaymentRail | None = None,
    identity: IdentityDirectory | None = None,
    settings: Settings | None = None,
) -> SettlementResult:
    reference = (reference or "").strip()
    if not reference:
        raise ValueError("transaction reference is required")
    ids = _normalize_ids(order_ids)
    settings = settings or get_settings()
    rail = rail or build_payment_rail(settings)
    identity = identity or SqlIdentityDirectory(session)

    existing = get_settlement(session, reference)
    if existing is not None:
        return _replay(session, existing, ids, actor)

    with order_locks(ids), ledger_lock():
        try:
            existing = get_settlement(session, reference)
            if existing is not None:
                return _replay(session, existing, ids, actor)

            orders = get_orders_for_update(session, ids)
            buyer_id, method = _check_orders(orders, actor)
            expected = to_money(sum((order.total for order in orders), ZERO))
            recipient = expected_recipient(orders, method, identity, settings)
            verified = verify_transaction(rail, reference, recipient, expected)
            excess = to_money(verified - expected)

            now = now_utc()
            ledger = BalanceLedger(session) if method == PaymentMethod.ESCROW else None
            for order in orders:
                order.transaction_reference = reference
                transition_locked(session, order, OrderAction.MARK_PAID, actor, now=now, check_role=False)
                if ledger is not None:
                    ledger.hold_escrow(order, reference)
            if ledger is not None and excess > ZERO:
                ledger.credit_overpayment(buyer_id, excess, reference)

            row = SettlementModel(
                transaction_reference=reference,
                payment_method=method.value,
                buyer_id=buyer_id,
                order_ids=ids,
                recipient=recipient,
                verified_amount=verified,
                expected_amount=expected,
                excess_amount=excess,
                settled_at=now,
            )
            session.add(row)
            session.commit()
        except IntegrityError:
            # Another process stored this reference first.
            session.rollback()
            existing = get_settlement(session, reference)
            if existing is None:
                raise
            return _replay(session, existing, ids, actor)
        except Exception:
            session.rollback()
            raise

    logger.info(
        "settled reference=%s method=%s orders=%s amount=%s excess=%s",
        reference,
        method.value,
        len(orders),
        verified,
        excess,
    )
    return SettlementResult(settlement=row, orders=orders)
