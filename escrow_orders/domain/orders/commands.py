"""
Order transitions with role checks, audit events and escrow side effects.

``transition_locked`` assumes the caller already holds the order lock and owns
the transaction; ``apply_transition`` is the self-contained entry point that
locks, applies and commits.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from escrow_orders.api.utils import now_utc
from escrow_orders.core.config import Settings, get_settings
from escrow_orders.core.security import Actor
from escrow_orders.domain.errors import ActionNotPermitted, InvalidState
from escrow_orders.domain.orders.aggregates import OrderStatus, PaymentMethod
from escrow_orders.domain.orders.state_machine import (
    OrderAction,
    TransitionDecision,
    action_for_requested_status,
    decide,
)
from escrow_orders.domain.shipping.waybill import issue_unique_tracking_number
from escrow_orders.ledger.store import BalanceLedger
from escrow_orders.persistence.locks import ledger_lock, order_lock
from escrow_orders.persistence.models import OrderEventModel, OrderModel
from escrow_orders.persistence.queries import (
    delivered_order_ids_before,
    get_order_for_update,
    get_order_with_items,
    last_status_change,
    tracking_number_taken,
)

logger = logging.getLogger(__name__)

TRACKING_UPDATE_ACTION = "UPDATE_TRACKING"


@dataclass
class TransitionResult:
    order: OrderModel
    decision: TransitionDecision

    @property
    def applied(self) -> bool:
        return not self.decision.is_noop


def is_buyer(order: OrderModel, actor: Actor) -> bool:
    return actor.type == "user" and actor.id == order.buyer_id


def is_seller(order: OrderModel, actor: Actor) -> bool:
    return actor.type == "user" and actor.id == order.seller_id


def can_view(order: OrderModel, actor: Actor) -> bool:
    return actor.type in {"moderator", "system"} or is_buyer(order, actor) or is_seller(order, actor)


def check_can_view(order: OrderModel, actor: Actor) -> None:
    if not can_view(order, actor):
        raise ActionNotPermitted(f"{actor.type} {actor.id} is not a party to order {order.id}")


def check_permitted(order: OrderModel, action: OrderAction, actor: Actor) -> None:
    if action == OrderAction.MARK_PAID:
        # Only settlement marks orders paid, and it bypasses this check.
        allowed = False
    elif action == OrderAction.SHIP:
        allowed = is_seller(order, actor)
    elif action == OrderAction.CONFIRM_DELIVERY:
        allowed = is_buyer(order, actor)
    elif action == OrderAction.COMPLETE:
        allowed = actor.type in {"system", "moderator"}
    elif action == OrderAction.OPEN_DISPUTE:
        allowed = is_buyer(order, actor) or is_seller(order, actor)
    elif action in {OrderAction.RESOLVE_FOR_BUYER, OrderAction.RESOLVE_FOR_SELLER}:
        allowed = actor.type == "moderator"
    elif action == OrderAction.CANCEL:
        allowed = actor.type in {"moderator", "system"}
    else:
        allowed = False
    if not allowed:
        raise ActionNotPermitted(f"{actor.type} {actor.id} may not {action.value} order {order.id}")


def record_event(
    session: Session,
    order: OrderModel,
    action: str,
    from_status: str | None,
    to_status: str,
    actor: Actor,
    occurred_at: datetime,
) -> OrderEventModel:
    row = OrderEventModel(
        order_id=order.id,
        action=action,
        from_status=from_status,
        to_status=to_status,
        actor_type=actor.type,
        actor_id=actor.id,
        occurred_at=occurred_at,
    )
    session.add(row)
    return row


def _check_tracking_free(session: Session, order: OrderModel, tracking_number: str) -> None:
    if tracking_number != order.tracking_number and tracking_number_taken(session, tracking_number):
        raise InvalidState(
            f"tracking number {tracking_number} is already assigned to another order",
            current_status=order.status,
        )


def transition_locked(
    session: Session,
    order: OrderModel,
    action: OrderAction,
    actor: Actor,
    *,
    now: datetime | None = None,
    tracking_number: str | None = None,
    reason: str | None = None,
    resolution: str | None = None,
    check_role: bool = True,
) -> TransitionDecision:
    if check_role:
        check_permitted(order, action, actor)
    decision = decide(order.status, action, reached_by=last_status_change(session, order.id))
    if decision.is_noop:
        logger.info("order=%s %s is a no-op in status %s", order.id, action.value, order.status)
        return decision

    now = now or now_utc()
    escrow = order.payment_method == PaymentMethod.ESCROW.value
    ledger = BalanceLedger(session) if escrow else None

    if action == OrderAction.SHIP:
        if not tracking_number:
            raise InvalidState("shipping requires a tracking number", current_status=order.status)
        _check_tracking_free(session, order, tracking_number)
        order.tracking_number = tracking_number
    elif action == OrderAction.CONFIRM_DELIVERY:
        order.delivered_at = now
        if ledger is not None:
            ledger.release_escrow(order)
    elif action == OrderAction.OPEN_DISPUTE:
        order.dispute_reason = reason
        order.dispute_opened_by = actor.id
    elif action == OrderAction.RESOLVE_FOR_SELLER:
        order.dispute_resolution = resolution
        if ledger is not None:
            ledger.release_escrow(order)
    elif action in {OrderAction.RESOLVE_FOR_BUYER, OrderAction.CANCEL}:
        if resolution is not None:
            order.dispute_resolution = resolution
        if ledger is not None:
            ledger.refund_escrow(order)

    order.status = decision.to_status.value
    order.updated_at = now
    record_event(session, order, action.value, decision.from_status.value, decision.to_status.value, actor, now)
    session.flush()
    logger.info(
        "order=%s %s %s -> %s by %s:%s",
        order.id,
        action.value,
        decision.from_status.value,
        decision.to_status.value,
        actor.type,
        actor.id,
    )
    return decision


def commit(session: Session) -> None:
    try:
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        raise


@contextmanager
def locked_order(session: Session, order_id: str) -> Iterator[OrderModel]:
    """Hold the order (and ledger) lock, yield the locked row, commit on success."""
    with order_lock(order_id), ledger_lock():
        try:
            yield get_order_for_update(session, order_id)
        except Exception:
            session.rollback()
            raise
        commit(session)


def apply_transition(
    session: Session,
    order_id: str,
    action: OrderAction,
    actor: Actor,
    *,
    now: datetime | None = None,
    tracking_number: str | None = None,
    reason: str | None = None,
    resolution: str | None = None,
) -> TransitionResult:
    with locked_order(session, order_id) as order:
        decision = transition_locked(
            session,
            order,
            action,
            actor,
            now=now,
            tracking_number=tracking_number,
            reason=reason,
            resolution=resolution,
        )
    return TransitionResult(order=order, decision=decision)


def generate_waybill(
    session: Session,
    order_id: str,
    actor: Actor,
    settings: Settings | None = None,
) -> TransitionResult:
    """Assign a carrier tracking number and move the order from PAID to SHIPPED."""
    settings = settings or get_settings()
    with locked_order(session, order_id) as order:
        check_permitted(order, OrderAction.SHIP, actor)
        if order.status == OrderStatus.SHIPPED.value and order.tracking_number:
            decision = decide(order.status, OrderAction.SHIP, reached_by=last_status_change(session, order.id))
        elif order.status != OrderStatus.PAID.value:
            raise InvalidState(
                f"waybill requires status PAID, order is {order.status}",
                current_status=order.status,
            )
        else:
            tracking_number = issue_unique_tracking_number(
                order.shipping_method,
                lambda candidate: tracking_number_taken(session, candidate),
                attempts=settings.tracking_number_attempts,
            )
            decision = transition_locked(session, order, OrderAction.SHIP, actor, tracking_number=tracking_number)
    return TransitionResult(order=order, decision=decision)


def update_tracking_number(session: Session, order_id: str, actor: Actor, tracking_number: str) -> OrderModel:
    with locked_order(session, order_id) as order:
        if not is_seller(order, actor):
            raise ActionNotPermitted(f"only the seller may change tracking of order {order.id}")
        if order.status != OrderStatus.SHIPPED.value:
            raise InvalidState(
                f"tracking number can only be changed while SHIPPED, order is {order.status}",
                current_status=order.status,
            )
        if order.tracking_number != tracking_number:
            _check_tracking_free(session, order, tracking_number)
            now = now_utc()
            order.tracking_number = tracking_number
            order.updated_at = now
            record_event(session, order, TRACKING_UPDATE_ACTION, order.status, order.status, actor, now)
    return order


def update_order(
    session: Session,
    order_id: str,
    actor: Actor,
    status: OrderStatus | None = None,
    tracking_number: str | None = None,
    settings: Settings | None = None,
) -> OrderModel:
    if status is None:
        if tracking_number is None:
            raise ValueError("nothing to update")
        return update_tracking_number(session, order_id, actor, tracking_number)

    status = OrderStatus(status)
    if tracking_number is not None and status != OrderStatus.SHIPPED:
        raise ValueError(f"tracking_number can only be sent with status SHIPPED, not {status.value}")

    current = get_order_with_items(session, order_id).status
    if tracking_number is not None and current == OrderStatus.SHIPPED.value:
        return update_tracking_number(session, order_id, actor, tracking_number)
    action = action_for_requested_status(current, status, reached_by=last_status_change(session, order_id))
    if action == OrderAction.SHIP and tracking_number is None:
        return generate_waybill(session, order_id, actor, settings=settings).order
    return apply_transition(session, order_id, action, actor, tracking_number=tracking_number).order


def complete_reviewed(
    session: Session,
    actor: Actor,
    now: datetime | None = None,
    review_window_days: int | None = None,
) -> list[str]:
    """Complete every DELIVERED order whose review window has elapsed without a dispute."""
    if actor.type not in {"system", "moderator"}:
        raise ActionNotPermitted("only system or moderator may complete reviewed orders")
    now = now or now_utc()
    window = review_window_days if review_window_days is not None else get_settings().review_window_days
    completed: list[str] = []
    for order_id in delivered_order_ids_before(session, now - timedelta(days=window)):
        try:
            result = apply_transition(session, order_id, OrderAction.COMPLETE, actor, now=now)
        except InvalidState as exc:
            # Disputed or cancelled since the scan.
            logger.info("skip completion of order=%s: %s", order_id, exc.message)
            continue
        if result.applied:
            completed.append(order_id)
    logger.info("completed %s reviewed orders", len(completed))
    return completed
