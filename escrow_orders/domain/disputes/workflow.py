from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from sqlalchemy.orm import Session

from escrow_orders.api.utils import now_utc
from escrow_orders.core.security import Actor
from escrow_orders.domain.errors import ActionNotPermitted, InvalidState, ReferenceNotFound
from escrow_orders.domain.orders.aggregates import OrderStatus
from escrow_orders.domain.orders.commands import (
    TransitionResult,
    check_can_view,
    is_buyer,
    is_seller,
    locked_order,
    transition_locked,
)
from escrow_orders.domain.orders.state_machine import OrderAction
from escrow_orders.persistence.models import DisputeMessageModel, OrderModel
from escrow_orders.persistence.queries import get_order_with_items, list_dispute_messages

logger = logging.getLogger(__name__)

SYSTEM_SENDER = "system"


class DisputeOutcome(str, Enum):
    BUYER = "BUYER"
    SELLER = "SELLER"


class DisputeStatus(str, Enum):
    OPEN = "OPEN"
    RESOLVED_BUYER = "RESOLVED_BUYER"
    RESOLVED_SELLER = "RESOLVED_SELLER"


@dataclass
class DisputeView:
    order: OrderModel
    status: DisputeStatus
    messages: list[DisputeMessageModel]


def _append_message(
    session: Session,
    order: OrderModel,
    sender_type: str,
    sender_id: str,
    text: str | None,
    image_url: str | None,
    now: datetime,
) -> DisputeMessageModel:
    row = DisputeMessageModel(
        order_id=order.id,
        sender_type=sender_type,
        sender_id=sender_id,
        text=text,
        image_url=image_url,
        created_at=now,
    )
    session.add(row)
    session.flush()
    return row


def open_dispute(session: Session, order_id: str, actor: Actor, reason: str) -> TransitionResult:
    with locked_order(session, order_id) as order:
        decision = transition_locked(session, order, OrderAction.OPEN_DISPUTE, actor, reason=reason)
        if not decision.is_noop:
            _append_message(session, order, actor.type, actor.id, reason, None, now_utc())
    return TransitionResult(order=order, decision=decision)


def add_message(
    session: Session,
    order_id: str,
    actor: Actor,
    text: str | None = None,
    image_url: str | None = None,
) -> DisputeMessageModel:
    if not (text and text.strip()) and not image_url:
        raise ValueError("a dispute message needs text or an image")
    with locked_order(session, order_id) as order:
        if not (actor.type == "moderator" or is_buyer(order, actor) or is_seller(order, actor)):
            raise ActionNotPermitted(f"{actor.type} {actor.id} may not post in the dispute of order {order.id}")
        if order.status != OrderStatus.DISPUTED.value:
            raise InvalidState(
                f"messages can only be added while the order is DISPUTED, order is {order.status}",
                current_status=order.status,
            )
        message = _append_message(session, order, actor.type, actor.id, text, image_url, now_utc())
    return message


def resolve_dispute(
    session: Session,
    order_id: str,
    actor: Actor,
    outcome: DisputeOutcome,
    resolution: str | None = None,
) -> TransitionResult:
    outcome = DisputeOutcome(outcome)
    action = OrderAction.RESOLVE_FOR_BUYER if outcome == DisputeOutcome.BUYER else OrderAction.RESOLVE_FOR_SELLER
    with locked_order(session, order_id) as order:
        decision = transition_locked(session, order, action, actor, resolution=resolution)
        if not decision.is_noop:
            note = f"Dispute resolved in favour of the {outcome.value.lower()}"
            if resolution:
                note = f"{note}: {resolution}"
            _append_message(session, order, SYSTEM_SENDER, actor.id, note, None, now_utc())
    logger.info("dispute order=%s resolved for %s by %s", order_id, outcome.value, actor.id)
    return TransitionResult(order=order, decision=decision)


def dispute_status(order: OrderModel) -> DisputeStatus:
    if order.status == OrderStatus.DISPUTED.value:
        return DisputeStatus.OPEN
    if order.status == OrderStatus.CANCELLED.value:
        return DisputeStatus.RESOLVED_BUYER
    if order.status == OrderStatus.COMPLETED.value:
        return DisputeStatus.RESOLVED_SELLER
    raise InvalidState(f"order {order.id} has no dispute in status {order.status}", current_status=order.status)


def get_dispute(session: Session, order_id: str, actor: Actor) -> DisputeView:
    order = get_order_with_items(session, order_id)
    check_can_view(order, actor)
    if order.dispute_opened_by is None:
        raise ReferenceNotFound(f"order {order_id} has no dispute")
    return DisputeView(order=order, status=dispute_status(order), messages=list_dispute_messages(session, order_id))
