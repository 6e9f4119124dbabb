"""
Order lifecycle transitions.

Every action names the statuses it may be applied from and the status it moves
the order to. Re-applying the action that produced the current status is a
no-op so that retried client requests succeed; anything else outside the graph
raises ``InvalidState``, including a different action that happens to target the
status the order is already in.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from escrow_orders.domain.errors import InvalidState
from escrow_orders.domain.orders.aggregates import TERMINAL_STATUSES, OrderStatus


class OrderAction(str, Enum):
    MARK_PAID = "MARK_PAID"
    SHIP = "SHIP"
    CONFIRM_DELIVERY = "CONFIRM_DELIVERY"
    COMPLETE = "COMPLETE"
    OPEN_DISPUTE = "OPEN_DISPUTE"
    RESOLVE_FOR_BUYER = "RESOLVE_FOR_BUYER"
    RESOLVE_FOR_SELLER = "RESOLVE_FOR_SELLER"
    CANCEL = "CANCEL"


_NON_TERMINAL = frozenset(status for status in OrderStatus if status not in TERMINAL_STATUSES)

TRANSITIONS: dict[OrderAction, tuple[frozenset[OrderStatus], OrderStatus]] = {
    OrderAction.MARK_PAID: (frozenset({OrderStatus.PENDING}), OrderStatus.PAID),
    OrderAction.SHIP: (frozenset({OrderStatus.PAID}), OrderStatus.SHIPPED),
    OrderAction.CONFIRM_DELIVERY: (frozenset({OrderStatus.SHIPPED}), OrderStatus.DELIVERED),
    OrderAction.COMPLETE: (frozenset({OrderStatus.DELIVERED}), OrderStatus.COMPLETED),
    OrderAction.OPEN_DISPUTE: (
        frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED}),
        OrderStatus.DISPUTED,
    ),
    OrderAction.RESOLVE_FOR_BUYER: (frozenset({OrderStatus.DISPUTED}), OrderStatus.CANCELLED),
    OrderAction.RESOLVE_FOR_SELLER: (frozenset({OrderStatus.DISPUTED}), OrderStatus.COMPLETED),
    OrderAction.CANCEL: (_NON_TERMINAL, OrderStatus.CANCELLED),
}


@dataclass(frozen=True)
class TransitionDecision:
    action: OrderAction
    from_status: OrderStatus
    to_status: OrderStatus

    @property
    def is_noop(self) -> bool:
        return self.from_status == self.to_status


def target_of(action: OrderAction) -> OrderStatus:
    return TRANSITIONS[action][1]


def decide(
    current: OrderStatus | str,
    action: OrderAction,
    reached_by: OrderAction | str | None = None,
) -> TransitionDecision:
    """``reached_by`` is the action that moved the order into ``current``, when known."""
    current = OrderStatus(current)
    sources, target = TRANSITIONS[action]
    if current == target and (reached_by is None or OrderAction(reached_by) == action):
        return TransitionDecision(action=action, from_status=current, to_status=current)
    if current == target:
        raise InvalidState(
            f"order reached {current.value} via {OrderAction(reached_by).value}; {action.value} is not allowed",
            current_status=current.value,
        )
    if current in TERMINAL_STATUSES:
        raise InvalidState(
            f"order is {current.value} (terminal); {action.value} is not allowed",
            current_status=current.value,
        )
    if current not in sources:
        raise InvalidState(
            f"{action.value} requires status in {sorted(s.value for s in sources)}, order is {current.value}",
            current_status=current.value,
        )
    return TransitionDecision(action=action, from_status=current, to_status=target)


def action_for_requested_status(
    current: OrderStatus | str,
    requested: OrderStatus | str,
    reached_by: OrderAction | str | None = None,
) -> OrderAction:
    """Map a ``PATCH``-style target status onto the single action that reaches it.

    Requesting the status the order is already in maps to the action that got it
    there, so a repeated request replays instead of failing.
    """
    current = OrderStatus(current)
    requested = OrderStatus(requested)
    if reached_by is not None and current == requested and target_of(OrderAction(reached_by)) == requested:
        return OrderAction(reached_by)
    if requested == OrderStatus.COMPLETED:
        if current == OrderStatus.DISPUTED:
            return OrderAction.RESOLVE_FOR_SELLER
        return OrderAction.COMPLETE
    if requested == OrderStatus.CANCELLED:
        if current == OrderStatus.DISPUTED:
            return OrderAction.RESOLVE_FOR_BUYER
        return OrderAction.CANCEL
    mapping = {
        OrderStatus.PAID: OrderAction.MARK_PAID,
        OrderStatus.SHIPPED: OrderAction.SHIP,
        OrderStatus.DELIVERED: OrderAction.CONFIRM_DELIVERY,
        OrderStatus.DISPUTED: OrderAction.OPEN_DISPUTE,
    }
    action = mapping.get(requested)
    if action is None:
        raise InvalidState(
            f"status {requested.value} cannot be requested directly",
            current_status=current.value,
        )
    return action
