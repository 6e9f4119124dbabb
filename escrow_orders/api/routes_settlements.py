from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from escrow_orders.api.deps import get_payment_rail
from escrow_orders.api.serializers import serialize_order, serialize_settlement
from escrow_orders.connectors.payment_rail import PaymentRail
from escrow_orders.core.security import Actor, get_actor, require_roles
from escrow_orders.domain.errors import ActionNotPermitted
from escrow_orders.persistence.pg import get_session
from escrow_orders.persistence.queries import get_settlement
from escrow_orders.settlement.coordinator import settle_payment
from escrow_orders.settlement.poller import cancel_settlement_poll, get_settlement_poll

router = APIRouter(tags=["settlements"])


class SettlementRequest(BaseModel):
    transaction_reference: str = Field(min_length=1, max_length=128)
    order_ids: list[str] = Field(min_length=1, max_length=100)


@router.post("/settlements")
def settle_route(
    body: SettlementRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    rail: PaymentRail = Depends(get_payment_rail),
):
    result = settle_payment(session, body.transaction_reference, body.order_ids, actor, rail=rail)
    return {
        "replayed": result.replayed,
        "settlement": serialize_settlement(result.settlement),
        "orders": [serialize_order(order) for order in result.orders],
    }


@router.get("/settlements/{reference}")
def get_settlement_route(
    reference: str,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    settlement = get_settlement(session, reference)
    if settlement is None:
        poller = get_settlement_poll(reference)
        if poller is not None and actor.type in {"moderator", "system"}:
            return {"status": "AWAITING_CONFIRMATION", "last_error": poller.last_error}
        raise HTTPException(status_code=404, detail=f"settlement {reference} not found")
    if actor.type == "user" and actor.id != settlement.buyer_id:
        raise ActionNotPermitted(f"settlement {reference} belongs to another buyer")
    return {"status": "SETTLED", "settlement": serialize_settlement(settlement)}


@router.delete("/settlements/{reference}/poll")
def cancel_poll_route(
    reference: str,
    actor: Actor = Depends(get_actor),
):
    require_roles(actor, {"moderator", "system"}, detail="cancelling a settlement poll requires moderator/system role")
    if not cancel_settlement_poll(reference):
        raise HTTPException(status_code=404, detail=f"no active poll for {reference}")
    return {"reference": reference, "cancelled": True}
