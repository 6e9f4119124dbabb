from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.orm import Session

from escrow_orders.api.serializers import serialize_message, serialize_order
from escrow_orders.core.security import Actor, get_actor
from escrow_orders.domain.disputes.workflow import (
    DisputeOutcome,
    add_message,
    get_dispute,
    open_dispute,
    resolve_dispute,
)
from escrow_orders.persistence.pg import get_session

router = APIRouter(tags=["disputes"])


class OpenDisputeRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=4000)


class DisputeMessageRequest(BaseModel):
    text: str | None = Field(default=None, max_length=4000)
    image_url: str | None = Field(default=None, max_length=512, pattern=r"^https?://")

    @model_validator(mode="after")
    def _text_or_image(self) -> "DisputeMessageRequest":
        if not (self.text and self.text.strip()) and not self.image_url:
            raise ValueError("text or image_url is required")
        return self


class ResolveDisputeRequest(BaseModel):
    outcome: DisputeOutcome
    resolution: str | None = Field(default=None, max_length=4000)


def _dispute_payload(session: Session, order_id: str, actor: Actor) -> dict:
    view = get_dispute(session, order_id, actor)
    return {
        "order_id": view.order.id,
        "status": view.status.value,
        "order_status": view.order.status,
        "reason": view.order.dispute_reason,
        "opened_by": view.order.dispute_opened_by,
        "resolution": view.order.dispute_resolution,
        "messages": [serialize_message(message) for message in view.messages],
    }


@router.post("/disputes/{order_id}")
def open_dispute_route(
    order_id: str,
    body: OpenDisputeRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    result = open_dispute(session, order_id, actor, body.reason)
    payload = _dispute_payload(session, order_id, actor)
    payload["applied"] = result.applied
    return payload


@router.get("/disputes/{order_id}")
def get_dispute_route(
    order_id: str,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    return _dispute_payload(session, order_id, actor)


@router.post("/disputes/{order_id}/messages")
def add_message_route(
    order_id: str,
    body: DisputeMessageRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    message = add_message(session, order_id, actor, text=body.text, image_url=body.image_url)
    return serialize_message(message)


@router.post("/disputes/{order_id}/resolve")
def resolve_dispute_route(
    order_id: str,
    body: ResolveDisputeRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    result = resolve_dispute(session, order_id, actor, body.outcome, resolution=body.resolution)
    payload = _dispute_payload(session, order_id, actor)
    payload["applied"] = result.applied
    payload["order"] = serialize_order(result.order)
    return payload
