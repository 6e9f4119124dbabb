"""
Explicit read paths.

Order items are never lazy-loaded; every query that needs them says so.
"""
from __future__ import annotations

from datetime import datetime
from typing import Iterable

from sqlalchemy import desc, select
from sqlalchemy.orm import Session, selectinload

from escrow_orders.domain.errors import ReferenceNotFound
from escrow_orders.persistence.models import (
    DisputeMessageModel,
    OrderEventModel,
    OrderModel,
    SettlementModel,
)
from escrow_orders.persistence.pg import supports_row_locks


def get_order_with_items(session: Session, order_id: str) -> OrderModel:
    stmt = select(OrderModel).options(selectinload(OrderModel.items)).where(OrderModel.id == order_id)
    order = session.scalar(stmt.execution_options(populate_existing=True))
    if order is None:
        raise ReferenceNotFound(f"order {order_id} not found")
    return order


def get_order_for_update(session: Session, order_id: str) -> OrderModel:
    stmt = select(OrderModel).options(selectinload(OrderModel.items)).where(OrderModel.id == order_id)
    if supports_row_locks(session):
        stmt = stmt.with_for_update(of=OrderModel)
    # populate_existing refreshes rows another transaction changed while we waited.
    order = session.scalar(stmt.execution_options(populate_existing=True))
    if order is None:
        raise ReferenceNotFound(f"order {order_id} not found")
    return order


def get_orders_for_update(session: Session, order_ids: Iterable[str]) -> list[OrderModel]:
    ids = sorted(set(order_ids))
    stmt = (
        select(OrderModel)
        .options(selectinload(OrderModel.items))
        .where(OrderModel.id.in_(ids))
        .order_by(OrderModel.id)
    )
    if supports_row_locks(session):
        stmt = stmt.with_for_update(of=OrderModel)
    orders = list(session.scalars(stmt.execution_options(populate_existing=True)).all())
    missing = sorted(set(ids) - {order.id for order in orders})
    if missing:
        raise ReferenceNotFound(f"orders not found: {', '.join(missing)}")
    return orders


def list_purchases(session: Session, buyer_id: str, limit: int = 100, offset: int = 0) -> list[OrderModel]:
    stmt = (
        select(OrderModel)
        .options(selectinload(OrderModel.items))
        .where(OrderModel.buyer_id == buyer_id)
        .order_by(desc(OrderModel.created_at), desc(OrderModel.id))
        .limit(limit)
        .offset(offset)
    )
    return list(session.scalars(stmt).all())


def list_sales(session: Session, seller_id: str, limit: int = 100, offset: int = 0) -> list[OrderModel]:
    stmt = (
        select(OrderModel)
        .options(selectinload(OrderModel.items))
        .where(OrderModel.seller_id == seller_id)
        .order_by(desc(OrderModel.created_at), desc(OrderModel.id))
        .limit(limit)
        .offset(offset)
    )
    return list(session.scalars(stmt).all())


def list_order_events(session: Session, order_id: str) -> list[OrderEventModel]:
    stmt = select(OrderEventModel).where(OrderEventModel.order_id == order_id).order_by(OrderEventModel.seq_id)
    return list(session.scalars(stmt).all())


def last_status_change(session: Session, order_id: str) -> str | None:
    """Action of the latest event that moved the order between two statuses."""
    stmt = (
        select(OrderEventModel.action)
        .where(
            OrderEventModel.order_id == order_id,
            OrderEventModel.from_status.is_not(None),
            OrderEventModel.from_status != OrderEventModel.to_status,
        )
        .order_by(desc(OrderEventModel.seq_id))
        .limit(1)
    )
    return session.scalar(stmt)


def list_dispute_messages(session: Session, order_id: str) -> list[DisputeMessageModel]:
    stmt = (
        select(DisputeMessageModel)
        .where(DisputeMessageModel.order_id == order_id)
        .order_by(DisputeMessageModel.seq_id)
    )
    return list(session.scalars(stmt).all())


def get_settlement(session: Session, reference: str) -> SettlementModel | None:
    stmt = select(SettlementModel).where(SettlementModel.transaction_reference == reference)
    return session.scalar(stmt)


def tracking_number_taken(session: Session, tracking_number: str) -> bool:
    stmt = select(OrderModel.id).where(OrderModel.tracking_number == tracking_number).limit(1)
    return session.scalar(stmt) is not None


def delivered_order_ids_before(session: Session, cutoff: datetime) -> list[str]:
    stmt = (
        select(OrderModel.id)
        .where(OrderModel.status == "DELIVERED", OrderModel.delivered_at <= cutoff)
        .order_by(OrderModel.delivered_at)
    )
    return list(session.scalars(stmt).all())
