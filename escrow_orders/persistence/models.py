from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import JSON


def _json_type():
    return JSON().with_variant(JSONB(astext_type=Text()), "postgresql")


def _money_type():
    return Numeric(12, 2, asdecimal=True)


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


# Identity and catalog tables are owned by their subsystems; the engine only reads them.
class UserModel(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    payout_address: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)


class ProductModel(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    weight_grams: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    stock: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    authentication_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    gift_wrap_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    gift_wrap_price: Mapped[Optional[Decimal]] = mapped_column(_money_type(), nullable=True)


class PromoCodeModel(Base):
    __tablename__ = "promo_codes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    seller_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    discount_type: Mapped[str] = mapped_column(String(16), nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(_money_type(), nullable=False)
    scope: Mapped[str] = mapped_column(String(16), nullable=False, default="GLOBAL")
    applicable_category: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    applicable_product_ids: Mapped[list] = mapped_column(_json_type(), nullable=False, default=list)
    min_purchase_amount: Mapped[Optional[Decimal]] = mapped_column(_money_type(), nullable=True)
    valid_from: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_until: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class OrderModel(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    seller_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    subtotal: Mapped[Decimal] = mapped_column(_money_type(), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(_money_type(), nullable=False, default=Decimal("0.00"))
    shipping_cost: Mapped[Decimal] = mapped_column(_money_type(), nullable=False, default=Decimal("0.00"))
    addons_total: Mapped[Decimal] = mapped_column(_money_type(), nullable=False, default=Decimal("0.00"))
    total: Mapped[Decimal] = mapped_column(_money_type(), nullable=False)
    promo_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    shipping_method: Mapped[str] = mapped_column(String(16), nullable=False)
    shipping_address: Mapped[dict] = mapped_column(_json_type(), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(16), nullable=False)
    authentication_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(32), unique=True, nullable=True)
    transaction_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    dispute_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    dispute_opened_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    dispute_resolution: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    items: Mapped[list["OrderItemModel"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItemModel.position",
        lazy="raise",
    )


class OrderItemModel(Base):
    __tablename__ = "order_items"
    __table_args__ = (
        UniqueConstraint("order_id", "position", name="uq_order_items_position"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    product_title: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(_money_type(), nullable=False)
    variant: Mapped[Optional[dict]] = mapped_column(_json_type(), nullable=True)
    purchase_type: Mapped[str] = mapped_column(String(16), nullable=False)
    gift_wrap_fee: Mapped[Decimal] = mapped_column(_money_type(), nullable=False, default=Decimal("0.00"))

    order: Mapped[OrderModel] = relationship(back_populates="items", lazy="raise")


class OrderEventModel(Base):
    __tablename__ = "order_events"

    seq_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    from_status: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    to_status: Mapped[str] = mapped_column(String(16), nullable=False)
    actor_type: Mapped[str] = mapped_column(String(16), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class DisputeMessageModel(Base):
    __tablename__ = "dispute_messages"

    seq_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False, default=_new_id)
    order_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
    )
    sender_type: Mapped[str] = mapped_column(String(16), nullable=False)
    sender_id: Mapped[str] = mapped_column(String(128), nullable=False)
    text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SettlementModel(Base):
    __tablename__ = "settlements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    transaction_reference: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    payment_method: Mapped[str] = mapped_column(String(16), nullable=False)
    buyer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    order_ids: Mapped[list] = mapped_column(_json_type(), nullable=False)
    recipient: Mapped[str] = mapped_column(String(128), nullable=False)
    verified_amount: Mapped[Decimal] = mapped_column(_money_type(), nullable=False)
    expected_amount: Mapped[Decimal] = mapped_column(_money_type(), nullable=False)
    excess_amount: Mapped[Decimal] = mapped_column(_money_type(), nullable=False, default=Decimal("0.00"))
    settled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class LedgerEntryModel(Base):
    __tablename__ = "ledger_entries"

    seq_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entry_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False, default=_new_id)
    idempotency_key: Mapped[str] = mapped_column(String(256), unique=True, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    account_id: Mapped[str] = mapped_column(String(64), nullable=False)
    bucket: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[Decimal] = mapped_column(_money_type(), nullable=False)
    order_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    transaction_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    prev_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    signature: Mapped[str] = mapped_column(Text, nullable=False)


class IdempotencyKeyModel(Base):
    __tablename__ = "idempotency_keys"
    __table_args__ = (
        UniqueConstraint("key", "actor_id", "operation", name="uq_idempotency_key_actor_operation"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(128), nullable=False)
    operation: Mapped[str] = mapped_column(String(32), nullable=False)
    request_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    status_code: Mapped[int] = mapped_column(Integer, nullable=False)
    response_payload: Mapped[dict] = mapped_column(_json_type(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


Index("ix_orders_buyer_created", OrderModel.buyer_id, OrderModel.created_at)
Index("ix_orders_seller_created", OrderModel.seller_id, OrderModel.created_at)
Index("ix_orders_status", OrderModel.status)
Index("ix_order_events_order", OrderEventModel.order_id, OrderEventModel.seq_id)
Index("ix_dispute_messages_order", DisputeMessageModel.order_id, DisputeMessageModel.seq_id)
Index("ix_ledger_entries_account", LedgerEntryModel.account_id, LedgerEntryModel.bucket)
Index("ix_ledger_entries_order", LedgerEntryModel.order_id)
