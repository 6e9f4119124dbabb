from __future__ import annotations

from decimal import Decimal

from escrow_orders.api.utils import iso_z
from escrow_orders.domain.orders.checkout import PartitionOutcome
from escrow_orders.persistence.models import (
    DisputeMessageModel,
    LedgerEntryModel,
    OrderEventModel,
    OrderModel,
    SettlementModel,
)


def money(value: Decimal | None) -> str | None:
    if value is None:
        return None
    return format(Decimal(value).quantize(Decimal("0.01")), "f")


def serialize_order(order: OrderModel) -> dict:
    return {
        "id": order.id,
        "buyer_id": order.buyer_id,
        "seller_id": order.seller_id,
        "status": order.status,
        "subtotal": money(order.subtotal),
        "discount_amount": money(order.discount_amount),
        "shipping_cost": money(order.shipping_cost),
        "addons_total": money(order.addons_total),
        "total": money(order.total),
        "promo_code": order.promo_code,
        "shipping_method": order.shipping_method,
        "shipping_address": order.shipping_address,
        "payment_method": order.payment_method,
        "authentication_requested": order.authentication_requested,
        "tracking_number": order.tracking_number,
        "transaction_reference": order.transaction_reference,
        "dispute_reason": order.dispute_reason,
        "dispute_opened_by": order.dispute_opened_by,
        "dispute_resolution": order.dispute_resolution,
        "created_at": iso_z(order.created_at),
        "updated_at": iso_z(order.updated_at),
        "delivered_at": iso_z(order.delivered_at),
        "items": [
            {
                "position": item.position,
                "product_id": item.product_id,
                "product_title": item.product_title,
                "quantity": item.quantity,
                "unit_price": money(item.unit_price),
                "variant": item.variant,
                "purchase_type": item.purchase_type,
                "gift_wrap_fee": money(item.gift_wrap_fee),
            }
            for item in order.items
        ],
    }


def serialize_outcome(outcome: PartitionOutcome) -> dict:
    return {
        "seller_id": outcome.seller_id,
        "status": outcome.status,
        "item_count": outcome.item_count,
        "order_id": outcome.order_id,
        "total": money(outcome.total),
        "error": outcome.error,
        "detail": outcome.detail,
        "promo_error": outcome.promo_error,
    }


def serialize_event(event: OrderEventModel) -> dict:
    return {
        "seq_id": event.seq_id,
        "action": event.action,
        "from_status": event.from_status,
        "to_status": event.to_status,
        "actor": {"type": event.actor_type, "id": event.actor_id},
        "occurred_at": iso_z(event.occurred_at),
    }


def serialize_message(message: DisputeMessageModel) -> dict:
    return {
        "seq_id": message.seq_id,
        "message_id": message.message_id,
        "sender": {"type": message.sender_type, "id": message.sender_id},
        "text": message.text,
        "image_url": message.image_url,
        "created_at": iso_z(message.created_at),
    }


def serialize_settlement(settlement: SettlementModel) -> dict:
    return {
        "transaction_reference": settlement.transaction_reference,
        "payment_method": settlement.payment_method,
        "buyer_id": settlement.buyer_id,
        "order_ids": list(settlement.order_ids),
        "recipient": settlement.recipient,
        "verified_amount": money(settlement.verified_amount),
        "expected_amount": money(settlement.expected_amount),
        "excess_amount": money(settlement.excess_amount),
        "settled_at": iso_z(settlement.settled_at),
    }


def serialize_ledger_entry(entry: LedgerEntryModel) -> dict:
    return {
        "seq_id": entry.seq_id,
        "entry_id": entry.entry_id,
        "occurred_at": iso_z(entry.occurred_at),
        "kind": entry.kind,
        "account_id": entry.account_id,
        "bucket": entry.bucket,
        "amount": money(entry.amount),
        "order_id": entry.order_id,
        "transaction_reference": entry.transaction_reference,
        "prev_hash": entry.prev_hash,
        "entry_hash": entry.entry_hash,
        "signature": entry.signature,
    }
