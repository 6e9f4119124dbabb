from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any

from escrow_orders.domain.money import ZERO, clamp_non_negative, to_money


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    DISPUTED = "DISPUTED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})


class PaymentMethod(str, Enum):
    ESCROW = "ESCROW"
    DIRECT = "DIRECT"


class ShippingMethod(str, Enum):
    NOVA_POSHTA = "NOVA_POSHTA"
    UKRPOSHTA = "UKRPOSHTA"


class PurchaseType(str, Enum):
    RETAIL = "RETAIL"
    WHOLESALE = "WHOLESALE"


@dataclass(frozen=True)
class CartLine:
    product_id: str
    seller_id: str
    quantity: int
    price_at_time_of_addition: Decimal
    purchase_type: PurchaseType = PurchaseType.RETAIL
    variant: dict[str, Any] | None = None
    gift_wrap: bool = False


@dataclass(frozen=True)
class PlannedLine:
    product_id: str
    product_title: str
    category: str | None
    weight_grams: int | None
    quantity: int
    unit_price: Decimal
    purchase_type: PurchaseType
    variant: dict[str, Any] | None = None
    gift_wrap_fee: Decimal = ZERO
    authentication_available: bool = False

    @property
    def line_total(self) -> Decimal:
        return to_money(self.unit_price * self.quantity)


@dataclass
class OrderPlan:
    seller_id: str
    lines: list[PlannedLine] = field(default_factory=list)

    @property
    def subtotal(self) -> Decimal:
        return to_money(sum((line.line_total for line in self.lines), ZERO))

    @property
    def gift_wrap_total(self) -> Decimal:
        return to_money(sum((line.gift_wrap_fee for line in self.lines), ZERO))

    @property
    def authentication_available(self) -> bool:
        return any(line.authentication_available for line in self.lines)


@dataclass(frozen=True)
class PricedOrder:
    plan: OrderPlan
    discount_amount: Decimal
    shipping_cost: Decimal
    addons_total: Decimal
    promo_code: str | None = None
    authentication_requested: bool = False

    @property
    def subtotal(self) -> Decimal:
        return self.plan.subtotal

    @property
    def total(self) -> Decimal:
        return order_total(self.subtotal, self.discount_amount, self.shipping_cost, self.addons_total)


def order_total(subtotal: Decimal, discount: Decimal, shipping: Decimal, addons: Decimal = ZERO) -> Decimal:
    return to_money(clamp_non_negative(subtotal - discount + shipping + addons))
