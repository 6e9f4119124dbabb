"""
Promo code validation and discount computation.

Validation checks rules in a fixed order and the first failing rule is the one
reported: existence and activity, then scope, then the minimum purchase amount.
Promo codes are owned elsewhere; the engine only reads them and never consumes
uses.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Protocol, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from escrow_orders.domain.errors import PromoInvalid
from escrow_orders.domain.money import ZERO, to_money
from escrow_orders.domain.orders.aggregates import PlannedLine
from escrow_orders.persistence.models import PromoCodeModel


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"


class PromoScope(str, Enum):
    GLOBAL = "GLOBAL"
    SELLER = "SELLER"
    CATEGORY = "CATEGORY"
    PRODUCTS = "PRODUCTS"


@dataclass(frozen=True)
class PromoRecord:
    id: str
    code: str
    discount_type: DiscountType
    discount_value: Decimal
    scope: PromoScope = PromoScope.GLOBAL
    seller_id: str | None = None
    is_active: bool = True
    applicable_category: str | None = None
    applicable_product_ids: frozenset[str] = field(default_factory=frozenset)
    min_purchase_amount: Decimal | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    max_uses: int | None = None
    uses: int = 0


@dataclass(frozen=True)
class PromoDiscount:
    code_id: str
    code: str
    discount_type: DiscountType
    discount_value: Decimal


class PromoSource(Protocol):
    def get_promo(self, code: str) -> PromoRecord | None:
        ...


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlPromoSource:
    def __init__(self, session: Session):
        self.session = session

    def get_promo(self, code: str) -> PromoRecord | None:
        stmt = select(PromoCodeModel).where(func.upper(PromoCodeModel.code) == normalize_code(code))
        row = self.session.scalar(stmt)
        if row is None:
            return None
        return PromoRecord(
            id=row.id,
            code=row.code,
            discount_type=DiscountType(row.discount_type),
            discount_value=row.discount_value,
            scope=PromoScope(row.scope),
            seller_id=row.seller_id,
            is_active=row.is_active,
            applicable_category=row.applicable_category,
            applicable_product_ids=frozenset(row.applicable_product_ids or []),
            min_purchase_amount=row.min_purchase_amount,
            valid_from=_aware(row.valid_from),
            valid_until=_aware(row.valid_until),
            max_uses=row.max_uses,
            uses=row.uses or 0,
        )


def _check_available(promo: PromoRecord | None, code: str, now: datetime) -> PromoRecord:
    if promo is None:
        raise PromoInvalid(f"promo code {code} does not exist", code_text=code)
    if not promo.is_active:
        raise PromoInvalid(f"promo code {code} is not active", code_text=code)
    if promo.valid_from is not None and now < promo.valid_from:
        raise PromoInvalid(f"promo code {code} is not valid yet", code_text=code)
    if promo.valid_until is not None and now > promo.valid_until:
        raise PromoInvalid(f"promo code {code} has expired", code_text=code)
    if promo.max_uses is not None and promo.uses >= promo.max_uses:
        raise PromoInvalid(f"promo code {code} has no uses left", code_text=code)
    return promo


def _check_scope(promo: PromoRecord, code: str, seller_id: str, lines: Sequence[PlannedLine]) -> None:
    if promo.seller_id is not None and promo.seller_id != seller_id:
        raise PromoInvalid(f"promo code {code} does not apply to this seller", code_text=code)
    if promo.scope == PromoScope.SELLER and promo.seller_id is None:
        raise PromoInvalid(f"promo code {code} has no owning seller", code_text=code)
    if promo.scope == PromoScope.CATEGORY:
        wanted = (promo.applicable_category or "").strip().lower()
        if not any((line.category or "").strip().lower() == wanted for line in lines):
            raise PromoInvalid(
                f"promo code {code} only applies to category {promo.applicable_category}",
                code_text=code,
            )
    if promo.scope == PromoScope.PRODUCTS:
        if not any(line.product_id in promo.applicable_product_ids for line in lines):
            raise PromoInvalid(f"promo code {code} does not apply to these products", code_text=code)


def validate_promo(
    code: str,
    seller_id: str,
    lines: Sequence[PlannedLine],
    promos: PromoSource,
    now: datetime | None = None,
) -> PromoDiscount:
    normalized = normalize_code(code)
    if not normalized:
        raise ValueError("empty promo code is never validated; skip the promo step instead")
    now = now or datetime.now(timezone.utc)

    promo = _check_available(promos.get_promo(normalized), normalized, now)
    _check_scope(promo, normalized, seller_id, lines)

    subtotal = to_money(sum((line.line_total for line in lines), ZERO))
    if promo.min_purchase_amount is not None and subtotal < promo.min_purchase_amount:
        raise PromoInvalid(
            f"promo code {normalized} requires a minimum purchase of {to_money(promo.min_purchase_amount)}",
            code_text=normalized,
        )

    value = Decimal(promo.discount_value)
    if value < ZERO or (promo.discount_type == DiscountType.PERCENTAGE and value > 100):
        raise PromoInvalid(f"promo code {normalized} is misconfigured", code_text=normalized)

    return PromoDiscount(
        code_id=promo.id,
        code=promo.code,
        discount_type=DiscountType(promo.discount_type),
        discount_value=value,
    )


def compute_discount(subtotal: Decimal, discount: PromoDiscount) -> Decimal:
    if discount.discount_type == DiscountType.PERCENTAGE:
        amount = to_money(subtotal * discount.discount_value / Decimal(100))
    else:
        amount = to_money(min(discount.discount_value, subtotal))
    return min(amount, to_money(subtotal))
