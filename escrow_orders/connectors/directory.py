"""
Read-only adapters for the identity and catalog subsystems.

The engine never writes to these tables; it resolves ids to the exact records
each planning step needs and snapshots what it keeps.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from escrow_orders.persistence.models import ProductModel, UserModel


@dataclass(frozen=True)
class UserRecord:
    id: str
    display_name: str
    payout_address: str | None = None


@dataclass(frozen=True)
class ProductRecord:
    id: str
    seller_id: str
    title: str
    category: str | None = None
    weight_grams: int | None = None
    stock: int | None = None
    is_active: bool = True
    authentication_available: bool = False
    gift_wrap_available: bool = False
    gift_wrap_price: Decimal | None = None


class IdentityDirectory(Protocol):
    def get_user(self, user_id: str) -> UserRecord | None:
        ...


class Catalog(Protocol):
    def get_products(self, product_ids: Iterable[str]) -> dict[str, ProductRecord]:
        ...


class SqlIdentityDirectory:
    def __init__(self, session: Session):
        self.session = session

    def get_user(self, user_id: str) -> UserRecord | None:
        row = self.session.get(UserModel, user_id)
        if row is None:
            return None
        return UserRecord(id=row.id, display_name=row.display_name, payout_address=row.payout_address)


class SqlCatalog:
    def __init__(self, session: Session):
        self.session = session

    def get_products(self, product_ids: Iterable[str]) -> dict[str, ProductRecord]:
        ids = sorted(set(product_ids))
        if not ids:
            return {}
        rows = self.session.scalars(select(ProductModel).where(ProductModel.id.in_(ids))).all()
        return {
            row.id: ProductRecord(
                id=row.id,
                seller_id=row.seller_id,
                title=row.title,
                category=row.category,
                weight_grams=row.weight_grams,
                stock=row.stock,
                is_active=row.is_active,
                authentication_available=row.authentication_available,
                gift_wrap_available=row.gift_wrap_available,
                gift_wrap_price=row.gift_wrap_price,
            )
            for row in rows
        }
