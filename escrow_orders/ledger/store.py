"""
Escrow balance ledger.

Balances are never stored; they are sums over append-only entries. Every entry is
signed with the platform key and chained to its predecessor by hash so that the
history can be audited with ``verify_chain``. Each posting carries an
idempotency key, and re-posting a key returns the stored entry instead of
writing a second one.
"""
from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Iterable

from sqlalchemy import Select, desc, select
from sqlalchemy.orm import Session

from escrow_orders.domain.money import ZERO, to_money
from escrow_orders.ledger.canonical import sha256_hex
from escrow_orders.ledger.signing import KeyMaterial, load_platform_key, sign_object, verify_object
from escrow_orders.persistence.models import LedgerEntryModel, OrderModel

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


class Bucket(str, Enum):
    ESCROW_HELD = "ESCROW_HELD"
    WITHDRAWABLE = "WITHDRAWABLE"
    REFUNDABLE = "REFUNDABLE"


class EntryKind(str, Enum):
    ESCROW_HOLD = "ESCROW_HOLD"
    ESCROW_RELEASE = "ESCROW_RELEASE"
    ESCROW_REFUND = "ESCROW_REFUND"
    OVERPAYMENT = "OVERPAYMENT"


def _sign_payload(row: LedgerEntryModel) -> dict:
    return {
        "entry_id": row.entry_id,
        "idempotency_key": row.idempotency_key,
        "occurred_at": row.occurred_at,
        "kind": row.kind,
        "account_id": row.account_id,
        "bucket": row.bucket,
        "amount": row.amount,
        "order_id": row.order_id,
        "transaction_reference": row.transaction_reference,
        "prev_hash": row.prev_hash,
    }


def _hash_input(row: LedgerEntryModel) -> dict:
    payload = _sign_payload(row)
    payload["signature"] = row.signature
    return payload


class BalanceLedger:
    def __init__(self, session: Session, signer: KeyMaterial | None = None):
        self.session = session
        self.signer = signer or load_platform_key()

    def _latest_entry_hash(self) -> str:
        stmt = select(LedgerEntryModel.entry_hash).order_by(desc(LedgerEntryModel.seq_id)).limit(1)
        return self.session.scalar(stmt) or GENESIS_HASH

    def get_by_key(self, idempotency_key: str) -> LedgerEntryModel | None:
        stmt = select(LedgerEntryModel).where(LedgerEntryModel.idempotency_key == idempotency_key)
        return self.session.scalar(stmt)

    def post(
        self,
        kind: EntryKind,
        account_id: str,
        bucket: Bucket,
        amount: Decimal,
        idempotency_key: str,
        order_id: str | None = None,
        transaction_reference: str | None = None,
        occurred_at: datetime | None = None,
    ) -> LedgerEntryModel:
        existing = self.get_by_key(idempotency_key)
        if existing is not None:
            return existing

        row = LedgerEntryModel(
            entry_id=str(uuid.uuid4()),
            idempotency_key=idempotency_key,
            occurred_at=occurred_at or datetime.now(timezone.utc),
            kind=EntryKind(kind).value,
            account_id=account_id,
            bucket=Bucket(bucket).value,
            amount=to_money(amount),
            order_id=order_id,
            transaction_reference=transaction_reference,
            prev_hash=self._latest_entry_hash(),
        )
        row.signature = sign_object(_sign_payload(row), self.signer)
        row.entry_hash = sha256_hex(_hash_input(row))
        self.session.add(row)
        self.session.flush()
        logger.info(
            "ledger post kind=%s account=%s bucket=%s amount=%s order=%s",
            row.kind,
            row.account_id,
            row.bucket,
            row.amount,
            row.order_id,
        )
        return row

    def order_position(self, order_id: str, account_id: str) -> dict[Bucket, Decimal]:
        stmt = select(LedgerEntryModel).where(
            LedgerEntryModel.order_id == order_id,
            LedgerEntryModel.account_id == account_id,
        )
        position = {bucket: ZERO for bucket in Bucket}
        for row in self.session.scalars(stmt):
            position[Bucket(row.bucket)] += row.amount
        return position

    def hold_escrow(self, order: OrderModel, transaction_reference: str | None = None) -> LedgerEntryModel:
        return self.post(
            kind=EntryKind.ESCROW_HOLD,
            account_id=order.seller_id,
            bucket=Bucket.ESCROW_HELD,
            amount=order.total,
            idempotency_key=f"{EntryKind.ESCROW_HOLD.value}:{order.id}",
            order_id=order.id,
            transaction_reference=transaction_reference or order.transaction_reference,
        )

    def release_escrow(self, order: OrderModel) -> list[LedgerEntryModel]:
        held = self.order_position(order.id, order.seller_id)[Bucket.ESCROW_HELD]
        if held <= ZERO:
            return []
        key = f"{EntryKind.ESCROW_RELEASE.value}:{order.id}"
        return [
            self.post(
                kind=EntryKind.ESCROW_RELEASE,
                account_id=order.seller_id,
                bucket=Bucket.ESCROW_HELD,
                amount=-held,
                idempotency_key=f"{key}:{Bucket.ESCROW_HELD.value}",
                order_id=order.id,
                transaction_reference=order.transaction_reference,
            ),
            self.post(
                kind=EntryKind.ESCROW_RELEASE,
                account_id=order.seller_id,
                bucket=Bucket.WITHDRAWABLE,
                amount=held,
                idempotency_key=f"{key}:{Bucket.WITHDRAWABLE.value}",
                order_id=order.id,
                transaction_reference=order.transaction_reference,
            ),
        ]

    def refund_escrow(self, order: OrderModel) -> list[LedgerEntryModel]:
        """Return the order's custody to the buyer, clawing back released funds."""
        position = self.order_position(order.id, order.seller_id)
        key = f"{EntryKind.ESCROW_REFUND.value}:{order.id}"
        entries: list[LedgerEntryModel] = []
        refunded = ZERO
        for bucket in (Bucket.ESCROW_HELD, Bucket.WITHDRAWABLE):
            amount = position[bucket]
            if amount <= ZERO:
                continue
            entries.append(
                self.post(
                    kind=EntryKind.ESCROW_REFUND,
                    account_id=order.seller_id,
                    bucket=bucket,
                    amount=-amount,
                    idempotency_key=f"{key}:{order.seller_id}:{bucket.value}",
                    order_id=order.id,
                    transaction_reference=order.transaction_reference,
                )
            )
            refunded += amount
        if refunded > ZERO:
            entries.append(
                self.post(
                    kind=EntryKind.ESCROW_REFUND,
                    account_id=order.buyer_id,
                    bucket=Bucket.REFUNDABLE,
                    amount=refunded,
                    idempotency_key=f"{key}:{order.buyer_id}:{Bucket.REFUNDABLE.value}",
                    order_id=order.id,
                    transaction_reference=order.transaction_reference,
                )
            )
        return entries

    def credit_overpayment(self, buyer_id: str, amount: Decimal, transaction_reference: str) -> LedgerEntryModel:
        return self.post(
            kind=EntryKind.OVERPAYMENT,
            account_id=buyer_id,
            bucket=Bucket.REFUNDABLE,
            amount=amount,
            idempotency_key=f"{EntryKind.OVERPAYMENT.value}:{transaction_reference}",
            transaction_reference=transaction_reference,
        )

    def balances(self, account_id: str) -> dict[str, Decimal]:
        totals: dict[str, Decimal] = defaultdict(lambda: ZERO)
        for bucket in Bucket:
            totals[bucket.value] = ZERO
        stmt = select(LedgerEntryModel).where(LedgerEntryModel.account_id == account_id)
        for row in self.session.scalars(stmt):
            totals[row.bucket] += row.amount
        return {bucket: to_money(amount) for bucket, amount in totals.items()}

    def list_entries(
        self,
        account_id: str | None = None,
        order_id: str | None = None,
        kinds: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[LedgerEntryModel]:
        stmt: Select[tuple[LedgerEntryModel]] = select(LedgerEntryModel).order_by(LedgerEntryModel.seq_id.asc())
        if account_id is not None:
            stmt = stmt.where(LedgerEntryModel.account_id == account_id)
        if order_id is not None:
            stmt = stmt.where(LedgerEntryModel.order_id == order_id)
        if kinds:
            stmt = stmt.where(LedgerEntryModel.kind.in_(list(kinds)))
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt).all())

    def verify_chain(self) -> bool:
        prev = GENESIS_HASH
        public_key = self.signer.public_key_b64
        for row in self.list_entries():
            if row.prev_hash != prev:
                logger.warning("ledger chain broken at seq=%s: prev_hash mismatch", row.seq_id)
                return False
            if not verify_object(_sign_payload(row), row.signature, public_key):
                logger.warning("ledger chain broken at seq=%s: bad signature", row.seq_id)
                return False
            if sha256_hex(_hash_input(row)) != row.entry_hash:
                logger.warning("ledger chain broken at seq=%s: hash mismatch", row.seq_id)
                return False
            prev = row.entry_hash
        return True
