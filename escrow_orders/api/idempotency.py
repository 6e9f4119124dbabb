from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from escrow_orders.api.utils import now_utc
from escrow_orders.ledger.canonical import sha256_hex
from escrow_orders.persistence.models import IdempotencyKeyModel

logger = logging.getLogger(__name__)


def request_fingerprint(payload: Any) -> str:
    return sha256_hex(payload)


def _get(session: Session, key: str, actor_id: str, operation: str) -> IdempotencyKeyModel | None:
    stmt = select(IdempotencyKeyModel).where(
        IdempotencyKeyModel.key == key,
        IdempotencyKeyModel.actor_id == actor_id,
        IdempotencyKeyModel.operation == operation,
    )
    return session.scalar(stmt)


def find_replay(
    session: Session,
    key: str,
    actor_id: str,
    operation: str,
    fingerprint: str,
) -> IdempotencyKeyModel | None:
    row = _get(session, key, actor_id, operation)
    if row is None:
        return None
    if row.request_hash != fingerprint:
        raise HTTPException(status_code=409, detail="Idempotency-Key was already used with a different request")
    logger.info("idempotent replay key=%s actor=%s operation=%s", key, actor_id, operation)
    return row


def store_response(
    session: Session,
    key: str,
    actor_id: str,
    operation: str,
    fingerprint: str,
    status_code: int,
    payload: dict,
) -> IdempotencyKeyModel:
    row = IdempotencyKeyModel(
        key=key,
        actor_id=actor_id,
        operation=operation,
        request_hash=fingerprint,
        status_code=status_code,
        response_payload=payload,
        created_at=now_utc(),
    )
    session.add(row)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        existing = _get(session, key, actor_id, operation)
        if existing is None:
            raise
        return existing
    return row
