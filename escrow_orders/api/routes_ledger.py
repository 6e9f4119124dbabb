from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from escrow_orders.api.serializers import money, serialize_ledger_entry
from escrow_orders.core.security import Actor, get_actor, require_roles
from escrow_orders.ledger.store import BalanceLedger
from escrow_orders.persistence.pg import get_session
from escrow_orders.reconciliation.rules import run_minimum_reconciliation

router = APIRouter(tags=["ledger"])


def _require_account_access(actor: Actor, account_id: str | None) -> None:
    if actor.type in {"moderator", "system"}:
        return
    if account_id is None or account_id != actor.id:
        raise HTTPException(status_code=403, detail="users can only read their own ledger account")


@router.get("/ledger/entries")
def list_entries(
    account_id: str | None = Query(default=None),
    order_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    if actor.type == "user" and account_id is None:
        account_id = actor.id
    _require_account_access(actor, account_id)
    rows = BalanceLedger(session).list_entries(account_id=account_id, order_id=order_id, limit=limit)
    return {"count": len(rows), "entries": [serialize_ledger_entry(row) for row in rows]}


@router.get("/ledger/balances/{user_id}")
def get_balances(
    user_id: str,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    _require_account_access(actor, user_id)
    balances = BalanceLedger(session).balances(user_id)
    return {"account_id": user_id, "balances": {bucket: money(amount) for bucket, amount in balances.items()}}


@router.get("/ledger/verify")
def verify_ledger(
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, {"moderator", "system"}, detail="ledger verification requires moderator/system role")
    ledger = BalanceLedger(session)
    checks = run_minimum_reconciliation(session)
    chain_valid = ledger.verify_chain()
    return {
        "chain_valid": chain_valid,
        "public_key": ledger.signer.public_key_b64,
        "reconciliation": [
            {"rule": check.rule, "passed": check.passed, "detail": check.detail} for check in checks
        ],
        "passed": chain_valid and all(check.passed for check in checks),
    }
