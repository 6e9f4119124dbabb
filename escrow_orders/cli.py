from __future__ import annotations

import argparse
import json
from datetime import datetime, timezone

from escrow_orders.api.serializers import money, serialize_settlement
from escrow_orders.core.config import get_settings
from escrow_orders.core.logging import configure_logging
from escrow_orders.core.security import Actor
from escrow_orders.domain.errors import EngineError
from escrow_orders.domain.orders.commands import complete_reviewed
from escrow_orders.ledger.store import BalanceLedger
from escrow_orders.persistence.pg import init_db, session_scope
from escrow_orders.reconciliation.rules import run_minimum_reconciliation
from escrow_orders.settlement.coordinator import settle_payment


def _default_actor_id(actor_type: str) -> str:
    settings = get_settings()
    mapping = {
        "moderator": settings.moderator_actor_id,
        "system": settings.system_actor_id,
    }
    return mapping[actor_type]


def _parse_now(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Order & escrow settlement engine CLI")
    parser.add_argument("--actor-type", choices=["moderator", "system"], default="system")
    parser.add_argument("--actor-id", default=None)
    top = parser.add_subparsers(dest="command", required=True)

    settle = top.add_parser("settle", help="Settle a verified payment against orders")
    settle.add_argument("reference", help="External transaction reference")
    settle.add_argument("order_ids", nargs="+", help="Orders paid by the transaction")

    complete = top.add_parser("complete-reviewed", help="Complete delivered orders past the review window")
    complete.add_argument("--now", default=None, help="ISO timestamp to evaluate the window at")
    complete.add_argument("--window-days", type=int, default=None)

    top.add_parser("verify-ledger", help="Verify the ledger hash chain and reconciliation rules")

    balances = top.add_parser("balances", help="Show ledger balances for an account")
    balances.add_argument("account_id")

    return parser


def _print(payload: dict) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2))


def _run(args: argparse.Namespace) -> int:
    actor_type = str(args.actor_type)
    actor = Actor(type=actor_type, id=str(args.actor_id or _default_actor_id(actor_type)))

    with session_scope() as session:
        if args.command == "settle":
            result = settle_payment(session, args.reference, args.order_ids, actor)
            _print({"replayed": result.replayed, "settlement": serialize_settlement(result.settlement)})
            return 0

        if args.command == "complete-reviewed":
            completed = complete_reviewed(
                session,
                actor,
                now=_parse_now(args.now),
                review_window_days=args.window_days,
            )
            _print({"completed": completed, "count": len(completed)})
            return 0

        if args.command == "verify-ledger":
            chain_valid = BalanceLedger(session).verify_chain()
            checks = run_minimum_reconciliation(session)
            _print(
                {
                    "chain_valid": chain_valid,
                    "reconciliation": [
                        {"rule": check.rule, "passed": check.passed, "detail": check.detail} for check in checks
                    ],
                }
            )
            return 0 if chain_valid and all(check.passed for check in checks) else 1

        if args.command == "balances":
            balances = BalanceLedger(session).balances(args.account_id)
            _print({"account_id": args.account_id, "balances": {k: money(v) for k, v in balances.items()}})
            return 0

    return 2


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    parser = _build_parser()
    args = parser.parse_args(argv)
    init_db()
    try:
        return _run(args)
    except EngineError as exc:
        _print(exc.to_dict())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
