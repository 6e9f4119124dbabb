from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from escrow_orders.domain.orders.aggregates import OrderStatus
from escrow_orders.ledger.canonical import CanonicalError, canonical_json, sha256_hex


def test_canonical_json_stable_key_order():
    obj_a = {"b": 2, "a": 1, "nested": {"y": 2, "x": 1}}
    obj_b = {"nested": {"x": 1, "y": 2}, "a": 1, "b": 2}

    assert canonical_json(obj_a) == canonical_json(obj_b)
    assert sha256_hex(obj_a) == sha256_hex(obj_b)


def test_canonical_json_rejects_float():
    with pytest.raises(CanonicalError):
        canonical_json({"amount": 1.23})


def test_canonical_datetime_normalized_to_utc_z():
    dt = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)
    encoded = canonical_json({"occurred_at": dt}).decode("utf-8")
    assert "Z" in encoded


def test_canonical_money_compares_at_cent_precision():
    assert canonical_json({"amount": Decimal("10")}) == canonical_json({"amount": Decimal("10.00")})
    assert b'"10.00"' in canonical_json({"amount": Decimal("10")})


def test_canonical_enum_uses_value():
    assert canonical_json({"status": OrderStatus.PAID}) == canonical_json({"status": "PAID"})
