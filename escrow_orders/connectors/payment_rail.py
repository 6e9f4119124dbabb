from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Protocol
from urllib.parse import quote

import httpx

from escrow_orders.core.config import Settings, get_settings
from escrow_orders.domain.money import to_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RailTransaction:
    reference: str
    amount: Decimal
    recipient: str
    sender: str | None = None
    confirmed: bool = False


class PaymentRailError(RuntimeError):
    pass


class PaymentRail(Protocol):
    rail_name: str

    def lookup(self, reference: str) -> RailTransaction | None:
        ...


class FakePaymentRail:
    """In-memory rail used in development and tests."""

    rail_name = "fake"

    def __init__(self):
        self._lock = threading.Lock()
        self._transactions: dict[str, RailTransaction] = {}

    def record(
        self,
        reference: str,
        amount: Decimal | str,
        recipient: str,
        sender: str | None = None,
        confirmed: bool = True,
    ) -> RailTransaction:
        tx = RailTransaction(
            reference=reference,
            amount=to_money(amount),
            recipient=recipient,
            sender=sender,
            confirmed=confirmed,
        )
        with self._lock:
            self._transactions[reference] = tx
        return tx

    def confirm(self, reference: str) -> None:
        with self._lock:
            tx = self._transactions[reference]
            self._transactions[reference] = RailTransaction(
                reference=tx.reference,
                amount=tx.amount,
                recipient=tx.recipient,
                sender=tx.sender,
                confirmed=True,
            )

    def lookup(self, reference: str) -> RailTransaction | None:
        with self._lock:
            return self._transactions.get(reference)


class HttpPaymentRail:
    """Reads transactions from a chain indexer exposing ``GET /transactions/{reference}``."""

    rail_name = "http"

    def __init__(self, settings: Settings | None = None, transport: httpx.BaseTransport | None = None):
        self.settings = settings or get_settings()
        self.base_url = self.settings.payment_rail_base_url.rstrip("/")
        self.timeout = self.settings.payment_rail_timeout_seconds
        self.transport = transport

    def lookup(self, reference: str) -> RailTransaction | None:
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.get(f"{self.base_url}/transactions/{quote(reference, safe='')}")
            if response.status_code == 404:
                return None
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise PaymentRailError(f"payment rail lookup failed: {exc}") from exc

        if not isinstance(payload, dict):
            raise PaymentRailError(f"unexpected payment rail payload: {payload!r}")
        try:
            amount = to_money(str(payload["amount"]))
        except (KeyError, InvalidOperation, TypeError) as exc:
            raise PaymentRailError(f"payment rail payload missing amount: {payload!r}") from exc
        return RailTransaction(
            reference=str(payload.get("reference") or reference),
            amount=amount,
            recipient=str(payload.get("recipient", "")),
            sender=payload.get("sender"),
            confirmed=bool(payload.get("confirmed", False)),
        )


_fake_rail = FakePaymentRail()


def build_payment_rail(settings: Settings | None = None) -> PaymentRail:
    settings = settings or get_settings()
    mode = settings.payment_rail.strip().lower()
    if mode == "fake":
        return _fake_rail
    if mode == "http":
        return HttpPaymentRail(settings)
    raise ValueError(f"unsupported payment rail: {settings.payment_rail}")
