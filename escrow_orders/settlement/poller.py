"""
Background confirmation polling.

When checkout carries a transaction the rail has not confirmed yet, a poller
retries settlement on its own thread and session until the rail confirms, the
attempts run out, or someone cancels it. The checkout request never waits for it.
"""
from __future__ import annotations

import logging
import threading
from typing import Sequence

from escrow_orders.connectors.payment_rail import PaymentRail, build_payment_rail
from escrow_orders.core.config import Settings, get_settings
from escrow_orders.core.security import Actor
from escrow_orders.domain.errors import EngineError, PaymentNotConfirmed
from escrow_orders.persistence import pg
from escrow_orders.settlement.coordinator import SettlementResult, settle_payment

logger = logging.getLogger(__name__)


class SettlementPoller:
    def __init__(
        self,
        reference: str,
        order_ids: Sequence[str],
        actor: Actor,
        rail: PaymentRail | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.reference = reference
        self.order_ids = list(order_ids)
        self.actor = actor
        self.rail = rail or build_payment_rail(self.settings)
        self.interval = self.settings.settlement_poll_interval_seconds
        self.max_attempts = self.settings.settlement_poll_max_attempts
        self.result: SettlementResult | None = None
        self.last_error: str | None = None
        self._cancelled = threading.Event()
        self._done = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)

    def run(self) -> SettlementResult | None:
        try:
            for attempt in range(1, self.max_attempts + 1):
                if self._cancelled.wait(self.interval):
                    logger.info("settlement poll reference=%s cancelled", self.reference)
                    return None
                try:
                    with pg.session_scope() as session:
                        self.result = settle_payment(
                            session,
                            self.reference,
                            self.order_ids,
                            self.actor,
                            rail=self.rail,
                            settings=self.settings,
                        )
                    logger.info("settlement poll reference=%s settled on attempt %s", self.reference, attempt)
                    return self.result
                except PaymentNotConfirmed as exc:
                    self.last_error = exc.message
                    logger.debug("settlement poll reference=%s attempt %s: %s", self.reference, attempt, exc.message)
                except EngineError as exc:
                    self.last_error = exc.message
                    logger.warning("settlement poll reference=%s stopped: %s", self.reference, exc.message)
                    return None
            logger.warning(
                "settlement poll reference=%s gave up after %s attempts", self.reference, self.max_attempts
            )
            return None
        finally:
            _forget(self)
            self._done.set()


_active: dict[str, SettlementPoller] = {}
_active_guard = threading.Lock()


def _forget(poller: SettlementPoller) -> None:
    with _active_guard:
        if _active.get(poller.reference) is poller:
            del _active[poller.reference]


def start_settlement_poll(
    reference: str,
    order_ids: Sequence[str],
    actor: Actor,
    rail: PaymentRail | None = None,
    settings: Settings | None = None,
) -> SettlementPoller:
    """Start (or return the already running) poller for a reference."""
    with _active_guard:
        running = _active.get(reference)
        if running is not None:
            return running
        poller = SettlementPoller(reference, order_ids, actor, rail=rail, settings=settings)
        _active[reference] = poller
    thread = threading.Thread(target=poller.run, name=f"settlement-poll-{reference}", daemon=True)
    thread.start()
    logger.info("settlement poll started reference=%s orders=%s", reference, len(order_ids))
    return poller


def get_settlement_poll(reference: str) -> SettlementPoller | None:
    with _active_guard:
        return _active.get(reference)


def cancel_settlement_poll(reference: str) -> bool:
    with _active_guard:
        poller = _active.get(reference)
    if poller is None:
        return False
    poller.cancel()
    return True
