"""
Per-order mutual exclusion.

Transitions on one order serialize on an in-process keyed lock; the row itself is
additionally selected ``FOR UPDATE`` on databases that support row locks (see
``escrow_orders.persistence.queries.get_order_for_update``).
"""
from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager


class KeyedLocks:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._holders: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._holders[key] = self._holders.get(key, 0) + 1
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._holders[key] -= 1
                if self._holders[key] == 0:
                    del self._holders[key]
                    del self._locks[key]


_order_locks = KeyedLocks()


@contextmanager
def order_lock(order_id: str) -> Iterator[None]:
    with _order_locks.hold(order_id):
        yield


@contextmanager
def order_locks(order_ids: Iterable[str]) -> Iterator[None]:
    # Sorted acquisition keeps multi-order settlement deadlock free.
    with ExitStack() as stack:
        for order_id in sorted(set(order_ids)):
            stack.enter_context(order_lock(order_id))
        yield


_ledger_lock = threading.RLock()


@contextmanager
def ledger_lock() -> Iterator[None]:
    """Serialize writers of the hash-chained ledger until their transaction commits."""
    with _ledger_lock:
        yield
