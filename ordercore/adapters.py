"""In-process adapters for the order core ports.

These implement every port without a database. They are intended for unit
tests and local development where deterministic, fast behavior is useful.
They keep the same guarantees as the SQL adapters: reservation is a
check-and-decrement under a per-product mutex, order numbers are unique,
and status changes are compare-and-set. Rollback is provided by
``InMemoryUnitOfWork``, which journals an undo action for every write.
"""

import itertools
import threading
from collections import defaultdict
from dataclasses import replace
from decimal import Decimal
from typing import Callable, Sequence

from .domain import (
    PAID_STATUSES,
    CartLine,
    CartReaderPort,
    CheckoutKeysPort,
    Order,
    OrderLine,
    OrderRepositoryPort,
    OrderStatus,
    Receiver,
    Reservation,
    StockLedgerPort,
    utcnow,
)
from .errors import IdempotencyConflict, InvalidQuantity, OrderNumberConflict, ProductNotFound


class InMemoryUnitOfWork:
    """Undo journal standing in for a database transaction.

    Adapters register the inverse of each write with :meth:`on_rollback`.
    Rolling back (explicitly, or by leaving the block without commit) runs
    the inverses newest first.
    """

    def __init__(self):
        self._undo: list[Callable[[], None]] = []
        self.committed = False

    def __enter__(self) -> "InMemoryUnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.rollback()

    def on_rollback(self, fn: Callable[[], None]) -> None:
        self._undo.append(fn)

    def commit(self) -> None:
        self._undo.clear()
        self.committed = True

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()


class InMemoryStockLedger(StockLedgerPort):
    """Stock ledger with one mutex per product."""

    def __init__(self, levels: dict[int, int] | None = None):
        self._levels: dict[int, int] = dict(levels or {})
        self._locks: defaultdict[int, threading.Lock] = defaultdict(threading.Lock)
        self._registry = threading.Lock()

    def _lock(self, product_id: int) -> threading.Lock:
        with self._registry:
            return self._locks[product_id]

    def _add(self, product_id: int, delta: int) -> None:
        with self._lock(product_id):
            self._levels[product_id] += delta

    def check_and_reserve(self, uow, product_id: int, quantity: int) -> Reservation:
        """Reserve ``quantity`` units under the product's mutex.

        Args:
            uow: Open ``InMemoryUnitOfWork``; the reservation is undone on rollback.
            product_id: Product to reserve.
            quantity: Positive number of units.

        Returns:
            Reservation: RESERVED, INSUFFICIENT_STOCK or PRODUCT_NOT_FOUND.

        Raises:
            InvalidQuantity: If ``quantity`` is not positive.
        """
        if quantity <= 0:
            raise InvalidQuantity(product_id, quantity)
        with self._lock(product_id):
            current = self._levels.get(product_id)
            if current is None:
                return Reservation.PRODUCT_NOT_FOUND
            if current < quantity:
                return Reservation.INSUFFICIENT_STOCK
            self._levels[product_id] = current - quantity
        uow.on_rollback(lambda: self._add(product_id, quantity))
        return Reservation.RESERVED

    def restock(self, uow, product_id: int, quantity: int) -> None:
        """Return ``quantity`` units to the product.

        Raises:
            InvalidQuantity: If ``quantity`` is not positive.
            ProductNotFound: If the product has no stock level.
        """
        if quantity <= 0:
            raise InvalidQuantity(product_id, quantity)
        with self._lock(product_id):
            if product_id not in self._levels:
                raise ProductNotFound(product_id)
            self._levels[product_id] += quantity
        uow.on_rollback(lambda: self._add(product_id, -quantity))

    def peek(self, uow, product_id: int) -> int | None:
        """Current level, or None for an unknown product."""
        with self._lock(product_id):
            return self._levels.get(product_id)

    def provision(self, uow, product_id: int, quantity: int) -> int:
        """Add ``quantity`` units, creating the level if needed.

        Returns:
            int: The new stock level.
        """
        if quantity <= 0:
            raise InvalidQuantity(product_id, quantity)
        with self._lock(product_id):
            created = product_id not in self._levels
            self._levels[product_id] = self._levels.get(product_id, 0) + quantity
            level = self._levels[product_id]

        def undo():
            with self._lock(product_id):
                if created:
                    del self._levels[product_id]
                else:
                    self._levels[product_id] -= quantity

        uow.on_rollback(undo)
        return level

    def count_low_stock(self, uow, threshold: int) -> int:
        """Number of products at or below ``threshold``."""
        with self._registry:
            return sum(1 for qty in list(self._levels.values()) if qty <= threshold)


class InMemoryCartStore(CartReaderPort):
    """Per-user carts; ``add_line`` stands in for the cart store's own API."""

    def __init__(self):
        self._carts: defaultdict[int, list[CartLine]] = defaultdict(list)
        self._lock = threading.Lock()

    def add_line(self, user_id: int, product_id: int, quantity: int, unit_price) -> None:
        """Append a line to the user's cart.

        Args:
            user_id: Cart owner.
            product_id: Catalog product reference.
            quantity: Units requested.
            unit_price: Price shown to the user; converted to ``Decimal``.
        """
        with self._lock:
            self._carts[user_id].append(CartLine(product_id, quantity, Decimal(str(unit_price))))

    def read_lines(self, uow, user_id: int) -> tuple[CartLine, ...]:
        """Snapshot of the user's cart in insertion order; empty when none."""
        with self._lock:
            return tuple(self._carts.get(user_id, ()))

    def clear(self, uow, user_id: int) -> None:
        """Empty the user's cart. The previous lines come back on rollback."""
        with self._lock:
            previous = self._carts.pop(user_id, [])

        def undo():
            with self._lock:
                self._carts[user_id] = previous + self._carts.get(user_id, [])

        uow.on_rollback(undo)


class InMemoryOrderRepository(OrderRepositoryPort):
    def __init__(self, clock=utcnow):
        self._orders: dict[int, Order] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()
        self._clock = clock

    def create(self, uow, order: Order, lines: Sequence[OrderLine]) -> Order:
        """Store ``order`` with ``lines`` under a fresh id.

        Args:
            uow: Open ``InMemoryUnitOfWork``; the order is discarded on rollback.
            order: Domain order with ``id=None``.
            lines: Lines to attach; their ``order_id`` is replaced.

        Returns:
            Order: The stored order.

        Raises:
            OrderNumberConflict: If the order number is already taken.
        """
        with self._lock:
            if any(o.order_number == order.order_number for o in self._orders.values()):
                raise OrderNumberConflict(order.order_number)
            oid = next(self._ids)
            stored = replace(order, id=oid, lines=tuple(replace(line, order_id=oid) for line in lines))
            self._orders[oid] = stored
        uow.on_rollback(lambda: self._discard(oid))
        return stored

    def _discard(self, order_id: int) -> None:
        with self._lock:
            self._orders.pop(order_id, None)

    def find_by_id(self, uow, order_id: int) -> Order | None:
        """Order with ``order_id``, or None."""
        with self._lock:
            return self._orders.get(order_id)

    def find_by_order_number(self, uow, order_number: str) -> Order | None:
        """Order with ``order_number``, or None."""
        with self._lock:
            return next((o for o in self._orders.values() if o.order_number == order_number), None)

    def _newest_first(self, orders) -> list[Order]:
        return sorted(orders, key=lambda o: (o.created_at, o.id), reverse=True)

    def find_by_user(self, uow, user_id: int) -> list[Order]:
        """Orders of one user, newest first."""
        with self._lock:
            return self._newest_first(o for o in self._orders.values() if o.user_id == user_id)

    def find_all(self, uow) -> list[Order]:
        """Every order, newest first."""
        with self._lock:
            return self._newest_first(self._orders.values())

    def _compare_and_set(self, uow, order_id: int, expected_status, **changes) -> bool:
        with self._lock:
            current = self._orders.get(order_id)
            if current is None or (expected_status is not None and current.status != expected_status):
                return False
            self._orders[order_id] = replace(current, updated_at=self._clock(), **changes)

        def undo():
            with self._lock:
                if order_id in self._orders:
                    self._orders[order_id] = current

        uow.on_rollback(undo)
        return True

    def update_status(self, uow, order_id: int, new_status: OrderStatus, expected_status=None) -> bool:
        """Set the status, optionally only if it currently equals ``expected_status``.

        Returns:
            bool: False when the order is missing or the status did not match.
        """
        return self._compare_and_set(uow, order_id, expected_status, status=new_status)

    def update_receiver(self, uow, order_id: int, receiver: Receiver, expected_status=None) -> bool:
        """Replace the receiver, with the same compare-and-set rule as ``update_status``."""
        return self._compare_and_set(uow, order_id, expected_status, receiver=receiver)

    def delete(self, uow, order_id: int) -> bool:
        """Remove an order; returns False if it did not exist."""
        with self._lock:
            removed = self._orders.pop(order_id, None)
        if removed is None:
            return False

        def undo():
            with self._lock:
                self._orders[order_id] = removed

        uow.on_rollback(undo)
        return True

    def count_all(self, uow) -> int:
        """Number of stored orders."""
        with self._lock:
            return len(self._orders)

    def total_sales(self, uow, statuses: Sequence[OrderStatus] = PAID_STATUSES) -> Decimal:
        """Sum of ``total_amount`` over orders in ``statuses``."""
        with self._lock:
            return sum((o.total_amount for o in self._orders.values() if o.status in statuses), Decimal("0"))


class InMemoryCheckoutKeys(CheckoutKeysPort):
    def __init__(self):
        self._keys: dict[str, list] = {}
        self._lock = threading.Lock()

    def claim(self, uow, key: str, request_hash: str) -> int | None:
        """Claim ``key`` for a checkout.

        Args:
            uow: Open ``InMemoryUnitOfWork``; a new claim is released on rollback.
            key: Client idempotency key.
            request_hash: Hash of the canonical request.

        Returns:
            The order id bound to the key, or None for a new key.

        Raises:
            IdempotencyConflict: If the hash differs or the first checkout under
                the key has not finished yet.
        """
        with self._lock:
            rec = self._keys.get(key)
            if rec is None:
                self._keys[key] = [request_hash, None]
            elif rec[0] != request_hash or rec[1] is None:
                # different request, or the first one is still in flight
                raise IdempotencyConflict(key)
            else:
                return rec[1]

        def undo():
            with self._lock:
                self._keys.pop(key, None)

        uow.on_rollback(undo)
        return None

    def bind(self, uow, key: str, order_id: int) -> None:
        """Record the order created under ``key``."""
        with self._lock:
            self._keys[key][1] = order_id

    def release(self, uow, order_id: int) -> None:
        """Drop the keys bound to ``order_id``; restored on rollback."""
        with self._lock:
            dropped = {k: rec for k, rec in self._keys.items() if rec[1] == order_id}
            for k in dropped:
                del self._keys[k]

        def undo():
            with self._lock:
                self._keys.update(dropped)

        uow.on_rollback(undo)
