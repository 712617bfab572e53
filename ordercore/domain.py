"""Domain models, ports and the order state machine.

This module contains the dataclasses exchanged between the order core's
components, the transition table that drives an order's lifecycle, and the
protocol definitions (ports) for stock, cart, order and idempotency storage.
Every port method takes the unit of work as its first argument, so the
boundary of what commits or rolls back together is visible at each call.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Protocol, Sequence


# ---- Enums ----
class OrderStatus(str, Enum):
    """Lifecycle states of an order. Completed and Cancelled are terminal."""

    PENDING_PAYMENT = "PENDING_PAYMENT"
    PENDING_SHIPMENT = "PENDING_SHIPMENT"
    PENDING_RECEIPT = "PENDING_RECEIPT"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)

    def __str__(self) -> str:
        return self.value


class OrderEvent(str, Enum):
    PAY = "PAY"
    SHIP = "SHIP"
    RECEIVE = "RECEIVE"
    CANCEL = "CANCEL"

    def __str__(self) -> str:
        return self.value


class Reservation(str, Enum):
    """Outcome of a stock check-and-reserve."""

    RESERVED = "RESERVED"
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"


# event -> (from, to). Checkout creates orders directly in PENDING_PAYMENT.
TRANSITIONS: dict[OrderEvent, tuple[OrderStatus, OrderStatus]] = {
    OrderEvent.PAY: (OrderStatus.PENDING_PAYMENT, OrderStatus.PENDING_SHIPMENT),
    OrderEvent.SHIP: (OrderStatus.PENDING_SHIPMENT, OrderStatus.PENDING_RECEIPT),
    OrderEvent.RECEIVE: (OrderStatus.PENDING_RECEIPT, OrderStatus.COMPLETED),
    OrderEvent.CANCEL: (OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED),
}

# statuses whose totals count as sales
PAID_STATUSES = (OrderStatus.PENDING_SHIPMENT, OrderStatus.PENDING_RECEIPT, OrderStatus.COMPLETED)


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class Identity:
    """Authenticated caller, supplied by the session layer and trusted as-is."""

    user_id: int
    is_admin: bool = False


@dataclass(frozen=True)
class Receiver:
    """Shipping destination snapshot taken at checkout."""

    name: str
    phone: str
    address: str


@dataclass(frozen=True)
class CartLine:
    """A line of the user's cart as read at checkout.

    Attributes:
        product_id: Catalog product reference.
        quantity: Units requested.
        unit_price: Price the user was shown when the item was added. This
            is the price the order is charged at.
    """

    product_id: int
    quantity: int
    unit_price: Decimal


@dataclass(frozen=True)
class OrderLine:
    """One product's committed quantity within an order.

    The product reference is weak: the catalog may later change or drop the
    product without affecting the line.
    """

    order_id: int | None
    product_id: int
    quantity: int
    unit_price: Decimal

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class Order:
    """Container for order data.

    Attributes:
        id: Persistent identifier, or None if not yet saved.
        order_number: Unique external-facing token.
        user_id: Owner.
        total_amount: Exact sum of the line totals at creation time.
        status: Current OrderStatus.
        receiver: Shipping destination; editable only while pending payment.
        created_at: Creation timestamp.
        updated_at: Refreshed on every status or receiver change.
        lines: The order's lines, fixed at creation.
    """

    id: int | None
    order_number: str
    user_id: int
    total_amount: Decimal
    status: OrderStatus
    receiver: Receiver
    created_at: datetime
    updated_at: datetime
    lines: tuple[OrderLine, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class DashboardStats:
    order_count: int
    total_sales: Decimal
    low_stock_count: int


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_order_number() -> str:
    """Random 32-char hex token; collisions are caught by the storage layer."""
    return uuid.uuid4().hex


def order_total(lines: Sequence[CartLine]) -> Decimal:
    """Exact decimal sum of ``unit_price * quantity`` over the lines."""
    return sum((line.unit_price * line.quantity for line in lines), Decimal("0"))


# ---- Ports (DIP) ----
class UnitOfWork(Protocol):
    """A transaction boundary. Leaving the block without commit rolls back."""

    def __enter__(self) -> "UnitOfWork": ...

    def __exit__(self, exc_type, exc, tb) -> None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


class StockLedgerPort(Protocol):
    """Single writer of per-product available quantities."""

    def check_and_reserve(self, uow: UnitOfWork, product_id: int, quantity: int) -> Reservation:
        """Decrement stock by ``quantity`` only if at least that much is available.

        The check and the decrement are one indivisible step per product.
        """
        raise NotImplementedError()

    def restock(self, uow: UnitOfWork, product_id: int, quantity: int) -> None:
        """Increment stock unconditionally.

        Raises:
            ProductNotFound: If the product has no stock row.
        """
        raise NotImplementedError()

    def peek(self, uow: UnitOfWork, product_id: int) -> int | None:
        """Current stock, or None if the product is unknown. Never binding."""
        raise NotImplementedError()

    def provision(self, uow: UnitOfWork, product_id: int, quantity: int) -> int:
        raise NotImplementedError()

    def count_low_stock(self, uow: UnitOfWork, threshold: int) -> int:
        raise NotImplementedError()


class CartReaderPort(Protocol):
    def read_lines(self, uow: UnitOfWork, user_id: int) -> tuple[CartLine, ...]:
        """Cart lines in insertion order; empty when there is nothing to check out."""
        raise NotImplementedError()

    def clear(self, uow: UnitOfWork, user_id: int) -> None:
        raise NotImplementedError()


class OrderRepositoryPort(Protocol):
    def create(self, uow: UnitOfWork, order: Order, lines: Sequence[OrderLine]) -> Order:
        """Persist an order and its lines as one unit.

        Raises:
            OrderNumberConflict: If ``order.order_number`` is already taken.
        """
        raise NotImplementedError()

    def find_by_id(self, uow: UnitOfWork, order_id: int) -> Order | None:
        raise NotImplementedError()

    def find_by_order_number(self, uow: UnitOfWork, order_number: str) -> Order | None:
        raise NotImplementedError()

    def find_by_user(self, uow: UnitOfWork, user_id: int) -> list[Order]:
        raise NotImplementedError()

    def find_all(self, uow: UnitOfWork) -> list[Order]:
        raise NotImplementedError()

    def update_status(
        self,
        uow: UnitOfWork,
        order_id: int,
        new_status: OrderStatus,
        expected_status: OrderStatus | None = None,
    ) -> bool:
        """Set the status (and refresh ``updated_at``) as one conditional write.

        Returns:
            bool: False when no order matched the id and expected status.
        """
        raise NotImplementedError()

    def update_receiver(
        self,
        uow: UnitOfWork,
        order_id: int,
        receiver: Receiver,
        expected_status: OrderStatus | None = None,
    ) -> bool:
        raise NotImplementedError()

    def delete(self, uow: UnitOfWork, order_id: int) -> bool:
        raise NotImplementedError()

    def count_all(self, uow: UnitOfWork) -> int:
        raise NotImplementedError()

    def total_sales(self, uow: UnitOfWork, statuses: Sequence[OrderStatus] = PAID_STATUSES) -> Decimal:
        raise NotImplementedError()


class CheckoutKeysPort(Protocol):
    def claim(self, uow: UnitOfWork, key: str, request_hash: str) -> int | None:
        """Claim ``key`` for this checkout.

        Returns:
            The id of the order already created under the key, or None when
            the key is new and the checkout should proceed.

        Raises:
            IdempotencyConflict: If the key exists with a different hash.
        """
        raise NotImplementedError()

    def bind(self, uow: UnitOfWork, key: str, order_id: int) -> None:
        raise NotImplementedError()

    def release(self, uow: UnitOfWork, order_id: int) -> None:
        """Forget every key bound to ``order_id``.

        Called when the order is purged, so a later checkout with the same
        key starts afresh instead of replaying an order that no longer
        exists.

        Args:
            uow: Open unit of work.
            order_id: Id of the order being deleted.
        """
        raise NotImplementedError()
