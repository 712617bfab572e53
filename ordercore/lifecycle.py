"""Order lifecycle manager.

The manager is the only component that decides whether a failure aborts
and rolls back or is logged and tolerated. It composes the stock ledger,
cart reader, order repository and (optionally) checkout-key store through
their ports, and runs each operation inside one unit of work:

- checkout: read cart, reserve stock line by line, persist order and
  lines, commit; then clear the cart in a separate unit of work.
- pay / ship / receive: compare-and-set status transitions.
- cancel: compare-and-set to CANCELLED plus restock of every line, all
  committed together.
"""

from dataclasses import asdict
from typing import Callable, Mapping

from pydantic import ValidationError

from . import settings
from .domain import (
    PAID_STATUSES,
    TRANSITIONS,
    CartLine,
    CartReaderPort,
    CheckoutKeysPort,
    DashboardStats,
    Identity,
    Order,
    OrderEvent,
    OrderLine,
    OrderRepositoryPort,
    OrderStatus,
    Receiver,
    Reservation,
    StockLedgerPort,
    UnitOfWork,
    new_order_number,
    order_total,
    utcnow,
)
from .errors import (
    EmptyCart,
    InsufficientStock,
    InvalidQuantity,
    InvalidReceiver,
    InvalidTransition,
    OrderError,
    OrderLocked,
    OrderNotFound,
    OrderNumberConflict,
    OrderPersistenceError,
    ProductNotFound,
)
from .idempotency import request_hash
from .log import get_logger
from .schemas import ReceiverIn

logger = get_logger(__name__)


class OrderLifecycleManager:
    """Domain service responsible for checkout and order state changes.

    Args:
        uow_factory: Zero-argument callable returning a fresh unit of work.
        stock: Stock ledger port.
        cart: Cart reader port.
        orders: Order repository port.
        checkout_keys: Idempotency key store; required only when callers
            pass ``idempotency_key`` to :meth:`checkout`.
        order_number_factory: Generates candidate order numbers.
        clock: Timestamp source for new orders.
    """

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        stock: StockLedgerPort,
        cart: CartReaderPort,
        orders: OrderRepositoryPort,
        checkout_keys: CheckoutKeysPort | None = None,
        order_number_factory: Callable[[], str] = new_order_number,
        clock=utcnow,
    ):
        self.uow_factory = uow_factory
        self.stock = stock
        self.cart = cart
        self.orders = orders
        self.checkout_keys = checkout_keys
        self.order_number_factory = order_number_factory
        self.clock = clock

    # ---- Checkout ----
    def checkout(
        self,
        identity: Identity,
        receiver: ReceiverIn | Receiver | Mapping,
        idempotency_key: str | None = None,
    ) -> Order:
        """Turn the user's cart into a PENDING_PAYMENT order.

        Stock is reserved line by line in cart order. If any line cannot be
        reserved, the lines already reserved are restocked in reverse order
        and the whole transaction is rolled back: no order, stock as before,
        cart untouched. A storage failure skips the restock and relies on the
        rollback alone. The cart is cleared only after the order commits.

        Args:
            identity: Authenticated caller.
            receiver: Shipping destination, validated with ``ReceiverIn``.
            idempotency_key: Optional client key; a retry with the same key
                and receiver returns the order created the first time.

        Returns:
            Order: The persisted order.

        Raises:
            InvalidReceiver: Receiver details failed validation.
            EmptyCart: Nothing to check out.
            InvalidQuantity: A cart line has a non-positive quantity.
            InsufficientStock: A product has fewer units than requested.
            ProductNotFound: A product has no stock row.
            IdempotencyConflict: The key was used for a different request.
            OrderPersistenceError: No unique order number could be found.
        """
        receiver = self._validate_receiver(receiver)
        user_id = identity.user_id

        with self.uow_factory() as uow:
            if idempotency_key:
                replay = self._claim_key(uow, idempotency_key, user_id, receiver)
                if replay is not None:
                    return replay

            lines = self.cart.read_lines(uow, user_id)
            try:
                self._validate_lines(user_id, lines)
            except OrderError as e:
                logger.info("checkout rejected", extra={"code": e.code, "detail": e.detail})
                raise

            reserved: list[CartLine] = []
            try:
                for line in lines:
                    self._reserve(uow, line)
                    reserved.append(line)
                order = self._persist(uow, user_id, receiver, lines)
                if idempotency_key:
                    self.checkout_keys.bind(uow, idempotency_key, order.id)
                uow.commit()
            except OrderError as e:
                logger.info("checkout rejected", extra={"code": e.code, "detail": e.detail})
                self._release(uow, reserved)
                raise
            except Exception:
                # the transaction may already be aborted; rollback alone restores stock
                logger.exception("checkout failed", extra={"user_id": user_id})
                raise

        logger.info(
            "checkout committed",
            extra={"order_number": order.order_number, "user_id": user_id, "total_amount": str(order.total_amount)},
        )
        self._clear_cart(user_id, order)
        return order

    def _validate_receiver(self, receiver) -> Receiver:
        if isinstance(receiver, ReceiverIn):
            return receiver.to_domain()
        if isinstance(receiver, Receiver):
            receiver = asdict(receiver)
        try:
            return ReceiverIn.model_validate(receiver).to_domain()
        except ValidationError as e:
            raise InvalidReceiver(
                e.errors(include_url=False, include_context=False, include_input=False)
            ) from e

    def _validate_lines(self, user_id: int, lines) -> None:
        if not lines:
            raise EmptyCart(user_id)
        for line in lines:
            if line.quantity <= 0:
                raise InvalidQuantity(line.product_id, line.quantity)

    def _claim_key(self, uow, key: str, user_id: int, receiver: Receiver) -> Order | None:
        if self.checkout_keys is None:
            raise RuntimeError("checkout_keys store is not configured")
        h = request_hash({"user_id": user_id, "receiver": asdict(receiver)})
        order_id = self.checkout_keys.claim(uow, key, h)
        if order_id is None:
            return None
        order = self.orders.find_by_id(uow, order_id)
        if order is None:
            raise OrderNotFound(order_id=order_id)
        logger.info("checkout replayed", extra={"order_number": order.order_number, "user_id": user_id})
        return order

    def _reserve(self, uow, line: CartLine) -> None:
        outcome = self.stock.check_and_reserve(uow, line.product_id, line.quantity)
        if outcome is Reservation.INSUFFICIENT_STOCK:
            raise InsufficientStock(line.product_id, line.quantity)
        if outcome is Reservation.PRODUCT_NOT_FOUND:
            raise ProductNotFound(line.product_id)

    def _release(self, uow, reserved: list[CartLine]) -> None:
        """Restock reserved lines newest first.

        A failure here is logged and the loop stops; the unit of work's
        rollback restores whatever was not compensated.
        """
        for line in reversed(reserved):
            try:
                self.stock.restock(uow, line.product_id, line.quantity)
            except Exception:
                logger.exception(
                    "compensating restock failed, relying on rollback",
                    extra={"product_id": line.product_id, "quantity": line.quantity},
                )
                return

    def _persist(self, uow, user_id: int, receiver: Receiver, lines) -> Order:
        now = self.clock()
        total = order_total(lines)
        order_lines = [
            OrderLine(order_id=None, product_id=line.product_id, quantity=line.quantity, unit_price=line.unit_price)
            for line in lines
        ]
        attempts = getattr(settings, "ORDER_NUMBER_MAX_ATTEMPTS", 5)
        for attempt in range(1, attempts + 1):
            draft = Order(
                id=None,
                order_number=self.order_number_factory(),
                user_id=user_id,
                total_amount=total,
                status=OrderStatus.PENDING_PAYMENT,
                receiver=receiver,
                created_at=now,
                updated_at=now,
            )
            try:
                return self.orders.create(uow, draft, order_lines)
            except OrderNumberConflict as e:
                logger.warning("order number collision", extra={"order_number": e.order_number, "attempt": attempt})
        raise OrderPersistenceError("order number retries exhausted", attempts)

    def _clear_cart(self, user_id: int, order: Order) -> None:
        # a stale cart is tolerable, a lost order is not: never roll back here
        try:
            with self.uow_factory() as uow:
                self.cart.clear(uow, user_id)
                uow.commit()
        except Exception:
            logger.exception(
                "cart clear failed, order stands",
                extra={"order_number": order.order_number, "user_id": user_id},
            )

    # ---- Transitions ----
    def _apply(self, uow, order_id: int, event: OrderEvent) -> Order:
        from_status, to_status = TRANSITIONS[event]
        if not self.orders.update_status(uow, order_id, to_status, expected_status=from_status):
            current = self.orders.find_by_id(uow, order_id)
            if current is None:
                raise OrderNotFound(order_id=order_id)
            raise InvalidTransition(order_id, current.status, event)
        return self.orders.find_by_id(uow, order_id)

    def _transition(self, order_id: int, event: OrderEvent) -> Order:
        with self.uow_factory() as uow:
            order = self._apply(uow, order_id, event)
            uow.commit()
        logger.info("order transitioned", extra={"order_id": order_id, "event": event.value, "status": order.status.value})
        return order

    def pay(self, order_id: int) -> Order:
        """Record a payment confirmed by the external gateway."""
        return self._transition(order_id, OrderEvent.PAY)

    def ship(self, order_id: int) -> Order:
        """Mark a paid order as handed to the carrier.

        Raises:
            OrderNotFound: No such order.
            InvalidTransition: The order is not PENDING_SHIPMENT.
        """
        return self._transition(order_id, OrderEvent.SHIP)

    def receive(self, order_id: int) -> Order:
        """Mark a shipped order as delivered; COMPLETED is terminal.

        Raises:
            OrderNotFound: No such order.
            InvalidTransition: The order is not PENDING_RECEIPT.
        """
        return self._transition(order_id, OrderEvent.RECEIVE)

    def cancel(self, order_id: int) -> Order:
        """Cancel a PENDING_PAYMENT order and return its stock.

        The status change and every restock commit together; if any restock
        fails the order stays PENDING_PAYMENT and no stock moves. Because
        the status check-and-set is part of the same unit of work, a second
        cancel (or a racing pay) fails with InvalidTransition and cannot
        restock twice.

        Raises:
            OrderNotFound: No such order.
            InvalidTransition: The order is not PENDING_PAYMENT.
        """
        with self.uow_factory() as uow:
            order = self._apply(uow, order_id, OrderEvent.CANCEL)
            for line in order.lines:
                try:
                    self.stock.restock(uow, line.product_id, line.quantity)
                except ProductNotFound:
                    logger.warning(
                        "restock skipped, product no longer stocked",
                        extra={"order_id": order_id, "product_id": line.product_id, "quantity": line.quantity},
                    )
            uow.commit()
        logger.info("order transitioned", extra={"order_id": order_id, "event": "CANCEL", "status": order.status.value})
        return order

    # ---- Editing and administration ----
    def change_receiver(self, order_id: int, receiver: ReceiverIn | Receiver | Mapping) -> Order:
        """Correct the shipping destination while the order awaits payment.

        Raises:
            InvalidReceiver: Receiver details failed validation.
            OrderNotFound: No such order.
            OrderLocked: The order is past PENDING_PAYMENT.
        """
        receiver = self._validate_receiver(receiver)
        with self.uow_factory() as uow:
            if not self.orders.update_receiver(uow, order_id, receiver, expected_status=OrderStatus.PENDING_PAYMENT):
                current = self.orders.find_by_id(uow, order_id)
                if current is None:
                    raise OrderNotFound(order_id=order_id)
                raise OrderLocked(order_id, current.status, "CHANGE_RECEIVER")
            order = self.orders.find_by_id(uow, order_id)
            uow.commit()
        return order

    def purge_order(self, order_id: int) -> None:
        """Delete a finished order and its lines.

        Only COMPLETED or CANCELLED orders can be purged; deleting a live
        order would strand the stock it reserved.
        """
        with self.uow_factory() as uow:
            order = self.orders.find_by_id(uow, order_id)
            if order is None:
                raise OrderNotFound(order_id=order_id)
            if not order.status.is_terminal:
                raise OrderLocked(order_id, order.status, "PURGE")
            if self.checkout_keys is not None:
                self.checkout_keys.release(uow, order_id)
            self.orders.delete(uow, order_id)
            uow.commit()
        logger.info("order purged", extra={"order_id": order_id, "order_number": order.order_number})

    def provision_stock(self, product_id: int, quantity: int) -> int:
        """Add stock for a product (catalog onboarding or replenishment)."""
        with self.uow_factory() as uow:
            level = self.stock.provision(uow, product_id, quantity)
            uow.commit()
        return level

    # ---- Queries ----
    def get_order(self, order_id: int) -> Order:
        """Return one order.

        Raises:
            OrderNotFound: No such order.
        """
        with self.uow_factory() as uow:
            order = self.orders.find_by_id(uow, order_id)
        if order is None:
            raise OrderNotFound(order_id=order_id)
        return order

    def get_by_number(self, order_number: str) -> Order:
        """Return the order with the external ``order_number``.

        Raises:
            OrderNotFound: No such order.
        """
        with self.uow_factory() as uow:
            order = self.orders.find_by_order_number(uow, order_number)
        if order is None:
            raise OrderNotFound(order_number=order_number)
        return order

    def orders_for_user(self, user_id: int) -> list[Order]:
        """Orders of one user, newest first."""
        with self.uow_factory() as uow:
            return self.orders.find_by_user(uow, user_id)

    def all_orders(self) -> list[Order]:
        """Every order, newest first."""
        with self.uow_factory() as uow:
            return self.orders.find_all(uow)

    def list_orders(self, identity: Identity) -> list[Order]:
        """Administrators see every order, other users only their own."""
        if identity.is_admin:
            return self.all_orders()
        return self.orders_for_user(identity.user_id)

    def peek_stock(self, product_id: int) -> int:
        """Current stock for display. Not a guarantee for a later checkout.

        Raises:
            ProductNotFound: The product has no stock row.
        """
        with self.uow_factory() as uow:
            level = self.stock.peek(uow, product_id)
        if level is None:
            raise ProductNotFound(product_id)
        return level

    def dashboard(self, low_stock_threshold: int | None = None) -> DashboardStats:
        """Order count, paid sales total and low-stock product count.

        Args:
            low_stock_threshold: Products at or below this level count as low.
                Defaults to ``settings.LOW_STOCK_THRESHOLD``.

        Returns:
            DashboardStats: The aggregated figures.
        """
        if low_stock_threshold is None:
            low_stock_threshold = getattr(settings, "LOW_STOCK_THRESHOLD", 10)
        with self.uow_factory() as uow:
            return DashboardStats(
                order_count=self.orders.count_all(uow),
                total_sales=self.orders.total_sales(uow, PAID_STATUSES),
                low_stock_count=self.stock.count_low_stock(uow, low_stock_threshold),
            )
