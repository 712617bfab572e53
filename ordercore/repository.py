"""Repository layer for persisting orders.

This module maps domain ``Order``/``OrderLine`` values to the ``orders`` and
``order_lines`` tables. It keeps a thin interface so the lifecycle manager
is not coupled to ORM types: everything returned is a frozen domain value.
Orders and lines are only ever written together; lines are never touched
after creation.
"""

from datetime import timezone
from decimal import Decimal
from typing import Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from .domain import (
    PAID_STATUSES,
    Order,
    OrderLine,
    OrderRepositoryPort,
    OrderStatus,
    Receiver,
    utcnow,
)
from .errors import OrderNumberConflict
from .models import OrderLineRow, OrderRow


def _aware(dt):
    # SQLite drops tzinfo; stored values are UTC
    return dt.replace(tzinfo=timezone.utc) if dt is not None and dt.tzinfo is None else dt


def _to_domain(row: OrderRow) -> Order:
    return Order(
        id=row.id,
        order_number=row.order_number,
        user_id=row.user_id,
        total_amount=Decimal(row.total_amount),
        status=OrderStatus(row.status),
        receiver=Receiver(name=row.receiver_name, phone=row.receiver_phone, address=row.receiver_address),
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
        lines=tuple(
            OrderLine(
                order_id=line.order_id,
                product_id=line.product_id,
                quantity=line.quantity,
                unit_price=Decimal(line.unit_price),
            )
            for line in row.lines
        ),
    )


class SqlOrderRepository(OrderRepositoryPort):
    """Repository that persists Order domain objects using SQLAlchemy.

    Args:
        clock: Returns the timestamp written to ``updated_at`` on changes.
    """

    def __init__(self, clock=utcnow):
        self._clock = clock

    def create(self, uow, order: Order, lines: Sequence[OrderLine]) -> Order:
        """Persist a new order and all of its lines.

        The insert runs in a savepoint, so a unique-constraint violation
        only rolls back this block and the enclosing checkout (with its
        stock reservations) stays usable for a retry.

        Args:
            uow: Open ``SqlUnitOfWork``.
            order: Domain order with ``id=None``.
            lines: Lines to attach; their ``order_id`` is ignored.

        Returns:
            Order: The persisted order with its assigned id.

        Raises:
            OrderNumberConflict: If the order number is already taken.
        """
        s = uow.session
        row = OrderRow(
            order_number=order.order_number,
            user_id=order.user_id,
            total_amount=order.total_amount,
            status=order.status.value,
            receiver_name=order.receiver.name,
            receiver_phone=order.receiver.phone,
            receiver_address=order.receiver.address,
            created_at=order.created_at,
            updated_at=order.updated_at,
            lines=[
                OrderLineRow(product_id=line.product_id, quantity=line.quantity, unit_price=line.unit_price)
                for line in lines
            ],
        )
        try:
            # Nested savepoint: if IntegrityError occurs, only this block is rolled back.
            with s.begin_nested():
                s.add(row)
                s.flush()
        except IntegrityError as e:
            if self._number_taken(uow, order.order_number):
                raise OrderNumberConflict(order.order_number) from e
            raise
        return _to_domain(row)

    def _number_taken(self, uow, order_number: str) -> bool:
        return uow.session.execute(
            select(OrderRow.id).where(OrderRow.order_number == order_number)
        ).first() is not None

    def _load_one(self, uow, *criteria) -> Order | None:
        row = uow.session.execute(
            select(OrderRow).where(*criteria).execution_options(populate_existing=True)
        ).scalar_one_or_none()
        return _to_domain(row) if row else None

    def find_by_id(self, uow, order_id: int) -> Order | None:
        """Load one order with its lines.

        Args:
            uow: Open ``SqlUnitOfWork``.
            order_id: Internal id.

        Returns:
            Order | None: The order, or None when it does not exist.
        """
        return self._load_one(uow, OrderRow.id == order_id)

    def find_by_order_number(self, uow, order_number: str) -> Order | None:
        """Load one order by its external token, or None."""
        return self._load_one(uow, OrderRow.order_number == order_number)

    def _load_many(self, uow, *criteria) -> list[Order]:
        rows = uow.session.execute(
            select(OrderRow)
            .where(*criteria)
            .order_by(OrderRow.created_at.desc(), OrderRow.id.desc())
            .execution_options(populate_existing=True)
        ).scalars()
        return [_to_domain(r) for r in rows]

    def find_by_user(self, uow, user_id: int) -> list[Order]:
        """Orders of one user, newest first."""
        return self._load_many(uow, OrderRow.user_id == user_id)

    def find_all(self, uow) -> list[Order]:
        """Every order, newest first."""
        return self._load_many(uow)

    def _conditional_update(self, uow, order_id: int, expected_status, values: dict) -> bool:
        stmt = update(OrderRow).where(OrderRow.id == order_id)
        if expected_status is not None:
            stmt = stmt.where(OrderRow.status == expected_status.value)
        res = uow.session.execute(
            stmt.values(updated_at=self._clock(), **values).execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    def update_status(self, uow, order_id: int, new_status: OrderStatus, expected_status=None) -> bool:
        """Set ``status`` with an optional compare-and-set on the current status.

        Returns:
            bool: True when the row was updated; False when the order does
            not exist or its status no longer equals ``expected_status``.
        """
        return self._conditional_update(uow, order_id, expected_status, {"status": new_status.value})

    def update_receiver(self, uow, order_id: int, receiver: Receiver, expected_status=None) -> bool:
        """Replace the receiver fields, with the same compare-and-set rule as
        :meth:`update_status`.

        Returns:
            bool: True when the row was updated.
        """
        return self._conditional_update(
            uow,
            order_id,
            expected_status,
            {
                "receiver_name": receiver.name,
                "receiver_phone": receiver.phone,
                "receiver_address": receiver.address,
            },
        )

    def delete(self, uow, order_id: int) -> bool:
        """Remove an order together with its lines."""
        s = uow.session
        row = s.get(OrderRow, order_id)
        if row is None:
            return False
        s.delete(row)
        s.flush()
        return True

    def count_all(self, uow) -> int:
        """Total number of orders."""
        return uow.session.execute(select(func.count()).select_from(OrderRow)).scalar_one()

    def total_sales(self, uow, statuses: Sequence[OrderStatus] = PAID_STATUSES) -> Decimal:
        """Exact sum of ``total_amount`` over orders in ``statuses``.

        Returns:
            Decimal: The sum, ``0`` when nothing matches.
        """
        total = uow.session.execute(
            select(func.coalesce(func.sum(OrderRow.total_amount), 0)).where(
                OrderRow.status.in_([st.value for st in statuses])
            )
        ).scalar_one()
        return Decimal(str(total))
