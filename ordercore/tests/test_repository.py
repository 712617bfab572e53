"""Integration tests for the SQL order repository.

These run against an in-memory SQLite database and use low-level
statements where the point is what actually reached the tables (cascades,
stored timestamps) rather than what the repository reports.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import delete, func, select

from ordercore.db import init_db, make_session_factory, sql_unit_of_work_factory
from ordercore.domain import Order, OrderLine, OrderStatus, Receiver
from ordercore.errors import OrderNumberConflict
from ordercore.models import CheckoutKeyRow, OrderLineRow, OrderRow
from ordercore.repository import SqlOrderRepository

RECEIVER = Receiver(name="Grace Hopper", phone="+1 202 555 0100", address="Arlington, VA")


@pytest.fixture
def uow_factory(engine):
    init_db(engine)
    return sql_unit_of_work_factory(make_session_factory(engine))


@pytest.fixture
def repo(clock):
    return SqlOrderRepository(clock=clock)


def draft(number, user_id=1, total="12.50", status=OrderStatus.PENDING_PAYMENT, when=None):
    when = when or datetime(2024, 1, 1, tzinfo=timezone.utc)
    return Order(
        id=None,
        order_number=number,
        user_id=user_id,
        total_amount=Decimal(total),
        status=status,
        receiver=RECEIVER,
        created_at=when,
        updated_at=when,
    )


LINES = [
    OrderLine(order_id=None, product_id=1, quantity=2, unit_price=Decimal("5.00")),
    OrderLine(order_id=None, product_id=2, quantity=1, unit_price=Decimal("2.50")),
]


def save(uow_factory, repo, order, lines=LINES):
    with uow_factory() as uow:
        created = repo.create(uow, order, lines)
        uow.commit()
    return created


def test_create_assigns_ids_and_round_trips(uow_factory, repo):
    created = save(uow_factory, repo, draft("n-1"))

    assert created.id is not None
    assert [line.order_id for line in created.lines] == [created.id, created.id]

    with uow_factory() as uow:
        loaded = repo.find_by_id(uow, created.id)
    assert loaded == created
    assert loaded.created_at.tzinfo is not None
    assert loaded.lines[0].unit_price == Decimal("5.00")


def test_duplicate_order_number_raises_conflict_and_keeps_transaction_usable(uow_factory, repo):
    save(uow_factory, repo, draft("n-1"))

    with uow_factory() as uow:
        with pytest.raises(OrderNumberConflict) as e:
            repo.create(uow, draft("n-1", user_id=2), LINES)
        assert e.value.order_number == "n-1"
        # the savepoint was rolled back; the outer transaction carries on
        retry = repo.create(uow, draft("n-2", user_id=2), LINES)
        uow.commit()

    with uow_factory() as uow:
        assert repo.find_by_order_number(uow, "n-2").id == retry.id
        assert repo.count_all(uow) == 2


def test_find_by_user_newest_first(uow_factory, repo):
    older = save(uow_factory, repo, draft("a", when=datetime(2024, 1, 1, tzinfo=timezone.utc)))
    newer = save(uow_factory, repo, draft("b", when=datetime(2024, 2, 1, tzinfo=timezone.utc)))
    save(uow_factory, repo, draft("c", user_id=2))

    with uow_factory() as uow:
        assert [o.id for o in repo.find_by_user(uow, 1)] == [newer.id, older.id]
        assert len(repo.find_all(uow)) == 3
        assert repo.find_by_user(uow, 3) == []
        assert repo.find_by_id(uow, 999) is None


def test_update_status_is_compare_and_set(uow_factory, repo, clock):
    order = save(uow_factory, repo, draft("n-1"))

    with uow_factory() as uow:
        assert not repo.update_status(uow, 999, OrderStatus.CANCELLED)
        assert not repo.update_status(uow, order.id, OrderStatus.COMPLETED, expected_status=OrderStatus.PENDING_RECEIPT)
        assert repo.update_status(
            uow, order.id, OrderStatus.PENDING_SHIPMENT, expected_status=OrderStatus.PENDING_PAYMENT
        )
        uow.commit()

    with uow_factory() as uow:
        loaded = repo.find_by_id(uow, order.id)
    assert loaded.status == OrderStatus.PENDING_SHIPMENT
    assert loaded.updated_at == clock.now
    assert loaded.created_at == order.created_at


def test_update_receiver(uow_factory, repo):
    order = save(uow_factory, repo, draft("n-1"))
    moved = Receiver(name="Grace Hopper", phone="+1 202 555 0199", address="Washington, DC")

    with uow_factory() as uow:
        assert repo.update_receiver(uow, order.id, moved, expected_status=OrderStatus.PENDING_PAYMENT)
        uow.commit()

    with uow_factory() as uow:
        assert repo.find_by_id(uow, order.id).receiver == moved


def test_delete_removes_lines(uow_factory, repo):
    order = save(uow_factory, repo, draft("n-1"))

    with uow_factory() as uow:
        assert repo.delete(uow, order.id)
        assert not repo.delete(uow, 999)
        uow.commit()

    with uow_factory() as uow:
        assert repo.find_by_id(uow, order.id) is None
        remaining = uow.session.execute(select(func.count()).select_from(OrderLineRow)).scalar_one()
    assert remaining == 0


def test_foreign_keys_cascade_at_the_database(uow_factory, repo):
    order = save(uow_factory, repo, draft("n-1"))
    with uow_factory() as uow:
        uow.session.add(CheckoutKeyRow(key="k", request_hash="h", order_id=order.id))
        uow.commit()

    with uow_factory() as uow:
        uow.session.execute(delete(OrderRow).where(OrderRow.id == order.id))
        uow.commit()

    with uow_factory() as uow:
        s = uow.session
        assert s.execute(select(func.count()).select_from(OrderLineRow)).scalar_one() == 0
        assert s.execute(select(func.count()).select_from(CheckoutKeyRow)).scalar_one() == 0


def test_total_sales_counts_paid_orders_only(uow_factory, repo):
    save(uow_factory, repo, draft("a", total="10.10", status=OrderStatus.PENDING_PAYMENT))
    save(uow_factory, repo, draft("b", total="20.20", status=OrderStatus.PENDING_SHIPMENT))
    save(uow_factory, repo, draft("c", total="0.30", status=OrderStatus.COMPLETED))
    save(uow_factory, repo, draft("d", total="99.99", status=OrderStatus.CANCELLED))

    with uow_factory() as uow:
        assert repo.total_sales(uow) == Decimal("20.50")
        assert repo.count_all(uow) == 4


def test_total_sales_empty(uow_factory, repo):
    with uow_factory() as uow:
        assert repo.total_sales(uow) == Decimal("0")
