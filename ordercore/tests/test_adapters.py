"""Tests for the in-process adapters that are not covered through the manager."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from ordercore.adapters import (
    InMemoryCartStore,
    InMemoryCheckoutKeys,
    InMemoryOrderRepository,
    InMemoryUnitOfWork,
)
from ordercore.domain import Order, OrderLine, OrderStatus, Receiver
from ordercore.errors import IdempotencyConflict, OrderNumberConflict


def make_order(number):
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    return Order(
        id=None,
        order_number=number,
        user_id=1,
        total_amount=Decimal("3.00"),
        status=OrderStatus.PENDING_PAYMENT,
        receiver=Receiver("Ada", "+44 20 7946 0958", "London"),
        created_at=now,
        updated_at=now,
    )


def test_unit_of_work_undoes_newest_first():
    calls = []
    with InMemoryUnitOfWork() as uow:
        uow.on_rollback(lambda: calls.append("first"))
        uow.on_rollback(lambda: calls.append("second"))
    assert calls == ["second", "first"]


def test_commit_discards_journal():
    calls = []
    with InMemoryUnitOfWork() as uow:
        uow.on_rollback(lambda: calls.append("undo"))
        uow.commit()
    assert calls == []
    assert uow.committed


def test_cart_clear_is_undone_on_rollback():
    cart = InMemoryCartStore()
    cart.add_line(1, 10, 2, "4.20")
    with InMemoryUnitOfWork() as uow:
        cart.clear(uow, 1)
        assert cart.read_lines(uow, 1) == ()
    with InMemoryUnitOfWork() as uow:
        (line,) = cart.read_lines(uow, 1)
    assert line.unit_price == Decimal("4.20")


def test_repository_create_rolls_back_and_rejects_duplicates():
    repo = InMemoryOrderRepository()
    lines = [OrderLine(order_id=None, product_id=1, quantity=1, unit_price=Decimal("3.00"))]

    with InMemoryUnitOfWork() as uow:
        repo.create(uow, make_order("x"), lines)
    with InMemoryUnitOfWork() as uow:
        assert repo.count_all(uow) == 0
        created = repo.create(uow, make_order("x"), lines)
        uow.commit()

    assert created.lines[0].order_id == created.id
    with InMemoryUnitOfWork() as uow:
        with pytest.raises(OrderNumberConflict):
            repo.create(uow, make_order("x"), lines)


def test_checkout_keys_in_flight_duplicate_conflicts():
    keys = InMemoryCheckoutKeys()
    first = InMemoryUnitOfWork()
    assert keys.claim(first, "k", "h") is None

    with pytest.raises(IdempotencyConflict):
        keys.claim(InMemoryUnitOfWork(), "k", "h")

    keys.bind(first, "k", 7)
    first.commit()
    assert keys.claim(InMemoryUnitOfWork(), "k", "h") == 7
    with pytest.raises(IdempotencyConflict):
        keys.claim(InMemoryUnitOfWork(), "k", "other")
