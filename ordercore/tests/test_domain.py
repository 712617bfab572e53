"""Unit tests for the domain values, the transition table and error payloads."""

import re
from decimal import Decimal

import pytest

from ordercore.domain import (
    PAID_STATUSES,
    TRANSITIONS,
    CartLine,
    OrderEvent,
    OrderLine,
    OrderStatus,
    new_order_number,
    order_total,
    utcnow,
)
from ordercore.errors import (
    EmptyCart,
    InsufficientStock,
    InvalidCheckout,
    InvalidTransition,
    OrderError,
    OrderNotFound,
    OrderPersistenceError,
    error_payload,
)


def test_transition_table_is_linear_with_cancel_from_pending_payment():
    assert TRANSITIONS[OrderEvent.PAY] == (OrderStatus.PENDING_PAYMENT, OrderStatus.PENDING_SHIPMENT)
    assert TRANSITIONS[OrderEvent.SHIP] == (OrderStatus.PENDING_SHIPMENT, OrderStatus.PENDING_RECEIPT)
    assert TRANSITIONS[OrderEvent.RECEIVE] == (OrderStatus.PENDING_RECEIPT, OrderStatus.COMPLETED)
    assert TRANSITIONS[OrderEvent.CANCEL] == (OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED)


def test_terminal_states_have_no_outgoing_transition():
    sources = {src for src, _ in TRANSITIONS.values()}
    for status in OrderStatus:
        assert status.is_terminal == (status not in sources)
    assert {s for s in OrderStatus if s.is_terminal} == {OrderStatus.COMPLETED, OrderStatus.CANCELLED}


def test_paid_statuses_exclude_unpaid_and_cancelled():
    assert OrderStatus.PENDING_PAYMENT not in PAID_STATUSES
    assert OrderStatus.CANCELLED not in PAID_STATUSES
    assert str(OrderStatus.COMPLETED) == "COMPLETED"


def test_order_total_is_exact():
    lines = [
        CartLine(product_id=1, quantity=3, unit_price=Decimal("0.10")),
        CartLine(product_id=2, quantity=1, unit_price=Decimal("19.99")),
    ]
    total = order_total(lines)
    assert total == Decimal("20.29")
    assert isinstance(total, Decimal)


def test_line_total():
    line = OrderLine(order_id=1, product_id=7, quantity=4, unit_price=Decimal("2.35"))
    assert line.line_total == Decimal("9.40")


def test_order_numbers_are_hex_tokens_and_distinct():
    numbers = {new_order_number() for _ in range(1000)}
    assert len(numbers) == 1000
    assert all(re.fullmatch(r"[0-9a-f]{32}", n) for n in numbers)


def test_utcnow_is_timezone_aware():
    assert utcnow().utcoffset().total_seconds() == 0


def test_error_codes_are_messages():
    e = InsufficientStock(product_id=7, requested=3)
    assert str(e) == e.code == "INSUFFICIENT_STOCK"
    assert isinstance(EmptyCart(1), InvalidCheckout)
    assert isinstance(InvalidTransition(1, OrderStatus.CANCELLED, OrderEvent.PAY), OrderError)


@pytest.mark.parametrize(
    "exc, expected",
    [
        (InsufficientStock(7, 3), {"detail": "INSUFFICIENT_STOCK", "product_id": 7, "requested": 3}),
        (OrderNotFound(order_id=5), {"detail": "ORDER_NOT_FOUND", "order_id": 5}),
        (
            InvalidTransition(5, OrderStatus.CANCELLED, OrderEvent.PAY),
            {"detail": "INVALID_TRANSITION", "order_id": 5, "status": "CANCELLED", "event": "PAY"},
        ),
        (
            OrderPersistenceError("order number retries exhausted", 5),
            {"detail": "SYSTEM_ERROR", "reason": "order number retries exhausted", "attempts": 5},
        ),
        (ValueError("connection reset by peer"), {"detail": "SYSTEM_ERROR"}),
    ],
)
def test_error_payload(exc, expected):
    assert error_payload(exc) == expected
