import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from ordercore import settings
from ordercore.db import make_engine
from ordercore.models import CartLineRow
from ordercore.providers import build_in_memory_manager, build_sql_manager

RECEIVER = {"name": "Ada Lovelace", "phone": "+44 20 7946 0958", "address": "12 St James's Square, London"}


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    monkeypatch.setattr(settings, "DB_CONNECT_DEADLINE_SECS", 0.0)
    monkeypatch.setattr(settings, "ORDER_NUMBER_MAX_ATTEMPTS", 5)
    monkeypatch.setattr(settings, "LOW_STOCK_THRESHOLD", 10)


class TickingClock:
    """Deterministic clock advancing one second per call."""

    def __init__(self, start=datetime(2024, 1, 1, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        self.now += timedelta(seconds=1)
        return self.now


class Shop:
    """Test harness around a manager: seeding carts and stock, reading state back."""

    def __init__(self, manager, kind):
        self.manager = manager
        self.kind = kind

    def add_to_cart(self, user_id, product_id, quantity, unit_price):
        if self.kind == "memory":
            self.manager.cart.add_line(user_id, product_id, quantity, unit_price)
            return
        with self.manager.uow_factory() as uow:
            uow.session.add(
                CartLineRow(user_id=user_id, product_id=product_id, quantity=quantity, unit_price=Decimal(str(unit_price)))
            )
            uow.commit()

    def provision(self, product_id, quantity):
        return self.manager.provision_stock(product_id, quantity)

    def stock(self, product_id):
        return self.manager.peek_stock(product_id)

    def cart(self, user_id):
        with self.manager.uow_factory() as uow:
            return self.manager.cart.read_lines(uow, user_id)


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def engine():
    eng = make_engine("sqlite://")
    yield eng
    eng.dispose()


@pytest.fixture
def file_engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'orders.db'}")
    yield eng
    eng.dispose()


@pytest.fixture
def sql_shop(engine, clock):
    return Shop(build_sql_manager(engine, clock=clock), "sql")


@pytest.fixture
def file_shop(file_engine):
    return Shop(build_sql_manager(file_engine), "sql")


@pytest.fixture
def memory_shop(clock):
    return Shop(build_in_memory_manager(clock=clock), "memory")


@pytest.fixture(params=["sql", "memory"])
def shop(request, clock):
    if request.param == "sql":
        return request.getfixturevalue("sql_shop")
    return request.getfixturevalue("memory_shop")


@pytest.fixture
def receiver():
    return dict(RECEIVER)
