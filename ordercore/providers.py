"""Service provider helpers for wiring the lifecycle manager with ports.

``get_lifecycle_manager`` returns a configured ``OrderLifecycleManager``.
By default it uses the SQL adapters against ``settings.DATABASE_URL``.
When ``settings.USE_SQL_STORE`` is off, it falls back to the in-process
adapters, which suit tests and local development.
"""

from sqlalchemy.engine import Engine

from . import settings
from .adapters import (
    InMemoryCartStore,
    InMemoryCheckoutKeys,
    InMemoryOrderRepository,
    InMemoryStockLedger,
    InMemoryUnitOfWork,
)
from .cart import SqlCartReader
from .db import init_db, make_engine, make_session_factory, sql_unit_of_work_factory, wait_for_db
from .domain import utcnow
from .idempotency import SqlCheckoutKeys
from .lifecycle import OrderLifecycleManager
from .repository import SqlOrderRepository
from .stock import SqlStockLedger


def build_sql_manager(engine: Engine, clock=utcnow, **kwargs) -> OrderLifecycleManager:
    """Wire the manager to SQL adapters sharing ``engine``.

    The schema is created if missing.
    """
    init_db(engine)
    return OrderLifecycleManager(
        uow_factory=sql_unit_of_work_factory(make_session_factory(engine)),
        stock=SqlStockLedger(),
        cart=SqlCartReader(),
        orders=SqlOrderRepository(clock=clock),
        checkout_keys=SqlCheckoutKeys(),
        clock=clock,
        **kwargs,
    )


def build_in_memory_manager(stock_levels: dict[int, int] | None = None, clock=utcnow, **kwargs) -> OrderLifecycleManager:
    """Wire the manager to fresh in-process adapters."""
    return OrderLifecycleManager(
        uow_factory=InMemoryUnitOfWork,
        stock=InMemoryStockLedger(stock_levels),
        cart=InMemoryCartStore(),
        orders=InMemoryOrderRepository(clock=clock),
        checkout_keys=InMemoryCheckoutKeys(),
        clock=clock,
        **kwargs,
    )


def get_lifecycle_manager(engine: Engine | None = None) -> OrderLifecycleManager:
    """Return a configured OrderLifecycleManager.

    Args:
        engine: Engine to use instead of one built from
            ``settings.DATABASE_URL``.

    Returns:
        OrderLifecycleManager: SQL-backed when ``settings.USE_SQL_STORE`` is
        truthy (waiting for the database to accept connections first),
        otherwise backed by in-process adapters.
    """
    if getattr(settings, "USE_SQL_STORE", True):
        engine = engine or make_engine()
        wait_for_db(engine)
        return build_sql_manager(engine)

    return build_in_memory_manager()
