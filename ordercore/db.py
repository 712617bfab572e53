"""Engine construction and the SQL unit of work.

Connection parameters come from ``settings.DATABASE_URL``. PostgreSQL is
the production target; SQLite is supported for development and tests with
two adjustments: transactions start with ``BEGIN IMMEDIATE`` so concurrent
writers queue on the database lock instead of failing mid-transaction, and
foreign keys are switched on so deletes cascade.
"""

import time

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from . import settings
from .log import get_logger
from .models import Base

logger = get_logger(__name__)


def _is_memory_sqlite(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


def _tune_sqlite(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # take BEGIN away from pysqlite so the "begin" hook below owns it
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(url: str | None = None, **kwargs) -> Engine:
    """Create an engine for ``url`` (defaults to ``settings.DATABASE_URL``).

    Args:
        url: SQLAlchemy database URL.
        **kwargs: Extra ``create_engine`` arguments.

    Returns:
        Engine: Configured engine. In-memory SQLite engines share a single
        connection so every session sees the same database.
    """
    url = url or getattr(settings, "DATABASE_URL", "sqlite:///ordercore.db")
    kwargs.setdefault("echo", getattr(settings, "DB_ECHO", False))

    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True, **kwargs)

    connect_args = {
        "timeout": getattr(settings, "SQLITE_BUSY_TIMEOUT_SECS", 30.0),
        "check_same_thread": False,
    }
    if _is_memory_sqlite(url):
        kwargs.setdefault("poolclass", StaticPool)
    engine = create_engine(url, connect_args=connect_args, **kwargs)
    _tune_sqlite(engine)
    return engine


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)


def wait_for_db(engine: Engine, deadline_secs: float | None = None) -> None:
    """Block until the database accepts connections.

    Retries ``select 1`` once per second until the deadline elapses, then
    re-raises the last connection error.
    """
    if deadline_secs is None:
        deadline_secs = getattr(settings, "DB_CONNECT_DEADLINE_SECS", 30.0)
    deadline = time.monotonic() + deadline_secs
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            return
        except Exception:
            if time.monotonic() >= deadline:
                raise
            logger.warning("database not ready, retrying", extra={"url": engine.url.render_as_string()})
            time.sleep(1)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


class SqlUnitOfWork:
    """One database transaction, passed explicitly through the call chain.

    Usage::

        with SqlUnitOfWork(session_factory) as uow:
            ledger.check_and_reserve(uow, product_id, 2)
            uow.commit()

    Exiting the block closes the session, which rolls back anything not
    committed, including work left behind by an exception.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self.session: Session | None = None

    def __enter__(self) -> "SqlUnitOfWork":
        self.session = self._session_factory()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            self.session.rollback()
        finally:
            self.session.close()

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()


def sql_unit_of_work_factory(session_factory: sessionmaker):
    """Return a zero-argument callable producing fresh ``SqlUnitOfWork`` objects."""
    return lambda: SqlUnitOfWork(session_factory)
