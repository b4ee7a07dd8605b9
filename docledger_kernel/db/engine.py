"""
Engine construction and the unit-of-work helper.

Callers own their engine and session factory; nothing here is global.

PostgreSQL runs READ COMMITTED on a QueuePool.  Voucher counters, period
rows and approval requests are serialized with ``SELECT ... FOR UPDATE``.

SQLite has no row locks, so every transaction starts with BEGIN IMMEDIATE
and takes the database write lock up front.  Concurrent writers queue on
the 30 second busy timeout instead of failing on lock upgrade.
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from docledger_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

SQLITE_BUSY_TIMEOUT = 30


def _sqlite_immediate_transactions(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _connect(dbapi_connection, _record):
        # SQLAlchemy issues BEGIN itself; pysqlite must not
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    """
    Engine for ``database_url`` with the locking behaviour the ledger needs.

    ``sqlite://`` (in memory) gets a StaticPool so that every session sees
    the one connection holding the data.
    """
    configure_logging()

    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            poolclass=StaticPool if database_url in ("sqlite://", "sqlite:///:memory:") else None,
        )
        _sqlite_immediate_transactions(engine)
    else:
        engine = create_engine(
            database_url,
            echo=echo,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            isolation_level="READ COMMITTED",
        )

    logger.info("engine_built", extra={"dialect": engine.dialect.name})
    return engine


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """
    One unit of work: commit on clean exit, roll back and re-raise otherwise.

        with session_scope(factory) as session:
            SequenceService(session, clock).next("acme", "A", 2024)
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Engine) -> None:
    """Create every ledger table and arm the append-only guards."""
    from docledger_kernel.db.base import Base
    from docledger_kernel.db.immutability import register_immutability_listeners
    import docledger_kernel.models  # noqa: F401

    Base.metadata.create_all(engine)
    register_immutability_listeners()


def drop_tables(engine: Engine) -> None:
    from docledger_kernel.db.base import Base
    import docledger_kernel.models  # noqa: F401

    Base.metadata.drop_all(engine)
