"""Database connection module for the ICP discovery engine.

Provides:
- create_db_engine(): Engine for a DATABASE_URL
- get_session_factory(): process-wide session factory, created lazily
- session_scope(): context manager that commits or rolls back
- init_db(): create all tables (development and tests)
"""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config.settings import DATABASE_CONFIG
from .models import Base

logger = logging.getLogger(__name__)

_session_factory: Optional[sessionmaker] = None


def create_db_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """Create an Engine. In-memory SQLite shares one connection across threads."""
    url = make_url(url or DATABASE_CONFIG["url"])
    echo = DATABASE_CONFIG["echo"] if echo is None else echo

    if url.get_backend_name() == "sqlite":
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, echo=echo, **kwargs)
        _enable_sqlite_savepoints(engine)
        return engine

    return create_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=DATABASE_CONFIG["pool_size"],
        max_overflow=DATABASE_CONFIG["max_overflow"],
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(engine, class_=Session, expire_on_commit=False)


def get_session_factory() -> sessionmaker:
    """Return the process-wide session factory bound to DATABASE_URL."""
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(create_db_engine())
    return _session_factory


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """Context manager that yields a session and commits on exit.

    Usage:
        with session_scope() as session:
            session.execute(...)
    """
    factory = factory or get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError:
        session.rollback()
        logger.exception("Database session rolled back due to exception")
        raise
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINT works on pysqlite."""

    @event.listens_for(engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")
