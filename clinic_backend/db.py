from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from clinic_backend.config import get_settings


def _make_engine(url: str) -> Engine:
    connect_args = {}
    sqlite = url.startswith("sqlite")
    if sqlite:
        # the pool hands connections across request threads
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 15
    eng = create_engine(
        url,
        echo=False,              # True to log the SQL
        future=True,
        connect_args=connect_args,
    )
    if sqlite:
        _serialize_sqlite_writers(eng)
    return eng


def _serialize_sqlite_writers(eng: Engine) -> None:
    """
    pysqlite starts transactions lazily, so two connections can both read
    and then fail to upgrade to a write lock. Take the lock at BEGIN instead:
    concurrent writers wait on the busy timeout rather than erroring.
    """

    @event.listens_for(eng, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


engine: Engine = _make_engine(get_settings().database_url)

SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    future=True,
    expire_on_commit=False
)


class Base(DeclarativeBase):
    """ORM base for every model."""
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp, the format stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def configure_engine(url: str) -> Engine:
    """Rebind the session factory to another database (CLI overrides, tests)."""
    global engine
    engine.dispose()
    engine = _make_engine(url)
    SessionLocal.configure(bind=engine)
    return engine


def init_db() -> None:
    """Create the tables if they do not exist."""
    # registers every model on the metadata
    from clinic_backend import auth_models, mail_models  # noqa: F401

    Base.metadata.create_all(bind=engine)


@contextmanager
def db_session() -> Iterator[Session]:
    """
    Session context manager:
    - commit when everything went fine
    - rollback on exceptions
    - always close
    """
    session: Session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
