"""Database session configuration."""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from bitcoin_blocks.core.settings import settings


class Base(DeclarativeBase):
    """Declarative base shared by all ORM models."""


# Ensure model modules are imported so that metadata is populated when create_all runs.
import bitcoin_blocks.models  # noqa: E402,F401


def enable_sqlite_savepoints(target: Engine) -> None:
    """Let pysqlite honour SAVEPOINT and foreign keys.

    The driver otherwise defers BEGIN until the first write, which breaks
    nested transactions used for constraint-guarded inserts.
    """

    @event.listens_for(target, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(target, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


def _build_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        built = create_engine(
            url,
            connect_args={"check_same_thread": False},
            echo=settings.sql_debug,
        )
        enable_sqlite_savepoints(built)
        return built
    return create_engine(url, pool_pre_ping=True, echo=settings.sql_debug)


engine = _build_engine(settings.effective_database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for dependency injection."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def create_tables() -> None:
    """Create all database tables."""
    Base.metadata.create_all(bind=engine)


def drop_tables() -> None:
    """Drop all database tables."""
    Base.metadata.drop_all(bind=engine)
