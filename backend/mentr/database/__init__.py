"""
Database engine, session factory, and metadata shared across the settlement engine.
"""

from __future__ import annotations

import logging
from typing import Any, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeMeta, Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from mentr.core.config import settings

logger = logging.getLogger(__name__)

_DEFAULT_POOL_KWARGS: dict[str, Any] = {
    "pool_size": 5,
    "max_overflow": 10,
    "pool_timeout": 5,
    "pool_recycle": 300,
    "pool_pre_ping": True,
}


def _build_engine_kwargs(db_url: str) -> dict[str, Any]:
    """SQLite gets a shared in-process connection; servers get a real pool."""
    if db_url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in db_url or db_url.rstrip("/").endswith("sqlite://"):
            kwargs["poolclass"] = StaticPool
        return kwargs
    return dict(_DEFAULT_POOL_KWARGS)


def _enable_sqlite_savepoints(engine: Engine) -> None:
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINT nests inside a real transaction."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


def build_engine(db_url: str) -> Engine:
    built = create_engine(db_url, **_build_engine_kwargs(db_url))
    if db_url.startswith("sqlite"):
        _enable_sqlite_savepoints(built)
    return built


engine: Engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

Base: DeclarativeMeta = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Get database session with proper cleanup."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


__all__ = ["Base", "SessionLocal", "build_engine", "engine", "get_db"]
