"""
Database engine, session factory, and metadata shared across the application.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from bangbuy.core.config import settings

logger = logging.getLogger(__name__)

_DEFAULT_POOL_KWARGS: dict[str, Any] = {
    "pool_size": 10,
    "max_overflow": 10,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

# SQLite serialises writers; the busy timeout lets concurrent request handlers
# and batch workers wait for the write lock instead of failing immediately.
_SQLITE_CONNECT_ARGS: dict[str, Any] = {
    "check_same_thread": False,
    "timeout": 30,
}


def build_engine(database_url: str, **overrides: Any) -> Engine:
    """Create an engine with dialect-appropriate connection settings."""
    if database_url.startswith("sqlite"):
        kwargs: dict[str, Any] = {"connect_args": dict(_SQLITE_CONNECT_ARGS)}
    else:
        kwargs = {
            **_DEFAULT_POOL_KWARGS,
            "connect_args": {"connect_timeout": 10, "application_name": "bangbuy_messaging"},
        }
    kwargs.update(overrides)
    created = create_engine(database_url, **kwargs)

    @event.listens_for(created, "connect")
    def receive_connect(dbapi_connection: Any, connection_record: Any) -> None:
        connection_record.info["connect_time"] = datetime.now()
        logger.debug("Database connection established")

    return created


engine: Engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


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


def get_db_pool_status() -> dict[str, Any]:
    """Get current database pool statistics."""
    pool = engine.pool
    status = getattr(pool, "status", None)
    return {
        "pool_class": type(pool).__name__,
        "status": status() if callable(status) else None,
    }
