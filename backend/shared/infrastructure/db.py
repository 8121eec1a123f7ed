"""
Database configuration, session management and the unit of work.
Uses SQLAlchemy 2.0 patterns.

Services never commit on their own: every multi-step mutation runs inside
``UnitOfWork.transaction()`` so it either fully commits or fully rolls back.
"""

import os
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from shared.config.settings import DATABASE_URL


def _calculate_pool_size() -> int:
    """(2 * CPU cores) + 1, capped at 20."""
    cores = os.cpu_count() or 4
    return min(cores * 2 + 1, 20)


def _engine_options(url: str) -> dict[str, Any]:
    """Pool and timeout options; SQLite (local/dev) takes none of the pool settings."""
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,  # Verify connections before using
        "pool_size": _calculate_pool_size(),
        "max_overflow": 15,
        "pool_timeout": 30,  # Wait max 30s for connection from pool
        "pool_recycle": 1800,  # Recycle connections after 30 minutes
        "connect_args": {"connect_timeout": 10},
    }


engine = create_engine(DATABASE_URL, echo=False, **_engine_options(DATABASE_URL))

# Session factory
SessionLocal = sessionmaker(
    bind=engine,
    autoflush=False,
    autocommit=False,
    expire_on_commit=False,
)


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency for database sessions.

    The session is automatically closed after the request completes.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


class UnitOfWork:
    """
    Explicit transactional unit of work around a SQLAlchemy session.

    Usage:
        uow = UnitOfWork(db)
        with uow.transaction() as session:
            session.add(order)
        # committed here, or rolled back if the block raised
    """

    def __init__(self, session: Session):
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    def begin(self) -> Session:
        if not self._session.in_transaction():
            self._session.begin()
        return self._session

    @contextmanager
    def transaction(self) -> Generator[Session, None, None]:
        session = self.begin()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
