"""
Database engine and session management.

The engine is created lazily on first use: the first caller builds it under a
lock and every later caller gets the same instance.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from telehealth.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None
_engine_lock = threading.Lock()


def _build_engine(database_url: str) -> Engine:
    # SQLite doesn't support pool_size/max_overflow, PostgreSQL does
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False}
        )
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20
    )


def get_engine() -> Engine:
    """Return the process-wide engine, creating it on first call."""
    global _engine, _session_factory
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                settings.validate_database_url()
                engine = _build_engine(settings.DATABASE_URL)
                _session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
                _engine = engine
                logger.info(f"Database engine initialized ({engine.dialect.name})")
    return _engine


def get_session_factory() -> sessionmaker:
    get_engine()
    return _session_factory


def init_db():
    # Importing the models registers their tables on Base.metadata
    import telehealth.models  # noqa: F401

    Base.metadata.create_all(bind=get_engine())


def get_db() -> Iterator[Session]:
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session) -> Iterator[Session]:
    """
    Run a block as one transaction on ``db``.

    Commits when the block finishes, rolls back and re-raises on any error, so
    a mutation and the audit event written alongside it land together or not
    at all.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
