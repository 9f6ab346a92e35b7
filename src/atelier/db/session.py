"""Database session management.

Provides session factory for SQLite database access with proper
thread-safety for FastAPI concurrency.
"""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from atelier.db.schema import Base

# Default database path
DEFAULT_DB_PATH = Path("data/atelier.db")

# Module-level engine cache, keyed by resolved path
_engine_cache: dict[str, Engine] = {}

# Module-level session factory cache
_session_factory_cache: dict[str, sessionmaker] = {}


def get_engine(db_path: Path | None = None) -> Engine:
    """Get SQLAlchemy engine for the database.

    Engines are cached by resolved db_path. StaticPool with
    check_same_thread=False keeps SQLite usable from FastAPI's threadpool
    and the event loop alike.

    Args:
        db_path: Path to SQLite database file. Defaults to data/atelier.db.

    Returns:
        SQLAlchemy engine instance (cached).
    """
    db_path = Path(db_path or DEFAULT_DB_PATH)
    cache_key = str(db_path.resolve())

    if cache_key in _engine_cache:
        return _engine_cache[cache_key]

    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{db_path}",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _engine_cache[cache_key] = engine
    return engine


def get_session_factory(db_path: Path | None = None) -> sessionmaker:
    """Get cached session factory for the database."""
    db_path = Path(db_path or DEFAULT_DB_PATH)
    cache_key = str(db_path.resolve())

    if cache_key not in _session_factory_cache:
        _session_factory_cache[cache_key] = sessionmaker(bind=get_engine(db_path))
    return _session_factory_cache[cache_key]


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """Context manager for sessions with automatic cleanup.

    Commits on successful exit, rolls back on exception, and always
    closes the session.

    Example:
        with session_scope(factory) as session:
            session.add(record)
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(db_path: Path | None = None) -> sessionmaker:
    """Create tables and return the session factory.

    Call this once during application startup.
    """
    engine = get_engine(db_path)
    Base.metadata.create_all(engine)
    return get_session_factory(db_path)
