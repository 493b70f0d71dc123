"""Database session management."""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from waypoint.config import get_settings
from waypoint.database.models import Base

logger = structlog.get_logger(__name__)

# Cache for engines to avoid recreating them
_engines: dict[str, Engine] = {}
_session_factories: dict[str, sessionmaker] = {}


def get_db_url() -> str:
    """Get the configured database URL, creating the sqlite directory if needed."""
    url = get_settings().database_url
    if url.startswith("sqlite:///") and ":memory:" not in url:
        Path(url.removeprefix("sqlite:///")).parent.mkdir(parents=True, exist_ok=True)
    return url


def get_engine(db_url: str) -> Engine:
    """Get or create database engine for a specific URL."""
    if db_url not in _engines:
        logger.debug("creating_db_engine", url=db_url)
        if db_url.startswith("sqlite"):
            _engines[db_url] = create_engine(
                db_url, echo=False, connect_args={"check_same_thread": False}
            )
        else:
            _engines[db_url] = create_engine(
                db_url, pool_size=5, max_overflow=10, pool_pre_ping=True, echo=False
            )
    return _engines[db_url]


def get_session_factory(db_url: str | None = None) -> sessionmaker:
    """Get or create session factory for a specific URL."""
    db_url = db_url or get_db_url()
    if db_url not in _session_factories:
        engine = get_engine(db_url)
        _session_factories[db_url] = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    return _session_factories[db_url]


def init_db(db_url: str | None = None) -> None:
    """Create all tables."""
    engine = get_engine(db_url or get_db_url())
    Base.metadata.create_all(engine)
    logger.info("database_initialized", url=str(engine.url))


@contextmanager
def session_scope(factory: sessionmaker | None = None) -> Generator[Session, None, None]:
    """Context manager for database sessions.

    Commits on success, rolls back on any error.

    Usage:
        with session_scope() as session:
            ...
    """
    factory = factory or get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def cleanup_db_connections() -> None:
    """Clean up all database connections."""
    logger.info("cleaning_up_database_connections")

    for url, engine in _engines.items():
        logger.debug("disposing_database_engine", url=url)
        engine.dispose()

    _engines.clear()
    _session_factories.clear()
