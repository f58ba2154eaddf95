"""
Database configuration and session management.

The engine is created on first use from the configured database url, so
importing the ORM models never opens a connection. Call init_db() once to
create the learning tables (or run the Alembic migration), then open
sessions with get_db().
"""
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from backend.config import get_settings

# Create declarative base for models
Base = declarative_base()

# Session factory, bound to the engine by get_engine() / bind_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False)

_engine: Optional[Engine] = None


def create_db_engine(database_url: str) -> Engine:
    """Create an engine with pool settings suited to the backend."""
    # SQLite doesn't support pool_size/max_overflow
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
        )
    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


def bind_engine(engine: Optional[Engine]) -> None:
    """Point the session factory at an engine; None resets to the configured url."""
    global _engine
    _engine = engine
    SessionLocal.configure(bind=engine)


def get_engine() -> Engine:
    """Get the shared engine, creating it from settings on first use."""
    if _engine is None:
        bind_engine(create_db_engine(get_settings().database_url))
    return _engine


def get_db() -> Generator[Session, None, None]:
    """
    Provide a database session.

    Yields:
        Database session that is automatically closed after use.
    """
    get_engine()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(engine: Optional[Engine] = None) -> None:
    """
    Create the learning tables.

    Args:
        engine: Target engine; defaults to the shared engine.
    """
    # Import models to ensure they're registered with Base
    from backend.models import learning  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())
