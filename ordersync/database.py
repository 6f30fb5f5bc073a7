"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory for the order store.
    Exposes the FastAPI dependency and a context manager for workers.

WHY:
    - Routers get a request-scoped session through `get_db()`
    - Background jobs (arq worker, in-process queue) open their own sessions
      through `get_sync_session()` because they outlive the request

USAGE:
    from ordersync.database import SessionLocal, get_db

    @router.get("/orders")
    async def list_orders(db: Session = Depends(get_db)):
        ...

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - ordersync/routers/ (consumers of these sessions)
"""

import logging
import os
from contextlib import contextmanager
from typing import Generator

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Returns:
        Database connection string

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Local .env never overrides variables that are already exported
        if load_dotenv(override=False):
            logger.info("[DATABASE] Loaded local .env file")
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure .env is loaded or env var is exported."
        )

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# NOTE: SQLite engines (used in tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# =============================================================================
# BASE MODEL (imported from models for single registry)
# =============================================================================

from .models import Base  # noqa: E402


def init_db() -> None:
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(bind=engine)


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    Yields:
        SQLAlchemy Session instance
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# =============================================================================
# CONTEXT MANAGERS (for non-FastAPI usage)
# =============================================================================

@contextmanager
def get_sync_session(session_factory=None) -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI.

    WHAT:
        Creates a session with automatic cleanup.

    WHY:
        For use in workers and queued jobs where FastAPI dependency
        injection isn't available. Tests pass their own factory.

    Example:
        with get_sync_session() as db:
            orders = db.query(Order).all()
    """
    db = (session_factory or SessionLocal)()
    try:
        yield db
    finally:
        db.close()
