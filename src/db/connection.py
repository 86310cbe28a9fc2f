"""Database connection management for the incident capture core.

Provides synchronous database access using SQLAlchemy. Supports SQLite for
development with a PostgreSQL migration path for production.

Usage:
    # Sync (for FastAPI Depends)
    from src.db.connection import get_db, init_db

    init_db()  # Create tables
    db = next(get_db())
    # ... use db session

    # Outside request handlers
    from src.db.connection import get_db_context

    with get_db_context() as db:
        ...
"""

import logging
import os
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from src.db.models import Base

logger = logging.getLogger(__name__)


# Configuration
def get_database_url() -> str:
    """Get database URL from environment or use default SQLite.

    Precedence:
    1. DATABASE_URL (canonical)
    2. INCIDENT_CAPTURE_DB_PATH (compat fallback, converted to sqlite URL)
    3. sqlite:///<data dir>/incident_capture.db
    """
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    db_path = os.environ.get("INCIDENT_CAPTURE_DB_PATH", "").strip()
    if db_path:
        if db_path.startswith("sqlite:"):
            return db_path
        return f"sqlite:///{db_path}"

    from src.utils.paths import get_default_db_path
    return f"sqlite:///{get_default_db_path()}"


# Engine creation
DATABASE_URL = get_database_url()

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False}
    if DATABASE_URL.startswith("sqlite")
    else {},
    echo=os.environ.get("SQL_ECHO", "").lower() == "true",
)


# Enable foreign keys for SQLite
@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Configure SQLite pragmas for correctness and concurrency.

    Enables:
    - foreign_keys=ON: Referential integrity, needed for the edit history
      cascade and the SET NULL on deleted conversations.
    - journal_mode=WAL: Concurrent readers plus a single writer without
      blocking request handlers.
    - synchronous=NORMAL: Commits are durable after WAL fsync.
    """
    if DATABASE_URL.startswith("sqlite"):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.close()


# Session factories
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


# Dependency functions for FastAPI


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for synchronous operations.

    Intended for use with FastAPI's Depends() for request-scoped sessions.

    Usage:
        @router.get("/incidents/{incident_id}")
        def read_incident(incident_id: str, db: Session = Depends(get_db)):
            return db.get(Incident, incident_id)

    Yields:
        Session: SQLAlchemy session that will be closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Context managers for manual session management


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database sessions outside of FastAPI.

    Usage:
        with get_db_context() as db:
            incident = db.query(Incident).first()
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# Initialization functions


def init_db() -> None:
    """Create all database tables synchronously.

    Uses the Base.metadata from models.py to create all defined tables.
    Safe to call multiple times - will not recreate existing tables.

    Usage:
        from src.db.connection import init_db
        init_db()
    """
    Base.metadata.create_all(bind=engine)
    logger.info("Database initialised at %s", engine.url.render_as_string(hide_password=True))


# Cleanup functions


def close_db() -> None:
    """Close the sync engine and dispose of connection pool."""
    engine.dispose()
