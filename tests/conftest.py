"""Root-level pytest fixtures for all tests.

Provides shared fixtures:
- In-memory SQLite session with foreign keys enforced
- File-based SQLite session factory for multi-threaded tests
- Sample conversation and incident data
"""

import os
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

# Keep module-level engines off the developer's real database.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from src.db.models import Base, Conversation, Incident  # noqa: E402
from src.services.conversation_persistence_service import (  # noqa: E402
    ConversationPersistenceService,
)
from src.services.incident_service import IncidentService  # noqa: E402

# ============================================================================
# Pytest Markers
# ============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks end-to-end pipeline tests"
    )


# ============================================================================
# Database Fixtures
# ============================================================================


def _enable_foreign_keys(engine) -> None:
    @event.listens_for(engine, "connect")
    def _pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@pytest.fixture
def db_session() -> Generator[Session, None, None]:
    """Create an in-memory SQLite session with all tables."""
    engine = create_engine("sqlite:///:memory:")
    _enable_foreign_keys(engine)
    Base.metadata.create_all(engine)
    session = sessionmaker(bind=engine, autocommit=False, autoflush=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def file_based_db() -> Generator[str, None, None]:
    """Create a file-based SQLite database.

    Unlike in-memory databases, this persists across connections and can
    be shared by sessions on different threads.
    """
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    try:
        yield path
    finally:
        Path(path).unlink(missing_ok=True)


@pytest.fixture
def session_factory(file_based_db: str) -> Generator[Callable[[], Session], None, None]:
    """Session factory bound to a file-based SQLite database."""
    engine = create_engine(
        f"sqlite:///{file_based_db}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    _enable_foreign_keys(engine)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    try:
        yield factory
    finally:
        engine.dispose()


# ============================================================================
# Sample Data
# ============================================================================


@pytest.fixture
def conversation(db_session: Session) -> Conversation:
    """An active conversation owned by teacher-1 about student-42."""
    return ConversationPersistenceService(db_session).create_conversation(
        "teacher-1", student_id="student-42"
    )


@pytest.fixture
def draft_incident(db_session: Session) -> Incident:
    """A draft incident with every mandatory field filled."""
    return IncidentService(db_session).create_incident(
        user_id="teacher-1",
        student_id="student-42",
        fields={
            "behavior": "Threw a chair",
            "incident_type": "Property Destruction",
            "location": "classroom",
        },
    )
