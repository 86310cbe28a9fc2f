"""Pytest fixtures for API tests.

Provides test client, database session, and sample data fixtures
for testing FastAPI endpoints.
"""

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from src.api.dependencies import get_settings
from src.api.main import app
from src.config import IncidentCaptureConfig
from src.db.connection import get_db
from src.db.models import Base

OWNER = {"X-User-Id": "teacher-1"}
OTHER = {"X-User-Id": "teacher-2"}


@pytest.fixture
def test_db() -> Generator[Session, None, None]:
    """Create an in-memory SQLite database for testing.

    Creates all tables, yields a session, and cleans up after test.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(bind=engine)
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(test_db: Session) -> Generator[TestClient, None, None]:
    """Create a TestClient with overridden database and settings dependencies.

    Args:
        test_db: Test database session fixture.

    Yields:
        TestClient configured for testing.
    """

    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: IncidentCaptureConfig()

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def conversation_id(client: TestClient) -> str:
    """An active conversation owned by teacher-1."""
    response = client.post(
        "/api/v1/conversations", json={"student_id": "student-42"}, headers=OWNER
    )
    assert response.status_code == 201
    return response.json()["id"]


@pytest.fixture
def drafted(client: TestClient, conversation_id: str) -> dict:
    """Draft incident derived from a two-turn conversation."""
    for text in ("Student hit desk", "during math"):
        client.post(
            f"/api/v1/conversations/{conversation_id}/turns",
            json={"content": text},
            headers=OWNER,
        )
    response = client.post(f"/api/v1/conversations/{conversation_id}/draft", headers=OWNER)
    assert response.status_code == 200
    return response.json()["incident"]
