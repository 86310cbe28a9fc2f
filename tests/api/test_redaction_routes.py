"""Tests for the ad-hoc redaction endpoint and application wiring."""

from unittest.mock import patch

from fastapi.testclient import TestClient

from src.api.main import app


class TestRedactEndpoint:
    def test_redacts_text(self, client: TestClient):
        response = client.post(
            "/api/v1/redact",
            json={"text": "Emma hit Emmaline", "identifiers": ["Emma"]},
        )
        assert response.status_code == 200
        assert response.json() == {"text": "[Student] hit Emmaline"}

    def test_no_identifiers(self, client: TestClient):
        response = client.post("/api/v1/redact", json={"text": "Emma sat"})
        assert response.json()["text"] == "Emma sat"

    def test_bare_string_identifiers_rejected(self, client: TestClient):
        response = client.post(
            "/api/v1/redact", json={"text": "Emma sat", "identifiers": "Emma"}
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "E-2004"

    def test_non_string_member_rejected(self, client: TestClient):
        response = client.post(
            "/api/v1/redact", json={"text": "Emma sat", "identifiers": ["Emma", 7]}
        )
        assert response.status_code == 400

    def test_object_identifiers_rejected(self, client: TestClient):
        response = client.post(
            "/api/v1/redact", json={"text": "Emma sat", "identifiers": {"Emma": 1}}
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "E-2004"


def test_health(client: TestClient):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert "version" in data
    assert data["uptime_seconds"] >= 0


def test_lifespan_opens_and_closes_database():
    with patch("src.api.main.init_db") as init_db, patch("src.api.main.close_db") as close_db:
        with TestClient(app):
            init_db.assert_called_once()
            close_db.assert_not_called()
        close_db.assert_called_once()


def test_error_schema_documented(client: TestClient):
    schema = client.get("/openapi.json").json()
    responses = schema["paths"]["/api/v1/incidents/{incident_id}"]["get"]["responses"]
    assert responses["404"]["content"]["application/json"]["schema"]["$ref"].endswith(
        "/ErrorResponse"
    )
