"""Tests for database URL resolution."""

from src.db.connection import get_database_url


class TestGetDatabaseUrl:
    def test_database_url_takes_precedence(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://db/incidents")
        monkeypatch.setenv("INCIDENT_CAPTURE_DB_PATH", "/tmp/ignored.db")
        assert get_database_url() == "postgresql://db/incidents"

    def test_db_path_fallback(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setenv("INCIDENT_CAPTURE_DB_PATH", "/tmp/capture.db")
        assert get_database_url() == "sqlite:////tmp/capture.db"

    def test_db_path_already_url(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.setenv("INCIDENT_CAPTURE_DB_PATH", "sqlite:///relative.db")
        assert get_database_url() == "sqlite:///relative.db"

    def test_default_uses_data_dir(self, monkeypatch, tmp_path):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.delenv("INCIDENT_CAPTURE_DB_PATH", raising=False)
        monkeypatch.setenv("INCIDENT_CAPTURE_DATA_DIR", str(tmp_path))
        assert get_database_url() == f"sqlite:///{tmp_path / 'incident_capture.db'}"

    def test_blank_values_ignored(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATABASE_URL", "  ")
        monkeypatch.setenv("INCIDENT_CAPTURE_DB_PATH", "")
        monkeypatch.setenv("INCIDENT_CAPTURE_DATA_DIR", str(tmp_path))
        assert get_database_url().endswith("incident_capture.db")
