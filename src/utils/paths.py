"""File path resolution for persistent incident capture data.

Resolution order for the data directory:
  1. INCIDENT_CAPTURE_DATA_DIR environment variable
  2. The project root, when running from a source checkout
  3. The platform user data dir via platformdirs
     (Linux: ~/.local/share/incident-capture/,
      macOS: ~/Library/Application Support/incident-capture/)
"""

import os
from pathlib import Path

import platformdirs

APP_NAME = "incident-capture"

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


def _is_source_checkout() -> bool:
    """Return True when running from a source tree rather than an install."""
    return (_PROJECT_ROOT / "pyproject.toml").is_file()


def get_data_dir() -> Path:
    """Return the directory for persistent data (DB, config)."""
    override = os.environ.get("INCIDENT_CAPTURE_DATA_DIR", "").strip()
    if override:
        return Path(override).expanduser()
    if _is_source_checkout():
        return _PROJECT_ROOT
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


def get_default_db_path() -> Path:
    """Return the default SQLite database file path."""
    return get_data_dir() / "incident_capture.db"


def ensure_dirs_exist() -> None:
    """Create the data directory if it doesn't exist."""
    get_data_dir().mkdir(parents=True, exist_ok=True)
