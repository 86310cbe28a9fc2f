"""YAML configuration loader with env var resolution and Pydantic validation.

Loads config from (priority order):
1. An explicit path
2. ./incident_capture.yaml or ./incident_capture.yml (working directory)
3. ~/.incident_capture/config.yaml (user home)

Environment variables override YAML: INCIDENT_CAPTURE_<SECTION>_<KEY>.
${VAR} references in YAML values resolve from environment at load time.
When no file is found, defaults plus env overrides are returned.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, field_validator

from src.db.models import CONTENT_FIELDS

logger = logging.getLogger(__name__)

ENV_PREFIX = "INCIDENT_CAPTURE_"

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class IncidentConfig(BaseModel):
    """Incident lifecycle rules."""

    mandatory_fields: list[str] = ["student_id", "incident_type", "behavior"]

    @field_validator("mandatory_fields", mode="before")
    @classmethod
    def split_csv(cls, value: Any) -> Any:
        """Accept a comma-separated string (as env overrides provide)."""
        if isinstance(value, str):
            return [v.strip() for v in value.split(",") if v.strip()]
        return value

    @field_validator("mandatory_fields")
    @classmethod
    def known_fields(cls, value: list[str]) -> list[str]:
        """Reject names that are not incident content fields."""
        unknown = [v for v in value if v not in CONTENT_FIELDS]
        if unknown:
            raise ValueError(f"Unknown incident field(s): {', '.join(unknown)}")
        return value


class ExtractionConfig(BaseModel):
    """Extraction backend selection."""

    backend: Literal["rules", "anthropic"] = "rules"
    model: str = "claude-haiku-4-5"
    max_tokens: int = 1024


class ApiConfig(BaseModel):
    """HTTP surface settings."""

    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "info"


class IncidentCaptureConfig(BaseModel):
    """Top-level configuration for the incident capture service."""

    incident: IncidentConfig = IncidentConfig()
    extraction: ExtractionConfig = ExtractionConfig()
    api: ApiConfig = ApiConfig()


def _find_config_file() -> Path | None:
    candidates = [
        Path.cwd() / "incident_capture.yaml",
        Path.cwd() / "incident_capture.yml",
        Path.home() / ".incident_capture" / "config.yaml",
        Path.home() / ".incident_capture" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply INCIDENT_CAPTURE_<SECTION>_<KEY> env var overrides to config data.

    Matches section names by longest prefix, so
    ``INCIDENT_CAPTURE_EXTRACTION_MAX_TOKENS`` maps to section
    ``extraction``, field ``max_tokens``.
    """
    known_sections = sorted(
        IncidentCaptureConfig.model_fields.keys(), key=len, reverse=True
    )
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX):].lower()
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue
        if matched_section not in data or data[matched_section] is None:
            data[matched_section] = {}
        if isinstance(data[matched_section], dict):
            # Coerce to int, bool, or keep as string
            try:
                data[matched_section][matched_field] = int(value)
            except ValueError:
                if value.lower() in ("true", "false"):
                    data[matched_section][matched_field] = value.lower() == "true"
                else:
                    data[matched_section][matched_field] = value
    return data


def load_config(config_path: str | None = None) -> IncidentCaptureConfig:
    """Load configuration from YAML file with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.incident_capture/).

    Returns:
        Parsed and validated IncidentCaptureConfig.

    Raises:
        FileNotFoundError: If an explicit config_path does not exist.
    """
    if config_path:
        path: Path | None = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    return IncidentCaptureConfig(**data)
