"""Shared FastAPI dependencies.

Authentication happens upstream. The surrounding auth layer forwards the
authenticated user's id in the X-User-Id header; routes that mutate state
require it.
"""

from functools import lru_cache

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from src.config import IncidentCaptureConfig, load_config
from src.db.connection import get_db
from src.services.capture_service import CaptureService
from src.services.extraction_service import get_extractor
from src.services.incident_service import IncidentService


@lru_cache(maxsize=1)
def get_settings() -> IncidentCaptureConfig:
    """Load configuration once per process."""
    return load_config()


def get_acting_user(x_user_id: str | None = Header(None)) -> str:
    """Return the acting user id from the X-User-Id header.

    Raises:
        HTTPException: 401 if the header is missing or blank.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    return x_user_id.strip()


def get_incident_service(
    db: Session = Depends(get_db),
    settings: IncidentCaptureConfig = Depends(get_settings),
) -> IncidentService:
    """Dependency injector for IncidentService."""
    return IncidentService(db, mandatory_fields=settings.incident.mandatory_fields)


def get_capture_service(
    db: Session = Depends(get_db),
    settings: IncidentCaptureConfig = Depends(get_settings),
) -> CaptureService:
    """Dependency injector for CaptureService."""
    incidents = IncidentService(db, mandatory_fields=settings.incident.mandatory_fields)
    return CaptureService(db, extractor=get_extractor(settings.extraction), incidents=incidents)
