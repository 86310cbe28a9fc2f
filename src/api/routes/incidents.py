"""API routes for incidents and their edit history.

Reads accept an explicit ``redacted`` flag plus the student names to hide;
privacy is chosen per request by the caller. Content edits, deletion
of a draft and the teacher signature are limited to the incident's owner.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import PlainTextResponse

from src.api.dependencies import get_acting_user, get_incident_service
from src.api.schemas import (
    EditHistoryEntryResponse,
    IncidentListResponse,
    IncidentPatch,
    IncidentResponse,
    IncidentStatusEnum,
    ParentSignRequest,
    SignRequest,
)
from src.db.models import Incident, IncidentStatus
from src.services.incident_service import IncidentService
from src.services.incident_view import build_history_view, build_incident_view

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/incidents", tags=["incidents"])


def _require_owner(incident: Incident, user_id: str) -> None:
    if incident.user_id != user_id:
        raise HTTPException(status_code=403, detail="Only the incident owner may modify it")


@router.get("", response_model=IncidentListResponse)
def list_incidents(
    user_id: str | None = None,
    student_id: str | None = None,
    status: IncidentStatusEnum | None = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    redacted: bool = False,
    identifiers: list[str] = Query(default=[]),
    service: IncidentService = Depends(get_incident_service),
) -> IncidentListResponse:
    """List incidents, newest first, with optional filters."""
    status_filter = IncidentStatus(status.value) if status is not None else None
    incidents = service.list_incidents(
        user_id=user_id,
        student_id=student_id,
        status=status_filter,
        limit=limit,
        offset=offset,
    )
    return IncidentListResponse(
        incidents=[
            IncidentResponse(**build_incident_view(i, redacted, identifiers))
            for i in incidents
        ],
        total=service.count_incidents(
            user_id=user_id, student_id=student_id, status=status_filter
        ),
    )


@router.get("/{incident_id}", response_model=IncidentResponse)
def get_incident(
    incident_id: str,
    redacted: bool = False,
    identifiers: list[str] = Query(default=[]),
    service: IncidentService = Depends(get_incident_service),
) -> IncidentResponse:
    """Get an incident, optionally with student names redacted."""
    incident = service.require_incident(incident_id)
    return IncidentResponse(**build_incident_view(incident, redacted, identifiers))


@router.patch("/{incident_id}", response_model=IncidentResponse)
def update_incident(
    incident_id: str,
    body: IncidentPatch,
    user_id: str = Depends(get_acting_user),
    service: IncidentService = Depends(get_incident_service),
) -> IncidentResponse:
    """Apply a content patch to a draft. 423 once signed, 409 on a stale version."""
    _require_owner(service.require_incident(incident_id), user_id)
    incident = service.update_incident(
        incident_id, user_id, body.fields, expected_version=body.expected_version
    )
    return IncidentResponse(**build_incident_view(incident))


@router.delete("/{incident_id}", status_code=204)
def delete_incident(
    incident_id: str,
    user_id: str = Depends(get_acting_user),
    service: IncidentService = Depends(get_incident_service),
) -> Response:
    """Delete a draft incident and its history. 423 once signed."""
    _require_owner(service.require_incident(incident_id), user_id)
    service.delete_incident(incident_id, user_id)
    return Response(status_code=204)


@router.post("/{incident_id}/sign", response_model=IncidentResponse)
def sign_incident(
    incident_id: str,
    body: SignRequest,
    user_id: str = Depends(get_acting_user),
    service: IncidentService = Depends(get_incident_service),
) -> IncidentResponse:
    """Sign a draft incident, making its content immutable."""
    _require_owner(service.require_incident(incident_id), user_id)
    incident = service.sign_incident(
        incident_id, user_id, body.signature, expected_version=body.expected_version
    )
    return IncidentResponse(**build_incident_view(incident))


@router.post("/{incident_id}/parent-signature", response_model=IncidentResponse)
def add_parent_signature(
    incident_id: str,
    body: ParentSignRequest,
    user_id: str = Depends(get_acting_user),
    service: IncidentService = Depends(get_incident_service),
) -> IncidentResponse:
    """Record a parent co-signature on a signed incident."""
    incident = service.add_parent_signature(incident_id, user_id, body.parent_name)
    return IncidentResponse(**build_incident_view(incident))


@router.get("/{incident_id}/history", response_model=list[EditHistoryEntryResponse])
def get_history(
    incident_id: str,
    redacted: bool = False,
    identifiers: list[str] = Query(default=[]),
    service: IncidentService = Depends(get_incident_service),
) -> list[EditHistoryEntryResponse]:
    """Get an incident's edit history, oldest first."""
    entries = service.list_edit_history(incident_id)
    return [
        EditHistoryEntryResponse(**entry)
        for entry in build_history_view(entries, redacted, identifiers)
    ]


@router.get("/{incident_id}/history/export", response_class=PlainTextResponse)
def export_history(
    incident_id: str,
    service: IncidentService = Depends(get_incident_service),
) -> PlainTextResponse:
    """Download an incident's edit history as plain text."""
    service.require_incident(incident_id)
    filename, content = service.audit.export_history_for_download(incident_id)
    return PlainTextResponse(
        content=content,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
