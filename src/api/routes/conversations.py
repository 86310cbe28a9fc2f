"""API routes for capture conversations.

Provides endpoints to start a capture session, append dialogue turns,
derive the draft incident, close the session and delete it. All
endpoints use the /api/v1/conversations prefix. Only the conversation's
owner may mutate it.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from src.api.dependencies import get_acting_user, get_capture_service
from src.api.schemas import (
    ConversationCreate,
    ConversationDetailResponse,
    ConversationResponse,
    DeriveRequest,
    DraftResponse,
    IncidentResponse,
    MessageResponse,
    TurnCreate,
)
from src.db.models import Conversation
from src.services.capture_service import CaptureService
from src.services.incident_view import build_incident_view, build_message_view

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["conversations"])


def _require_owner(conversation: Conversation, user_id: str) -> None:
    if conversation.user_id != user_id:
        raise HTTPException(status_code=403, detail="Only the conversation owner may modify it")


@router.post("", response_model=ConversationResponse, status_code=201)
def start_conversation(
    body: ConversationCreate,
    user_id: str = Depends(get_acting_user),
    service: CaptureService = Depends(get_capture_service),
) -> ConversationResponse:
    """Start a new capture conversation owned by the acting user."""
    conversation = service.start_session(user_id, body.student_id)
    return ConversationResponse.model_validate(conversation)


@router.get("/{conversation_id}", response_model=ConversationDetailResponse)
def get_conversation(
    conversation_id: str,
    redacted: bool = False,
    identifiers: list[str] = Query(default=[]),
    service: CaptureService = Depends(get_capture_service),
) -> ConversationDetailResponse:
    """Get a conversation with its messages and linked incident id.

    Message text is shown with student names replaced when ``redacted``
    is set, the same way incident reads work.
    """
    conversation = service.conversations.require_conversation(conversation_id)
    incident = service.incidents.get_for_conversation(conversation_id)
    messages = build_message_view(
        service.conversations.get_messages(conversation_id), redacted, identifiers
    )
    return ConversationDetailResponse(
        conversation=ConversationResponse.model_validate(conversation),
        messages=[MessageResponse(**m) for m in messages],
        incident_id=incident.id if incident is not None else None,
        redacted=redacted,
    )


@router.delete("/{conversation_id}", status_code=204)
def delete_conversation(
    conversation_id: str,
    user_id: str = Depends(get_acting_user),
    service: CaptureService = Depends(get_capture_service),
) -> Response:
    """Delete a conversation and its messages. A derived incident is kept."""
    _require_owner(service.conversations.require_conversation(conversation_id), user_id)
    service.conversations.delete_conversation(conversation_id)
    return Response(status_code=204)


@router.post(
    "/{conversation_id}/turns",
    response_model=MessageResponse,
    status_code=201,
)
def append_turn(
    conversation_id: str,
    body: TurnCreate,
    user_id: str = Depends(get_acting_user),
    service: CaptureService = Depends(get_capture_service),
) -> MessageResponse:
    """Append one dialogue turn. 423 if the conversation is closed."""
    _require_owner(service.conversations.require_conversation(conversation_id), user_id)
    message = service.append_turn(conversation_id, body.role.value, body.content)
    return MessageResponse.model_validate(message)


@router.post("/{conversation_id}/draft", response_model=DraftResponse)
def derive_draft(
    conversation_id: str,
    body: DeriveRequest | None = None,
    user_id: str = Depends(get_acting_user),
    service: CaptureService = Depends(get_capture_service),
) -> DraftResponse:
    """Run extraction and create or update the conversation's draft incident."""
    _require_owner(service.conversations.require_conversation(conversation_id), user_id)
    identifiers = body.identifiers if body is not None else []
    derivation = service.derive(conversation_id, identifiers=identifiers)
    return DraftResponse(
        incident=IncidentResponse(**build_incident_view(derivation.incident)),
        outcome=derivation.extraction.outcome.value,
        diagnostic=derivation.extraction.diagnostic,
        changed_fields=derivation.extraction.changed,
    )


@router.post("/{conversation_id}/close", response_model=ConversationResponse)
def close_conversation(
    conversation_id: str,
    user_id: str = Depends(get_acting_user),
    service: CaptureService = Depends(get_capture_service),
) -> ConversationResponse:
    """Close the conversation. Closing twice is not an error."""
    _require_owner(service.conversations.require_conversation(conversation_id), user_id)
    conversation = service.close_session(conversation_id)
    return ConversationResponse.model_validate(conversation)
