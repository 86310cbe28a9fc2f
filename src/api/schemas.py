"""Pydantic schemas for API request/response validation.

This module defines the data contracts for the incident capture REST API:
capture conversations, incidents, edit history and ad-hoc redaction.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


# Enums for API validation


class MessageRoleEnum(str, Enum):
    """Valid message roles for API requests."""

    user = "user"
    assistant = "assistant"
    system = "system"


class IncidentStatusEnum(str, Enum):
    """Valid incident status values for API filters."""

    draft = "draft"
    signed = "signed"


# Conversation schemas


class ConversationCreate(BaseModel):
    """Request schema for starting a capture conversation."""

    student_id: str | None = Field(None, max_length=64)


class TurnCreate(BaseModel):
    """Request schema for appending a dialogue turn."""

    role: MessageRoleEnum = MessageRoleEnum.user
    content: str = Field(..., min_length=1)


class DeriveRequest(BaseModel):
    """Request schema for deriving a draft from a conversation."""

    identifiers: list[str] = Field(
        default_factory=list,
        description="Student names to redact before text leaves the service",
    )


class MessageResponse(BaseModel):
    """Response schema for a conversation message."""

    id: str
    conversation_id: str
    role: str
    content: str
    sequence: int
    created_at: str

    model_config = ConfigDict(from_attributes=True)


class ConversationResponse(BaseModel):
    """Response schema for a conversation."""

    id: str
    user_id: str
    student_id: str | None
    status: str
    created_at: str
    updated_at: str
    closed_at: str | None = None

    model_config = ConfigDict(from_attributes=True)


class ConversationDetailResponse(BaseModel):
    """Response schema for a conversation with its messages."""

    conversation: ConversationResponse
    messages: list[MessageResponse]
    incident_id: str | None = None
    redacted: bool = False


# Incident schemas


class IncidentResponse(BaseModel):
    """Response schema for an incident view."""

    id: str
    user_id: str
    conversation_id: str | None
    student_id: str | None
    status: str
    summary: str | None
    antecedent: str | None
    behavior: str | None
    consequence: str | None
    incident_type: str | None
    function_of_behavior: list[str]
    incident_date: str | None
    incident_time: str | None
    location: str | None
    duration: str | None
    intervention: str | None
    notes: str | None
    teacher_signature: str | None
    teacher_signature_date: str | None
    signed_by: str | None
    parent_signature: str | None
    parent_signature_date: str | None
    version: int
    created_at: str
    updated_at: str
    redacted: bool = False


class IncidentListResponse(BaseModel):
    """Response schema for incident list."""

    incidents: list[IncidentResponse]
    total: int = Field(..., description="Matching incidents before paging")


class DraftResponse(BaseModel):
    """Response schema for a derive call."""

    incident: IncidentResponse
    outcome: str
    diagnostic: str | None = None
    changed_fields: list[str] = Field(default_factory=list)


class IncidentPatch(BaseModel):
    """Request schema for a content patch.

    Only fields explicitly present in the request body are applied.
    """

    fields: dict[str, Any] = Field(..., description="Content field name -> new value")
    expected_version: int | None = Field(None, ge=1)


class SignRequest(BaseModel):
    """Request schema for signing an incident."""

    signature: str = Field(..., min_length=1, max_length=255)
    expected_version: int | None = Field(None, ge=1)


class ParentSignRequest(BaseModel):
    """Request schema for a parent co-signature."""

    parent_name: str = Field(..., min_length=1, max_length=255)


class EditHistoryEntryResponse(BaseModel):
    """Response schema for one edit history entry."""

    id: str
    incident_id: str
    user_id: str
    kind: str
    changed_fields: dict[str, dict[str, Any]]
    incident_version: int
    sequence: int
    created_at: str


# Redaction schemas


class RedactRequest(BaseModel):
    """Request schema for ad-hoc redaction.

    identifiers is left loosely typed so malformed lists reach the
    redactor and are reported with its error code.
    """

    text: str
    identifiers: Any = Field(default_factory=list)


class RedactResponse(BaseModel):
    """Response schema for ad-hoc redaction."""

    text: str


# Error response schema


class ErrorResponse(BaseModel):
    """Standard error response."""

    error_code: str
    message: str
    remediation: str | None = None
    is_retryable: bool = False
    details: dict | None = None
