"""SQLAlchemy ORM models for the incident capture state database.

This module defines the core data models for capture conversations, their
messages, structured ABC incidents and the append-only incident edit history.
Uses SQLAlchemy 2.0 style with Mapped and mapped_column.
"""

import json
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)


def generate_uuid() -> str:
    """Generate a UUID4 string for primary keys."""
    return str(uuid4())


def utc_now_iso() -> str:
    """Generate current UTC timestamp in ISO8601 format."""
    return datetime.now(UTC).isoformat()


# Enums matching the database schema constraints


class ConversationStatus(str, Enum):
    """Status values for capture conversations.

    Lifecycle: active -> closed (one-way)
    """

    active = "active"
    closed = "closed"


class MessageRole(str, Enum):
    """Speaker roles for conversation messages."""

    user = "user"
    assistant = "assistant"
    system = "system"


class IncidentStatus(str, Enum):
    """Status values for incidents.

    Lifecycle: draft -> signed (terminal)
    """

    draft = "draft"
    signed = "signed"


class EditKind(str, Enum):
    """Categories of entries in the incident edit history."""

    update = "update"
    signed = "signed"
    parent_signed = "parent_signed"


# Structured incident fields, in form order. These are the fields a patch
# may touch and the fields compared when computing an edit diff.
CONTENT_FIELDS: tuple[str, ...] = (
    "student_id",
    "summary",
    "antecedent",
    "behavior",
    "consequence",
    "incident_type",
    "function_of_behavior",
    "incident_date",
    "incident_time",
    "location",
    "duration",
    "intervention",
    "notes",
)

INCIDENT_TYPES: tuple[str, ...] = (
    "Physical Aggression",
    "Verbal Outburst",
    "Self-Injury",
    "Property Destruction",
    "Elopement",
    "Noncompliance",
    "Other",
)

BEHAVIOR_FUNCTIONS: tuple[str, ...] = (
    "Escape/Avoidance",
    "Attention-Seeking",
    "Sensory",
    "Tangible/Access",
    "Communication",
)

SIGNATURE_FIELDS: tuple[str, ...] = (
    "status",
    "teacher_signature",
    "teacher_signature_date",
    "signed_by",
    "parent_signature",
    "parent_signature_date",
)


# SQLAlchemy Base


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# Models


class Conversation(Base):
    """Capture conversation between a teacher and the assistant.

    A conversation collects the dialogue turns an incident draft is derived
    from. It accepts new messages only while active.

    Attributes:
        id: UUID primary key
        user_id: Owning user (teacher) identifier
        student_id: Optional student the conversation is about
        status: Current status (active, closed)
        created_at: ISO8601 timestamp of creation
        updated_at: ISO8601 timestamp of last message or status change
        closed_at: ISO8601 timestamp when the conversation was closed
        extracted_fields: JSON object of the fields the last successful
            extraction produced, compared against on the next derive
    """

    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    student_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ConversationStatus.active.value
    )
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    closed_at: Mapped[str | None] = mapped_column(String(50), nullable=True)
    extracted_fields: Mapped[str | None] = mapped_column(Text, nullable=True)

    messages: Mapped[list["Message"]] = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.sequence",
    )

    __table_args__ = (
        Index("idx_conversations_user_id", "user_id"),
        Index("idx_conversations_status", "status"),
    )

    @property
    def is_active(self) -> bool:
        """Whether the conversation still accepts messages."""
        return self.status == ConversationStatus.active.value

    @property
    def extraction_baseline(self) -> dict[str, Any]:
        """Parse extracted_fields into a dict (empty before the first derive)."""
        if not self.extracted_fields:
            return {}
        return json.loads(self.extracted_fields)

    @extraction_baseline.setter
    def extraction_baseline(self, value: dict[str, Any]) -> None:
        self.extracted_fields = json.dumps(value, sort_keys=True)

    def __repr__(self) -> str:
        return f"<Conversation(id={self.id!r}, user_id={self.user_id!r}, status={self.status!r})>"


class Message(Base):
    """A single dialogue turn within a conversation.

    Messages are immutable once written. The sequence number, not the
    timestamp, defines dialogue order.

    Attributes:
        id: UUID primary key.
        conversation_id: FK to Conversation.
        role: 'user', 'assistant', or 'system'.
        content: Message text content.
        sequence: Ordering within the conversation (monotonically increasing).
        created_at: ISO8601 creation timestamp.
    """

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "sequence", name="uq_messages_conversation_seq"),
        Index("ix_messages_conversation_seq", "conversation_id", "sequence"),
    )

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    conversation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    conversation: Mapped["Conversation"] = relationship(
        "Conversation", back_populates="messages"
    )

    def __repr__(self) -> str:
        return (
            f"<Message(id={self.id!r}, role={self.role!r}, "
            f"seq={self.sequence})>"
        )


class Incident(Base):
    """Structured ABC incident record.

    Content fields are editable while the incident is a draft and frozen
    once it is signed. The version column is managed by SQLAlchemy as an
    optimistic concurrency token: every UPDATE checks and bumps it.

    Attributes:
        id: UUID primary key
        user_id: Owning user (teacher) identifier
        student_id: Student the incident is about (required at signing)
        conversation_id: Originating conversation, if any (SET NULL on delete)
        status: draft or signed
        summary: Short overview of the incident
        antecedent: What happened immediately before the behavior
        behavior: Observable description of what the student did
        consequence: What happened immediately after the behavior
        incident_type: Category from INCIDENT_TYPES
        function_of_behavior: JSON list of functions from BEHAVIOR_FUNCTIONS
        incident_date: YYYY-MM-DD date the incident occurred
        incident_time: HH:MM 24-hour time the incident occurred
        location: Where (or during which activity) it happened
        duration: How long the behavior lasted
        intervention: What staff did in response
        notes: Free-text notes
        teacher_signature: Typed name of the signing teacher
        teacher_signature_date: ISO8601 timestamp of teacher signature
        signed_by: User id that performed the sign transition
        parent_signature: Typed name of the co-signing parent
        parent_signature_date: ISO8601 timestamp of parent signature
        version: Optimistic concurrency counter
        created_at: ISO8601 timestamp of creation
        updated_at: ISO8601 timestamp of last update
    """

    __tablename__ = "incidents"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    student_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    conversation_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("conversations.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=IncidentStatus.draft.value
    )

    # ABC content
    summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    antecedent: Mapped[str | None] = mapped_column(Text, nullable=True)
    behavior: Mapped[str | None] = mapped_column(Text, nullable=True)
    consequence: Mapped[str | None] = mapped_column(Text, nullable=True)
    incident_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    function_of_behavior: Mapped[str | None] = mapped_column(Text, nullable=True)
    incident_date: Mapped[str | None] = mapped_column(String(10), nullable=True)
    incident_time: Mapped[str | None] = mapped_column(String(5), nullable=True)
    location: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration: Mapped[str | None] = mapped_column(String(100), nullable=True)
    intervention: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Signatures
    teacher_signature: Mapped[str | None] = mapped_column(String(255), nullable=True)
    teacher_signature_date: Mapped[str | None] = mapped_column(String(50), nullable=True)
    signed_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    parent_signature: Mapped[str | None] = mapped_column(String(255), nullable=True)
    parent_signature_date: Mapped[str | None] = mapped_column(String(50), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Timestamps (ISO8601 strings for SQLite compatibility)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )
    updated_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    conversation: Mapped[Optional["Conversation"]] = relationship("Conversation")
    edit_history: Mapped[list["EditHistoryEntry"]] = relationship(
        "EditHistoryEntry",
        back_populates="incident",
        cascade="all, delete-orphan",
        order_by="EditHistoryEntry.sequence",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("idx_incidents_user_id", "user_id"),
        Index("idx_incidents_student_id", "student_id"),
        Index("idx_incidents_status", "status"),
        Index("idx_incidents_created_at", "created_at"),
    )

    @property
    def is_signed(self) -> bool:
        """Whether the incident has reached the terminal signed state."""
        return self.status == IncidentStatus.signed.value

    @property
    def function_list(self) -> list[str]:
        """Parse the function_of_behavior JSON string into a sorted list."""
        if not self.function_of_behavior:
            return []
        return sorted(set(json.loads(self.function_of_behavior)))

    @function_list.setter
    def function_list(self, value: list[str] | None) -> None:
        """Serialize a collection of functions into JSON, collapsing duplicates."""
        cleaned = sorted({v for v in value or [] if v})
        self.function_of_behavior = json.dumps(cleaned) if cleaned else None

    def snapshot(self) -> dict[str, Any]:
        """Return the content fields as plain JSON-serializable values."""
        data: dict[str, Any] = {}
        for name in CONTENT_FIELDS:
            if name == "function_of_behavior":
                data[name] = self.function_list
            else:
                data[name] = getattr(self, name)
        return data

    def signature_snapshot(self) -> dict[str, Any]:
        """Return status and signature metadata as plain values."""
        return {name: getattr(self, name) for name in SIGNATURE_FIELDS}

    def __repr__(self) -> str:
        return (
            f"<Incident(id={self.id!r}, student_id={self.student_id!r}, "
            f"status={self.status!r}, version={self.version})>"
        )


class EditHistoryEntry(Base):
    """Append-only record of a change to an incident.

    One entry is written for every committed update that changed at least
    one field, plus a distinguished entry for each signature. Entries are
    never edited or deleted except by cascade when their incident is removed.

    Attributes:
        id: UUID primary key
        incident_id: Foreign key to the incident
        user_id: Acting user that made the change
        kind: Entry kind (update, signed, parent_signed)
        changed_fields: JSON object {field: {"old": a, "new": b}}
        incident_version: Incident version the change produced
        sequence: Ordering within the incident (monotonically increasing)
        created_at: ISO8601 timestamp of the entry
    """

    __tablename__ = "incident_edit_history"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    incident_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("incidents.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(
        String(20), nullable=False, default=EditKind.update.value
    )
    changed_fields: Mapped[str] = mapped_column(Text, nullable=False)
    incident_version: Mapped[int] = mapped_column(Integer, nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[str] = mapped_column(
        String(50), nullable=False, default=utc_now_iso
    )

    incident: Mapped["Incident"] = relationship(
        "Incident", back_populates="edit_history"
    )

    __table_args__ = (
        UniqueConstraint("incident_id", "sequence", name="uq_edit_history_incident_seq"),
        Index("idx_edit_history_incident_id", "incident_id"),
        Index("idx_edit_history_created_at", "created_at"),
    )

    @property
    def changes(self) -> dict[str, dict[str, Any]]:
        """Parse the changed_fields JSON into a dict."""
        return json.loads(self.changed_fields)

    def __repr__(self) -> str:
        return (
            f"<EditHistoryEntry(id={self.id!r}, incident_id={self.incident_id!r}, "
            f"kind={self.kind!r}, seq={self.sequence})>"
        )
