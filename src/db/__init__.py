"""Database module for incident capture state management and persistence."""

from src.db.connection import (
    SessionLocal,
    engine,
    get_db,
    get_db_context,
    init_db,
)
from src.db.models import (
    BEHAVIOR_FUNCTIONS,
    CONTENT_FIELDS,
    INCIDENT_TYPES,
    SIGNATURE_FIELDS,
    Conversation,
    ConversationStatus,
    EditHistoryEntry,
    EditKind,
    Incident,
    IncidentStatus,
    Message,
    MessageRole,
)

__all__ = [
    # Models
    "Conversation",
    "Message",
    "Incident",
    "EditHistoryEntry",
    "CONTENT_FIELDS",
    "SIGNATURE_FIELDS",
    "INCIDENT_TYPES",
    "BEHAVIOR_FUNCTIONS",
    # Enums
    "ConversationStatus",
    "MessageRole",
    "IncidentStatus",
    "EditKind",
    # Connection
    "engine",
    "SessionLocal",
    "get_db",
    "get_db_context",
    "init_db",
]
