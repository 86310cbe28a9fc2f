"""Service layer for incident capture.

Provides business logic for capture sessions, structured extraction,
the incident lifecycle and its append-only edit history.
"""

from src.services.audit_service import AuditService, compute_changed_fields
from src.services.capture_service import CaptureService, DraftDerivation
from src.services.conversation_persistence_service import ConversationPersistenceService
from src.services.extraction_service import (
    AnthropicExtractor,
    ExtractionOutcome,
    ExtractionResult,
    IncidentExtractor,
    RuleBasedExtractor,
    get_extractor,
    merge_fields,
)
from src.services.incident_service import IncidentService, validate_patch
from src.services.incident_view import build_history_view, build_incident_view

__all__ = [
    "AuditService",
    "compute_changed_fields",
    "CaptureService",
    "DraftDerivation",
    "ConversationPersistenceService",
    "IncidentExtractor",
    "RuleBasedExtractor",
    "AnthropicExtractor",
    "ExtractionOutcome",
    "ExtractionResult",
    "get_extractor",
    "merge_fields",
    "IncidentService",
    "validate_patch",
    "build_incident_view",
    "build_history_view",
]
