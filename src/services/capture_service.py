"""Capture session orchestration.

Ties a conversation to at most one incident. Turns are appended in
arrival order; ``derive_draft`` runs the extractor over the full history
and creates or updates the conversation's draft incident through the
incident state machine, so every change to an existing draft is audited.

Each conversation remembers what its last successful extraction produced.
A re-derive patches a field only when the extracted value differs from
that baseline; a value the teacher edited by hand is overwritten only by
new information from the conversation, never by a repeat of old output.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from src.db.models import Conversation, Incident, Message
from src.errors.domain import LockedError
from src.services.conversation_persistence_service import ConversationPersistenceService
from src.services.extraction_service import (
    EXTRACTABLE_FIELDS,
    ExtractionOutcome,
    ExtractionResult,
    IncidentExtractor,
    RuleBasedExtractor,
)
from src.services.incident_service import IncidentService
from src.services.locks import derive_lock_key, record_lock

logger = logging.getLogger(__name__)


@dataclass
class DraftDerivation:
    """Outcome of a derive call: the draft plus the extraction that fed it."""

    incident: Incident
    extraction: ExtractionResult


def _patch_from_extraction(
    result: ExtractionResult,
    baseline: dict[str, Any],
    incident: Incident,
) -> dict[str, Any]:
    """Build a patch from the fields whose extraction moved since the baseline.

    Newly found functions are added to the draft's current set, so a
    function the teacher removed stays removed unless it is found anew.
    """
    patch: dict[str, Any] = {}
    for name in result.changed:
        if name == "function_of_behavior":
            found = set(result.fields[name]) - set(baseline.get(name) or [])
            patch[name] = sorted(set(incident.function_list) | found)
        else:
            patch[name] = result.fields[name]
    return patch


class CaptureService:
    """Orchestrates a capture session from first turn to draft incident.

    Attributes:
        conversations: Conversation and message persistence.
        incidents: Incident lifecycle service.
        extractor: Backend used to turn dialogue into fields.
    """

    def __init__(
        self,
        db: Session,
        extractor: IncidentExtractor | None = None,
        incidents: IncidentService | None = None,
    ) -> None:
        self.db = db
        self.conversations = ConversationPersistenceService(db)
        self.incidents = incidents or IncidentService(db)
        self.extractor = extractor or RuleBasedExtractor()

    def start_session(self, user_id: str, student_id: str | None = None) -> Conversation:
        """Open a new capture conversation."""
        return self.conversations.create_conversation(user_id, student_id)

    def append_turn(self, conversation_id: str, role: str, content: str) -> Message:
        """Append one dialogue turn to an active conversation.

        Raises:
            NotFoundError: Unknown conversation.
            LockedError: Conversation is closed.
            ValidationError: Unknown role or empty content.
        """
        return self.conversations.append_message(conversation_id, role, content)

    def derive(
        self,
        conversation_id: str,
        identifiers: Sequence[str] | None = None,
    ) -> DraftDerivation:
        """Run extraction over the conversation and persist the draft.

        The first call creates the draft (possibly empty). Later calls
        update it as the conversation's owner, touching only the fields
        whose extracted value moved since the previous successful run, so
        manual edits to other fields are kept. An extraction error leaves
        the stored draft untouched.

        Args:
            conversation_id: Conversation to derive from.
            identifiers: Student names redacted before any text leaves
                the process (used by remote extraction backends).

        Raises:
            NotFoundError: Unknown conversation.
            LockedError: The conversation's incident is already signed.
            ConflictError: The draft changed while extraction ran.
        """
        with record_lock(derive_lock_key(conversation_id)):
            conversation = self.conversations.require_conversation(conversation_id)
            incident = self.incidents.get_for_conversation(conversation_id)
            if incident is not None and incident.is_signed:
                raise LockedError("Incident", incident.id, incident.status, "update")

            messages = self.conversations.get_messages(conversation_id)
            baseline = conversation.extraction_baseline
            result = self.extractor.extract(messages, baseline, identifiers=identifiers)

            if incident is None:
                fields = {} if result.outcome == ExtractionOutcome.error else result.fields
                fields = {k: v for k, v in fields.items() if k in EXTRACTABLE_FIELDS}
                incident = self.incidents.create_incident(
                    user_id=conversation.user_id,
                    student_id=conversation.student_id,
                    conversation_id=conversation_id,
                    fields=fields,
                )
            elif result.outcome == ExtractionOutcome.extracted:
                incident = self.incidents.update_incident(
                    incident.id,
                    conversation.user_id,
                    _patch_from_extraction(result, baseline, incident),
                    expected_version=incident.version,
                )

            if result.outcome != ExtractionOutcome.error:
                self.conversations.save_extraction_baseline(
                    conversation_id,
                    {k: result.fields[k] for k in EXTRACTABLE_FIELDS},
                )

        logger.info(
            "Derived draft %s from conversation %s over %d message(s): %s",
            incident.id,
            conversation_id,
            len(messages),
            result.outcome.value,
        )
        return DraftDerivation(incident=incident, extraction=result)

    def derive_draft(
        self,
        conversation_id: str,
        identifiers: Sequence[str] | None = None,
    ) -> Incident:
        """Create or refresh the conversation's draft incident."""
        return self.derive(conversation_id, identifiers).incident

    def close_session(self, conversation_id: str) -> Conversation:
        """Close the conversation. Idempotent."""
        return self.conversations.close_conversation(conversation_id)
