"""Read-side rendering of incidents, their history and transcripts.

Privacy is a per-call rendering choice: callers pass ``redacted=True``
and the student names to hide for audiences that must not see them.
A redacted view without any names is refused rather than returned
unredacted under a redacted label. Stored records are never modified.
"""

from collections.abc import Iterable, Sequence
from typing import Any

from src.db.models import EditHistoryEntry, Incident, Message
from src.errors.domain import RedactionInputError
from src.utils.redaction import normalize_identifiers, redact, redact_fields

# Fields holding free text that may echo the transcript.
FREE_TEXT_FIELDS: tuple[str, ...] = (
    "summary",
    "antecedent",
    "behavior",
    "consequence",
    "location",
    "duration",
    "intervention",
    "notes",
)


def _redaction_names(redacted: bool, identifiers: Iterable[str] | None) -> tuple[str, ...]:
    if not redacted:
        return ()
    names = normalize_identifiers(identifiers)
    if not names:
        raise RedactionInputError(
            "A redacted view needs at least one student name to hide",
            fields=["identifiers"],
        )
    return names


def build_incident_view(
    incident: Incident,
    redacted: bool = False,
    identifiers: Iterable[str] | None = None,
) -> dict[str, Any]:
    """Render an incident as a plain dict.

    Args:
        incident: Incident to render.
        redacted: Replace student names in free-text fields when True.
        identifiers: Student names to replace. Ignored unless redacted.

    Returns:
        Dict with content fields, status, signature metadata and version.

    Raises:
        RedactionInputError: If redacted and identifiers is malformed or empty.
    """
    names = _redaction_names(redacted, identifiers)
    view: dict[str, Any] = {
        "id": incident.id,
        "user_id": incident.user_id,
        "conversation_id": incident.conversation_id,
        **incident.snapshot(),
        **incident.signature_snapshot(),
        "version": incident.version,
        "created_at": incident.created_at,
        "updated_at": incident.updated_at,
        "redacted": False,
    }
    if not redacted:
        return view

    for name in FREE_TEXT_FIELDS:
        view[name] = redact(view[name], names)
    view["redacted"] = True
    return view


def build_history_view(
    entries: Sequence[EditHistoryEntry],
    redacted: bool = False,
    identifiers: Iterable[str] | None = None,
) -> list[dict[str, Any]]:
    """Render edit history entries, optionally redacting old/new values."""
    names = _redaction_names(redacted, identifiers)
    rendered = []
    for entry in entries:
        changes = entry.changes
        if redacted:
            changes = {
                field: redact_fields(values, names) if field in FREE_TEXT_FIELDS else values
                for field, values in changes.items()
            }
        rendered.append({
            "id": entry.id,
            "incident_id": entry.incident_id,
            "user_id": entry.user_id,
            "kind": entry.kind,
            "changed_fields": changes,
            "incident_version": entry.incident_version,
            "sequence": entry.sequence,
            "created_at": entry.created_at,
        })
    return rendered


def build_message_view(
    messages: Sequence[Message],
    redacted: bool = False,
    identifiers: Iterable[str] | None = None,
) -> list[dict[str, Any]]:
    """Render transcript messages, optionally with student names replaced."""
    names = _redaction_names(redacted, identifiers)
    return [
        {
            "id": m.id,
            "conversation_id": m.conversation_id,
            "role": m.role,
            "content": redact(m.content, names) if redacted else m.content,
            "sequence": m.sequence,
            "created_at": m.created_at,
        }
        for m in messages
    ]
