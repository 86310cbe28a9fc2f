"""Incident service implementing the draft -> signed lifecycle.

This module provides the business logic layer for incident operations. It
enforces that content is only mutable while an incident is a draft, that
signing requires the mandatory fields, and that every committed mutation of
an existing incident is followed by exactly one edit history entry.

Mutations of one incident are serialized with a process-local lock and
guarded by the incident's version column, so a writer that lost a race
gets ConflictError instead of overwriting a newer state.
"""

import logging
import re
from collections.abc import Iterable, Mapping, Sequence
from datetime import date
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from src.db.models import (
    BEHAVIOR_FUNCTIONS,
    CONTENT_FIELDS,
    INCIDENT_TYPES,
    EditHistoryEntry,
    EditKind,
    Incident,
    IncidentStatus,
    utc_now_iso,
)
from src.errors.domain import (
    ConflictError,
    LockedError,
    MissingMandatoryFieldsError,
    NotFoundError,
    ValidationError,
)
from src.services.audit_service import AuditService, compute_changed_fields
from src.services.locks import incident_lock_key, record_lock

logger = logging.getLogger(__name__)

DEFAULT_MANDATORY_FIELDS: tuple[str, ...] = ("student_id", "incident_type", "behavior")

# Valid state transitions for the incident lifecycle
VALID_TRANSITIONS: dict[IncidentStatus, list[IncidentStatus]] = {
    IncidentStatus.draft: [IncidentStatus.signed],
    IncidentStatus.signed: [],  # terminal
}

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def can_transition(current: IncidentStatus, target: IncidentStatus) -> bool:
    """Check whether a lifecycle transition is allowed."""
    return target in VALID_TRANSITIONS.get(current, [])


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, frozenset)):
        return len(value) == 0
    return False


def _clean_functions(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        raise ValidationError(
            "function_of_behavior must be a list of strings",
            fields=["function_of_behavior"],
        )
    functions = set()
    for item in value:
        if not isinstance(item, str):
            raise ValidationError(
                "function_of_behavior must be a list of strings",
                fields=["function_of_behavior"],
            )
        name = item.strip()
        if not name:
            continue
        if name not in BEHAVIOR_FUNCTIONS:
            raise ValidationError(
                f"Unknown function of behavior: {name!r}",
                fields=["function_of_behavior"],
            )
        functions.add(name)
    return sorted(functions)


def _clean_text(name: str, value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(
            f"{name} must be a string, got {type(value).__name__}", fields=[name]
        )
    text = value.strip()
    if not text:
        return None
    if name == "incident_type" and text not in INCIDENT_TYPES:
        raise ValidationError(f"Unknown incident type: {text!r}", fields=[name])
    if name == "incident_date":
        if not _DATE_RE.match(text):
            raise ValidationError("incident_date must be YYYY-MM-DD", fields=[name])
        try:
            date.fromisoformat(text)
        except ValueError as e:
            raise ValidationError(f"Invalid incident_date: {text}", fields=[name]) from e
    if name == "incident_time" and not _TIME_RE.match(text):
        raise ValidationError("incident_time must be HH:MM (24-hour)", fields=[name])
    return text


def validate_patch(patch: Mapping[str, Any]) -> dict[str, Any]:
    """Validate and normalize a content patch.

    Blank strings become None, text is stripped and function_of_behavior
    becomes a sorted, de-duplicated list.

    Args:
        patch: Mapping of content field name to new value.

    Returns:
        Normalized patch.

    Raises:
        ValidationError: If the patch names unknown fields or carries
            values of the wrong shape.
    """
    if not isinstance(patch, Mapping):
        raise ValidationError("Patch must be a mapping of field names to values")

    unknown = sorted(k for k in patch if k not in CONTENT_FIELDS)
    if unknown:
        raise ValidationError(
            f"Unknown incident field(s): {', '.join(unknown)}", fields=unknown
        )

    cleaned: dict[str, Any] = {}
    for name, value in patch.items():
        if name == "function_of_behavior":
            cleaned[name] = _clean_functions(value)
        else:
            cleaned[name] = _clean_text(name, value)
    return cleaned


class IncidentService:
    """Service for incident lifecycle management with state machine validation.

    Attributes:
        db: SQLAlchemy session for database operations.
        audit: Edit history recorder sharing the same session.
        mandatory_fields: Fields that must be non-empty before signing.
    """

    def __init__(
        self,
        db: Session,
        mandatory_fields: Sequence[str] | None = None,
    ) -> None:
        """Initialize the incident service.

        Args:
            db: SQLAlchemy session for database operations.
            mandatory_fields: Override for the fields required at signing.
        """
        self.db = db
        self.audit = AuditService(db)
        self.mandatory_fields = tuple(mandatory_fields or DEFAULT_MANDATORY_FIELDS)

    # =========================================================================
    # Lookup
    # =========================================================================

    def get_incident(self, incident_id: str) -> Incident | None:
        """Get an incident by its ID, or None."""
        return self.db.query(Incident).filter(Incident.id == incident_id).first()

    def require_incident(self, incident_id: str) -> Incident:
        """Get an incident by its ID.

        Raises:
            NotFoundError: If no incident has that ID.
        """
        incident = self.get_incident(incident_id)
        if incident is None:
            raise NotFoundError("Incident", incident_id)
        return incident

    def get_for_conversation(self, conversation_id: str) -> Incident | None:
        """Get the incident derived from a conversation, if any."""
        return (
            self.db.query(Incident)
            .filter(Incident.conversation_id == conversation_id)
            .first()
        )

    def list_incidents(
        self,
        user_id: str | None = None,
        student_id: str | None = None,
        status: IncidentStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Incident]:
        """List incidents, newest first, with optional filters.

        Args:
            user_id: Filter by owning user.
            student_id: Filter by student.
            status: Filter by lifecycle status.
            limit: Maximum number of incidents to return.
            offset: Number of incidents to skip.
        """
        query = self._filtered(user_id, student_id, status)
        return (
            query.order_by(Incident.created_at.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )

    def count_incidents(
        self,
        user_id: str | None = None,
        student_id: str | None = None,
        status: IncidentStatus | None = None,
    ) -> int:
        """Count incidents matching the same filters as list_incidents."""
        return self._filtered(user_id, student_id, status).count()

    def _filtered(
        self,
        user_id: str | None,
        student_id: str | None,
        status: IncidentStatus | None,
    ):
        query = self.db.query(Incident)
        if user_id is not None:
            query = query.filter(Incident.user_id == user_id)
        if student_id is not None:
            query = query.filter(Incident.student_id == student_id)
        if status is not None:
            query = query.filter(Incident.status == status.value)
        return query

    def list_edit_history(self, incident_id: str) -> list[EditHistoryEntry]:
        """Return an incident's edit history, oldest first.

        Raises:
            NotFoundError: If no incident has that ID.
        """
        self.require_incident(incident_id)
        return self.audit.get_history(incident_id)

    def _load_current(self, incident_id: str) -> Incident:
        # Re-read under the lock so checks see the latest committed row.
        incident = self.db.get(Incident, incident_id, populate_existing=True)
        if incident is None:
            raise NotFoundError("Incident", incident_id)
        return incident

    def _current_version(self, incident_id: str) -> int | None:
        return (
            self.db.query(Incident.version)
            .filter(Incident.id == incident_id)
            .scalar()
        )

    def _commit_versioned(self, incident: Incident, expected_version: int) -> None:
        try:
            self.db.commit()
        except StaleDataError as e:
            self.db.rollback()
            actual = self._current_version(incident.id)
            logger.warning(
                "Incident %s changed concurrently (expected v%d, found v%s)",
                incident.id,
                expected_version,
                actual,
            )
            raise ConflictError(
                f"Incident '{incident.id}' was modified concurrently",
                expected_version=expected_version,
                actual_version=actual,
            ) from e
        self.db.refresh(incident)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def create_incident(
        self,
        user_id: str,
        student_id: str | None = None,
        conversation_id: str | None = None,
        fields: Mapping[str, Any] | None = None,
    ) -> Incident:
        """Create a new draft incident.

        An empty draft is allowed. A conversation yields at most one incident.

        Args:
            user_id: Owning user.
            student_id: Student the incident is about, if known.
            conversation_id: Originating conversation, if any.
            fields: Initial content field values (validated like a patch).

        Returns:
            The created draft Incident.

        Raises:
            ValidationError: If fields is malformed.
            ConflictError: If the conversation already has an incident.
        """
        cleaned = validate_patch(dict(fields or {}))
        if student_id is not None:
            cleaned.setdefault("student_id", _clean_text("student_id", student_id))

        if conversation_id is not None:
            existing = self.get_for_conversation(conversation_id)
            if existing is not None:
                raise ConflictError(
                    f"Conversation '{conversation_id}' already has incident '{existing.id}'"
                )

        now = utc_now_iso()
        incident = Incident(
            user_id=user_id,
            conversation_id=conversation_id,
            status=IncidentStatus.draft.value,
            created_at=now,
            updated_at=now,
        )
        for name, value in cleaned.items():
            if name == "function_of_behavior":
                incident.function_list = value
            else:
                setattr(incident, name, value)

        self.db.add(incident)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise ConflictError(
                f"Conversation '{conversation_id}' already has an incident"
            ) from e
        self.db.refresh(incident)
        logger.info(
            "Created draft incident %s (conversation=%s, %d field(s))",
            incident.id,
            conversation_id,
            sum(1 for v in cleaned.values() if not _is_empty(v)),
        )
        return incident

    def update_incident(
        self,
        incident_id: str,
        acting_user: str,
        patch: Mapping[str, Any],
        expected_version: int | None = None,
    ) -> Incident:
        """Apply a content patch to a draft incident.

        Only fields whose values actually change are written. A patch that
        changes nothing commits nothing and records no history.

        Args:
            incident_id: UUID of the incident.
            acting_user: User making the change.
            patch: Content field values to set.
            expected_version: Version the caller last saw, if known.

        Returns:
            The updated Incident.

        Raises:
            NotFoundError: Unknown incident.
            LockedError: Incident is signed.
            ConflictError: Version mismatch or concurrent write.
            ValidationError: Malformed patch.
            AuditWriteError: Update committed but its history entry failed.
        """
        with record_lock(incident_lock_key(incident_id)):
            incident = self._load_current(incident_id)
            if incident.is_signed:
                raise LockedError("Incident", incident_id, incident.status, "update")
            if expected_version is not None and expected_version != incident.version:
                raise ConflictError(
                    f"Incident '{incident_id}' is at version {incident.version}, "
                    f"not {expected_version}",
                    expected_version=expected_version,
                    actual_version=incident.version,
                )

            cleaned = validate_patch(patch)
            before = incident.snapshot()
            for name, value in cleaned.items():
                if before[name] == value:
                    continue
                if name == "function_of_behavior":
                    incident.function_list = value
                else:
                    setattr(incident, name, value)
            after = incident.snapshot()

            changed = compute_changed_fields(before, after)
            if not changed:
                logger.debug("Update of incident %s changed nothing", incident_id)
                return incident

            version_seen = incident.version
            incident.updated_at = utc_now_iso()
            self._commit_versioned(incident, version_seen)
            logger.info(
                "Updated incident %s to v%d (%s)",
                incident_id,
                incident.version,
                ", ".join(sorted(changed)),
            )

            self.audit.record_change(
                incident_id, acting_user, before, after, incident.version
            )
            return incident

    def sign_incident(
        self,
        incident_id: str,
        acting_user: str,
        signature: str,
        expected_version: int | None = None,
    ) -> Incident:
        """Sign a draft incident, making its content immutable.

        Args:
            incident_id: UUID of the incident.
            acting_user: User performing the signature.
            signature: Typed name of the signing teacher.
            expected_version: Version the caller last saw, if known.

        Returns:
            The signed Incident.

        Raises:
            NotFoundError: Unknown incident.
            LockedError: Incident is already signed.
            MissingMandatoryFieldsError: A mandatory field is empty.
            ValidationError: Signature is blank.
            ConflictError: Version mismatch or concurrent write.
            AuditWriteError: Signature committed but its history entry failed.
        """
        with record_lock(incident_lock_key(incident_id)):
            incident = self._load_current(incident_id)
            current = IncidentStatus(incident.status)
            if not can_transition(current, IncidentStatus.signed):
                raise LockedError("Incident", incident_id, incident.status, "sign")
            if expected_version is not None and expected_version != incident.version:
                raise ConflictError(
                    f"Incident '{incident_id}' is at version {incident.version}, "
                    f"not {expected_version}",
                    expected_version=expected_version,
                    actual_version=incident.version,
                )

            name = signature.strip() if isinstance(signature, str) else ""
            if not name:
                raise ValidationError(
                    "A signature is required to sign an incident",
                    fields=["teacher_signature"],
                )

            snapshot = incident.snapshot()
            missing = [f for f in self.mandatory_fields if _is_empty(snapshot.get(f))]
            if missing:
                raise MissingMandatoryFieldsError(incident_id, missing)

            before = incident.signature_snapshot()
            version_seen = incident.version
            now = utc_now_iso()
            incident.status = IncidentStatus.signed.value
            incident.teacher_signature = name
            incident.teacher_signature_date = now
            incident.signed_by = acting_user
            incident.updated_at = now
            after = incident.signature_snapshot()

            self._commit_versioned(incident, version_seen)
            logger.info("Signed incident %s at v%d", incident_id, incident.version)

            self.audit.record_change(
                incident_id,
                acting_user,
                before,
                after,
                incident.version,
                kind=EditKind.signed,
            )
            return incident

    def add_parent_signature(
        self,
        incident_id: str,
        acting_user: str,
        parent_name: str,
    ) -> Incident:
        """Record a parent co-signature on a signed incident.

        The only write a signed incident accepts, and only once.

        Raises:
            NotFoundError: Unknown incident.
            LockedError: Incident is a draft or already co-signed.
            ValidationError: Parent name is blank.
            AuditWriteError: Co-signature committed but its history entry failed.
        """
        with record_lock(incident_lock_key(incident_id)):
            incident = self._load_current(incident_id)
            if not incident.is_signed:
                raise LockedError(
                    "Incident", incident_id, incident.status, "add a parent signature"
                )
            if incident.parent_signature:
                raise LockedError(
                    "Incident", incident_id, "co-signed", "add a parent signature"
                )

            name = parent_name.strip() if isinstance(parent_name, str) else ""
            if not name:
                raise ValidationError(
                    "A parent signature is required", fields=["parent_signature"]
                )

            before = incident.signature_snapshot()
            version_seen = incident.version
            now = utc_now_iso()
            incident.parent_signature = name
            incident.parent_signature_date = now
            incident.updated_at = now
            after = incident.signature_snapshot()

            self._commit_versioned(incident, version_seen)
            logger.info("Parent co-signed incident %s", incident_id)

            self.audit.record_change(
                incident_id,
                acting_user,
                before,
                after,
                incident.version,
                kind=EditKind.parent_signed,
            )
            return incident

    def delete_incident(self, incident_id: str, acting_user: str) -> None:
        """Delete a draft incident together with its edit history.

        Signed incidents are permanent records and cannot be deleted.

        Raises:
            NotFoundError: Unknown incident.
            LockedError: Incident is signed.
        """
        with record_lock(incident_lock_key(incident_id)):
            incident = self._load_current(incident_id)
            if incident.is_signed:
                raise LockedError("Incident", incident_id, incident.status, "delete")
            self.db.delete(incident)
            self.db.commit()
        logger.info("Incident %s deleted by %s", incident_id, acting_user)
