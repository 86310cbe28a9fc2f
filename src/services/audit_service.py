"""Append-only edit history for incidents.

This module records one history entry per committed incident mutation that
changed at least one field, plus a distinguished entry for each signature.
Entries are written strictly after the mutation they describe has been
committed, in their own transaction. A failure to write one raises
AuditWriteError carrying the unpersisted diff.

Usage:
    from src.db.connection import get_db, init_db
    from src.services.audit_service import AuditService

    init_db()
    db = next(get_db())
    audit = AuditService(db)

    before = incident.snapshot()
    ...  # mutate and commit
    audit.record_change(incident.id, "teacher-1", before, incident.snapshot(),
                        incident.version)

    # Export history as plain text
    export = audit.export_history_text(incident.id)
"""

import json
import logging
import re
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.db.models import EditHistoryEntry, EditKind, utc_now_iso
from src.errors.domain import AuditWriteError

logger = logging.getLogger(__name__)

__all__ = [
    "AuditService",
    "EditKind",
    "compute_changed_fields",
]


def compute_changed_fields(
    before: Mapping[str, Any], after: Mapping[str, Any]
) -> dict[str, dict[str, Any]]:
    """Diff two incident states.

    Only keys present in both states are compared. A key appears in the
    result when its values differ, as ``{"old": a, "new": b}``.

    Example:
        >>> compute_changed_fields({"behavior": None}, {"behavior": "hit desk"})
        {'behavior': {'old': None, 'new': 'hit desk'}}
    """
    changes: dict[str, dict[str, Any]] = {}
    for key in before:
        if key not in after:
            continue
        if before[key] != after[key]:
            changes[key] = {"old": before[key], "new": after[key]}
    return changes


class AuditService:
    """Service for recording and querying incident edit history.

    Attributes:
        db: SQLAlchemy session for database operations.
    """

    def __init__(self, db: Session) -> None:
        """Initialize the audit service.

        Args:
            db: SQLAlchemy session for database operations.
        """
        self.db = db

    def _next_sequence(self, incident_id: str) -> int:
        max_seq = (
            self.db.query(func.max(EditHistoryEntry.sequence))
            .filter(EditHistoryEntry.incident_id == incident_id)
            .scalar()
        )
        return (max_seq or 0) + 1

    def record_change(
        self,
        incident_id: str,
        acting_user: str,
        before: Mapping[str, Any],
        after: Mapping[str, Any],
        incident_version: int,
        kind: EditKind = EditKind.update,
    ) -> EditHistoryEntry | None:
        """Append a history entry for a committed mutation.

        Must be called after the mutation itself has been committed.

        Args:
            incident_id: UUID of the mutated incident.
            acting_user: User that made the change.
            before: Field values before the mutation.
            after: Field values after the mutation.
            incident_version: Incident version the mutation produced.
            kind: Entry kind (update, signed, parent_signed).

        Returns:
            The created entry, or None when nothing changed.

        Raises:
            AuditWriteError: If the entry could not be persisted.
        """
        changes = compute_changed_fields(before, after)
        if not changes:
            return None

        try:
            entry = EditHistoryEntry(
                incident_id=incident_id,
                user_id=acting_user,
                kind=kind.value,
                changed_fields=json.dumps(changes),
                incident_version=incident_version,
                sequence=self._next_sequence(incident_id),
                created_at=utc_now_iso(),
            )
            self.db.add(entry)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                "Audit write failed for incident %s version %d (%s); "
                "unrecorded fields: %s; error: %s",
                incident_id,
                incident_version,
                kind.value,
                ", ".join(sorted(changes)),
                e,
            )
            raise AuditWriteError(
                incident_id=incident_id,
                incident_version=incident_version,
                kind=kind.value,
                changes=changes,
                acting_user=acting_user,
            ) from e

        self.db.refresh(entry)
        logger.debug(
            "Recorded %s entry #%d for incident %s (%d field(s))",
            kind.value,
            entry.sequence,
            incident_id,
            len(changes),
        )
        return entry

    # Query methods

    def get_history(
        self,
        incident_id: str,
        kind: EditKind | None = None,
        limit: int = 1000,
    ) -> list[EditHistoryEntry]:
        """Get edit history for an incident, oldest first.

        Args:
            incident_id: UUID of the incident.
            kind: Optional filter by entry kind.
            limit: Maximum number of entries to return (default 1000).
        """
        query = self.db.query(EditHistoryEntry).filter(
            EditHistoryEntry.incident_id == incident_id
        )
        if kind is not None:
            query = query.filter(EditHistoryEntry.kind == kind.value)
        return query.order_by(EditHistoryEntry.sequence.asc()).limit(limit).all()

    # Export methods

    def export_history_text(self, incident_id: str) -> str:
        """Export all history entries for an incident as plain text.

        Example output:
            [2024-01-23T10:30:45+00:00] [update] [v2] teacher-1: behavior, location
                {
                    "behavior": {
                        "old": null,
                        "new": "hit desk"
                    },
                    ...
                }
        """
        lines = []
        for entry in self.get_history(incident_id):
            changes = entry.changes
            lines.append(
                f"[{entry.created_at}] [{entry.kind}] [v{entry.incident_version}] "
                f"{entry.user_id}: {', '.join(sorted(changes))}"
            )
            for detail_line in json.dumps(changes, indent=4).split("\n"):
                lines.append(f"    {detail_line}")
        return "\n".join(lines)

    def export_history_for_download(self, incident_id: str) -> tuple[str, str]:
        """Generate filename and content for a history download.

        Filename format: incident_<id>_history_<timestamp>.txt
        """
        clean_id = re.sub(r"[^\w-]", "", incident_id)
        timestamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
        filename = f"incident_{clean_id}_history_{timestamp}.txt"
        return filename, self.export_history_text(incident_id)
