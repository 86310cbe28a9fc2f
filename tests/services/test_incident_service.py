"""Tests for IncidentService lifecycle, versioning and audit coupling."""

import threading

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from src.db.models import EditHistoryEntry, EditKind, Incident, IncidentStatus
from src.errors.domain import (
    AuditWriteError,
    ConflictError,
    LockedError,
    MissingMandatoryFieldsError,
    NotFoundError,
    ValidationError,
)
from src.services.conversation_persistence_service import ConversationPersistenceService
from src.services.incident_service import (
    IncidentService,
    can_transition,
    validate_patch,
)


@pytest.fixture
def svc(db_session: Session) -> IncidentService:
    """Service under test."""
    return IncidentService(db_session)


class TestTransitions:
    def test_draft_can_be_signed(self):
        assert can_transition(IncidentStatus.draft, IncidentStatus.signed)

    def test_signed_is_terminal(self):
        assert not can_transition(IncidentStatus.signed, IncidentStatus.draft)
        assert not can_transition(IncidentStatus.signed, IncidentStatus.signed)


class TestValidatePatch:
    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_patch({"mood": "grumpy", "location": "gym"})
        assert exc_info.value.fields == ["mood"]

    def test_blank_text_becomes_none(self):
        assert validate_patch({"location": "   "}) == {"location": None}

    def test_text_is_stripped(self):
        assert validate_patch({"behavior": "  hit desk "}) == {"behavior": "hit desk"}

    def test_unknown_incident_type_rejected(self):
        with pytest.raises(ValidationError):
            validate_patch({"incident_type": "Tantrum"})

    @pytest.mark.parametrize("value", ["03/14/2025", "2025-02-30", "yesterday"])
    def test_bad_date_rejected(self, value):
        with pytest.raises(ValidationError):
            validate_patch({"incident_date": value})

    @pytest.mark.parametrize("value", ["2pm", "24:00", "9:5"])
    def test_bad_time_rejected(self, value):
        with pytest.raises(ValidationError):
            validate_patch({"incident_time": value})

    def test_functions_deduplicated_and_sorted(self):
        cleaned = validate_patch({"function_of_behavior": ["Sensory", "Escape/Avoidance", "Sensory"]})
        assert cleaned["function_of_behavior"] == ["Escape/Avoidance", "Sensory"]

    def test_unknown_function_rejected(self):
        with pytest.raises(ValidationError):
            validate_patch({"function_of_behavior": ["Boredom"]})

    def test_function_string_rejected(self):
        with pytest.raises(ValidationError):
            validate_patch({"function_of_behavior": "Sensory"})

    def test_non_string_text_rejected(self):
        with pytest.raises(ValidationError):
            validate_patch({"notes": 12})


class TestCreateIncident:
    def test_creates_empty_draft(self, svc):
        incident = svc.create_incident(user_id="teacher-1")
        assert incident.status == IncidentStatus.draft.value
        assert incident.version == 1
        assert incident.behavior is None
        assert incident.function_list == []

    def test_creation_writes_no_history(self, svc):
        incident = svc.create_incident(user_id="teacher-1", fields={"behavior": "hit desk"})
        assert svc.list_edit_history(incident.id) == []

    def test_student_id_argument(self, svc):
        incident = svc.create_incident(user_id="teacher-1", student_id="student-7")
        assert incident.student_id == "student-7"

    def test_one_incident_per_conversation(self, svc, conversation):
        svc.create_incident(user_id="teacher-1", conversation_id=conversation.id)
        with pytest.raises(ConflictError):
            svc.create_incident(user_id="teacher-1", conversation_id=conversation.id)

    def test_invalid_fields_rejected(self, svc):
        with pytest.raises(ValidationError):
            svc.create_incident(user_id="teacher-1", fields={"incident_type": "Meltdown"})


class TestUpdateIncident:
    def test_update_writes_exactly_one_entry(self, svc, draft_incident):
        updated = svc.update_incident(draft_incident.id, "teacher-1", {"location": "gym"})

        assert updated.location == "gym"
        assert updated.version == 2
        history = svc.list_edit_history(draft_incident.id)
        assert len(history) == 1
        entry = history[0]
        assert entry.kind == EditKind.update.value
        assert entry.user_id == "teacher-1"
        assert entry.incident_version == 2
        assert entry.changes == {"location": {"old": "classroom", "new": "gym"}}

    def test_entry_lists_only_changed_fields(self, svc, draft_incident):
        svc.update_incident(
            draft_incident.id,
            "teacher-1",
            {"location": "classroom", "duration": "5 minutes"},
        )
        entry = svc.list_edit_history(draft_incident.id)[0]
        assert set(entry.changes) == {"duration"}

    def test_noop_update_writes_nothing(self, svc, draft_incident):
        result = svc.update_incident(draft_incident.id, "teacher-1", {"location": "classroom"})
        assert result.version == 1
        assert svc.list_edit_history(draft_incident.id) == []

    def test_empty_patch_writes_nothing(self, svc, draft_incident):
        svc.update_incident(draft_incident.id, "teacher-1", {})
        assert svc.list_edit_history(draft_incident.id) == []

    def test_clearing_a_field_is_audited(self, svc, draft_incident):
        svc.update_incident(draft_incident.id, "teacher-1", {"location": ""})
        entry = svc.list_edit_history(draft_incident.id)[0]
        assert entry.changes == {"location": {"old": "classroom", "new": None}}

    def test_function_list_change_is_audited_as_lists(self, svc, draft_incident):
        svc.update_incident(
            draft_incident.id, "teacher-1", {"function_of_behavior": ["Sensory"]}
        )
        entry = svc.list_edit_history(draft_incident.id)[0]
        assert entry.changes == {"function_of_behavior": {"old": [], "new": ["Sensory"]}}

    def test_sequential_updates_get_increasing_sequence(self, svc, draft_incident):
        svc.update_incident(draft_incident.id, "teacher-1", {"location": "gym"})
        svc.update_incident(draft_incident.id, "teacher-2", {"location": "hallway"})
        history = svc.list_edit_history(draft_incident.id)
        assert [e.sequence for e in history] == [1, 2]
        assert [e.incident_version for e in history] == [2, 3]
        assert history[1].user_id == "teacher-2"

    def test_expected_version_mismatch(self, svc, draft_incident):
        svc.update_incident(draft_incident.id, "teacher-1", {"location": "gym"})
        with pytest.raises(ConflictError) as exc_info:
            svc.update_incident(
                draft_incident.id, "teacher-1", {"location": "hallway"}, expected_version=1
            )
        assert exc_info.value.expected_version == 1
        assert exc_info.value.actual_version == 2
        assert svc.require_incident(draft_incident.id).location == "gym"

    def test_expected_version_match(self, svc, draft_incident):
        updated = svc.update_incident(
            draft_incident.id, "teacher-1", {"location": "gym"}, expected_version=1
        )
        assert updated.version == 2

    def test_unknown_incident(self, svc):
        with pytest.raises(NotFoundError):
            svc.update_incident("missing", "teacher-1", {"location": "gym"})

    def test_invalid_patch_changes_nothing(self, svc, draft_incident):
        with pytest.raises(ValidationError):
            svc.update_incident(draft_incident.id, "teacher-1", {"colour": "red"})
        assert svc.require_incident(draft_incident.id).version == 1
        assert svc.list_edit_history(draft_incident.id) == []

    def test_audit_failure_surfaces_after_commit(self, svc, draft_incident, monkeypatch):
        def _boom(incident_id):
            raise OperationalError("SELECT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(svc.audit, "_next_sequence", _boom)
        with pytest.raises(AuditWriteError) as exc_info:
            svc.update_incident(draft_incident.id, "teacher-1", {"location": "gym"})

        err = exc_info.value
        assert err.incident_version == 2
        assert err.changes == {"location": {"old": "classroom", "new": "gym"}}
        assert err.acting_user == "teacher-1"
        monkeypatch.undo()
        assert svc.require_incident(draft_incident.id).location == "gym"
        assert svc.list_edit_history(draft_incident.id) == []


class TestSignIncident:
    def test_sign_freezes_incident(self, svc, draft_incident):
        signed = svc.sign_incident(draft_incident.id, "teacher-1", "Ms. Rivera")

        assert signed.status == IncidentStatus.signed.value
        assert signed.is_signed
        assert signed.teacher_signature == "Ms. Rivera"
        assert signed.teacher_signature_date is not None
        assert signed.signed_by == "teacher-1"
        assert signed.version == 2

    def test_sign_writes_signed_entry(self, svc, draft_incident):
        svc.sign_incident(draft_incident.id, "teacher-1", "Ms. Rivera")
        history = svc.list_edit_history(draft_incident.id)
        assert len(history) == 1
        assert history[0].kind == EditKind.signed.value
        assert history[0].changes["status"] == {"old": "draft", "new": "signed"}
        assert history[0].changes["teacher_signature"]["new"] == "Ms. Rivera"

    def test_missing_mandatory_field(self, svc):
        incident = svc.create_incident(
            user_id="teacher-1", student_id="student-1", fields={"incident_type": "Other"}
        )
        with pytest.raises(MissingMandatoryFieldsError) as exc_info:
            svc.sign_incident(incident.id, "teacher-1", "Ms. Rivera")

        assert isinstance(exc_info.value, ValidationError)
        assert exc_info.value.fields == ["behavior"]
        reloaded = svc.require_incident(incident.id)
        assert reloaded.status == IncidentStatus.draft.value
        assert reloaded.teacher_signature is None
        assert svc.list_edit_history(incident.id) == []

    def test_empty_draft_reports_every_missing_field(self, svc):
        incident = svc.create_incident(user_id="teacher-1")
        with pytest.raises(MissingMandatoryFieldsError) as exc_info:
            svc.sign_incident(incident.id, "teacher-1", "Ms. Rivera")
        assert exc_info.value.fields == ["student_id", "incident_type", "behavior"]

    def test_custom_mandatory_fields(self, db_session, draft_incident):
        svc = IncidentService(db_session, mandatory_fields=["incident_date"])
        with pytest.raises(MissingMandatoryFieldsError) as exc_info:
            svc.sign_incident(draft_incident.id, "teacher-1", "Ms. Rivera")
        assert exc_info.value.fields == ["incident_date"]

    def test_blank_signature_rejected(self, svc, draft_incident):
        with pytest.raises(ValidationError):
            svc.sign_incident(draft_incident.id, "teacher-1", "   ")
        assert svc.require_incident(draft_incident.id).status == IncidentStatus.draft.value

    def test_sign_twice_is_locked(self, svc, draft_incident):
        svc.sign_incident(draft_incident.id, "teacher-1", "Ms. Rivera")
        with pytest.raises(LockedError) as exc_info:
            svc.sign_incident(draft_incident.id, "teacher-1", "Ms. Rivera")
        assert exc_info.value.current_status == "signed"

    def test_sign_with_stale_version(self, svc, draft_incident):
        svc.update_incident(draft_incident.id, "teacher-1", {"location": "gym"})
        with pytest.raises(ConflictError):
            svc.sign_incident(draft_incident.id, "teacher-1", "Ms. Rivera", expected_version=1)


class TestSignedIsImmutable:
    def test_update_after_sign_is_locked(self, svc, draft_incident):
        svc.sign_incident(draft_incident.id, "teacher-1", "Ms. Rivera")
        entries_before = len(svc.list_edit_history(draft_incident.id))

        with pytest.raises(LockedError) as exc_info:
            svc.update_incident(draft_incident.id, "teacher-1", {"behavior": "changed"})

        assert exc_info.value.attempted == "update"
        reloaded = svc.require_incident(draft_incident.id)
        assert reloaded.behavior == "Threw a chair"
        assert len(svc.list_edit_history(draft_incident.id)) == entries_before

    def test_noop_update_after_sign_is_still_locked(self, svc, draft_incident):
        svc.sign_incident(draft_incident.id, "teacher-1", "Ms. Rivera")
        with pytest.raises(LockedError):
            svc.update_incident(draft_incident.id, "teacher-1", {})


class TestParentSignature:
    def test_draft_cannot_be_cosigned(self, svc, draft_incident):
        with pytest.raises(LockedError):
            svc.add_parent_signature(draft_incident.id, "parent-1", "Ana Lopez")

    def test_cosign_signed_incident(self, svc, draft_incident):
        svc.sign_incident(draft_incident.id, "teacher-1", "Ms. Rivera")
        cosigned = svc.add_parent_signature(draft_incident.id, "parent-1", "Ana Lopez")

        assert cosigned.parent_signature == "Ana Lopez"
        assert cosigned.parent_signature_date is not None
        assert cosigned.behavior == "Threw a chair"
        history = svc.list_edit_history(draft_incident.id)
        assert [e.kind for e in history] == ["signed", "parent_signed"]
        assert history[1].user_id == "parent-1"

    def test_cosign_only_once(self, svc, draft_incident):
        svc.sign_incident(draft_incident.id, "teacher-1", "Ms. Rivera")
        svc.add_parent_signature(draft_incident.id, "parent-1", "Ana Lopez")
        with pytest.raises(LockedError):
            svc.add_parent_signature(draft_incident.id, "parent-1", "Ana Lopez")

    def test_blank_parent_name(self, svc, draft_incident):
        svc.sign_incident(draft_incident.id, "teacher-1", "Ms. Rivera")
        with pytest.raises(ValidationError):
            svc.add_parent_signature(draft_incident.id, "parent-1", " ")


class TestQueries:
    def test_require_incident_not_found(self, svc):
        with pytest.raises(NotFoundError) as exc_info:
            svc.require_incident("nope")
        assert exc_info.value.resource_type == "Incident"

    def test_get_for_conversation(self, svc, conversation):
        incident = svc.create_incident(user_id="teacher-1", conversation_id=conversation.id)
        assert svc.get_for_conversation(conversation.id).id == incident.id
        assert svc.get_for_conversation("other") is None

    def test_list_filters(self, svc):
        a = svc.create_incident(user_id="teacher-1", student_id="s1", fields={
            "behavior": "hit", "incident_type": "Physical Aggression",
        })
        svc.create_incident(user_id="teacher-2", student_id="s2")
        svc.sign_incident(a.id, "teacher-1", "Ms. Rivera")

        assert [i.id for i in svc.list_incidents(user_id="teacher-1")] == [a.id]
        assert [i.id for i in svc.list_incidents(student_id="s1")] == [a.id]
        assert [i.id for i in svc.list_incidents(status=IncidentStatus.signed)] == [a.id]
        assert len(svc.list_incidents()) == 2
        assert len(svc.list_incidents(limit=1)) == 1

    def test_count_ignores_paging(self, svc):
        for student in ("s1", "s1", "s2"):
            svc.create_incident(user_id="teacher-1", student_id=student)
        assert svc.count_incidents() == 3
        assert svc.count_incidents(student_id="s1") == 2
        assert len(svc.list_incidents(limit=1)) == 1

    def test_list_edit_history_unknown_incident(self, svc):
        with pytest.raises(NotFoundError):
            svc.list_edit_history("nope")


class TestConcurrency:
    def test_concurrent_updates_are_serialized(self, session_factory):
        setup = session_factory()
        incident = IncidentService(setup).create_incident(user_id="teacher-1")
        incident_id = incident.id
        setup.close()

        errors: list[Exception] = []
        workers = 8

        def _worker(n: int) -> None:
            session = session_factory()
            try:
                IncidentService(session).update_incident(
                    incident_id, f"teacher-{n}", {"notes": f"note {n}"}
                )
            except Exception as e:  # noqa: BLE001
                errors.append(e)
            finally:
                session.close()

        threads = [threading.Thread(target=_worker, args=(n,)) for n in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        check = session_factory()
        try:
            svc = IncidentService(check)
            final = svc.require_incident(incident_id)
            history = svc.list_edit_history(incident_id)
            assert final.version == 1 + workers
            assert len(history) == workers
            assert sorted(e.sequence for e in history) == list(range(1, workers + 1))
            assert sorted(e.incident_version for e in history) == list(range(2, workers + 2))
            assert history[-1].changes["notes"]["new"] == final.notes
        finally:
            check.close()

    def test_stale_writer_gets_conflict(self, session_factory):
        first = session_factory()
        second = session_factory()
        try:
            svc_a = IncidentService(first)
            svc_b = IncidentService(second)
            incident = svc_a.create_incident(user_id="teacher-1", fields={"location": "gym"})

            stale = second.get(Incident, incident.id)
            svc_a.update_incident(incident.id, "teacher-1", {"location": "library"})

            stale.location = "cafeteria"
            with pytest.raises(ConflictError) as exc_info:
                svc_b._commit_versioned(stale, 1)
            assert exc_info.value.actual_version == 2
        finally:
            first.close()
            second.close()


class TestConversationLink:
    def test_deleting_conversation_keeps_incident(self, db_session, svc):
        conversations = ConversationPersistenceService(db_session)
        conversation = conversations.create_conversation("teacher-1")
        incident = svc.create_incident(user_id="teacher-1", conversation_id=conversation.id)
        conversations.delete_conversation(conversation.id)
        db_session.expire_all()
        assert svc.require_incident(incident.id).conversation_id is None


class TestDeleteIncident:
    def test_delete_draft_removes_history(self, db_session, svc, draft_incident):
        svc.update_incident(draft_incident.id, "teacher-1", {"location": "gym"})
        incident_id = draft_incident.id

        svc.delete_incident(incident_id, "teacher-1")

        assert svc.get_incident(incident_id) is None
        remaining = (
            db_session.query(EditHistoryEntry)
            .filter(EditHistoryEntry.incident_id == incident_id)
            .count()
        )
        assert remaining == 0

    def test_signed_incident_cannot_be_deleted(self, svc, draft_incident):
        svc.sign_incident(draft_incident.id, "teacher-1", "Ms. Rivera")
        with pytest.raises(LockedError):
            svc.delete_incident(draft_incident.id, "teacher-1")
        assert svc.get_incident(draft_incident.id) is not None

    def test_unknown_incident(self, svc):
        with pytest.raises(NotFoundError):
            svc.delete_incident("nope", "teacher-1")
