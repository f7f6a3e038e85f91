"""Tests for answer record storage, pinning, legacy import and deletion."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from clinical_forms.engine.errors import FieldErrorCode
from clinical_forms.models.forms import AnswerRecordRow, AuditLog
from clinical_forms.schemas.defaults import BASELINE_FORM_KIND
from clinical_forms.services.answers import (
    RecordNotFound,
    RetentionPeriodActive,
    add_years,
    get_record,
    import_legacy_record,
    list_records,
    load_answers,
    purge_record,
    record_history,
    soft_delete,
    submit_answers,
    update_answers,
)
from clinical_forms.services.configurations import create_version, set_team_specialty


@pytest.fixture
def team_form(db, intake_document):
    result = create_version(db, team_id="team-a", document=intake_document, actor="admin", activate=True)
    assert result.ok
    return result.configuration


def _submit(db, answers=None, subject_id="patient-1", recorded_at=None):
    summary = submit_answers(
        db,
        team_id="team-a",
        subject_id=subject_id,
        form_kind="intake",
        answers=answers or {"visit_date": "2024-03-01", "weight": 72.5},
        actor="dr-a",
        recorded_at=recorded_at,
    )
    assert summary.status == "completed", summary.field_errors
    return summary.context["record"]


def _audit(db, action):
    return db.scalars(select(AuditLog).where(AuditLog.action == action)).all()


# ---------------------------------------------------------------------------
# Submit / read
# ---------------------------------------------------------------------------

def test_submission_is_stored_encrypted_and_pinned(db, team_form):
    record = _submit(db, {"visit_date": "2024-03-01", "symptoms_fatigue": True, "symptoms_fatigue_severity": 3})

    assert record.configuration_id == team_form.id
    assert record.configuration_version == team_form.version
    assert record.values == {"visit_date": "2024-03-01", "symptoms": {"fatigue": {"selected": True, "severity": 3}}}

    row = db.get(AnswerRecordRow, record.id)
    assert "2024-03-01" not in row.encrypted_values
    assert row.encrypted_legacy_bag is None

    entries = [e for e in _audit(db, "create") if e.resource_type == "AnswerRecord"]
    assert [e.resource_id for e in entries] == [str(record.id)]


def test_rejected_submission_stores_nothing(db, team_form):
    summary = submit_answers(
        db,
        team_id="team-a",
        subject_id="patient-1",
        form_kind="intake",
        answers={"weight": 9000},
        actor="dr-a",
    )

    assert summary.status == "rejected"
    assert [e.code for e in summary.field_errors] == [
        FieldErrorCode.REQUIRED_FIELD_MISSING,
        FieldErrorCode.INVALID_VALUE,
    ]
    assert db.scalars(select(AnswerRecordRow)).all() == []


def test_load_answers(db, team_form):
    record = _submit(db, {"visit_date": "2024-03-01", "treatment_line": ["radiation", "external_beam"]})

    loaded, answers = load_answers(db, team_id="team-a", record_id=record.id)
    assert loaded.id == record.id
    assert answers == {
        "visit_date": "2024-03-01",
        "treatment_line": {"category": "radiation", "regimen": "external_beam"},
    }

    _, flat = load_answers(db, team_id="team-a", record_id=record.id, flat=True)
    assert flat == {
        "visit_date": "2024-03-01",
        "treatment_line_category": "radiation",
        "treatment_line_regimen": "external_beam",
    }


def test_records_are_scoped_to_their_team(db, team_form):
    record = _submit(db)
    with pytest.raises(RecordNotFound):
        get_record(db, team_id="team-b", record_id=record.id)


# ---------------------------------------------------------------------------
# Version pinning
# ---------------------------------------------------------------------------

def _without_ecog(document):
    general = document["sections"][0]
    general["fields"] = [f for f in general["fields"] if f["id"] != "ecog"]
    return document


def test_old_records_keep_their_version(db, team_form, intake_document):
    record = _submit(db, {"visit_date": "2024-03-01", "ecog": "2"})
    newer = create_version(
        db, team_id="team-a", document=_without_ecog(intake_document), actor="admin", activate=True
    ).configuration

    assert newer.version == team_form.version + 1
    loaded, answers = load_answers(db, team_id="team-a", record_id=record.id)
    assert loaded.configuration_version == team_form.version
    assert answers["ecog"] == "2"

    # New submissions use the newer version and no longer collect the field.
    fresh = _submit(db, {"visit_date": "2024-04-01", "ecog": "2"})
    assert fresh.configuration_id == newer.id
    assert "ecog" not in fresh.values


def test_update_validates_against_pinned_version(db, team_form, intake_document):
    record = _submit(db)
    create_version(db, team_id="team-a", document=_without_ecog(intake_document), actor="admin", activate=True)

    summary = update_answers(
        db, team_id="team-a", record_id=record.id, answers={"visit_date": "2024-03-02", "ecog": "1"}, actor="dr-b"
    )

    assert summary.status == "completed"
    updated = summary.context["record"]
    assert updated.configuration_id == team_form.id
    assert updated.values == {"visit_date": "2024-03-02", "ecog": "1"}
    assert updated.updated_by == "dr-b"
    assert len(_audit(db, "update")) == 1


def test_rejected_update_leaves_values(db, team_form):
    record = _submit(db)

    summary = update_answers(db, team_id="team-a", record_id=record.id, answers={"ecog": "9"}, actor="dr-b")

    assert summary.status == "rejected"
    assert get_record(db, team_id="team-a", record_id=record.id).values == record.values


# ---------------------------------------------------------------------------
# Legacy import
# ---------------------------------------------------------------------------

def test_imported_legacy_record_reads_back(db):
    set_team_specialty(db, team_id="team-onc", specialty="oncology", actor="admin")

    record = import_legacy_record(
        db,
        team_id="team-onc",
        subject_id="patient-9",
        form_kind=BASELINE_FORM_KIND,
        legacy_bag={
            "symptoms": {"nausea": {"present": True, "severity": "severe"}},
            "treatments": {"line_of_treatment": ["surgery", "biopsy"]},
            "performance_status": {"scale_type": "ecog", "value": 2.0},
        },
        notes="Stable since last visit",
        vital_signs={"weight": 64},
        recorded_at=datetime(2023, 11, 4, 9, 30),
        actor="migration",
    )

    assert record.values == {}
    assert record.legacy_bag["date_recorded"] == "2023-11-04T09:30:00"
    _, answers = load_answers(db, team_id="team-onc", record_id=record.id)
    assert answers == {
        "assessment_date": "2023-11-04",
        "symptoms": {"nausea": {"selected": True, "severity": 3}},
        "treatment_line": {"category": "surgery", "regimen": "biopsy"},
        "weight": 64,
        "performance_status": "2",
        "assessor_notes": "Stable since last visit",
    }
    assert len(_audit(db, "import")) == 1


def test_update_of_legacy_record_stores_canonical_values(db):
    record = import_legacy_record(
        db,
        team_id="team-a",
        subject_id="patient-9",
        form_kind=BASELINE_FORM_KIND,
        legacy_bag={"clinical_measurements": {"height": 170, "weight": 65}},
        recorded_at=datetime(2023, 11, 4),
        actor="migration",
    )
    _, answers = load_answers(db, team_id="team-a", record_id=record.id)

    summary = update_answers(
        db,
        team_id="team-a",
        record_id=record.id,
        answers={**answers, "weight": 66, "performance_status": "0"},
        actor="dr-a",
    )

    assert summary.status == "completed", summary.field_errors
    _, reloaded = load_answers(db, team_id="team-a", record_id=record.id)
    assert reloaded["weight"] == 66
    assert reloaded["height"] == 170


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------

def test_list_records_filters_and_orders(db, team_form):
    older = _submit(db, recorded_at=datetime(2024, 1, 10))
    newer = _submit(db, recorded_at=datetime(2024, 2, 10))
    _submit(db, subject_id="patient-2", recorded_at=datetime(2024, 3, 10))

    page = list_records(db, team_id="team-a", subject_id="patient-1")
    assert [r.id for r in page.records] == [newer.id, older.id]
    assert page.total == 2

    page = list_records(db, team_id="team-a", start=datetime(2024, 2, 1), end=datetime(2024, 2, 28))
    assert [r.id for r in page.records] == [newer.id]

    assert list_records(db, team_id="team-b").total == 0


def test_list_records_pagination_is_clamped(db, team_form):
    for day in range(1, 4):
        _submit(db, recorded_at=datetime(2024, 1, day))

    page = list_records(db, team_id="team-a", limit=2, offset=1)
    assert (len(page.records), page.total, page.limit, page.offset) == (2, 3, 2, 1)

    page = list_records(db, team_id="team-a", limit=10_000, offset=-5)
    assert (page.limit, page.offset) == (200, 0)


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------

def test_soft_delete_hides_record(db, team_form):
    record = _submit(db)

    deleted = soft_delete(db, team_id="team-a", record_id=record.id, actor="dr-a", reason="duplicate entry")

    assert deleted.is_deleted
    assert deleted.retention_until == add_years(deleted.deleted_at, 7)
    with pytest.raises(RecordNotFound):
        get_record(db, team_id="team-a", record_id=record.id)
    assert get_record(db, team_id="team-a", record_id=record.id, include_deleted=True).deletion_reason == (
        "duplicate entry"
    )
    assert list_records(db, team_id="team-a").total == 0
    assert list_records(db, team_id="team-a", include_deleted=True).total == 1
    assert len(_audit(db, "delete")) == 1


def test_purge_only_after_retention(db, team_form):
    record = _submit(db)

    with pytest.raises(RetentionPeriodActive):
        purge_record(db, team_id="team-a", record_id=record.id, actor="records-officer")

    deleted = soft_delete(db, team_id="team-a", record_id=record.id, actor="dr-a", retention_years=1)
    with pytest.raises(RetentionPeriodActive):
        purge_record(db, team_id="team-a", record_id=record.id, actor="records-officer")

    purge_record(
        db,
        team_id="team-a",
        record_id=record.id,
        actor="records-officer",
        now=deleted.retention_until + timedelta(days=1),
    )
    assert db.get(AnswerRecordRow, record.id) is None
    assert len(_audit(db, "purge")) == 1


def test_add_years_handles_leap_day():
    assert add_years(datetime(2024, 2, 29, 12, 0), 7) == datetime(2031, 2, 28, 12, 0)
    assert add_years(datetime(2024, 3, 1), 1) == datetime(2025, 3, 1)


def test_record_history_survives_deletion(db, team_form):
    record = _submit(db)
    update_answers(db, team_id="team-a", record_id=record.id, answers={"visit_date": "2024-03-05"}, actor="dr-b")
    soft_delete(db, team_id="team-a", record_id=record.id, actor="dr-a")

    entries = record_history(db, team_id="team-a", record_id=record.id)

    assert sorted((e.action, e.actor) for e in entries) == [("create", "dr-a"), ("delete", "dr-a"), ("update", "dr-b")]
    with pytest.raises(RecordNotFound):
        record_history(db, team_id="team-b", record_id=record.id)
