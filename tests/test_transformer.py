"""Tests for normalize/denormalize and the legacy bag reader – no database required."""

import logging
from uuid import uuid4

import pytest

from clinical_forms.engine.config_validator import validate_configuration
from clinical_forms.engine.errors import ConfigurationVersionUnavailable
from clinical_forms.engine.generator import compile_validator
from clinical_forms.engine.records import AnswerRecord
from clinical_forms.engine.transformer import denormalize, initial_values, normalize, summarize
from clinical_forms.schemas.defaults import ONCOLOGY_BASELINE

ACCEPTED = {
    "visit_date": "2024-03-01",
    "weight": 72.5,
    "stage": "early",
    "ecog": "1",
    "symptoms": {"fatigue": {"selected": True, "severity": 2}, "rash": {"selected": True}},
    "conditions": {"diabetes": {"selected": True}},
    "treatment_line": {"category": "chemotherapy", "regimen": "induction"},
}

LEGACY_BAG = {
    "symptoms": {
        "fatigue": {"present": True, "severity": "moderate"},
        "nausea": {"present": False, "severity": "mild"},
        "pain": {"present": True, "severity": "very_severe"},
    },
    "treatments": {"line_of_treatment": ["chemotherapy", "maintenance"], "details": "Second cycle"},
    "performance_status": {"scale_type": "ecog", "value": 1, "notes": "Walks daily"},
    "clinical_measurements": {"height": 172, "weight": 70.5},
    "demographics": {"age": 61},
    "notes": "Stable",
    "date_recorded": "2023-11-04T09:30:00",
}


def _pin(document, version=1):
    result = validate_configuration({**document, "id": str(uuid4()), "version": version})
    assert result.ok, result.errors
    return result.configuration


def _make_record(configuration, values=None, legacy_bag=None):
    return AnswerRecord(
        id=uuid4(),
        subject_id="patient-1",
        team_id="team-a",
        form_kind=configuration.form_kind,
        configuration_id=configuration.id,
        configuration_version=configuration.version,
        values=values or {},
        legacy_bag=legacy_bag,
    )


@pytest.fixture
def pinned(intake_document):
    return _pin(intake_document, version=3)


@pytest.fixture
def oncology():
    return _pin(ONCOLOGY_BASELINE)


# ---------------------------------------------------------------------------
# normalize / denormalize
# ---------------------------------------------------------------------------

def test_round_trip(pinned):
    values = normalize(ACCEPTED, pinned)
    assert denormalize(_make_record(pinned, values), pinned) == ACCEPTED


def test_normalize_orders_by_configuration(pinned):
    shuffled = dict(reversed(list(ACCEPTED.items())))
    assert list(normalize(shuffled, pinned)) == list(ACCEPTED)


def test_normalize_collapses_flat_keys_and_drops_unknown(pinned):
    values = normalize(
        {
            "visit_date": "2024-03-01",
            "symptoms_fatigue": True,
            "symptoms_fatigue_severity": 2,
            "treatment_line_category": "radiation",
            "not_a_field": 1,
        },
        pinned,
    )
    assert values == {
        "visit_date": "2024-03-01",
        "symptoms": {"fatigue": {"selected": True, "severity": 2}},
        "treatment_line": {"category": "radiation"},
    }


def test_flat_answers_validate_back_to_the_same_values(pinned):
    record = _make_record(pinned, normalize(ACCEPTED, pinned))
    flat = denormalize(record, pinned, flat=True)

    assert flat["symptoms_fatigue"] is True
    assert flat["symptoms_fatigue_severity"] == 2
    assert flat["conditions_diabetes"] is True
    assert flat["treatment_line_regimen"] == "induction"
    assert compile_validator(pinned).check(flat).values == ACCEPTED


def test_denormalize_requires_the_pinned_version(pinned, intake_document):
    record = _make_record(pinned, normalize(ACCEPTED, pinned))

    with pytest.raises(ConfigurationVersionUnavailable):
        denormalize(record, None)
    with pytest.raises(ConfigurationVersionUnavailable):
        denormalize(record, _pin(intake_document, version=4))


def test_values_for_unknown_fields_are_logged_and_skipped(pinned, caplog):
    record = _make_record(pinned, {"visit_date": "2024-03-01", "retired_field": "x"})

    with caplog.at_level(logging.WARNING, logger="clinical_forms.engine.transformer"):
        answers = denormalize(record, pinned)

    assert answers == {"visit_date": "2024-03-01"}
    assert "retired_field" in caplog.text


# ---------------------------------------------------------------------------
# Legacy bag
# ---------------------------------------------------------------------------

def test_legacy_bag_is_reconstructed(oncology):
    answers = denormalize(_make_record(oncology, legacy_bag=LEGACY_BAG), oncology)

    assert answers == {
        "assessment_date": "2023-11-04",
        "age": 61,
        "symptoms": {
            "fatigue": {"selected": True, "severity": 2},
            "pain": {"selected": True, "severity": 4},
        },
        "treatment_line": {"category": "chemotherapy", "regimen": "maintenance"},
        "treatment_details": "Second cycle",
        "height": 172,
        "weight": 70.5,
        "performance_status": "1",
        "performance_status_notes": "Walks daily",
        "assessor_notes": "Stable",
    }


def test_canonical_values_win_over_legacy(oncology):
    record = _make_record(oncology, values={"height": 180}, legacy_bag=LEGACY_BAG)
    answers = denormalize(record, oncology)

    assert answers["height"] == 180
    assert answers["weight"] == 70.5


def test_invalid_legacy_values_are_dropped(oncology, caplog):
    bag = {"clinical_measurements": {"height": 900, "weight": 80}, "symptoms": {"cough": {"present": True}}}

    with caplog.at_level(logging.WARNING, logger="clinical_forms.engine.transformer"):
        answers = denormalize(_make_record(oncology, legacy_bag=bag), oncology)

    assert answers == {"weight": 80}
    assert "height" in caplog.text
    assert "symptoms" in caplog.text


def test_vital_signs_column_is_read(oncology):
    bag = {"vital_signs": {"bmi": 24.1}}
    assert denormalize(_make_record(oncology, legacy_bag=bag), oncology) == {"bmi": 24.1}


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------

def test_summarize(pinned):
    rows = summarize(normalize(ACCEPTED, pinned), pinned)
    by_field = {row["field_id"]: row for row in rows}

    assert [row["field_id"] for row in rows] == list(ACCEPTED)
    assert by_field["weight"]["display"] == "72.5 kg"
    assert by_field["ecog"]["display"] == "Restricted"
    assert by_field["symptoms"]["display"] == "Fatigue (Moderate), Rash"
    assert by_field["conditions"]["display"] == "Diabetes"
    assert by_field["treatment_line"]["display"] == "Chemotherapy > Induction"
    assert by_field["treatment_line"]["section"] == "Treatment"


def test_initial_values():
    configuration = _pin(
        {
            "form_kind": "intake",
            "sections": [
                {
                    "id": "main",
                    "title": "Main",
                    "fields": [
                        {"id": "cycles", "type": "number", "label": "Cycles", "integer": True, "default": 6},
                        {
                            "id": "conditions",
                            "type": "checkbox_group",
                            "label": "Conditions",
                            "options": [{"value": "none_known", "label": "None known"}],
                            "default": ["none_known"],
                        },
                        {"id": "notes", "type": "free_text", "label": "Notes"},
                    ],
                }
            ],
        }
    )
    assert initial_values(configuration) == {"cycles": 6, "conditions": {"none_known": {"selected": True}}}
