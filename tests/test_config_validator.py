"""Tests for configuration certification – no database required."""

import pytest

from clinical_forms.engine.config_validator import validate_configuration
from clinical_forms.engine.errors import ConfigurationErrorCode as Code
from clinical_forms.schemas.defaults import CARDIOLOGY_BASELINE, ONCOLOGY_BASELINE, SYSTEM_BASELINE


def _make_document(*fields, enabled=True):
    return {
        "form_kind": "intake",
        "sections": [{"id": "main", "title": "Main", "enabled": enabled, "fields": list(fields)}],
    }


def _codes(result):
    return [e.code for e in result.errors]


def _select(field_id, *values, **extra):
    return {
        "id": field_id,
        "type": "single_select",
        "label": field_id,
        "options": [{"value": v, "label": v.title()} for v in values],
        **extra,
    }


def test_valid_document_is_certified(intake_document):
    result = validate_configuration(intake_document)

    assert result.ok
    assert result.configuration.certified
    assert [s.id for s in result.configuration.sections] == ["general", "symptoms", "treatment", "retired"]
    assert result.configuration.get_field("treatment_line").steps[1].depends_on_step == "category"


@pytest.mark.parametrize("document", [ONCOLOGY_BASELINE, CARDIOLOGY_BASELINE, SYSTEM_BASELINE])
def test_builtin_defaults_validate(document):
    result = validate_configuration(document)
    assert result.ok, result.errors


def test_non_object_document():
    result = validate_configuration(["not", "a", "document"])
    assert _codes(result) == [Code.SCHEMA]


def test_missing_envelope_keys():
    result = validate_configuration({"sections": []})
    assert not result.ok
    assert Code.SCHEMA in _codes(result)


def test_unknown_field_type():
    result = validate_configuration(_make_document({"id": "x", "type": "slider", "label": "X"}))

    assert _codes(result) == [Code.UNKNOWN_FIELD_TYPE]
    assert result.errors[0].field_id == "x"
    assert result.errors[0].section == "main"


def test_duplicate_field_ids_across_sections():
    document = {
        "form_kind": "intake",
        "sections": [
            {"id": "a", "title": "A", "fields": [{"id": "dup", "type": "text", "label": "One"}]},
            {"id": "b", "title": "B", "fields": [{"id": "dup", "type": "date", "label": "Two"}]},
        ],
    }
    result = validate_configuration(document)
    assert _codes(result) == [Code.DUPLICATE_FIELD_ID]
    assert result.errors[0].section == "b"


def test_duplicate_section_ids():
    document = {
        "form_kind": "intake",
        "sections": [
            {"id": "a", "title": "A", "fields": []},
            {"id": "a", "title": "Again", "fields": []},
        ],
    }
    assert _codes(validate_configuration(document)) == [Code.DUPLICATE_SECTION_ID]


def test_dangling_visibility_reference():
    field = {"id": "x", "type": "text", "label": "X", "visible_when": {"field": "ghost", "equals": "yes"}}
    assert _codes(validate_configuration(_make_document(field))) == [Code.DANGLING_REFERENCE]


def test_forward_visibility_reference():
    result = validate_configuration(
        _make_document(
            {"id": "details", "type": "text", "label": "Details", "visible_when": {"field": "stage", "equals": "late"}},
            _select("stage", "early", "late"),
        )
    )
    assert _codes(result) == [Code.FORWARD_REFERENCE]


def test_self_reference_is_a_cycle():
    result = validate_configuration(
        _make_document(
            _select("stage", "early", "late", visible_when={"field": "stage", "equals": "late"}),
        )
    )
    assert _codes(result) == [Code.DEPENDENCY_CYCLE]


def test_mutual_references_report_cycle():
    result = validate_configuration(
        _make_document(
            _select("a", "yes", "no", visible_when={"field": "b", "equals": "yes"}),
            _select("b", "yes", "no", visible_when={"field": "a", "equals": "yes"}),
        )
    )
    codes = _codes(result)
    assert Code.DEPENDENCY_CYCLE in codes
    assert Code.FORWARD_REFERENCE in codes
    assert {e.field_id for e in result.errors if e.code == Code.DEPENDENCY_CYCLE} == {"a", "b"}


def test_cascading_step_cycle():
    field = {
        "id": "tx",
        "type": "cascading_select",
        "label": "Treatment",
        "steps": [
            {"id": "first", "label": "First", "options": [{"value": "a", "label": "A"}], "depends_on_step": "second"},
            {"id": "second", "label": "Second", "depends_on_step": "first", "options_by_parent": {}},
        ],
    }
    result = validate_configuration(_make_document(field))
    assert Code.DEPENDENCY_CYCLE in _codes(result)


def test_cascading_options_by_parent_must_use_parent_values():
    field = {
        "id": "tx",
        "type": "cascading_select",
        "label": "Treatment",
        "steps": [
            {"id": "category", "label": "Category", "options": [{"value": "chemo", "label": "Chemo"}]},
            {
                "id": "regimen",
                "label": "Regimen",
                "depends_on_step": "category",
                "options_by_parent": {"surgery": [{"value": "biopsy", "label": "Biopsy"}]},
            },
        ],
    }
    assert _codes(validate_configuration(_make_document(field))) == [Code.INVALID_OPTION_REFERENCE]


def test_cascading_dangling_and_duplicate_steps():
    field = {
        "id": "tx",
        "type": "cascading_select",
        "label": "Treatment",
        "steps": [
            {"id": "category", "label": "Category", "options": [{"value": "chemo", "label": "Chemo"}]},
            {"id": "category", "label": "Again", "depends_on_step": "category"},
            {"id": "regimen", "label": "Regimen", "depends_on_step": "missing"},
        ],
    }
    codes = _codes(validate_configuration(_make_document(field)))
    assert Code.DUPLICATE_STEP_ID in codes
    assert Code.DANGLING_REFERENCE in codes


def test_severity_scale_needs_one_label_per_level():
    field = {
        "id": "symptoms",
        "type": "checkbox_group_severity",
        "label": "Symptoms",
        "options": [{"value": "pain", "label": "Pain", "has_severity": True}],
        "severity_scale": {"min": 1, "max": 4, "labels": ["Mild", "Severe"]},
    }
    assert _codes(validate_configuration(_make_document(field))) == [Code.SEVERITY_SCALE]


def test_checkbox_group_allows_one_exclusive_option():
    field = {
        "id": "conditions",
        "type": "checkbox_group",
        "label": "Conditions",
        "options": [
            {"value": "none", "label": "None", "exclusive": True},
            {"value": "unknown", "label": "Unknown", "exclusive": True},
        ],
    }
    assert _codes(validate_configuration(_make_document(field))) == [Code.MULTIPLE_EXCLUSIVE]


def _checkbox(field_id, *values, type_name="checkbox_group"):
    return {
        "id": field_id,
        "type": type_name,
        "label": field_id,
        "options": [{"value": v, "label": v} for v in values],
    }


def test_flat_answer_key_cannot_be_another_field_id():
    result = validate_configuration(
        _make_document(
            _checkbox("symptoms", "nausea", "pain"),
            {"id": "symptoms_nausea", "type": "text", "label": "Nausea notes"},
        )
    )
    assert _codes(result) == [Code.FLAT_KEY_COLLISION]
    assert result.errors[0].field_id == "symptoms"
    assert "symptoms_nausea" in result.errors[0].reason


def test_cascading_step_key_cannot_be_another_field_id():
    cascade = {
        "id": "treatment",
        "type": "cascading_select",
        "label": "Treatment",
        "steps": [{"id": "line", "label": "Line", "options": [{"value": "first", "label": "First"}]}],
    }
    result = validate_configuration(
        _make_document(cascade, {"id": "treatment_line", "type": "text", "label": "Line notes"})
    )
    assert _codes(result) == [Code.FLAT_KEY_COLLISION]


def test_flat_answer_keys_of_two_fields_cannot_overlap():
    result = validate_configuration(_make_document(_checkbox("a", "b_c"), _checkbox("a_b", "c")))
    # a_b_c and a_b_c_severity are both read by the two fields
    assert _codes(result) == [Code.FLAT_KEY_COLLISION, Code.FLAT_KEY_COLLISION]
    assert {e.field_id for e in result.errors} == {"a_b"}


def test_severity_suffix_is_reserved_in_every_checkbox_group():
    result = validate_configuration(_make_document(_checkbox("symptoms", "pain", "pain_severity")))
    assert _codes(result) == [Code.SCHEMA]
    assert "reserved suffix" in result.errors[0].reason


def test_condition_value_must_be_an_option():
    result = validate_configuration(
        _make_document(
            _select("stage", "early", "late"),
            {"id": "details", "type": "text", "label": "Details", "visible_when": {"field": "stage", "equals": "mid"}},
        )
    )
    assert _codes(result) == [Code.INVALID_CONDITION]


def test_invalid_default():
    result = validate_configuration(
        _make_document({"id": "weight", "type": "number", "label": "Weight", "max": 300, "default": 900})
    )
    assert _codes(result) == [Code.INVALID_DEFAULT]


def test_unknown_field_property_is_a_schema_error():
    result = validate_configuration(
        _make_document({"id": "weight", "type": "number", "label": "Weight", "maximum": 300})
    )
    assert _codes(result) == [Code.SCHEMA]


def test_uncompilable_pattern():
    result = validate_configuration(_make_document({"id": "code", "type": "text", "label": "Code", "pattern": "(["}))
    assert _codes(result) == [Code.SCHEMA]


def test_all_problems_reported_together():
    result = validate_configuration(
        _make_document(
            {"id": "a", "type": "slider", "label": "A"},
            {"id": "b", "type": "text", "label": "B", "visible_when": {"field": "ghost", "equals": 1}},
            {"id": "b", "type": "date", "label": "B again"},
        )
    )
    codes = _codes(result)
    assert result.configuration is None
    assert Code.UNKNOWN_FIELD_TYPE in codes
    assert Code.DANGLING_REFERENCE in codes
    assert Code.DUPLICATE_FIELD_ID in codes


def test_errors_serialize_with_string_codes():
    result = validate_configuration(_make_document({"id": "x", "type": "slider", "label": "X"}))
    assert result.errors[0].to_dict() == {
        "code": "unknown_field_type",
        "reason": "Unknown field type: 'slider'",
        "field_id": "x",
        "section": "main",
    }
