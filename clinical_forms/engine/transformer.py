"""
Answer data transformer.

normalize() turns accepted answers into the canonical stored shape;
denormalize() loads a stored record back for edit or display against the
exact configuration version it was written under.

Legacy records
--------------
Before per-field storage existed, composite clinical data was written into
one catch-all JSON bag. Records imported from that layout carry the bag in
``AnswerRecord.legacy_bag`` with the old notes and vital-signs columns folded
in. The bag is only consulted for fields that have no canonical value; a
canonical value always wins. LEGACY_KEY_MAP is the complete mapping from
field ids to bag locations:

=========================  ===============================================
field id                   legacy bag source
=========================  ===============================================
symptoms                   symptoms.{id}.present / .severity (label)
treatment_line             treatments.line_of_treatment (list, step order)
treatment_details          treatments.details
performance_status         performance_status.value (number)
performance_status_notes   performance_status.notes
assessor_notes             notes
assessment_date            date_recorded (ISO datetime, date part)
any other field id         clinical_measurements, vital_signs,
                           demographics or custom_fields, by the same id
=========================  ===============================================

Severity labels map onto scale positions: mild=1, moderate=2, severe=3,
very_severe=4. A reconstructed value must still pass the field's validator;
values that do not are left out and logged.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from clinical_forms.engine.errors import ConfigurationVersionUnavailable
from clinical_forms.engine.field_types import registry as default_registry
from clinical_forms.engine.records import AnswerRecord
from clinical_forms.engine.registry import MISSING, FieldTypeHandler, FieldTypeRegistry
from clinical_forms.schemas.form_config import FieldBase, FormConfiguration

logger = logging.getLogger(__name__)

LEGACY_SEVERITY_LEVELS = {"mild": 1, "moderate": 2, "severe": 3, "very_severe": 4}
LEGACY_SECTION_BAGS = ("clinical_measurements", "vital_signs", "demographics", "custom_fields")


def _dig(bag: Mapping[str, Any], *path: str) -> Any:
    current: Any = bag
    for key in path:
        if not isinstance(current, Mapping) or key not in current:
            return MISSING
        current = current[key]
    return current


def _legacy_symptoms(bag: Mapping[str, Any]) -> Any:
    symptoms = bag.get("symptoms")
    if not isinstance(symptoms, Mapping):
        return MISSING
    value = {}
    for symptom_id, entry in symptoms.items():
        if not isinstance(entry, Mapping) or not entry.get("present"):
            continue
        item: dict[str, Any] = {"selected": True}
        severity = entry.get("severity")
        if isinstance(severity, str) and severity in LEGACY_SEVERITY_LEVELS:
            item["severity"] = LEGACY_SEVERITY_LEVELS[severity]
        elif isinstance(severity, int) and not isinstance(severity, bool):
            item["severity"] = severity
        value[symptom_id] = item
    return value


def _legacy_performance_status(bag: Mapping[str, Any]) -> Any:
    value = _dig(bag, "performance_status", "value")
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(int(value))
    return value


def _legacy_assessment_date(bag: Mapping[str, Any]) -> Any:
    recorded = bag.get("date_recorded")
    if isinstance(recorded, str) and len(recorded) >= 10:
        return recorded[:10]
    return MISSING


LEGACY_KEY_MAP: dict[str, Callable[[Mapping[str, Any]], Any]] = {
    "symptoms": _legacy_symptoms,
    "treatment_line": lambda bag: _dig(bag, "treatments", "line_of_treatment"),
    "treatment_details": lambda bag: _dig(bag, "treatments", "details"),
    "performance_status": _legacy_performance_status,
    "performance_status_notes": lambda bag: _dig(bag, "performance_status", "notes"),
    "assessor_notes": lambda bag: bag.get("notes", MISSING),
    "assessment_date": _legacy_assessment_date,
}


def _legacy_section_value(bag: Mapping[str, Any], field_id: str) -> Any:
    for section in LEGACY_SECTION_BAGS:
        value = _dig(bag, section, field_id)
        if value is not MISSING:
            return value
    return MISSING


def _from_legacy(
    record: AnswerRecord, form_field: FieldBase, handler: FieldTypeHandler
) -> Any:
    extract = LEGACY_KEY_MAP.get(form_field.id)
    raw = extract(record.legacy_bag) if extract else _legacy_section_value(record.legacy_bag, form_field.id)
    if raw is MISSING or handler.is_blank(raw):
        return MISSING
    value, problems = handler.validator(form_field)(raw)
    if problems:
        logger.warning(
            "Legacy value for '%s' on record %s does not fit configuration v%s: %s",
            form_field.id,
            record.id,
            record.configuration_version,
            "; ".join(p.message for p in problems),
        )
        return MISSING
    if handler.is_empty(value):
        return MISSING
    return value


def normalize(
    answers: Mapping[str, Any],
    configuration: FormConfiguration,
    registry: FieldTypeRegistry = default_registry,
) -> dict[str, Any]:
    """Canonical stored values, in configuration order.

    Flat UI keys such as ``symptoms_nausea`` are collapsed into their field;
    keys that are not fields of the configuration are dropped.
    """
    values: dict[str, Any] = {}
    for _, form_field in configuration.iter_fields(enabled_only=True):
        handler = registry.handler_for(form_field.type)
        raw = handler.collect(form_field, answers)
        if raw is MISSING or handler.is_blank(raw):
            continue
        value = handler.canonicalize(form_field, raw)
        if handler.is_empty(value):
            continue
        values[form_field.id] = value
    return values


def flatten(
    values: Mapping[str, Any],
    configuration: FormConfiguration,
    registry: FieldTypeRegistry = default_registry,
) -> dict[str, Any]:
    """Top-level UI keys (``{field}_{option}``, ``{field}_{option}_severity``, ...)."""
    flat: dict[str, Any] = {}
    for _, form_field in configuration.iter_fields():
        if form_field.id in values:
            flat.update(registry.handler_for(form_field.type).flatten(form_field, values[form_field.id]))
    return flat


def denormalize(
    record: AnswerRecord,
    configuration: FormConfiguration | None,
    *,
    flat: bool = False,
    registry: FieldTypeRegistry = default_registry,
) -> dict[str, Any]:
    """Answers for edit or display, read against the record's pinned configuration."""
    if configuration is None:
        raise ConfigurationVersionUnavailable(record.configuration_id)
    if configuration.id != record.configuration_id:
        raise ConfigurationVersionUnavailable(
            record.configuration_id,
            f"record is pinned to v{record.configuration_version}, got configuration {configuration.id}",
        )

    answers: dict[str, Any] = {}
    known: set[str] = set()
    for _, form_field in configuration.iter_fields():
        known.add(form_field.id)
        handler = registry.handler_for(form_field.type)
        if form_field.id in record.values:
            answers[form_field.id] = handler.canonicalize(form_field, record.values[form_field.id])
        elif record.legacy_bag:
            value = _from_legacy(record, form_field, handler)
            if value is not MISSING:
                answers[form_field.id] = value

    stray = [key for key in record.values if key not in known]
    if stray:
        logger.warning(
            "Record %s holds values for fields missing from configuration v%s: %s",
            record.id,
            record.configuration_version,
            ", ".join(stray),
        )

    return flatten(answers, configuration, registry) if flat else answers


def initial_values(
    configuration: FormConfiguration, registry: FieldTypeRegistry = default_registry
) -> dict[str, Any]:
    """Configured defaults, for rendering a blank form."""
    values = {}
    for _, form_field in configuration.iter_fields(enabled_only=True):
        if form_field.default is not None:
            handler = registry.handler_for(form_field.type)
            values[form_field.id] = handler.canonicalize(form_field, form_field.default)
    return values


def summarize(
    values: Mapping[str, Any],
    configuration: FormConfiguration,
    registry: FieldTypeRegistry = default_registry,
) -> list[dict[str, str]]:
    """Display rows for reports, in configuration order."""
    rows = []
    for section, form_field in configuration.iter_fields():
        if form_field.id not in values:
            continue
        handler = registry.handler_for(form_field.type)
        rows.append(
            {
                "section": section.title,
                "field_id": form_field.id,
                "label": form_field.label,
                "display": handler.display(form_field, values[form_field.id]),
            }
        )
    return rows
