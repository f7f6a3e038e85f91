"""
Built-in field types and the default registry.

Scalar types compile their field config into a JSON Schema and validate
answers with jsonschema, so a field's rules are data rather than code.
Checkbox groups and cascading selects carry cross-option rules (severity
gating, exclusivity, dependent option tables) that JSON Schema cannot
express, so they validate by hand and collect every problem they find.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Mapping

from jsonschema import Draft7Validator

from clinical_forms.engine.errors import ConfigurationErrorCode as Code
from clinical_forms.engine.errors import FieldError, FieldErrorCode
from clinical_forms.engine.registry import (
    MISSING,
    AnswerValidator,
    FieldTypeHandler,
    FieldTypeRegistry,
)
from clinical_forms.schemas.form_config import (
    CascadingSelectField,
    CheckboxGroupField,
    DateField,
    FieldBase,
    FreeTextField,
    NumberField,
    RadioField,
    SeverityCheckboxGroupField,
    SingleSelectField,
    TextField,
)

SEVERITY_SUFFIX = "_severity"

_OPTION_SHAPE = {
    "type": "object",
    "required": ["value", "label"],
    "properties": {"value": {"type": "string", "minLength": 1}, "label": {"type": "string"}},
    "additionalProperties": False,
}
_NULLABLE_NUMBER = {"type": ["number", "null"]}


def _schema_validator(
    field_id: str,
    schema: dict[str, Any],
    code: FieldErrorCode = FieldErrorCode.INVALID_VALUE,
) -> AnswerValidator:
    checker = Draft7Validator(schema)

    def validate(value: Any) -> tuple[Any, list[FieldError]]:
        errors = [FieldError(field_id, code, error.message) for error in checker.iter_errors(value)]
        return (None, errors) if errors else (value, [])

    return validate


def _duplicates(values: list[str]) -> list[str]:
    seen: set[str] = set()
    dupes: list[str] = []
    for value in values:
        if value in seen and value not in dupes:
            dupes.append(value)
        seen.add(value)
    return dupes


def _is_blank_collection(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


# ---------------------------------------------------------------------------
# Scalars
# ---------------------------------------------------------------------------

class TextHandler(FieldTypeHandler):
    type_name = "text"
    config_model = TextField
    config_properties = {
        "max_length": {"type": ["integer", "null"], "minimum": 1},
        "pattern": {"type": ["string", "null"]},
    }
    value_shape = {"type": "string"}

    def config_errors(self, field: TextField) -> list[tuple[Code, str]]:
        if field.pattern is None:
            return []
        try:
            re.compile(field.pattern)
        except re.error as exc:
            return [(Code.SCHEMA, f"pattern does not compile: {exc}")]
        return []

    def validator(self, field: TextField) -> AnswerValidator:
        schema: dict[str, Any] = {"type": "string"}
        if field.max_length is not None:
            schema["maxLength"] = field.max_length
        if field.pattern is not None:
            schema["pattern"] = field.pattern
        return _schema_validator(field.id, schema)


class FreeTextHandler(TextHandler):
    type_name = "free_text"
    config_model = FreeTextField
    config_properties = {"max_length": {"type": ["integer", "null"], "minimum": 1}}


class NumberHandler(FieldTypeHandler):
    type_name = "number"
    config_model = NumberField
    config_properties = {
        "min": _NULLABLE_NUMBER,
        "max": _NULLABLE_NUMBER,
        "integer": {"type": "boolean"},
        "unit": {"type": ["string", "null"]},
    }
    value_shape = {"type": "number"}

    def config_errors(self, field: NumberField) -> list[tuple[Code, str]]:
        if field.min is not None and field.max is not None and field.min > field.max:
            return [(Code.SCHEMA, f"min {field.min} is greater than max {field.max}")]
        return []

    def validator(self, field: NumberField) -> AnswerValidator:
        schema: dict[str, Any] = {"type": "integer" if field.integer else "number"}
        if field.min is not None:
            schema["minimum"] = field.min
        if field.max is not None:
            schema["maximum"] = field.max
        return _schema_validator(field.id, schema)

    def display(self, field: NumberField, value: Any) -> str:
        return f"{value} {field.unit}" if field.unit else str(value)


class DateHandler(FieldTypeHandler):
    type_name = "date"
    config_model = DateField
    value_shape = {"type": "string", "pattern": r"^\d{4}-\d{2}-\d{2}$"}

    def validator(self, field: DateField) -> AnswerValidator:
        check_format = _schema_validator(field.id, self.value_shape)

        def validate(value: Any) -> tuple[Any, list[FieldError]]:
            if isinstance(value, datetime):
                value = value.date()
            if isinstance(value, date):
                value = value.isoformat()
            value, errors = check_format(value)
            if errors:
                return None, errors
            try:
                date.fromisoformat(value)
            except ValueError:
                return None, [
                    FieldError(field.id, FieldErrorCode.INVALID_VALUE, f"{value!r} is not a calendar date")
                ]
            return value, []

        return validate


class SingleSelectHandler(FieldTypeHandler):
    type_name = "single_select"
    config_model = SingleSelectField
    config_properties = {
        "options": {"type": "array", "minItems": 1, "items": _OPTION_SHAPE},
        "exclusive_value": {"type": ["string", "null"]},
    }
    config_required = ("options",)
    value_shape = {"type": "string"}

    def config_errors(self, field: SingleSelectField) -> list[tuple[Code, str]]:
        values = [o.value for o in field.options]
        reasons = [(Code.DUPLICATE_OPTION, f"duplicate option value '{v}'") for v in _duplicates(values)]
        if field.exclusive_value is not None and field.exclusive_value not in values:
            reasons.append(
                (Code.INVALID_OPTION_REFERENCE, f"exclusive_value '{field.exclusive_value}' is not a declared option")
            )
        return reasons

    def condition_values(self, field: SingleSelectField) -> list[Any]:
        return [o.value for o in field.options]

    def validator(self, field: SingleSelectField) -> AnswerValidator:
        schema = {"enum": [o.value for o in field.options]}
        return _schema_validator(field.id, schema, FieldErrorCode.INVALID_OPTION_VALUE)

    def display(self, field: SingleSelectField, value: Any) -> str:
        return field.label_for(value)


class RadioHandler(SingleSelectHandler):
    type_name = "radio"
    config_model = RadioField


# ---------------------------------------------------------------------------
# Checkbox groups
# ---------------------------------------------------------------------------

class CheckboxGroupHandler(FieldTypeHandler):
    """Multi-select; canonical value is ``{option: {"selected": True}}``.

    Accepted raw shapes: a list of selected option values, a mapping of
    option value to bool or to ``{"selected", "severity"}``, flat
    ``{option}_severity`` keys inside that mapping, or top-level
    ``{field}_{option}`` keys in the submission.
    """

    type_name = "checkbox_group"
    config_model = CheckboxGroupField
    config_properties = {
        "options": {
            "type": "array",
            "minItems": 1,
            "items": {
                **_OPTION_SHAPE,
                "properties": {**_OPTION_SHAPE["properties"], "exclusive": {"type": "boolean"}},
            },
        },
    }
    config_required = ("options",)
    value_shape = {
        "type": "object",
        "additionalProperties": {
            "type": "object",
            "required": ["selected"],
            "properties": {"selected": {"const": True}},
            "additionalProperties": False,
        },
    }

    def config_errors(self, field: CheckboxGroupField) -> list[tuple[Code, str]]:
        reasons = [
            (Code.DUPLICATE_OPTION, f"duplicate option value '{v}'")
            for v in _duplicates([o.value for o in field.options])
        ]
        exclusive = [o.value for o in field.options if o.exclusive]
        if len(exclusive) > 1:
            reasons.append((Code.MULTIPLE_EXCLUSIVE, f"more than one exclusive option: {', '.join(exclusive)}"))
        for option in field.options:
            if option.value.endswith(SEVERITY_SUFFIX):
                reasons.append(
                    (Code.SCHEMA, f"option value '{option.value}' uses the reserved suffix '{SEVERITY_SUFFIX}'")
                )
        return reasons

    def flat_keys(self, field: CheckboxGroupField) -> list[str]:
        keys = []
        for option in field.options:
            keys.append(f"{field.id}_{option.value}")
            keys.append(f"{field.id}_{option.value}{SEVERITY_SUFFIX}")
        return keys

    def condition_values(self, field: CheckboxGroupField) -> list[Any]:
        return [o.value for o in field.options]

    def matches(self, field: FieldBase, value: Any, expected: Any) -> bool:
        return isinstance(value, Mapping) and expected in value

    def _has_severity(self, option: Any) -> bool:
        return False

    def _severity_range(self, field: CheckboxGroupField) -> tuple[int, int] | None:
        return None

    def collect(self, field: CheckboxGroupField, raw_answers: Mapping[str, Any]) -> Any:
        if field.id in raw_answers:
            return raw_answers[field.id]
        flat: dict[str, Any] = {}
        for option in field.options:
            key = f"{field.id}_{option.value}"
            if key in raw_answers:
                flat[option.value] = raw_answers[key]
            if key + SEVERITY_SUFFIX in raw_answers:
                flat[option.value + SEVERITY_SUFFIX] = raw_answers[key + SEVERITY_SUFFIX]
        return flat if flat else MISSING

    def is_blank(self, value: Any) -> bool:
        return _is_blank_collection(value)

    def _entries(
        self, field: CheckboxGroupField, value: Any, errors: list[FieldError] | None = None
    ) -> dict[str, dict[str, Any]]:
        """Parse any accepted raw shape into ``{option: {selected, severity?}}``."""
        entries: dict[str, dict[str, Any]] = {}

        def fail(message: str, path: str | None = None) -> None:
            if errors is not None:
                errors.append(FieldError(field.id, FieldErrorCode.INVALID_VALUE, message, path))

        if isinstance(value, (list, tuple)):
            for item in value:
                if isinstance(item, str):
                    entries.setdefault(item, {})["selected"] = True
                else:
                    fail(f"{item!r} is not an option value")
            return entries
        if not isinstance(value, Mapping):
            fail("expected a list of option values or a mapping of options")
            return entries

        for key, item in value.items():
            if key.endswith(SEVERITY_SUFFIX) and field.option(key[: -len(SEVERITY_SUFFIX)]) is not None:
                if item is not None:
                    entries.setdefault(key[: -len(SEVERITY_SUFFIX)], {})["severity"] = item
            elif isinstance(item, bool):
                entries.setdefault(key, {})["selected"] = item
            elif isinstance(item, Mapping):
                entry = entries.setdefault(key, {})
                selected = item.get("selected", False)
                if isinstance(selected, bool):
                    entry["selected"] = selected
                else:
                    fail(f"'selected' must be true or false, got {selected!r}", key)
                if item.get("severity") is not None:
                    entry["severity"] = item["severity"]
            else:
                fail(f"{item!r} is not a checkbox state", key)
        return entries

    def validator(self, field: CheckboxGroupField) -> AnswerValidator:
        severity_range = self._severity_range(field)

        def validate(value: Any) -> tuple[Any, list[FieldError]]:
            errors: list[FieldError] = []
            entries = self._entries(field, value, errors)

            for option_value, entry in entries.items():
                option = field.option(option_value)
                if option is None:
                    errors.append(
                        FieldError(
                            field.id,
                            FieldErrorCode.INVALID_OPTION_VALUE,
                            f"'{option_value}' is not an option",
                            option_value,
                        )
                    )
                    continue
                self._check_severity(field, option, entry, severity_range, errors)

            selected = [o for o in field.options if entries.get(o.value, {}).get("selected")]
            exclusive = [o for o in selected if o.exclusive]
            if exclusive and len(selected) > 1:
                others = ", ".join(o.value for o in selected if not o.exclusive)
                errors.append(
                    FieldError(
                        field.id,
                        FieldErrorCode.MUTUALLY_EXCLUSIVE_VIOLATION,
                        f"'{exclusive[0].value}' cannot be combined with {others}",
                        exclusive[0].value,
                    )
                )

            if errors:
                return None, errors
            return self.canonicalize(field, entries), []

        return validate

    def _check_severity(
        self,
        field: CheckboxGroupField,
        option: Any,
        entry: dict[str, Any],
        severity_range: tuple[int, int] | None,
        errors: list[FieldError],
    ) -> None:
        selected = entry.get("selected", False)
        path = option.value
        if "severity" in entry:
            severity = entry["severity"]
            if not self._has_severity(option):
                code, message = FieldErrorCode.SEVERITY_NOT_ALLOWED, "option has no severity scale"
            elif not selected:
                code, message = FieldErrorCode.SEVERITY_REQUIRES_SELECTION, "severity given for an unselected option"
            elif isinstance(severity, bool) or not isinstance(severity, int):
                code, message = FieldErrorCode.INVALID_VALUE, f"severity {severity!r} is not an integer"
            elif not severity_range[0] <= severity <= severity_range[1]:
                code = FieldErrorCode.SEVERITY_OUT_OF_RANGE
                message = f"severity {severity} is outside {severity_range[0]}-{severity_range[1]}"
            else:
                return
            errors.append(FieldError(field.id, code, message, path))
        elif selected and self._has_severity(option):
            errors.append(
                FieldError(field.id, FieldErrorCode.SEVERITY_MISSING, "selected option needs a severity", path)
            )

    def is_empty(self, value: Any) -> bool:
        return not value

    def canonicalize(self, field: CheckboxGroupField, value: Any) -> dict[str, dict[str, Any]]:
        entries = value if _is_entry_map(value) else self._entries(field, value)
        canonical: dict[str, dict[str, Any]] = {}
        for option in field.options:
            entry = entries.get(option.value)
            if not entry or not entry.get("selected"):
                continue
            canonical[option.value] = {"selected": True}
            if self._has_severity(option) and entry.get("severity") is not None:
                canonical[option.value]["severity"] = entry["severity"]
        return canonical

    def flatten(self, field: CheckboxGroupField, value: Any) -> dict[str, Any]:
        flat: dict[str, Any] = {}
        for option_value, entry in value.items():
            flat[f"{field.id}_{option_value}"] = True
            if "severity" in entry:
                flat[f"{field.id}_{option_value}{SEVERITY_SUFFIX}"] = entry["severity"]
        return flat

    def display(self, field: CheckboxGroupField, value: Any) -> str:
        parts = []
        for option in field.options:
            if option.value in value:
                parts.append(option.label)
        return ", ".join(parts)


def _is_entry_map(value: Any) -> bool:
    return isinstance(value, Mapping) and all(isinstance(v, Mapping) for v in value.values())


class SeverityCheckboxGroupHandler(CheckboxGroupHandler):
    type_name = "checkbox_group_severity"
    config_model = SeverityCheckboxGroupField
    config_properties = {
        "options": {
            "type": "array",
            "minItems": 1,
            "items": {
                **_OPTION_SHAPE,
                "properties": {
                    **_OPTION_SHAPE["properties"],
                    "exclusive": {"type": "boolean"},
                    "has_severity": {"type": "boolean"},
                },
            },
        },
        "severity_scale": {
            "type": "object",
            "required": ["min", "max", "labels"],
            "properties": {
                "min": {"type": "integer"},
                "max": {"type": "integer"},
                "labels": {"type": "array", "items": {"type": "string"}},
            },
            "additionalProperties": False,
        },
    }
    config_required = ("options", "severity_scale")
    value_shape = {
        "type": "object",
        "additionalProperties": {
            "type": "object",
            "required": ["selected"],
            "properties": {"selected": {"const": True}, "severity": {"type": "integer"}},
            "additionalProperties": False,
        },
    }

    def config_errors(self, field: SeverityCheckboxGroupField) -> list[tuple[Code, str]]:
        reasons = super().config_errors(field)
        scale = field.severity_scale
        if scale.min > scale.max:
            reasons.append((Code.SEVERITY_SCALE, f"severity scale min {scale.min} is greater than max {scale.max}"))
        elif len(scale.labels) != scale.max - scale.min + 1:
            reasons.append(
                (
                    Code.SEVERITY_SCALE,
                    f"severity scale {scale.min}-{scale.max} needs {scale.max - scale.min + 1} labels, "
                    f"got {len(scale.labels)}",
                )
            )
        return reasons

    def _has_severity(self, option: Any) -> bool:
        return option.has_severity

    def _severity_range(self, field: SeverityCheckboxGroupField) -> tuple[int, int]:
        return field.severity_scale.min, field.severity_scale.max

    def display(self, field: SeverityCheckboxGroupField, value: Any) -> str:
        parts = []
        for option in field.options:
            entry = value.get(option.value)
            if entry is None:
                continue
            if "severity" in entry:
                parts.append(f"{option.label} ({field.severity_scale.label_for(entry['severity'])})")
            else:
                parts.append(option.label)
        return ", ".join(parts)


# ---------------------------------------------------------------------------
# Cascading select
# ---------------------------------------------------------------------------

class CascadingSelectHandler(FieldTypeHandler):
    """Ordered steps; a later step's options depend on its parent's value.

    Canonical value is an ordered ``{step_id: value}`` mapping. Raw answers
    may also be a list of values in step order or top-level
    ``{field}_{step}`` keys.
    """

    type_name = "cascading_select"
    config_model = CascadingSelectField
    config_properties = {
        "steps": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["id", "label"],
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "label": {"type": "string"},
                    "options": {"type": "array", "items": _OPTION_SHAPE},
                    "options_by_parent": {
                        "type": "object",
                        "additionalProperties": {"type": "array", "items": _OPTION_SHAPE},
                    },
                    "depends_on_step": {"type": ["string", "null"]},
                },
                "additionalProperties": False,
            },
        },
    }
    config_required = ("steps",)
    value_shape = {"type": "object", "additionalProperties": {"type": "string"}}

    def config_errors(self, field: CascadingSelectField) -> list[tuple[Code, str]]:
        # References between steps are checked with every other dependency in config_validator.
        reasons = [(Code.DUPLICATE_STEP_ID, f"duplicate step id '{s}'") for s in _duplicates([s.id for s in field.steps])]
        seen: dict[str, Any] = {}
        for index, step in enumerate(field.steps):
            if index == 0:
                if not step.options:
                    reasons.append((Code.SCHEMA, f"first step '{step.id}' has no options"))
                for value in _duplicates([o.value for o in step.options]):
                    reasons.append((Code.DUPLICATE_OPTION, f"step '{step.id}': duplicate option value '{value}'"))
            elif step.depends_on_step is None:
                reasons.append((Code.SCHEMA, f"step '{step.id}' must declare depends_on_step"))
            else:
                parent = seen.get(step.depends_on_step)
                if parent is not None:
                    legal = set(parent.all_values())
                    for parent_value in step.options_by_parent:
                        if parent_value not in legal:
                            reasons.append(
                                (
                                    Code.INVALID_OPTION_REFERENCE,
                                    f"step '{step.id}': options_by_parent key '{parent_value}' "
                                    f"is not a value of step '{parent.id}'",
                                )
                            )
                for parent_value, options in step.options_by_parent.items():
                    for value in _duplicates([o.value for o in options]):
                        reasons.append(
                            (
                                Code.DUPLICATE_OPTION,
                                f"step '{step.id}' under '{parent_value}': duplicate option value '{value}'",
                            )
                        )
            seen[step.id] = step
        return reasons

    def step_references(self, field: CascadingSelectField) -> list[tuple[str, str | None]]:
        return [(step.id, step.depends_on_step) for step in field.steps]

    def flat_keys(self, field: CascadingSelectField) -> list[str]:
        return [f"{field.id}_{step.id}" for step in field.steps]

    def condition_values(self, field: CascadingSelectField) -> list[Any]:
        return field.steps[0].all_values()

    def matches(self, field: CascadingSelectField, value: Any, expected: Any) -> bool:
        return isinstance(value, Mapping) and value.get(field.steps[0].id) == expected

    def collect(self, field: CascadingSelectField, raw_answers: Mapping[str, Any]) -> Any:
        if field.id in raw_answers:
            return raw_answers[field.id]
        flat = {
            step.id: raw_answers[f"{field.id}_{step.id}"]
            for step in field.steps
            if f"{field.id}_{step.id}" in raw_answers
        }
        return flat if flat else MISSING

    def is_blank(self, value: Any) -> bool:
        if isinstance(value, (list, tuple)):
            return all(_is_blank_collection(v) for v in value)
        if isinstance(value, Mapping):
            return all(_is_blank_collection(v) for v in value.values())
        return _is_blank_collection(value)

    def _by_step(self, field: CascadingSelectField, value: Any, errors: list[FieldError] | None = None) -> dict:
        def fail(message: str, path: str | None = None) -> None:
            if errors is not None:
                errors.append(FieldError(field.id, FieldErrorCode.INVALID_VALUE, message, path))

        if isinstance(value, (list, tuple)):
            if len(value) > len(field.steps):
                fail(f"{len(value)} values given for {len(field.steps)} steps")
            return {step.id: v for step, v in zip(field.steps, value)}
        if isinstance(value, Mapping):
            step_ids = {step.id for step in field.steps}
            for key in value:
                if key not in step_ids:
                    fail(f"'{key}' is not a step of this field", key)
            return {k: v for k, v in value.items() if k in step_ids}
        fail("expected a mapping of step values or a list in step order")
        return {}

    def validator(self, field: CascadingSelectField) -> AnswerValidator:
        def validate(value: Any) -> tuple[Any, list[FieldError]]:
            errors: list[FieldError] = []
            given = self._by_step(field, value, errors)
            accepted: dict[str, str] = {}

            for step in field.steps:
                chosen = given.get(step.id)
                if _is_blank_collection(chosen):
                    continue
                if not isinstance(chosen, str):
                    errors.append(
                        FieldError(field.id, FieldErrorCode.INVALID_VALUE, f"{chosen!r} is not an option value", step.id)
                    )
                    continue
                if step.depends_on_step is None:
                    legal = step.legal_values()
                else:
                    parent_value = accepted.get(step.depends_on_step)
                    if parent_value is None:
                        errors.append(
                            FieldError(
                                field.id,
                                FieldErrorCode.CASCADING_DEPENDENCY_UNMET,
                                f"step '{step.id}' needs a valid value for step '{step.depends_on_step}'",
                                step.id,
                            )
                        )
                        continue
                    legal = step.legal_values(parent_value)
                if chosen not in legal:
                    errors.append(
                        FieldError(
                            field.id,
                            FieldErrorCode.INVALID_OPTION_VALUE,
                            f"'{chosen}' is not an option of step '{step.id}'",
                            step.id,
                        )
                    )
                    continue
                accepted[step.id] = chosen

            return (None, errors) if errors else (accepted, [])

        return validate

    def is_empty(self, value: Any) -> bool:
        return not value

    def canonicalize(self, field: CascadingSelectField, value: Any) -> dict[str, str]:
        given = self._by_step(field, value)
        return {
            step.id: given[step.id]
            for step in field.steps
            if not _is_blank_collection(given.get(step.id))
        }

    def flatten(self, field: CascadingSelectField, value: Any) -> dict[str, Any]:
        return {f"{field.id}_{step_id}": chosen for step_id, chosen in value.items()}

    def display(self, field: CascadingSelectField, value: Any) -> str:
        labels = []
        for step in field.steps:
            if step.id in value:
                labels.append(step.label_for(value[step.id]))
        return " > ".join(labels)


# ---------------------------------------------------------------------------
# Default registry
# ---------------------------------------------------------------------------

registry = FieldTypeRegistry()
for _handler in (
    TextHandler(),
    FreeTextHandler(),
    NumberHandler(),
    DateHandler(),
    SingleSelectHandler(),
    RadioHandler(),
    CascadingSelectHandler(),
    CheckboxGroupHandler(),
    SeverityCheckboxGroupHandler(),
):
    registry.register(_handler)

describe = registry.describe
