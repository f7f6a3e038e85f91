"""
Configuration validation.

A raw configuration document is only allowed into the system after it has
been certified here. Every applicable problem is collected and returned in
one batch so an administrator sees them all at once; nothing is repaired.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from jsonschema import Draft7Validator
from pydantic import ValidationError

from clinical_forms.engine.errors import ConfigurationError
from clinical_forms.engine.errors import ConfigurationErrorCode as Code
from clinical_forms.engine.errors import UnknownFieldType
from clinical_forms.engine.field_types import registry as default_registry
from clinical_forms.engine.graph import DependencyGraph
from clinical_forms.engine.registry import FieldTypeHandler, FieldTypeRegistry
from clinical_forms.schemas.form_config import (
    CONFIGURATION_DOCUMENT_SCHEMA,
    ConfigurationMetadata,
    FieldBase,
    FormConfiguration,
    FormSection,
)

logger = logging.getLogger(__name__)

_envelope = Draft7Validator(CONFIGURATION_DOCUMENT_SCHEMA)


@dataclass
class ConfigurationValidationResult:
    configuration: FormConfiguration | None = None
    errors: list[ConfigurationError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.configuration is not None and not self.errors


@dataclass
class _ParsedField:
    section_id: str | None
    position: int
    field: FieldBase
    handler: FieldTypeHandler
    config_ok: bool = True


def _where(error: Any) -> str:
    path = "/".join(str(p) for p in error.absolute_path)
    return f"{path}: " if path else ""


def _step_node(field_id: str, step_id: str) -> str:
    return f"{field_id}/{step_id}"


def validate_configuration(
    raw: Mapping[str, Any], registry: FieldTypeRegistry = default_registry
) -> ConfigurationValidationResult:
    """Certify a raw configuration document or report everything wrong with it."""
    if not isinstance(raw, Mapping):
        return ConfigurationValidationResult(
            errors=[ConfigurationError(Code.SCHEMA, "configuration must be a JSON object")]
        )

    errors: list[ConfigurationError] = []
    for error in _envelope.iter_errors(raw):
        errors.append(ConfigurationError(Code.SCHEMA, _where(error) + error.message))

    raw_sections = raw.get("sections") if isinstance(raw.get("sections"), list) else []
    section_fields: dict[int, list[FieldBase]] = {}
    parsed: list[_ParsedField] = []
    seen_sections: set[str] = set()
    field_positions: dict[str, int] = {}
    position = 0

    # -- per field: type, shape, payload -----------------------------------
    for index, raw_section in enumerate(raw_sections):
        if not isinstance(raw_section, Mapping):
            continue
        section_id = raw_section.get("id")
        if isinstance(section_id, str):
            if section_id in seen_sections:
                errors.append(
                    ConfigurationError(Code.DUPLICATE_SECTION_ID, f"section id '{section_id}' is used twice",
                                       section=section_id)
                )
            seen_sections.add(section_id)
        section_fields[index] = []
        raw_fields = raw_section.get("fields") if isinstance(raw_section.get("fields"), list) else []

        for raw_field in raw_fields:
            if not isinstance(raw_field, Mapping):
                continue
            field_id = raw_field.get("id") if isinstance(raw_field.get("id"), str) else None
            if field_id is not None:
                if field_id in field_positions:
                    errors.append(
                        ConfigurationError(
                            Code.DUPLICATE_FIELD_ID,
                            f"field id '{field_id}' is already used earlier in the form",
                            field_id=field_id,
                            section=section_id,
                        )
                    )
                else:
                    field_positions[field_id] = position
            position += 1

            try:
                handler = registry.handler_for(raw_field.get("type"))
            except UnknownFieldType as exc:
                errors.append(ConfigurationError(Code.UNKNOWN_FIELD_TYPE, str(exc), field_id, section_id))
                continue

            shape_errors = list(Draft7Validator(handler.config_shape).iter_errors(raw_field))
            for error in shape_errors:
                errors.append(ConfigurationError(Code.SCHEMA, _where(error) + error.message, field_id, section_id))
            if shape_errors:
                continue

            try:
                parsed_field = handler.parse(raw_field)
            except ValidationError as exc:
                for detail in exc.errors():
                    loc = "/".join(str(p) for p in detail["loc"])
                    errors.append(ConfigurationError(Code.SCHEMA, f"{loc}: {detail['msg']}", field_id, section_id))
                continue

            entry = _ParsedField(section_id, field_positions.get(parsed_field.id, position - 1), parsed_field, handler)
            for code, reason in handler.config_errors(parsed_field):
                entry.config_ok = False
                errors.append(ConfigurationError(code, reason, parsed_field.id, section_id))
            parsed.append(entry)
            section_fields[index].append(parsed_field)

    by_id = {entry.field.id: entry for entry in reversed(parsed)}
    errors.extend(_reference_errors(parsed, field_positions, by_id))
    errors.extend(_cycle_errors(parsed))
    errors.extend(_condition_errors(parsed, by_id))
    errors.extend(_default_errors(parsed))
    errors.extend(_flat_key_errors(parsed, field_positions))

    if errors:
        logger.info(
            "Configuration for form kind '%s' rejected with %d error(s)", raw.get("form_kind"), len(errors)
        )
        return ConfigurationValidationResult(errors=errors)

    try:
        configuration = FormConfiguration(
            id=raw.get("id"),
            owner_team_id=raw.get("owner_team_id"),
            form_kind=raw["form_kind"],
            version=raw.get("version"),
            active=raw.get("active", True),
            metadata=ConfigurationMetadata(**(raw.get("metadata") or {})),
            sections=[
                FormSection(
                    id=raw_section["id"],
                    title=raw_section["title"],
                    enabled=raw_section.get("enabled", True),
                    fields=section_fields[index],
                )
                for index, raw_section in enumerate(raw_sections)
            ],
        )
    except ValidationError as exc:
        return ConfigurationValidationResult(
            errors=[
                ConfigurationError(Code.SCHEMA, f"{'/'.join(str(p) for p in d['loc'])}: {d['msg']}")
                for d in exc.errors()
            ]
        )

    configuration._certified = True
    return ConfigurationValidationResult(configuration=configuration)


def _reference_errors(
    parsed: list[_ParsedField], field_positions: dict[str, int], by_id: dict[str, _ParsedField]
) -> list[ConfigurationError]:
    errors: list[ConfigurationError] = []
    for entry in parsed:
        condition = entry.field.visible_when
        # Self-references are reported as cycles.
        if condition is not None and condition.field != entry.field.id:
            if condition.field not in field_positions:
                errors.append(
                    ConfigurationError(
                        Code.DANGLING_REFERENCE,
                        f"visible_when refers to unknown field '{condition.field}'",
                        entry.field.id,
                        entry.section_id,
                    )
                )
            elif field_positions[condition.field] >= entry.position:
                errors.append(
                    ConfigurationError(
                        Code.FORWARD_REFERENCE,
                        f"visible_when refers to field '{condition.field}' which comes later in the form",
                        entry.field.id,
                        entry.section_id,
                    )
                )

        steps = entry.handler.step_references(entry.field)
        step_index = {}
        for i, (step_id, _) in enumerate(steps):
            step_index.setdefault(step_id, i)
        for i, (step_id, depends_on) in enumerate(steps):
            if depends_on is None or depends_on == step_id:
                continue
            if depends_on not in step_index:
                errors.append(
                    ConfigurationError(
                        Code.DANGLING_REFERENCE,
                        f"step '{step_id}' depends on unknown step '{depends_on}'",
                        entry.field.id,
                        entry.section_id,
                    )
                )
            elif step_index[depends_on] >= i:
                errors.append(
                    ConfigurationError(
                        Code.FORWARD_REFERENCE,
                        f"step '{step_id}' depends on step '{depends_on}' which comes later",
                        entry.field.id,
                        entry.section_id,
                    )
                )
    return errors


def _cycle_errors(parsed: list[_ParsedField]) -> list[ConfigurationError]:
    graph = DependencyGraph()
    owners: dict[str, _ParsedField] = {}
    for entry in parsed:
        condition = entry.field.visible_when
        graph.add_node(entry.field.id, [condition.field] if condition else [])
        owners.setdefault(entry.field.id, entry)
        for step_id, depends_on in entry.handler.step_references(entry.field):
            node = _step_node(entry.field.id, step_id)
            graph.add_node(node, [_step_node(entry.field.id, depends_on)] if depends_on else [])
            owners.setdefault(node, entry)

    errors = []
    for node in graph.cycle_members():
        entry = owners[node]
        depends_on = ", ".join(graph.depends_on(node))
        errors.append(
            ConfigurationError(
                Code.DEPENDENCY_CYCLE,
                f"'{node}' is part of a dependency cycle through {depends_on}",
                entry.field.id,
                entry.section_id,
            )
        )
    return errors


def _condition_errors(parsed: list[_ParsedField], by_id: dict[str, _ParsedField]) -> list[ConfigurationError]:
    errors = []
    for entry in parsed:
        condition = entry.field.visible_when
        if condition is None or condition.field not in by_id or condition.field == entry.field.id:
            continue
        target = by_id[condition.field]
        if not target.config_ok:
            continue
        allowed = target.handler.condition_values(target.field)
        if allowed is not None and condition.equals not in allowed:
            errors.append(
                ConfigurationError(
                    Code.INVALID_CONDITION,
                    f"visible_when compares '{condition.field}' to {condition.equals!r}, "
                    f"which that field can never take",
                    entry.field.id,
                    entry.section_id,
                )
            )
    return errors


def _default_errors(parsed: list[_ParsedField]) -> list[ConfigurationError]:
    errors = []
    for entry in parsed:
        if entry.field.default is None or not entry.config_ok:
            continue
        _, problems = entry.handler.validator(entry.field)(entry.field.default)
        for problem in problems:
            errors.append(
                ConfigurationError(
                    Code.INVALID_DEFAULT,
                    f"default value is invalid: {problem.message}",
                    entry.field.id,
                    entry.section_id,
                )
            )
    return errors


def _flat_key_errors(parsed: list[_ParsedField], field_positions: dict[str, int]) -> list[ConfigurationError]:
    """Flat answer keys (``{field}_{option}``, ``{field}_{step}``) must not name any other field."""
    errors = []
    claimed: dict[str, str] = {}
    for entry in parsed:
        for key in entry.handler.flat_keys(entry.field):
            if key in field_positions and key != entry.field.id:
                reason = f"flat answer key '{key}' is also the id of another field"
            elif claimed.get(key, entry.field.id) != entry.field.id:
                reason = f"flat answer key '{key}' is also read by field '{claimed[key]}'"
            else:
                claimed[key] = entry.field.id
                continue
            errors.append(ConfigurationError(Code.FLAT_KEY_COLLISION, reason, entry.field.id, entry.section_id))
    return errors
