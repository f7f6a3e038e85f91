"""
Form configuration models.

A configuration document is JSON owned by a team (or by the system for
defaults). These Pydantic models are the parsed, immutable view of a document
that has passed validate_configuration(); field payload models are bound to
their type names by the field type registry, not here.
"""

from __future__ import annotations

from typing import Any, Iterator
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, SerializeAsAny


# ---------------------------------------------------------------------------
# Document envelope – checked with jsonschema before any field is parsed
# ---------------------------------------------------------------------------

CONFIGURATION_DOCUMENT_SCHEMA: dict = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Form configuration document",
    "type": "object",
    "required": ["form_kind", "sections"],
    "properties": {
        "id": {"type": ["string", "null"]},
        "owner_team_id": {"type": ["string", "null"]},
        "form_kind": {"type": "string", "minLength": 1},
        "version": {"type": ["integer", "null"], "minimum": 1},
        "active": {"type": "boolean"},
        "metadata": {
            "type": "object",
            "properties": {
                "specialty": {"type": ["string", "null"]},
                "description": {"type": ["string", "null"]},
            },
        },
        "sections": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "title", "fields"],
                "properties": {
                    "id": {"type": "string", "minLength": 1},
                    "title": {"type": "string"},
                    "enabled": {"type": "boolean"},
                    "fields": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "required": ["id", "type"],
                            "properties": {
                                "id": {"type": "string", "minLength": 1},
                                "type": {"type": "string"},
                            },
                        },
                    },
                },
                "additionalProperties": False,
            },
        },
    },
    "additionalProperties": False,
}


# ---------------------------------------------------------------------------
# Building blocks
# ---------------------------------------------------------------------------

class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class Option(_Frozen):
    value: str
    label: str


class CheckboxOption(Option):
    exclusive: bool = False


class SeverityOption(CheckboxOption):
    has_severity: bool = False


class SeverityScale(_Frozen):
    min: int
    max: int
    labels: list[str]

    def label_for(self, severity: int) -> str:
        return self.labels[severity - self.min]


class VisibilityCondition(_Frozen):
    """Show the field only while ``field`` currently equals ``equals``."""

    field: str
    equals: Any


class CascadingStep(_Frozen):
    id: str
    label: str
    options: list[Option] = Field(default_factory=list)
    options_by_parent: dict[str, list[Option]] = Field(default_factory=dict)
    depends_on_step: str | None = None

    def legal_values(self, parent_value: str | None = None) -> list[str]:
        if self.depends_on_step is None:
            return [o.value for o in self.options]
        return [o.value for o in self.options_by_parent.get(parent_value, [])]

    def all_values(self) -> list[str]:
        if self.depends_on_step is None:
            return [o.value for o in self.options]
        return [o.value for opts in self.options_by_parent.values() for o in opts]

    def label_for(self, value: str) -> str:
        for opts in [self.options, *self.options_by_parent.values()]:
            for option in opts:
                if option.value == value:
                    return option.label
        return value


# ---------------------------------------------------------------------------
# Field payloads
# ---------------------------------------------------------------------------

class FieldBase(_Frozen):
    id: str
    type: str
    label: str
    required: bool = False
    help_text: str | None = None
    default: Any = None
    visible_when: VisibilityCondition | None = None


class TextField(FieldBase):
    max_length: int | None = None
    pattern: str | None = None


class FreeTextField(TextField):
    max_length: int | None = 2000


class NumberField(FieldBase):
    min: float | None = None
    max: float | None = None
    integer: bool = False
    unit: str | None = None


class DateField(FieldBase):
    pass


class SingleSelectField(FieldBase):
    options: list[Option]
    exclusive_value: str | None = None

    def label_for(self, value: str) -> str:
        for option in self.options:
            if option.value == value:
                return option.label
        return value


class RadioField(SingleSelectField):
    pass


class CascadingSelectField(FieldBase):
    steps: list[CascadingStep]

    def step(self, step_id: str) -> CascadingStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


class CheckboxGroupField(FieldBase):
    options: list[CheckboxOption]

    def option(self, value: str) -> CheckboxOption | None:
        for option in self.options:
            if option.value == value:
                return option
        return None


class SeverityCheckboxGroupField(CheckboxGroupField):
    options: list[SeverityOption]
    severity_scale: SeverityScale


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class FormSection(_Frozen):
    id: str
    title: str
    enabled: bool = True
    fields: list[SerializeAsAny[FieldBase]] = Field(default_factory=list)


class ConfigurationMetadata(_Frozen):
    specialty: str | None = None
    description: str | None = None


class FormConfiguration(_Frozen):
    """A complete form definition at one version."""

    id: UUID | None = None
    owner_team_id: str | None = None
    form_kind: str
    version: int | None = None
    active: bool = True
    sections: list[FormSection]
    metadata: ConfigurationMetadata = Field(default_factory=ConfigurationMetadata)

    _certified: bool = PrivateAttr(default=False)

    @property
    def certified(self) -> bool:
        return self._certified

    def iter_fields(self, enabled_only: bool = False) -> Iterator[tuple[FormSection, FieldBase]]:
        for section in self.sections:
            if enabled_only and not section.enabled:
                continue
            for field in section.fields:
                yield section, field

    def get_field(self, field_id: str) -> FieldBase | None:
        for _, field in self.iter_fields():
            if field.id == field_id:
                return field
        return None

    def document(self) -> dict[str, Any]:
        """The storable JSON document, without store-assigned identity."""
        return self.model_dump(
            mode="json",
            exclude={"id", "owner_team_id", "version", "active"},
            exclude_none=True,
        )
