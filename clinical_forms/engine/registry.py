"""
Field type registry.

Every piece of type-specific behavior – config shape, answer collection,
validation, canonical storage shape, UI flattening, display – lives on a
FieldTypeHandler registered under its type name. The configuration
validator, the submission validator and the transformer only ever dispatch
through the registry; adding a field type means registering one handler.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from clinical_forms.engine.errors import ConfigurationErrorCode, FieldError, UnknownFieldType
from clinical_forms.schemas.form_config import FieldBase

logger = logging.getLogger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()

# value -> (typed canonical value, errors)
AnswerValidator = Callable[[Any], tuple[Any, list[FieldError]]]


@dataclass(frozen=True)
class FieldTypeDescriptor:
    type_name: str
    config_shape: dict[str, Any]
    value_shape: dict[str, Any]
    validator: Callable[[FieldBase], AnswerValidator]


class FieldTypeHandler:
    """Behavior for one field type. Subclasses override what differs."""

    type_name: str = ""
    config_model: type[FieldBase] = FieldBase
    # Extra JSON Schema properties of this type's config, beyond the common ones.
    config_properties: dict[str, Any] = {}
    config_required: tuple[str, ...] = ()
    value_shape: dict[str, Any] = {}

    # -- configuration ----------------------------------------------------

    @property
    def config_shape(self) -> dict[str, Any]:
        properties = {
            "id": {"type": "string", "minLength": 1},
            "type": {"const": self.type_name},
            "label": {"type": "string"},
            "required": {"type": "boolean"},
            "help_text": {"type": ["string", "null"]},
            "default": {},
            "visible_when": {
                "type": ["object", "null"],
                "required": ["field", "equals"],
                "properties": {
                    "field": {"type": "string", "minLength": 1},
                    "equals": {"type": ["string", "number", "boolean"]},
                },
                "additionalProperties": False,
            },
            **self.config_properties,
        }
        return {
            "$schema": "http://json-schema.org/draft-07/schema#",
            "type": "object",
            "required": ["id", "type", "label", *self.config_required],
            "properties": properties,
            "additionalProperties": False,
        }

    def parse(self, raw: Mapping[str, Any]) -> FieldBase:
        return self.config_model.model_validate(dict(raw))

    def config_errors(self, field: FieldBase) -> list[tuple[ConfigurationErrorCode, str]]:
        """Type-specific structural problems as (code, reason) pairs."""
        return []

    def step_references(self, field: FieldBase) -> list[tuple[str, str | None]]:
        """(step id, depends_on_step) pairs for fields with internal steps."""
        return []

    def flat_keys(self, field: FieldBase) -> list[str]:
        """Top-level submission keys this field reads besides its own id."""
        return []

    def condition_values(self, field: FieldBase) -> list[Any] | None:
        """Values a visibility condition on this field may compare to.

        None means any scalar is acceptable.
        """
        return None

    # -- answers ----------------------------------------------------------

    def validator(self, field: FieldBase) -> AnswerValidator:
        raise NotImplementedError

    def collect(self, field: FieldBase, raw_answers: Mapping[str, Any]) -> Any:
        """Pull this field's raw answer out of a submitted payload."""
        return raw_answers.get(field.id, MISSING)

    def is_blank(self, value: Any) -> bool:
        return value is None or (isinstance(value, str) and value.strip() == "")

    def is_empty(self, value: Any) -> bool:
        """True when a validated value carries no answer (e.g. nothing selected)."""
        return self.is_blank(value)

    def canonicalize(self, field: FieldBase, value: Any) -> Any:
        return value

    def flatten(self, field: FieldBase, value: Any) -> dict[str, Any]:
        return {field.id: value}

    def matches(self, field: FieldBase, value: Any, expected: Any) -> bool:
        return value == expected

    def display(self, field: FieldBase, value: Any) -> str:
        return str(value)


class FieldTypeRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, FieldTypeHandler] = {}

    def register(self, handler: FieldTypeHandler) -> FieldTypeHandler:
        if not handler.type_name:
            raise ValueError(f"{type(handler).__name__} has no type_name")
        if handler.type_name in self._handlers:
            raise ValueError(f"Duplicate field type: {handler.type_name}")
        self._handlers[handler.type_name] = handler
        logger.debug("Registered field type '%s'", handler.type_name)
        return handler

    def handler_for(self, type_name: str) -> FieldTypeHandler:
        if not isinstance(type_name, str) or type_name not in self._handlers:
            raise UnknownFieldType(type_name)
        return self._handlers[type_name]

    def describe(self, type_name: str) -> FieldTypeDescriptor:
        handler = self.handler_for(type_name)
        return FieldTypeDescriptor(
            type_name=handler.type_name,
            config_shape=handler.config_shape,
            value_shape=handler.value_shape,
            validator=handler.validator,
        )

    def parse_field(self, raw: Mapping[str, Any]) -> FieldBase:
        return self.handler_for(raw.get("type", "")).parse(raw)

    def types(self) -> list[str]:
        return list(self._handlers)

    def __contains__(self, type_name: str) -> bool:
        return type_name in self._handlers
