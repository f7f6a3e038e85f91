"""
Submission validators compiled from a certified configuration.

compile_validator() resolves every field's handler and answer validator once;
SubmissionValidator.check() then walks the fields in configuration order and
collects every problem in the submission instead of stopping at the first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping

from clinical_forms.engine.errors import ConfigurationNotCertified, FieldError, FieldErrorCode
from clinical_forms.engine.field_types import registry as default_registry
from clinical_forms.engine.registry import MISSING, AnswerValidator, FieldTypeHandler, FieldTypeRegistry
from clinical_forms.schemas.form_config import FieldBase, FormConfiguration

logger = logging.getLogger(__name__)


@dataclass
class SubmissionResult:
    """Either the accepted, typed answers or every field error found."""

    values: dict[str, Any] | None = None
    errors: list[FieldError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class _CompiledField:
    field: FieldBase
    handler: FieldTypeHandler
    validate: AnswerValidator


class SubmissionValidator:
    def __init__(self, configuration: FormConfiguration, registry: FieldTypeRegistry = default_registry):
        self.configuration = configuration
        self._plan: list[_CompiledField] = []
        for _, form_field in configuration.iter_fields(enabled_only=True):
            handler = registry.handler_for(form_field.type)
            self._plan.append(_CompiledField(form_field, handler, handler.validator(form_field)))
        self._by_id = {entry.field.id: entry for entry in self._plan}

    def _visible(self, form_field: FieldBase, accepted: Mapping[str, Any]) -> bool:
        condition = form_field.visible_when
        if condition is None:
            return True
        target = self._by_id.get(condition.field)
        if target is None or condition.field not in accepted:
            return False
        return target.handler.matches(target.field, accepted[condition.field], condition.equals)

    def check(self, raw_answers: Mapping[str, Any]) -> SubmissionResult:
        if not isinstance(raw_answers, Mapping):
            raise TypeError(f"answers must be a mapping, got {type(raw_answers).__name__}")

        accepted: dict[str, Any] = {}
        errors: list[FieldError] = []

        for entry in self._plan:
            form_field = entry.field
            if not self._visible(form_field, accepted):
                # Hidden fields are not collected, whatever was submitted for them.
                continue

            raw = entry.handler.collect(form_field, raw_answers)
            if raw is MISSING or entry.handler.is_blank(raw):
                if form_field.required:
                    errors.append(_required(form_field))
                continue

            value, field_errors = entry.validate(raw)
            if field_errors:
                errors.extend(field_errors)
                continue
            if entry.handler.is_empty(value):
                if form_field.required:
                    errors.append(_required(form_field))
                continue
            accepted[form_field.id] = value

        if errors:
            logger.debug(
                "Submission against %s v%s rejected: %d field error(s)",
                self.configuration.form_kind,
                self.configuration.version,
                len(errors),
            )
            return SubmissionResult(errors=errors)
        return SubmissionResult(values=accepted)


def _required(form_field: FieldBase) -> FieldError:
    return FieldError(form_field.id, FieldErrorCode.REQUIRED_FIELD_MISSING, f"{form_field.label} is required")


def compile_validator(
    configuration: FormConfiguration, registry: FieldTypeRegistry = default_registry
) -> SubmissionValidator:
    if not configuration.certified:
        raise ConfigurationNotCertified(
            f"Configuration {configuration.id or configuration.form_kind} has not passed validation"
        )
    return SubmissionValidator(configuration, registry)
