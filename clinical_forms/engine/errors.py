"""
Error taxonomy for the form engine.

Expected validation failures are plain data (ConfigurationError, FieldError)
collected into lists and handed back to the caller. Exceptions are reserved
for programmer errors and for state that cannot be interpreted safely.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any


class ConfigurationErrorCode(str, Enum):
    SCHEMA = "schema"
    UNKNOWN_FIELD_TYPE = "unknown_field_type"
    DUPLICATE_SECTION_ID = "duplicate_section_id"
    DUPLICATE_FIELD_ID = "duplicate_field_id"
    DANGLING_REFERENCE = "dangling_reference"
    FORWARD_REFERENCE = "forward_reference"
    DEPENDENCY_CYCLE = "dependency_cycle"
    SEVERITY_SCALE = "severity_scale"
    DUPLICATE_STEP_ID = "duplicate_step_id"
    DUPLICATE_OPTION = "duplicate_option"
    MULTIPLE_EXCLUSIVE = "multiple_exclusive"
    INVALID_OPTION_REFERENCE = "invalid_option_reference"
    INVALID_CONDITION = "invalid_condition"
    INVALID_DEFAULT = "invalid_default"
    FLAT_KEY_COLLISION = "flat_key_collision"


class FieldErrorCode(str, Enum):
    REQUIRED_FIELD_MISSING = "required_field_missing"
    INVALID_VALUE = "invalid_value"
    INVALID_OPTION_VALUE = "invalid_option_value"
    SEVERITY_OUT_OF_RANGE = "severity_out_of_range"
    SEVERITY_REQUIRES_SELECTION = "severity_requires_selection"
    SEVERITY_MISSING = "severity_missing"
    SEVERITY_NOT_ALLOWED = "severity_not_allowed"
    MUTUALLY_EXCLUSIVE_VIOLATION = "mutually_exclusive_violation"
    CASCADING_DEPENDENCY_UNMET = "cascading_dependency_unmet"


@dataclass(frozen=True)
class ConfigurationError:
    """A structural problem in a configuration document."""

    code: ConfigurationErrorCode
    reason: str
    field_id: str | None = None
    section: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["code"] = self.code.value
        return data


@dataclass(frozen=True)
class FieldError:
    """A per-field problem in a submitted answer payload.

    ``path`` narrows the error to an option value or cascading step id.
    """

    field_id: str
    code: FieldErrorCode
    message: str
    path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["code"] = self.code.value
        return data


class FormEngineError(Exception):
    """Base class for exceptional engine conditions."""


class UnknownFieldType(FormEngineError):
    def __init__(self, type_name: str):
        self.type_name = type_name
        super().__init__(f"Unknown field type: {type_name!r}")


class ConfigurationNotCertified(FormEngineError):
    """A configuration was used without passing validate_configuration()."""


class ConfigurationVersionUnavailable(FormEngineError):
    def __init__(self, configuration_id: Any, detail: str = "not found"):
        self.configuration_id = configuration_id
        super().__init__(f"Configuration {configuration_id} unavailable: {detail}")


class FormKindUnavailable(FormEngineError):
    def __init__(self, team_id: str, form_kind: str):
        self.team_id = team_id
        self.form_kind = form_kind
        super().__init__(f"No configuration for form kind {form_kind!r} (team {team_id})")


class ActivationConflict(FormEngineError):
    """The team's current-configuration pointer moved since it was read."""


class ConfigurationConflict(FormEngineError):
    """A concurrent writer claimed the same configuration version number."""
