"""Pydantic models for API request/response serialization."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from clinical_forms.config import settings


# ---------------------------------------------------------------------------
# Configurations
# ---------------------------------------------------------------------------

class ConfigurationErrorModel(BaseModel):
    code: str
    reason: str
    field_id: str | None = None
    section: str | None = None


class ConfigurationResponse(BaseModel):
    id: UUID
    owner_team_id: str | None
    form_kind: str
    version: int
    active: bool
    document: dict[str, Any]


class CreateConfigurationRequest(BaseModel):
    document: dict[str, Any]
    activate: bool = False


class ValidationReport(BaseModel):
    valid: bool
    errors: list[ConfigurationErrorModel] = []


class ActivateRequest(BaseModel):
    configuration_id: UUID
    expected_revision: int | None = Field(None, ge=0, description="Revision last seen; 0 when unassigned")


class AssignmentResponse(BaseModel):
    team_id: str
    form_kind: str
    configuration_id: UUID
    revision: int


class ResetRequest(BaseModel):
    specialty: str
    form_kind: str = settings.DEFAULT_FORM_KIND


class TeamProfileRequest(BaseModel):
    specialty: str | None = None


class TeamProfileResponse(BaseModel):
    team_id: str
    specialty: str | None


# ---------------------------------------------------------------------------
# Answers
# ---------------------------------------------------------------------------

class FieldErrorModel(BaseModel):
    field_id: str
    code: str
    message: str
    path: str | None = None


class SubmitAnswersRequest(BaseModel):
    subject_id: str = Field(..., min_length=1, max_length=128)
    form_kind: str = settings.DEFAULT_FORM_KIND
    recorded_at: datetime | None = None
    answers: dict[str, Any]


class UpdateAnswersRequest(BaseModel):
    answers: dict[str, Any]


class AnswerRecordResponse(BaseModel):
    id: UUID
    subject_id: str
    team_id: str
    form_kind: str
    configuration_id: UUID
    configuration_version: int
    submitted_by: str
    submitted_at: datetime
    recorded_at: datetime
    updated_by: str | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None
    retention_until: datetime | None = None
    answers: dict[str, Any] | None = None


class AuditEntryResponse(BaseModel):
    actor: str
    action: str
    timestamp: datetime
    detail: dict[str, Any] | None = None


class AnswerListResponse(BaseModel):
    records: list[AnswerRecordResponse]
    total: int
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

class HealthResponse(BaseModel):
    status: str = "healthy"
    environment: str
    database: str = "connected"
