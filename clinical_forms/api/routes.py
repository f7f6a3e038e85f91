"""
FastAPI routes – the HTTP surface of the form engine.

Authentication is handled upstream; the acting user arrives as the
``X-Actor-Id`` header and is recorded in the audit trail. Engine
exceptions are mapped onto HTTP status codes here:

- field and configuration errors      -> 422
- activation or version conflicts     -> 409
- unavailable version or form kind    -> 404
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clinical_forms.config import settings
from clinical_forms.engine.config_validator import validate_configuration
from clinical_forms.engine.errors import (
    ActivationConflict,
    ConfigurationConflict,
    ConfigurationVersionUnavailable,
    FormEngineError,
    FormKindUnavailable,
)
from clinical_forms.engine.records import AnswerRecord
from clinical_forms.engine.resolver import ConfigurationResolver
from clinical_forms.models.database import get_db
from clinical_forms.schemas.api import (
    ActivateRequest,
    AnswerListResponse,
    AnswerRecordResponse,
    AssignmentResponse,
    AuditEntryResponse,
    ConfigurationErrorModel,
    ConfigurationResponse,
    CreateConfigurationRequest,
    FieldErrorModel,
    HealthResponse,
    ResetRequest,
    SubmitAnswersRequest,
    TeamProfileRequest,
    TeamProfileResponse,
    UpdateAnswersRequest,
    ValidationReport,
)
from clinical_forms.schemas.form_config import FormConfiguration
from clinical_forms.services import answers as answer_service
from clinical_forms.services import configurations as configuration_service
from clinical_forms.services.store import ConfigurationStore
from clinical_forms.submission.dag import RunSummary

logger = logging.getLogger(__name__)

router = APIRouter()


def current_actor(x_actor_id: str = Header(..., min_length=1, max_length=128)) -> str:
    return x_actor_id


def get_resolver(db: Session = Depends(get_db)) -> ConfigurationResolver:
    return ConfigurationResolver(ConfigurationStore(db))


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (ConfigurationVersionUnavailable, FormKindUnavailable, answer_service.RecordNotFound)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (ActivationConflict, ConfigurationConflict, answer_service.RetentionPeriodActive)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, configuration_service.UnknownSpecialty):
        return HTTPException(status_code=422, detail=str(exc))
    logger.exception("Unexpected engine error")
    return HTTPException(status_code=500, detail="Internal form engine error")


def _configuration_response(configuration: FormConfiguration) -> ConfigurationResponse:
    return ConfigurationResponse(
        id=configuration.id,
        owner_team_id=configuration.owner_team_id,
        form_kind=configuration.form_kind,
        version=configuration.version,
        active=configuration.active,
        document=configuration.document(),
    )


def _record_response(record: AnswerRecord, answers: dict[str, Any] | None = None) -> AnswerRecordResponse:
    return AnswerRecordResponse(
        id=record.id,
        subject_id=record.subject_id,
        team_id=record.team_id,
        form_kind=record.form_kind,
        configuration_id=record.configuration_id,
        configuration_version=record.configuration_version,
        submitted_by=record.submitted_by,
        submitted_at=record.submitted_at,
        recorded_at=record.recorded_at,
        updated_by=record.updated_by,
        updated_at=record.updated_at,
        deleted_at=record.deleted_at,
        retention_until=record.retention_until,
        answers=answers,
    )


def _submission_outcome(summary: RunSummary) -> AnswerRecordResponse:
    if summary.status == "rejected":
        raise HTTPException(
            status_code=422,
            detail={
                "message": "Answers failed validation",
                "errors": [FieldErrorModel(**e.to_dict()).model_dump() for e in summary.field_errors],
            },
        )
    try:
        summary.raise_for_failure()
    except (FormEngineError, answer_service.RecordNotFound) as exc:
        raise _http_error(exc) from exc
    record: AnswerRecord = summary.context["record"]
    return _record_response(record, record.values)


# ---------------------------------------------------------------------------
# Health check
# ---------------------------------------------------------------------------

@router.get("/health", response_model=HealthResponse)
def health_check(db: Session = Depends(get_db)):
    """Basic health endpoint – verifies DB connectivity."""
    try:
        db.execute(text("SELECT 1"))
        db_status = "connected"
    except SQLAlchemyError:
        logger.warning("Health check could not reach the database", exc_info=True)
        db_status = "disconnected"
    return HealthResponse(status="healthy", environment=settings.ENVIRONMENT, database=db_status)


# ---------------------------------------------------------------------------
# Configuration resolution
# ---------------------------------------------------------------------------

@router.get("/teams/{team_id}/forms/{form_kind}", response_model=ConfigurationResponse)
def resolve_form(team_id: str, form_kind: str, resolver: ConfigurationResolver = Depends(get_resolver)):
    """The configuration a team's form of this kind is currently rendered from."""
    try:
        return _configuration_response(resolver.resolve(team_id, form_kind))
    except FormEngineError as exc:
        raise _http_error(exc) from exc


@router.get("/configurations/{configuration_id}", response_model=ConfigurationResponse)
def get_configuration(configuration_id: UUID, resolver: ConfigurationResolver = Depends(get_resolver)):
    try:
        return _configuration_response(resolver.resolve_version(configuration_id))
    except FormEngineError as exc:
        raise _http_error(exc) from exc


# ---------------------------------------------------------------------------
# Configuration administration
# ---------------------------------------------------------------------------

@router.post("/configurations/validate", response_model=ValidationReport)
def validate_document(document: dict[str, Any]):
    """Dry run: report every problem in a document without storing it."""
    result = validate_configuration(document)
    return ValidationReport(
        valid=result.ok,
        errors=[ConfigurationErrorModel(**e.to_dict()) for e in result.errors],
    )


@router.post("/teams/{team_id}/configurations", response_model=ConfigurationResponse, status_code=201)
def create_configuration(
    team_id: str,
    request: CreateConfigurationRequest,
    db: Session = Depends(get_db),
    actor: str = Depends(current_actor),
):
    try:
        result = configuration_service.create_version(
            db, team_id=team_id, document=request.document, actor=actor, activate=request.activate
        )
    except FormEngineError as exc:
        raise _http_error(exc) from exc
    if not result.ok:
        raise HTTPException(
            status_code=422,
            detail={"message": "Configuration is invalid", "errors": [e.to_dict() for e in result.errors]},
        )
    return _configuration_response(result.configuration)


@router.post("/teams/{team_id}/configurations/activate", response_model=AssignmentResponse)
def activate_configuration(
    team_id: str,
    request: ActivateRequest,
    db: Session = Depends(get_db),
    actor: str = Depends(current_actor),
):
    try:
        assignment = configuration_service.activate_version(
            db,
            team_id=team_id,
            configuration_id=request.configuration_id,
            actor=actor,
            expected_revision=request.expected_revision,
        )
    except FormEngineError as exc:
        raise _http_error(exc) from exc
    return AssignmentResponse(
        team_id=assignment.team_id,
        form_kind=assignment.form_kind,
        configuration_id=assignment.configuration_id,
        revision=assignment.revision,
    )


@router.post("/teams/{team_id}/configurations/reset", response_model=ConfigurationResponse)
def reset_configuration(
    team_id: str,
    request: ResetRequest,
    db: Session = Depends(get_db),
    actor: str = Depends(current_actor),
):
    """Replace the team's form with a fresh copy of a specialty default."""
    try:
        configuration = configuration_service.reset_to_specialty(
            db, team_id=team_id, specialty=request.specialty, actor=actor, form_kind=request.form_kind
        )
    except (FormEngineError, configuration_service.UnknownSpecialty) as exc:
        raise _http_error(exc) from exc
    return _configuration_response(configuration)


@router.post("/configurations/{configuration_id}/deactivate", status_code=204)
def deactivate_configuration(
    configuration_id: UUID,
    db: Session = Depends(get_db),
    actor: str = Depends(current_actor),
):
    try:
        configuration_service.deactivate_version(db, configuration_id=configuration_id, actor=actor)
    except FormEngineError as exc:
        raise _http_error(exc) from exc
    return Response(status_code=204)


@router.put("/teams/{team_id}/profile", response_model=TeamProfileResponse)
def update_team_profile(
    team_id: str,
    request: TeamProfileRequest,
    db: Session = Depends(get_db),
    actor: str = Depends(current_actor),
):
    try:
        configuration_service.set_team_specialty(db, team_id=team_id, specialty=request.specialty, actor=actor)
    except configuration_service.UnknownSpecialty as exc:
        raise _http_error(exc) from exc
    return TeamProfileResponse(team_id=team_id, specialty=request.specialty)


# ---------------------------------------------------------------------------
# Answers
# ---------------------------------------------------------------------------

@router.post("/teams/{team_id}/answers", response_model=AnswerRecordResponse, status_code=201)
def submit_answers(
    team_id: str,
    request: SubmitAnswersRequest,
    db: Session = Depends(get_db),
    actor: str = Depends(current_actor),
    resolver: ConfigurationResolver = Depends(get_resolver),
):
    summary = answer_service.submit_answers(
        db,
        team_id=team_id,
        subject_id=request.subject_id,
        form_kind=request.form_kind,
        answers=request.answers,
        actor=actor,
        recorded_at=request.recorded_at,
        resolver=resolver,
    )
    return _submission_outcome(summary)


@router.get("/teams/{team_id}/answers", response_model=AnswerListResponse)
def list_answers(
    team_id: str,
    subject_id: str | None = None,
    form_kind: str | None = None,
    include_deleted: bool = False,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = Query(answer_service.DEFAULT_PAGE_SIZE, ge=1, le=answer_service.MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    page = answer_service.list_records(
        db,
        team_id=team_id,
        subject_id=subject_id,
        form_kind=form_kind,
        include_deleted=include_deleted,
        start=start_date,
        end=end_date,
        limit=limit,
        offset=offset,
    )
    return AnswerListResponse(
        records=[_record_response(r) for r in page.records],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
    )


@router.get("/teams/{team_id}/answers/{record_id}", response_model=AnswerRecordResponse)
def get_answers(
    team_id: str,
    record_id: UUID,
    flat: bool = False,
    db: Session = Depends(get_db),
    resolver: ConfigurationResolver = Depends(get_resolver),
):
    """A record's answers, read against the configuration version it was submitted under."""
    try:
        record, answers = answer_service.load_answers(
            db, team_id=team_id, record_id=record_id, flat=flat, resolver=resolver
        )
    except (FormEngineError, answer_service.RecordNotFound) as exc:
        raise _http_error(exc) from exc
    return _record_response(record, answers)


@router.get("/teams/{team_id}/answers/{record_id}/history", response_model=list[AuditEntryResponse])
def get_answer_history(team_id: str, record_id: UUID, db: Session = Depends(get_db)):
    try:
        entries = answer_service.record_history(db, team_id=team_id, record_id=record_id)
    except answer_service.RecordNotFound as exc:
        raise _http_error(exc) from exc
    return [
        AuditEntryResponse(actor=e.actor, action=e.action, timestamp=e.timestamp, detail=e.detail)
        for e in entries
    ]


@router.put("/teams/{team_id}/answers/{record_id}", response_model=AnswerRecordResponse)
def update_answers(
    team_id: str,
    record_id: UUID,
    request: UpdateAnswersRequest,
    db: Session = Depends(get_db),
    actor: str = Depends(current_actor),
    resolver: ConfigurationResolver = Depends(get_resolver),
):
    try:
        summary = answer_service.update_answers(
            db, team_id=team_id, record_id=record_id, answers=request.answers, actor=actor, resolver=resolver
        )
    except (FormEngineError, answer_service.RecordNotFound) as exc:
        raise _http_error(exc) from exc
    return _submission_outcome(summary)


@router.delete("/teams/{team_id}/answers/{record_id}", response_model=AnswerRecordResponse)
def delete_answers(
    team_id: str,
    record_id: UUID,
    reason: str | None = Query(None, max_length=2000),
    db: Session = Depends(get_db),
    actor: str = Depends(current_actor),
):
    """Soft delete; the record is kept until its retention period ends."""
    try:
        record = answer_service.soft_delete(db, team_id=team_id, record_id=record_id, actor=actor, reason=reason)
    except answer_service.RecordNotFound as exc:
        raise _http_error(exc) from exc
    return _record_response(record)
