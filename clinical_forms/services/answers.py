"""
Answer record service.

Records pin the configuration version they were submitted under and are
always read back and edited against that exact version. Values and the
legacy bag are encrypted with the PHI EncryptionService before they are
written. Deletion is soft: a deleted record is hidden from normal reads and
kept until its retention period has expired, after which it may be purged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from clinical_forms.config import settings
from clinical_forms.engine.errors import ConfigurationVersionUnavailable
from clinical_forms.engine.records import AnswerRecord
from clinical_forms.engine.resolver import ConfigurationResolver
from clinical_forms.engine.transformer import denormalize
from clinical_forms.models.forms import AnswerRecordRow, AuditLog, utcnow
from clinical_forms.schemas.form_config import FormConfiguration
from clinical_forms.services.audit import audit_trail, log_action
from clinical_forms.services.encryption import EncryptionService
from clinical_forms.services.store import ConfigurationStore
from clinical_forms.submission.dag import RunSummary
from clinical_forms.submission.pipeline import run_submission

logger = logging.getLogger(__name__)

encryption = EncryptionService()

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


class RecordNotFound(LookupError):
    def __init__(self, record_id: UUID):
        self.record_id = record_id
        super().__init__(f"Answer record {record_id} not found")


class RetentionPeriodActive(Exception):
    """A hard delete was requested before the record's retention period ended."""


@dataclass
class AnswerPage:
    records: list[AnswerRecord]
    total: int
    limit: int
    offset: int


def add_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # 29 February in a non-leap target year
        return moment.replace(year=moment.year + years, day=28)


def to_record(row: AnswerRecordRow) -> AnswerRecord:
    return AnswerRecord(
        id=row.id,
        subject_id=row.subject_id,
        team_id=row.team_id,
        form_kind=row.form_kind,
        configuration_id=row.configuration_id,
        configuration_version=row.configuration_version,
        values=encryption.decrypt_json(row.encrypted_values) or {},
        legacy_bag=encryption.decrypt_json(row.encrypted_legacy_bag),
        submitted_by=row.submitted_by,
        submitted_at=row.submitted_at,
        recorded_at=row.recorded_at,
        updated_by=row.updated_by,
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
        deleted_by=row.deleted_by,
        deletion_reason=row.deletion_reason,
        retention_until=row.retention_until,
    )


def _resolver(db: Session) -> ConfigurationResolver:
    return ConfigurationResolver(ConfigurationStore(db))


def _row(db: Session, team_id: str, record_id: UUID, include_deleted: bool = False) -> AnswerRecordRow:
    row = db.get(AnswerRecordRow, record_id)
    if row is None or row.team_id != team_id or (row.deleted_at is not None and not include_deleted):
        raise RecordNotFound(record_id)
    return row


# ---------------------------------------------------------------------------
# Create / update
# ---------------------------------------------------------------------------

def submit_answers(
    db: Session,
    *,
    team_id: str,
    subject_id: str,
    form_kind: str,
    answers: Mapping[str, Any],
    actor: str,
    recorded_at: datetime | None = None,
    resolver: ConfigurationResolver | None = None,
) -> RunSummary:
    """Validate and store a new submission against the team's current configuration."""

    def persist(configuration: FormConfiguration, values: dict[str, Any]) -> AnswerRecord:
        row = AnswerRecordRow(
            subject_id=subject_id,
            team_id=team_id,
            form_kind=configuration.form_kind,
            configuration_id=configuration.id,
            configuration_version=configuration.version,
            encrypted_values=encryption.encrypt_json(values),
            submitted_by=actor,
            recorded_at=recorded_at or utcnow(),
        )
        db.add(row)
        db.flush()
        log_action(
            db,
            actor=actor,
            action="create",
            resource_type="AnswerRecord",
            resource_id=row.id,
            detail={"subject_id": subject_id, "form_kind": form_kind, "version": configuration.version},
        )
        db.commit()
        return to_record(row)

    summary = run_submission(
        answers,
        persist=persist,
        team_id=team_id,
        form_kind=form_kind,
        resolver=resolver or _resolver(db),
    )
    if summary.status == "failed":
        db.rollback()
    return summary


def update_answers(
    db: Session,
    *,
    team_id: str,
    record_id: UUID,
    answers: Mapping[str, Any],
    actor: str,
    resolver: ConfigurationResolver | None = None,
) -> RunSummary:
    """Replace a record's values; validated against the version it is pinned to."""
    row = _row(db, team_id, record_id)
    configuration = (resolver or _resolver(db)).resolve_version(row.configuration_id)

    def persist(pinned: FormConfiguration, values: dict[str, Any]) -> AnswerRecord:
        row.encrypted_values = encryption.encrypt_json(values)
        row.updated_by = actor
        row.updated_at = utcnow()
        log_action(
            db,
            actor=actor,
            action="update",
            resource_type="AnswerRecord",
            resource_id=row.id,
            detail={"version": pinned.version, "fields": sorted(values)},
        )
        db.commit()
        return to_record(row)

    summary = run_submission(
        answers,
        persist=persist,
        team_id=team_id,
        form_kind=row.form_kind,
        configuration=configuration,
    )
    if summary.status == "failed":
        db.rollback()
    return summary


def import_legacy_record(
    db: Session,
    *,
    team_id: str,
    subject_id: str,
    form_kind: str,
    legacy_bag: Mapping[str, Any],
    actor: str,
    notes: str | None = None,
    vital_signs: Mapping[str, Any] | None = None,
    recorded_at: datetime | None = None,
    resolver: ConfigurationResolver | None = None,
) -> AnswerRecord:
    """Store a record from the catch-all layout, pinned to the team's current version.

    The old notes and vital-signs columns are folded into the bag; values are
    reconstructed on read.
    """
    configuration = (resolver or _resolver(db)).resolve(team_id, form_kind)
    bag = dict(legacy_bag)
    if notes is not None:
        bag["notes"] = notes
    if vital_signs:
        bag["vital_signs"] = dict(vital_signs)
    if recorded_at is not None:
        bag["date_recorded"] = recorded_at.isoformat()

    row = AnswerRecordRow(
        subject_id=subject_id,
        team_id=team_id,
        form_kind=form_kind,
        configuration_id=configuration.id,
        configuration_version=configuration.version,
        encrypted_values=encryption.encrypt_json({}),
        encrypted_legacy_bag=encryption.encrypt_json(bag),
        submitted_by=actor,
        recorded_at=recorded_at or utcnow(),
    )
    db.add(row)
    db.flush()
    log_action(
        db,
        actor=actor,
        action="import",
        resource_type="AnswerRecord",
        resource_id=row.id,
        detail={"subject_id": subject_id, "form_kind": form_kind, "version": configuration.version},
    )
    db.commit()
    return to_record(row)


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------

def get_record(db: Session, *, team_id: str, record_id: UUID, include_deleted: bool = False) -> AnswerRecord:
    return to_record(_row(db, team_id, record_id, include_deleted))


def load_answers(
    db: Session,
    *,
    team_id: str,
    record_id: UUID,
    flat: bool = False,
    resolver: ConfigurationResolver | None = None,
) -> tuple[AnswerRecord, dict[str, Any]]:
    """The record and its answers denormalized against its pinned version."""
    record = get_record(db, team_id=team_id, record_id=record_id)
    try:
        configuration = (resolver or _resolver(db)).resolve_version(record.configuration_id)
    except ConfigurationVersionUnavailable:
        logger.error("Record %s is pinned to unavailable configuration %s", record.id, record.configuration_id)
        raise
    return record, denormalize(record, configuration, flat=flat)


def list_records(
    db: Session,
    *,
    team_id: str,
    subject_id: str | None = None,
    form_kind: str | None = None,
    include_deleted: bool = False,
    start: datetime | None = None,
    end: datetime | None = None,
    limit: int = DEFAULT_PAGE_SIZE,
    offset: int = 0,
) -> AnswerPage:
    limit = max(1, min(limit, MAX_PAGE_SIZE))
    offset = max(0, offset)

    conditions = [AnswerRecordRow.team_id == team_id]
    if subject_id is not None:
        conditions.append(AnswerRecordRow.subject_id == subject_id)
    if form_kind is not None:
        conditions.append(AnswerRecordRow.form_kind == form_kind)
    if not include_deleted:
        conditions.append(AnswerRecordRow.deleted_at.is_(None))
    if start is not None:
        conditions.append(AnswerRecordRow.recorded_at >= start)
    if end is not None:
        conditions.append(AnswerRecordRow.recorded_at <= end)

    total = db.scalar(select(func.count()).select_from(AnswerRecordRow).where(*conditions))
    rows = db.scalars(
        select(AnswerRecordRow)
        .where(*conditions)
        .order_by(AnswerRecordRow.recorded_at.desc(), AnswerRecordRow.submitted_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return AnswerPage(records=[to_record(r) for r in rows], total=total or 0, limit=limit, offset=offset)


def record_history(db: Session, *, team_id: str, record_id: UUID) -> list[AuditLog]:
    """Audit entries for a record, deleted records included."""
    row = _row(db, team_id, record_id, include_deleted=True)
    return audit_trail(db, resource_type="AnswerRecord", resource_id=row.id)


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------

def soft_delete(
    db: Session,
    *,
    team_id: str,
    record_id: UUID,
    actor: str,
    reason: str | None = None,
    retention_years: int | None = None,
) -> AnswerRecord:
    row = _row(db, team_id, record_id)
    now = utcnow()
    row.deleted_at = now
    row.deleted_by = actor
    row.deletion_reason = reason
    if retention_years is None:
        retention_years = settings.RECORD_RETENTION_YEARS
    row.retention_until = add_years(now, retention_years)
    log_action(
        db,
        actor=actor,
        action="delete",
        resource_type="AnswerRecord",
        resource_id=row.id,
        detail={"reason": reason, "retention_until": row.retention_until.isoformat()},
    )
    db.commit()
    return to_record(row)


def purge_record(
    db: Session,
    *,
    team_id: str,
    record_id: UUID,
    actor: str,
    now: datetime | None = None,
) -> None:
    """Permanently remove a soft-deleted record whose retention period has ended."""
    row = _row(db, team_id, record_id, include_deleted=True)
    now = now or utcnow()
    if row.deleted_at is None:
        raise RetentionPeriodActive(f"Record {record_id} must be soft-deleted before it can be purged")
    if row.retention_until is not None and row.retention_until > now:
        raise RetentionPeriodActive(
            f"Record {record_id} is retained until {row.retention_until.isoformat()}"
        )
    log_action(
        db,
        actor=actor,
        action="purge",
        resource_type="AnswerRecord",
        resource_id=row.id,
        detail={"subject_id": row.subject_id, "deleted_at": row.deleted_at.isoformat()},
    )
    db.delete(row)
    db.commit()
