"""
SQLAlchemy-backed store of configuration versions, team assignments and
team profiles.

Every document read back from the database is certified again through
validate_configuration() before it is handed out, so a row written by an
older engine release that no longer validates surfaces as unavailable
instead of producing a half-working form.
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clinical_forms.engine.config_validator import validate_configuration
from clinical_forms.engine.errors import (
    ActivationConflict,
    ConfigurationConflict,
    ConfigurationNotCertified,
    ConfigurationVersionUnavailable,
)
from clinical_forms.models.forms import (
    DEFAULT_SCOPE,
    FormConfigurationRow,
    TeamFormAssignment,
    TeamProfile,
    utcnow,
)
from clinical_forms.schemas.form_config import FormConfiguration

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class ConfigurationStore:
    def __init__(self, db: Session):
        self.db = db

    # -- reads --------------------------------------------------------------

    def _certify(self, row: FormConfigurationRow) -> FormConfiguration:
        raw: dict[str, Any] = {
            **row.document,
            "id": str(row.id),
            "owner_team_id": row.owner_team_id,
            "version": row.version,
            "active": row.active,
        }
        result = validate_configuration(raw)
        if not result.ok:
            logger.error(
                "Stored configuration %s (%s v%s) no longer validates: %s",
                row.id,
                row.form_kind,
                row.version,
                "; ".join(e.reason for e in result.errors),
            )
            raise ConfigurationVersionUnavailable(row.id, "stored document no longer validates")
        return result.configuration

    def get(self, configuration_id: UUID) -> FormConfiguration | None:
        """Exact version lookup; inactive versions included."""
        row = self.db.get(FormConfigurationRow, configuration_id)
        return self._certify(row) if row is not None else None

    def assignment(self, team_id: str, form_kind: str) -> TeamFormAssignment | None:
        return self.db.get(TeamFormAssignment, (team_id, form_kind))

    def assigned_configuration(self, team_id: str, form_kind: str) -> FormConfiguration | None:
        assignment = self.assignment(team_id, form_kind)
        if assignment is None:
            return None
        row = self.db.get(FormConfigurationRow, assignment.configuration_id)
        if row is None or not row.active:
            return None
        return self._certify(row)

    def _defaults_query(self, form_kind: str, specialty: str | None):
        query = select(FormConfigurationRow).where(
            FormConfigurationRow.owner_scope == DEFAULT_SCOPE,
            FormConfigurationRow.form_kind == form_kind,
        )
        if specialty is None:
            return query.where(FormConfigurationRow.specialty.is_(None))
        return query.where(FormConfigurationRow.specialty == specialty)

    def latest_default(self, form_kind: str, specialty: str | None) -> FormConfiguration | None:
        """Newest active default for a specialty (None = the system default)."""
        row = self.db.scalars(
            self._defaults_query(form_kind, specialty)
            .where(FormConfigurationRow.active.is_(True))
            .order_by(FormConfigurationRow.version.desc())
            .limit(1)
        ).first()
        return self._certify(row) if row is not None else None

    def has_default(self, form_kind: str, specialty: str | None) -> bool:
        """True once any default version exists, active or not."""
        return self.db.scalars(self._defaults_query(form_kind, specialty).limit(1)).first() is not None

    def list_versions(self, owner_team_id: str | None, form_kind: str) -> list[FormConfigurationRow]:
        scope = owner_team_id or DEFAULT_SCOPE
        return list(
            self.db.scalars(
                select(FormConfigurationRow)
                .where(FormConfigurationRow.owner_scope == scope, FormConfigurationRow.form_kind == form_kind)
                .order_by(FormConfigurationRow.version)
            )
        )

    def team_specialty(self, team_id: str) -> str | None:
        profile = self.db.get(TeamProfile, team_id)
        return profile.specialty if profile is not None else None

    # -- writes -------------------------------------------------------------

    def _next_version(self, scope: str, form_kind: str) -> int:
        current = self.db.scalar(
            select(func.max(FormConfigurationRow.version)).where(
                FormConfigurationRow.owner_scope == scope,
                FormConfigurationRow.form_kind == form_kind,
            )
        )
        return (current or 0) + 1

    def create_version(
        self,
        configuration: FormConfiguration,
        *,
        owner_team_id: str | None,
        created_by: str,
        specialty: str | None = None,
    ) -> FormConfiguration:
        """Store a certified configuration as the next version for its owner."""
        if not configuration.certified:
            raise ConfigurationNotCertified(f"Refusing to store uncertified {configuration.form_kind} configuration")

        scope = owner_team_id or DEFAULT_SCOPE
        row = FormConfigurationRow(
            owner_team_id=owner_team_id,
            owner_scope=scope,
            form_kind=configuration.form_kind,
            version=self._next_version(scope, configuration.form_kind),
            specialty=specialty if specialty is not None else configuration.metadata.specialty,
            document=configuration.document(),
            active=True,
            created_by=created_by,
        )
        try:
            with self.db.begin_nested():
                self.db.add(row)
                self.db.flush()
        except IntegrityError as exc:
            raise ConfigurationConflict(
                f"Version {row.version} of {configuration.form_kind} for {scope} was taken concurrently"
            ) from exc

        logger.info("Stored %s v%d for %s as %s", row.form_kind, row.version, scope, row.id)
        return self._certify(row)

    def publish_builtin(self, document: dict[str, Any], specialty: str | None) -> FormConfiguration:
        """Store a built-in default document so records can pin it."""
        result = validate_configuration(document)
        if not result.ok:
            # Built-in documents are part of the code base; failing here is a bug.
            raise ConfigurationNotCertified(
                f"Built-in {document.get('form_kind')} default for {specialty or 'system'} is invalid: "
                + "; ".join(e.reason for e in result.errors)
            )
        try:
            configuration = self.create_version(
                result.configuration, owner_team_id=None, created_by=SYSTEM_ACTOR, specialty=specialty
            )
            # Published defaults are committed in their own transaction.
            self.db.commit()
            return configuration
        except ConfigurationConflict:
            # Another worker published it first.
            published = self.latest_default(result.configuration.form_kind, specialty)
            if published is None:
                raise
            return published

    def activate(
        self,
        team_id: str,
        form_kind: str,
        configuration_id: UUID,
        *,
        actor: str,
        expected_revision: int | None = None,
    ) -> TeamFormAssignment:
        """Point the team at a version, compare-and-set on the assignment revision.

        ``expected_revision`` is the revision the caller last saw (0 for "no
        assignment yet"); when omitted the current revision is read first.
        """
        row = self.db.get(FormConfigurationRow, configuration_id)
        if row is None:
            raise ConfigurationVersionUnavailable(configuration_id)
        if not row.active:
            raise ConfigurationVersionUnavailable(configuration_id, "version is deactivated")
        if row.form_kind != form_kind:
            raise ConfigurationVersionUnavailable(configuration_id, f"version is a {row.form_kind} form")
        if row.owner_team_id not in (None, team_id):
            raise ConfigurationVersionUnavailable(configuration_id, "version belongs to another team")

        current = self.assignment(team_id, form_kind)
        if expected_revision is None:
            expected_revision = current.revision if current is not None else 0

        if expected_revision == 0:
            if current is not None:
                raise ActivationConflict(f"{team_id}/{form_kind} already has an assignment")
            assignment = TeamFormAssignment(
                team_id=team_id,
                form_kind=form_kind,
                configuration_id=configuration_id,
                revision=1,
                updated_by=actor,
            )
            try:
                with self.db.begin_nested():
                    self.db.add(assignment)
                    self.db.flush()
            except IntegrityError as exc:
                raise ActivationConflict(f"{team_id}/{form_kind} was assigned concurrently") from exc
            return assignment

        result = self.db.execute(
            update(TeamFormAssignment)
            .where(
                TeamFormAssignment.team_id == team_id,
                TeamFormAssignment.form_kind == form_kind,
                TeamFormAssignment.revision == expected_revision,
            )
            .values(
                configuration_id=configuration_id,
                revision=expected_revision + 1,
                updated_by=actor,
                updated_at=utcnow(),
            )
        )
        if result.rowcount != 1:
            raise ActivationConflict(
                f"{team_id}/{form_kind} moved past revision {expected_revision} before activation"
            )
        assignment = self.assignment(team_id, form_kind)
        self.db.refresh(assignment)
        return assignment

    def deactivate(self, configuration_id: UUID) -> FormConfigurationRow:
        row = self.db.get(FormConfigurationRow, configuration_id)
        if row is None:
            raise ConfigurationVersionUnavailable(configuration_id)
        row.active = False
        self.db.flush()
        return row

    def set_team_specialty(self, team_id: str, specialty: str | None) -> TeamProfile:
        profile = self.db.get(TeamProfile, team_id)
        if profile is None:
            profile = TeamProfile(team_id=team_id, specialty=specialty)
            self.db.add(profile)
        else:
            profile.specialty = specialty
        self.db.flush()
        return profile
