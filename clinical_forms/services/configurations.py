"""
Configuration administration: new versions, activation, specialty resets,
deactivation and team profiles.

Each operation is one unit of work: it writes its audit entry, commits, and
then drops the affected resolver cache entries.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping
from uuid import UUID

from sqlalchemy.orm import Session

from clinical_forms.engine.config_validator import ConfigurationValidationResult, validate_configuration
from clinical_forms.engine.errors import ConfigurationVersionUnavailable, FormKindUnavailable
from clinical_forms.engine.resolver import ResolutionCache, resolution_cache
from clinical_forms.models.forms import TeamFormAssignment
from clinical_forms.schemas.defaults import BASELINE_FORM_KIND, SPECIALTY_DEFAULTS, specialty_default
from clinical_forms.schemas.form_config import FormConfiguration
from clinical_forms.services.audit import log_action
from clinical_forms.services.store import ConfigurationStore

logger = logging.getLogger(__name__)


class UnknownSpecialty(ValueError):
    def __init__(self, specialty: str):
        self.specialty = specialty
        super().__init__(f"Unknown specialty {specialty!r}; expected one of {', '.join(sorted(SPECIALTY_DEFAULTS))}")


def create_version(
    db: Session,
    *,
    team_id: str,
    document: Mapping[str, Any],
    actor: str,
    activate: bool = False,
    cache: ResolutionCache = resolution_cache,
) -> ConfigurationValidationResult:
    """Certify and store a team-authored document as its next version.

    Returns the validation result; when it carries errors nothing was stored.
    """
    result = validate_configuration(document)
    if not result.ok:
        return result

    store = ConfigurationStore(db)
    configuration = store.create_version(result.configuration, owner_team_id=team_id, created_by=actor)
    log_action(
        db,
        actor=actor,
        action="create",
        resource_type="FormConfiguration",
        resource_id=configuration.id,
        detail={"team_id": team_id, "form_kind": configuration.form_kind, "version": configuration.version},
    )
    if activate:
        _activate(db, store, team_id, configuration, actor, expected_revision=None)
    db.commit()
    if activate:
        cache.invalidate(team_id, configuration.form_kind)
    return ConfigurationValidationResult(configuration=configuration)


def _activate(
    db: Session,
    store: ConfigurationStore,
    team_id: str,
    configuration: FormConfiguration,
    actor: str,
    expected_revision: int | None,
) -> TeamFormAssignment:
    assignment = store.activate(
        team_id,
        configuration.form_kind,
        configuration.id,
        actor=actor,
        expected_revision=expected_revision,
    )
    log_action(
        db,
        actor=actor,
        action="activate",
        resource_type="FormConfiguration",
        resource_id=configuration.id,
        detail={"team_id": team_id, "version": configuration.version, "revision": assignment.revision},
    )
    return assignment


def activate_version(
    db: Session,
    *,
    team_id: str,
    configuration_id: UUID,
    actor: str,
    expected_revision: int | None = None,
    cache: ResolutionCache = resolution_cache,
) -> TeamFormAssignment:
    store = ConfigurationStore(db)
    configuration = store.get(configuration_id)
    if configuration is None:
        raise ConfigurationVersionUnavailable(configuration_id)
    assignment = _activate(db, store, team_id, configuration, actor, expected_revision)
    db.commit()
    cache.invalidate(team_id, configuration.form_kind)
    return assignment


def reset_to_specialty(
    db: Session,
    *,
    team_id: str,
    specialty: str,
    actor: str,
    form_kind: str = BASELINE_FORM_KIND,
    cache: ResolutionCache = resolution_cache,
) -> FormConfiguration:
    """Give the team a fresh version copied from the specialty default and activate it."""
    if specialty not in SPECIALTY_DEFAULTS:
        raise UnknownSpecialty(specialty)

    store = ConfigurationStore(db)
    template = store.latest_default(form_kind, specialty)
    if template is None:
        builtin = specialty_default(specialty, form_kind)
        if builtin is None:
            raise FormKindUnavailable(team_id, form_kind)
        template = store.publish_builtin(builtin, specialty)

    result = validate_configuration(template.document())
    configuration = store.create_version(result.configuration, owner_team_id=team_id, created_by=actor)
    store.set_team_specialty(team_id, specialty)
    log_action(
        db,
        actor=actor,
        action="reset",
        resource_type="FormConfiguration",
        resource_id=configuration.id,
        detail={"team_id": team_id, "specialty": specialty, "from_default": str(template.id)},
    )
    _activate(db, store, team_id, configuration, actor, expected_revision=None)
    db.commit()
    cache.invalidate(team_id)
    logger.info("Team %s reset to %s default (%s v%d)", team_id, specialty, form_kind, configuration.version)
    return configuration


def deactivate_version(
    db: Session,
    *,
    configuration_id: UUID,
    actor: str,
    cache: ResolutionCache = resolution_cache,
) -> None:
    row = ConfigurationStore(db).deactivate(configuration_id)
    log_action(
        db,
        actor=actor,
        action="deactivate",
        resource_type="FormConfiguration",
        resource_id=configuration_id,
        detail={"owner": row.owner_scope, "form_kind": row.form_kind, "version": row.version},
    )
    db.commit()
    cache.invalidate_configuration(configuration_id)


def set_team_specialty(
    db: Session,
    *,
    team_id: str,
    specialty: str | None,
    actor: str,
    cache: ResolutionCache = resolution_cache,
) -> None:
    if specialty is not None and specialty not in SPECIALTY_DEFAULTS:
        raise UnknownSpecialty(specialty)
    ConfigurationStore(db).set_team_specialty(team_id, specialty)
    log_action(
        db,
        actor=actor,
        action="update",
        resource_type="TeamProfile",
        resource_id=team_id,
        detail={"specialty": specialty},
    )
    db.commit()
    cache.invalidate(team_id)
