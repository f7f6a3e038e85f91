"""
Persistence model for form configurations and answer records.

- Configuration versions are immutable rows; a team's current version is a
  separate assignment row carrying a revision counter for compare-and-set.
- Answer values and the legacy bag are PHI and are stored encrypted; the
  pinned configuration id and version are stored in the clear.
- Soft-deleted records keep their data until retention_until has passed.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)

from clinical_forms.models.database import Base, JSONDocument

# Owner scope of system and specialty defaults, which have no owning team.
DEFAULT_SCOPE = "*"


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# ---------------------------------------------------------------------------
# Configuration versions
# ---------------------------------------------------------------------------
class FormConfigurationRow(Base):
    __tablename__ = "form_configurations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_team_id = Column(String(64), nullable=True, comment="NULL for system and specialty defaults")
    owner_scope = Column(String(64), nullable=False, comment="owner_team_id, or '*' for defaults")
    form_kind = Column(String(64), nullable=False)
    version = Column(Integer, nullable=False)
    specialty = Column(String(64), nullable=True)
    document = Column(JSONDocument, nullable=False, comment="Certified configuration document")
    active = Column(Boolean, default=True, nullable=False)
    created_by = Column(String(128), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("owner_scope", "form_kind", "version", name="uq_configuration_version"),
        Index("ix_configuration_defaults", "owner_scope", "form_kind", "specialty"),
    )


# ---------------------------------------------------------------------------
# Team assignment – which version a team currently uses per form kind
# ---------------------------------------------------------------------------
class TeamFormAssignment(Base):
    __tablename__ = "team_form_assignments"

    team_id = Column(String(64), primary_key=True)
    form_kind = Column(String(64), primary_key=True)
    configuration_id = Column(Uuid, ForeignKey("form_configurations.id"), nullable=False)
    revision = Column(Integer, nullable=False, default=1, comment="Bumped on every activation")
    updated_by = Column(String(128), nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


class TeamProfile(Base):
    __tablename__ = "team_profiles"

    team_id = Column(String(64), primary_key=True)
    specialty = Column(String(64), nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


# ---------------------------------------------------------------------------
# Answer records (contain PHI)
# ---------------------------------------------------------------------------
class AnswerRecordRow(Base):
    __tablename__ = "answer_records"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    subject_id = Column(String(128), nullable=False, comment="Patient the answers are about")
    team_id = Column(String(64), nullable=False)
    form_kind = Column(String(64), nullable=False)
    configuration_id = Column(Uuid, ForeignKey("form_configurations.id"), nullable=False)
    configuration_version = Column(Integer, nullable=False)
    encrypted_values = Column(Text, nullable=False, comment="Fernet-encrypted canonical values")
    encrypted_legacy_bag = Column(Text, nullable=True, comment="Fernet-encrypted pre-migration bag")

    submitted_by = Column(String(128), nullable=False)
    submitted_at = Column(DateTime, default=utcnow, nullable=False)
    recorded_at = Column(DateTime, default=utcnow, nullable=False, comment="When the assessment took place")
    updated_by = Column(String(128), nullable=True)
    updated_at = Column(DateTime, nullable=True)

    deleted_at = Column(DateTime, nullable=True)
    deleted_by = Column(String(128), nullable=True)
    deletion_reason = Column(Text, nullable=True)
    retention_until = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_answers_team_subject", "team_id", "subject_id"),
        Index("ix_answers_recorded_at", "recorded_at"),
        Index("ix_answers_deleted_at", "deleted_at"),
    )


# ---------------------------------------------------------------------------
# Audit Log – immutable compliance trail
# ---------------------------------------------------------------------------
class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    actor = Column(String(128), nullable=False, comment="User or service identity")
    action = Column(String(64), nullable=False, comment="create | activate | update | delete | ...")
    resource_type = Column(String(64), nullable=False)
    resource_id = Column(String(64), nullable=False)
    detail = Column(JSONDocument, comment="Context for the action")
    timestamp = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("ix_audit_timestamp", "timestamp"),)
