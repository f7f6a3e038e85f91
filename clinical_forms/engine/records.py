"""Decrypted, storage-independent view of one stored form submission."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID


@dataclass
class AnswerRecord:
    id: UUID | None
    subject_id: str
    team_id: str
    form_kind: str
    configuration_id: UUID
    configuration_version: int
    values: dict[str, Any] = field(default_factory=dict)
    # Catch-all JSON written by the previous storage layout; read-only here.
    legacy_bag: dict[str, Any] | None = None
    submitted_by: str | None = None
    submitted_at: datetime | None = None
    recorded_at: datetime | None = None
    updated_by: str | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None
    deleted_by: str | None = None
    deletion_reason: str | None = None
    retention_until: datetime | None = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None
