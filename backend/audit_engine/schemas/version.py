# ruff: noqa: TC001, TC003
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from audit_engine.schemas.audit import AuditRecordResponse

# ---------------------------------------------------------------------------
# Version responses
# ---------------------------------------------------------------------------


class EntityVersionResponse(BaseModel):
    """A stored entity version. ``snapshot`` is omitted from history listings by default."""

    id: uuid.UUID
    entity_type: str
    entity_id: str
    version_number: int
    change_description: str | None
    version_digest: str
    created_at: datetime
    created_by: str | None
    snapshot: dict[str, Any] | None = None


class EntityVersionListResponse(BaseModel):
    """Paginated version history, newest first."""

    items: list[EntityVersionResponse]
    total: int


# ---------------------------------------------------------------------------
# Diff
# ---------------------------------------------------------------------------


class FieldChange(BaseModel):
    """Old and new value of a changed field.

    List values are compared whole; their lengths are reported alongside.
    """

    old: Any = None
    new: Any = None
    old_length: int | None = None
    new_length: int | None = None


class SnapshotDiff(BaseModel):
    """Field-level diff keyed by dotted path."""

    added: dict[str, Any] = Field(default_factory=dict)
    removed: dict[str, Any] = Field(default_factory=dict)
    changed: dict[str, FieldChange] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changed)


class VersionRef(BaseModel):
    """Identity of one side of a comparison."""

    id: uuid.UUID
    version_number: int
    created_at: datetime
    created_by: str | None


class VersionDiffResponse(BaseModel):
    """Comparison of two versions of the same entity."""

    entity_type: str
    entity_id: str
    from_version: VersionRef
    to_version: VersionRef
    diff: SnapshotDiff
    total_changes: int
    fields_changed: list[str]


class VersionVerificationResponse(BaseModel):
    """Outcome of recomputing a version digest."""

    version_id: uuid.UUID
    valid: bool
    reason: str


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------


class RollbackRequest(BaseModel):
    """Request body for rolling an entity back to a stored version."""

    reason: str | None = Field(default=None, max_length=1000)


class RollbackResponse(BaseModel):
    """New version and audit record produced by a rollback.

    ``snapshot`` is the state the business layer should apply to the live entity.
    """

    rolled_back_to: VersionRef
    version: EntityVersionResponse
    audit_record: AuditRecordResponse
    snapshot: dict[str, Any]
    message: str
