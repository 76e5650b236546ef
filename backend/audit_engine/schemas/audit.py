# ruff: noqa: TC001, TC003
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Self

from pydantic import BaseModel, Field, model_validator

from audit_engine.models.enums import AuditAction

# ---------------------------------------------------------------------------
# Audit record responses
# ---------------------------------------------------------------------------


class AuditRecordResponse(BaseModel):
    """A single audit log entry."""

    id: uuid.UUID
    entity_type: str
    entity_id: str
    action: AuditAction
    actor_id: str | None
    old_values: dict[str, Any] | None
    new_values: dict[str, Any] | None
    metadata: dict[str, Any]
    integrity_digest: str
    ip_address: str | None
    user_agent: str | None
    timestamp: datetime


class AuditRecordListResponse(BaseModel):
    """Paginated audit log entries, newest first."""

    items: list[AuditRecordResponse]
    total: int


class AuditFilters(BaseModel):
    """Structured filters shared by trail, search and statistics queries."""

    entity_types: list[str] | None = None
    entity_id: str | None = None
    actions: list[AuditAction] | None = None
    actor_id: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    search: str | None = None


# ---------------------------------------------------------------------------
# Manual entries
# ---------------------------------------------------------------------------


class ManualAuditRequest(BaseModel):
    """Request body for an admin-created audit entry."""

    entity_type: str = Field(min_length=1, max_length=50)
    entity_id: str = Field(min_length=1, max_length=255)
    action: AuditAction
    old_values: dict[str, Any] | None = None
    new_values: dict[str, Any] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    reason: str | None = Field(default=None, max_length=1000)


# ---------------------------------------------------------------------------
# Integrity verification
# ---------------------------------------------------------------------------


class VerificationResult(BaseModel):
    """Outcome of recomputing one record's digest."""

    record_id: uuid.UUID
    valid: bool
    reason: str
    expected_digest: str
    actual_digest: str | None


class BulkVerifyRequest(BaseModel):
    """Either an explicit id list or a date range."""

    record_ids: list[uuid.UUID] | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None

    @model_validator(mode="after")
    def _validate_dates(self) -> Self:
        if self.start_date and self.end_date and self.end_date < self.start_date:
            msg = "end_date must not be before start_date"
            raise ValueError(msg)
        return self


class BulkVerifySummary(BaseModel):
    """Counts for a bulk verification run."""

    total_checked: int
    valid: int
    invalid: int
    integrity_score: float
    truncated: bool = False


class BulkVerifyResponse(BaseModel):
    """Bulk verification report."""

    summary: BulkVerifySummary
    invalid_ids: list[uuid.UUID]
    missing_ids: list[uuid.UUID]
    results: list[VerificationResult]


# ---------------------------------------------------------------------------
# Statistics and activity
# ---------------------------------------------------------------------------


class CountBucket(BaseModel):
    """A group key and its record count."""

    key: str | None
    count: int


class RecentActivity(BaseModel):
    """Compact audit entry for activity feeds."""

    id: uuid.UUID
    entity_type: str
    entity_id: str
    action: AuditAction
    actor_id: str | None
    timestamp: datetime


class AuditStatisticsResponse(BaseModel):
    """Aggregate audit counts over a time window."""

    total: int
    start_date: datetime | None
    end_date: datetime | None
    by_entity_type: list[CountBucket]
    by_action: list[CountBucket]
    by_actor: list[CountBucket]
    recent_activity: list[RecentActivity]


class UserActivityResponse(BaseModel):
    """Activity summary for a single actor."""

    user_id: str
    total_activities: int
    action_breakdown: list[CountBucket]
    recent_activity: list[RecentActivity]
    start_date: datetime | None
    end_date: datetime | None


class AuditHealthResponse(BaseModel):
    """Audit subsystem health and volume."""

    status: str
    total_audit_records: int
    total_versions: int
    last_activity: datetime | None
