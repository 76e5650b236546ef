"""Audit log store: append, query, verify and aggregate audit records."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import func, or_, select
from sqlmodel import col

from audit_engine.exceptions import NotFoundError, ValidationError
from audit_engine.models.audit import AuditRecord
from audit_engine.models.base import now_utc
from audit_engine.models.enums import AuditAction
from audit_engine.models.version import EntityVersion
from audit_engine.schemas.audit import (
    AuditFilters,
    AuditHealthResponse,
    AuditRecordListResponse,
    AuditRecordResponse,
    AuditStatisticsResponse,
    BulkVerifyResponse,
    BulkVerifySummary,
    CountBucket,
    RecentActivity,
    UserActivityResponse,
    VerificationResult,
)
from audit_engine.services.canonical import normalize, normalize_snapshot

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from audit_engine.services.integrity import IntegrityHasher

logger = logging.getLogger(__name__)

_MAX_IP_LENGTH = 64
_MAX_USER_AGENT_LENGTH = 512
_RECENT_ACTIVITY_LIMIT = 10

# Snapshots each action must carry: (needs old_values, needs new_values)
_REQUIRED_SNAPSHOTS: dict[AuditAction, tuple[bool, bool]] = {
    AuditAction.CREATE: (False, True),
    AuditAction.UPLOAD: (False, True),
    AuditAction.UPDATE: (True, True),
    AuditAction.ROLLBACK: (True, True),
    AuditAction.DELETE: (True, False),
    AuditAction.VIEW: (False, False),
}


def build_audit_response(record: AuditRecord) -> AuditRecordResponse:
    return AuditRecordResponse(
        id=record.id,
        entity_type=record.entity_type,
        entity_id=record.entity_id,
        action=AuditAction(record.action),
        actor_id=record.actor_id,
        old_values=record.old_values,
        new_values=record.new_values,
        metadata=record.metadata_json or {},
        integrity_digest=record.integrity_digest,
        ip_address=record.ip_address,
        user_agent=record.user_agent,
        timestamp=record.timestamp,
    )


def _build_recent(record: AuditRecord) -> RecentActivity:
    return RecentActivity(
        id=record.id,
        entity_type=record.entity_type,
        entity_id=record.entity_id,
        action=AuditAction(record.action),
        actor_id=record.actor_id,
        timestamp=record.timestamp,
    )


def _clean_optional(value: Any, max_length: int) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    return value[:max_length]


def _coerce_action(action: AuditAction | str | None) -> AuditAction:
    if action is None or action == "":
        raise ValidationError("action is required")
    try:
        return AuditAction(action)
    except ValueError:
        raise ValidationError(f"Unknown audit action: {action}") from None


# ---------------------------------------------------------------------------
# Write
# ---------------------------------------------------------------------------


async def append_audit_record(
    session: AsyncSession,
    hasher: IntegrityHasher,
    *,
    entity_type: str | None,
    entity_id: str | None,
    action: AuditAction | str | None,
    actor_id: str | None = None,
    old_values: Mapping[str, Any] | None = None,
    new_values: Mapping[str, Any] | None = None,
    metadata: Mapping[str, Any] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditRecord:
    """Validate, digest and persist an immutable audit record.

    Structural fields (entity type, entity id, action, and the snapshots the
    action requires) raise ``ValidationError``. Optional context that is
    missing or malformed is nulled instead.
    """
    record = build_audit_record(
        hasher,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        old_values=old_values,
        new_values=new_values,
        metadata=metadata,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    session.add(record)
    await session.commit()
    return record


def build_audit_record(
    hasher: IntegrityHasher,
    *,
    entity_type: str | None,
    entity_id: str | None,
    action: AuditAction | str | None,
    actor_id: str | None = None,
    old_values: Mapping[str, Any] | None = None,
    new_values: Mapping[str, Any] | None = None,
    metadata: Mapping[str, Any] | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditRecord:
    """Validated, digested audit record that is not yet added to a session."""
    if not entity_type:
        raise ValidationError("entity_type is required")
    if entity_id is None or str(entity_id) == "":
        raise ValidationError("entity_id is required")
    audit_action = _coerce_action(action)

    needs_old, needs_new = _REQUIRED_SNAPSHOTS[audit_action]
    if needs_old and old_values is None:
        raise ValidationError(f"{audit_action} requires old_values")
    if needs_new and new_values is None:
        raise ValidationError(f"{audit_action} requires new_values")

    if not isinstance(metadata, Mapping):
        metadata = {}

    record = AuditRecord(
        entity_type=str(entity_type),
        entity_id=str(entity_id),
        action=audit_action.value,
        actor_id=_clean_optional(actor_id, 255),
        old_values=normalize_snapshot(old_values),
        new_values=normalize_snapshot(new_values),
        metadata_json=normalize(metadata),
        ip_address=_clean_optional(ip_address, _MAX_IP_LENGTH),
        user_agent=_clean_optional(user_agent, _MAX_USER_AGENT_LENGTH),
        timestamp=now_utc(),
        integrity_digest="",
    )
    record.integrity_digest = hasher.audit_record_digest(record)
    return record


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


async def get_audit_record(session: AsyncSession, record_id: uuid.UUID) -> AuditRecord:
    """Get a single audit record or raise 404."""
    record = await session.get(AuditRecord, record_id, populate_existing=True)
    if record is None:
        raise NotFoundError("Audit record not found")
    return record


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC)


def _escape_like(term: str) -> str:
    """Make LIKE wildcards in a search term match literally."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _filter_clauses(filters: AuditFilters) -> list[Any]:
    clauses: list[Any] = []
    if filters.entity_types:
        clauses.append(col(AuditRecord.entity_type).in_(filters.entity_types))
    if filters.entity_id:
        clauses.append(col(AuditRecord.entity_id) == filters.entity_id)
    if filters.actions:
        clauses.append(col(AuditRecord.action).in_([a.value for a in filters.actions]))
    if filters.actor_id:
        clauses.append(col(AuditRecord.actor_id) == filters.actor_id)
    if filters.start_date is not None:
        clauses.append(col(AuditRecord.timestamp) >= _as_utc(filters.start_date))
    if filters.end_date is not None:
        clauses.append(col(AuditRecord.timestamp) <= _as_utc(filters.end_date))
    if filters.search:
        pattern = f"%{_escape_like(filters.search)}%"
        clauses.append(
            or_(
                sa.cast(col(AuditRecord.old_values), sa.Text).ilike(pattern, escape="\\"),
                sa.cast(col(AuditRecord.new_values), sa.Text).ilike(pattern, escape="\\"),
                sa.cast(col(AuditRecord.metadata_json), sa.Text).ilike(pattern, escape="\\"),
            )
        )
    return clauses


async def query_audit_records(
    session: AsyncSession,
    filters: AuditFilters,
    offset: int = 0,
    limit: int = 50,
) -> AuditRecordListResponse:
    """List audit records matching ``filters``, newest first."""
    clauses = _filter_clauses(filters)

    count_result = await session.execute(select(func.count()).select_from(AuditRecord).where(*clauses))
    total = count_result.scalar_one()

    result = await session.execute(
        select(AuditRecord)
        .where(*clauses)
        .order_by(col(AuditRecord.timestamp).desc(), col(AuditRecord.id))
        .offset(offset)
        .limit(limit)
    )
    records = list(result.scalars().all())

    return AuditRecordListResponse(
        items=[build_audit_response(r) for r in records],
        total=total,
    )


async def get_audit_trail(
    session: AsyncSession,
    entity_type: str,
    entity_id: str,
    filters: AuditFilters | None = None,
    offset: int = 0,
    limit: int = 50,
) -> AuditRecordListResponse:
    """Audit trail of a single entity."""
    scoped = (filters or AuditFilters()).model_copy(update={"entity_types": [entity_type], "entity_id": entity_id})
    return await query_audit_records(session, scoped, offset, limit)


# ---------------------------------------------------------------------------
# Integrity verification
# ---------------------------------------------------------------------------


def _verify_loaded(hasher: IntegrityHasher, record: AuditRecord) -> VerificationResult:
    expected = hasher.audit_record_digest(record)
    valid = hasher.verify_audit_record(record)
    return VerificationResult(
        record_id=record.id,
        valid=valid,
        reason="Audit record integrity verified"
        if valid
        else "Digest mismatch - audit record may have been tampered with",
        expected_digest=expected,
        actual_digest=record.integrity_digest,
    )


async def verify_audit_record(
    session: AsyncSession,
    hasher: IntegrityHasher,
    record_id: uuid.UUID,
) -> VerificationResult:
    """Recompute one record's digest from what is currently stored."""
    record = await get_audit_record(session, record_id)
    return _verify_loaded(hasher, record)


async def verify_audit_records(
    session: AsyncSession,
    hasher: IntegrityHasher,
    *,
    record_ids: list[uuid.UUID] | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    max_records: int = 1000,
) -> BulkVerifyResponse:
    """Verify a bounded set of records selected by id list or date range."""
    truncated = False
    missing_ids: list[uuid.UUID] = []

    if record_ids is not None:
        unique_ids = list(dict.fromkeys(record_ids))
        if len(unique_ids) > max_records:
            raise ValidationError(f"At most {max_records} records can be verified per call")
        result = await session.execute(
            select(AuditRecord)
            .where(col(AuditRecord.id).in_(unique_ids))
            .execution_options(populate_existing=True)
        )
        found = {r.id: r for r in result.scalars().all()}
        records = [found[i] for i in unique_ids if i in found]
        missing_ids = [i for i in unique_ids if i not in found]
    elif start_date is not None or end_date is not None:
        clauses = _filter_clauses(AuditFilters(start_date=start_date, end_date=end_date))
        result = await session.execute(
            select(AuditRecord)
            .where(*clauses)
            .order_by(col(AuditRecord.timestamp).desc())
            .limit(max_records + 1)
            .execution_options(populate_existing=True)
        )
        records = list(result.scalars().all())
        if len(records) > max_records:
            truncated = True
            records = records[:max_records]
    else:
        raise ValidationError("Either record_ids or a date range must be provided")

    results = [_verify_loaded(hasher, r) for r in records]
    invalid_ids = [r.record_id for r in results if not r.valid]
    valid_count = len(results) - len(invalid_ids)
    if invalid_ids:
        logger.error("Integrity verification found %d invalid audit records: %s", len(invalid_ids), invalid_ids)

    return BulkVerifyResponse(
        summary=BulkVerifySummary(
            total_checked=len(results),
            valid=valid_count,
            invalid=len(invalid_ids),
            integrity_score=round(valid_count / len(results) * 100, 2) if results else 0.0,
            truncated=truncated,
        ),
        invalid_ids=invalid_ids,
        missing_ids=missing_ids,
        results=results,
    )


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------


async def _group_counts(session: AsyncSession, column: Any, clauses: list[Any]) -> list[CountBucket]:
    result = await session.execute(
        select(column, func.count()).where(*clauses).group_by(column).order_by(func.count().desc(), column)
    )
    return [CountBucket(key=key, count=count) for key, count in result.all()]


async def _recent(session: AsyncSession, clauses: list[Any], limit: int) -> list[RecentActivity]:
    result = await session.execute(
        select(AuditRecord).where(*clauses).order_by(col(AuditRecord.timestamp).desc()).limit(limit)
    )
    return [_build_recent(r) for r in result.scalars().all()]


async def get_audit_statistics(session: AsyncSession, filters: AuditFilters) -> AuditStatisticsResponse:
    """Counts grouped by entity type, action and actor over a time window."""
    clauses = _filter_clauses(filters)

    count_result = await session.execute(select(func.count()).select_from(AuditRecord).where(*clauses))

    return AuditStatisticsResponse(
        total=count_result.scalar_one(),
        start_date=filters.start_date,
        end_date=filters.end_date,
        by_entity_type=await _group_counts(session, col(AuditRecord.entity_type), clauses),
        by_action=await _group_counts(session, col(AuditRecord.action), clauses),
        by_actor=await _group_counts(session, col(AuditRecord.actor_id), clauses),
        recent_activity=await _recent(session, clauses, _RECENT_ACTIVITY_LIMIT),
    )


async def get_user_activity(
    session: AsyncSession,
    user_id: str,
    *,
    entity_type: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = 50,
) -> UserActivityResponse:
    """What a single actor has done, with an action breakdown."""
    filters = AuditFilters(
        actor_id=user_id,
        entity_types=[entity_type] if entity_type else None,
        start_date=start_date,
        end_date=end_date,
    )
    clauses = _filter_clauses(filters)
    count_result = await session.execute(select(func.count()).select_from(AuditRecord).where(*clauses))

    return UserActivityResponse(
        user_id=user_id,
        total_activities=count_result.scalar_one(),
        action_breakdown=await _group_counts(session, col(AuditRecord.action), clauses),
        recent_activity=await _recent(session, clauses, limit),
        start_date=start_date,
        end_date=end_date,
    )


async def get_audit_health(session: AsyncSession) -> AuditHealthResponse:
    """Volume of both stores and the time of the latest audit record."""
    audit_total = (await session.execute(select(func.count()).select_from(AuditRecord))).scalar_one()
    version_total = (await session.execute(select(func.count()).select_from(EntityVersion))).scalar_one()
    last_activity = (await session.execute(select(func.max(col(AuditRecord.timestamp))))).scalar_one_or_none()

    return AuditHealthResponse(
        status="healthy",
        total_audit_records=audit_total,
        total_versions=version_total,
        last_activity=last_activity,
    )
