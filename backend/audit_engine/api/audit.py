# ruff: noqa: B008, TC001, TC003
from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, Query, status

from audit_engine.api.deps import AdminDep, AuthDep, ComponentsDep, RequestContextDep
from audit_engine.config import get_settings
from audit_engine.db import SessionDep
from audit_engine.exceptions import AppError
from audit_engine.models.enums import AuditAction
from audit_engine.schemas.audit import (
    AuditFilters,
    AuditHealthResponse,
    AuditRecordListResponse,
    AuditRecordResponse,
    AuditStatisticsResponse,
    BulkVerifyRequest,
    BulkVerifyResponse,
    ManualAuditRequest,
    UserActivityResponse,
    VerificationResult,
)
from audit_engine.services import audit as audit_service
from audit_engine.services.recorder import RecordOptions

audit_router = APIRouter(prefix="/audit", tags=["audit"])


@audit_router.get("/trail/{entity_type}/{entity_id}", response_model=AuditRecordListResponse)
async def get_audit_trail(
    entity_type: str,
    entity_id: str,
    session: SessionDep,
    auth: AuthDep,
    actions: list[AuditAction] | None = Query(default=None),
    actor_id: str | None = Query(default=None),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
) -> AuditRecordListResponse:
    """Audit trail of one entity, newest first."""
    filters = AuditFilters(actions=actions, actor_id=actor_id, start_date=start_date, end_date=end_date)
    return await audit_service.get_audit_trail(session, entity_type, entity_id, filters, offset, limit)


@audit_router.get("/search", response_model=AuditRecordListResponse)
async def search_audit_records(
    session: SessionDep,
    auth: AdminDep,
    search: str | None = Query(default=None, max_length=255),
    entity_type: list[str] | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    actions: list[AuditAction] | None = Query(default=None),
    actor_id: str | None = Query(default=None),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
) -> AuditRecordListResponse:
    """Free-text and structured search across all entity types (admin only)."""
    filters = AuditFilters(
        entity_types=entity_type,
        entity_id=entity_id,
        actions=actions,
        actor_id=actor_id,
        start_date=start_date,
        end_date=end_date,
        search=search,
    )
    return await audit_service.query_audit_records(session, filters, offset, limit)


@audit_router.get("/statistics", response_model=AuditStatisticsResponse)
async def get_audit_statistics(
    session: SessionDep,
    auth: AdminDep,
    entity_type: list[str] | None = Query(default=None),
    actions: list[AuditAction] | None = Query(default=None),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
) -> AuditStatisticsResponse:
    """Aggregate audit counts (admin only)."""
    filters = AuditFilters(entity_types=entity_type, actions=actions, start_date=start_date, end_date=end_date)
    return await audit_service.get_audit_statistics(session, filters)


@audit_router.get("/verify/{record_id}", response_model=VerificationResult)
async def verify_audit_record(
    record_id: uuid.UUID,
    session: SessionDep,
    auth: AdminDep,
    components: ComponentsDep,
) -> VerificationResult:
    """Recompute one record's integrity digest (admin only)."""
    return await audit_service.verify_audit_record(session, components.hasher, record_id)


@audit_router.post("/verify/bulk", response_model=BulkVerifyResponse)
async def verify_audit_records(
    payload: BulkVerifyRequest,
    session: SessionDep,
    auth: AdminDep,
    components: ComponentsDep,
) -> BulkVerifyResponse:
    """Verify records by id list or date range, bounded per call (admin only)."""
    return await audit_service.verify_audit_records(
        session,
        components.hasher,
        record_ids=payload.record_ids,
        start_date=payload.start_date,
        end_date=payload.end_date,
        max_records=get_settings().verify_max_records,
    )


@audit_router.post("/log", response_model=AuditRecordResponse, status_code=status.HTTP_201_CREATED)
async def create_manual_audit_record(
    payload: ManualAuditRequest,
    session: SessionDep,
    auth: AdminDep,
    components: ComponentsDep,
    context: RequestContextDep,
) -> AuditRecordResponse:
    """Create an audit entry outside the normal trigger path (admin only)."""
    result = await components.recorder.record_now(
        session,
        payload.entity_type,
        payload.entity_id,
        payload.action,
        old_values=payload.old_values,
        new_values=payload.new_values,
        actor_id=auth.user_id,
        request_context=context,
        options=RecordOptions(
            track_versions=False,
            metadata={**payload.metadata, "manual": True, "reason": payload.reason},
        ),
    )
    return audit_service.build_audit_response(result.audit_record)


@audit_router.get("/users/{user_id}/activity", response_model=UserActivityResponse)
async def get_user_activity(
    user_id: str,
    session: SessionDep,
    auth: AuthDep,
    entity_type: str | None = Query(default=None),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
) -> UserActivityResponse:
    """Activity summary for a user (the user themselves or an admin)."""
    if not auth.is_admin and auth.user_id != user_id:
        raise AppError("Access denied", status_code=status.HTTP_403_FORBIDDEN)
    return await audit_service.get_user_activity(
        session, user_id, entity_type=entity_type, start_date=start_date, end_date=end_date, limit=limit
    )


@audit_router.get("/health", response_model=AuditHealthResponse)
async def get_audit_health(session: SessionDep) -> AuditHealthResponse:
    """Audit subsystem volume and last activity."""
    return await audit_service.get_audit_health(session)
