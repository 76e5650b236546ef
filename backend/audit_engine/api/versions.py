# ruff: noqa: B008, TC001, TC003
from __future__ import annotations

import uuid

from fastapi import APIRouter, Query

from audit_engine.api.deps import AdminDep, AuthDep, ComponentsDep, RequestContextDep
from audit_engine.db import SessionDep
from audit_engine.schemas.version import (
    EntityVersionListResponse,
    EntityVersionResponse,
    RollbackRequest,
    RollbackResponse,
    VersionDiffResponse,
    VersionVerificationResponse,
)
from audit_engine.services import rollback as rollback_service
from audit_engine.services import versions as version_service

versions_router = APIRouter(prefix="/audit", tags=["versions"])


@versions_router.get("/versions/{version_id}", response_model=EntityVersionResponse)
async def get_version(
    version_id: uuid.UUID,
    session: SessionDep,
    auth: AuthDep,
) -> EntityVersionResponse:
    """Get a single version including its snapshot."""
    version = await version_service.get_entity_version(session, version_id)
    return version_service.build_version_response(version)


@versions_router.get("/verify/version/{version_id}", response_model=VersionVerificationResponse)
async def verify_version(
    version_id: uuid.UUID,
    session: SessionDep,
    auth: AdminDep,
    components: ComponentsDep,
) -> VersionVerificationResponse:
    """Recompute a version's integrity digest (admin only)."""
    return await version_service.verify_entity_version(session, components.hasher, version_id)


@versions_router.get("/versions/{version_id}/compare/{other_version_id}", response_model=VersionDiffResponse)
async def compare_versions(
    version_id: uuid.UUID,
    other_version_id: uuid.UUID,
    session: SessionDep,
    auth: AuthDep,
) -> VersionDiffResponse:
    """Field-level diff between two versions of the same entity."""
    return await version_service.compare_versions(session, version_id, other_version_id)


@versions_router.get("/versions/{entity_type}/{entity_id}", response_model=EntityVersionListResponse)
async def get_version_history(
    entity_type: str,
    entity_id: str,
    session: SessionDep,
    auth: AuthDep,
    include_snapshot: bool = Query(default=False),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
) -> EntityVersionListResponse:
    """Version history of an entity, newest first. Snapshots are omitted unless requested."""
    return await version_service.get_version_history(
        session, entity_type, entity_id, offset, limit, include_snapshot=include_snapshot
    )


@versions_router.post("/rollback/{version_id}", response_model=RollbackResponse)
async def rollback_to_version(
    version_id: uuid.UUID,
    session: SessionDep,
    auth: AdminDep,
    components: ComponentsDep,
    context: RequestContextDep,
    payload: RollbackRequest | None = None,
) -> RollbackResponse:
    """Record a rollback to a stored version (admin only).

    The returned snapshot is what the owning service applies to the live entity.
    """
    return await rollback_service.rollback_to_version(
        session,
        components.recorder,
        version_id,
        actor_id=auth.user_id,
        reason=payload.reason if payload else None,
        request_context=context,
    )
