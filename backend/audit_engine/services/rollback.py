from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from audit_engine.exceptions import AppError
from audit_engine.models.enums import AuditAction
from audit_engine.schemas.version import RollbackResponse
from audit_engine.services.audit import build_audit_response
from audit_engine.services.recorder import RecordOptions
from audit_engine.services.versions import (
    build_version_ref,
    build_version_response,
    get_entity_version,
    get_latest_version,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession

    from audit_engine.services.recorder import AuditRecorder, RequestContext

logger = logging.getLogger(__name__)


async def load_current_state(
    session: AsyncSession,
    recorder: AuditRecorder,
    entity_type: str,
    entity_id: str,
) -> dict[str, Any]:
    """Live state of an entity: from its registered loader, else its latest version."""
    loader = recorder.registry.get(entity_type).loader
    if loader is not None:
        current = await loader(entity_type, entity_id)
        if current is not None:
            return dict(current)
        logger.warning("Loader returned no live state for %s/%s", entity_type, entity_id)

    latest = await get_latest_version(session, entity_type, entity_id)
    return dict(latest.snapshot) if latest is not None else {}


async def rollback_to_version(
    session: AsyncSession,
    recorder: AuditRecorder,
    version_id: uuid.UUID,
    *,
    actor_id: str | None,
    reason: str | None = None,
    request_context: RequestContext | None = None,
) -> RollbackResponse:
    """Record a rollback of an entity to a stored version.

    Produces a ROLLBACK audit record and a new version carrying the target
    snapshot. The live entity is not touched: the returned snapshot is for the
    business layer to apply.
    """
    target = await get_entity_version(session, version_id)
    # record_now may roll the session back on a version retry, expiring `target`.
    rolled_back_to = build_version_ref(target)
    entity_type, entity_id = target.entity_type, target.entity_id
    target_snapshot = dict(target.snapshot)
    current = await load_current_state(session, recorder, entity_type, entity_id)

    description = f"Rollback to version {rolled_back_to.version_number}"
    if reason:
        description = f"{description}: {reason}"

    result = await recorder.record_now(
        session,
        entity_type,
        entity_id,
        AuditAction.ROLLBACK,
        old_values=current,
        new_values=target_snapshot,
        actor_id=actor_id,
        request_context=request_context,
        options=RecordOptions(
            track_versions=True,
            change_description=description,
            metadata={
                "rollback_to_version_id": str(rolled_back_to.id),
                "rollback_to_version_number": rolled_back_to.version_number,
                "reason": reason,
            },
        ),
    )
    if result.version is None:
        raise AppError("Rollback did not produce a version")

    logger.info(
        "Rolled back %s/%s to version %d as version %d",
        entity_type,
        entity_id,
        rolled_back_to.version_number,
        result.version.version_number,
    )

    return RollbackResponse(
        rolled_back_to=rolled_back_to,
        version=build_version_response(result.version),
        audit_record=build_audit_response(result.audit_record),
        snapshot=result.version.snapshot,
        message=f"Rolled back to version {rolled_back_to.version_number}",
    )
