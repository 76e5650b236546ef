"""Entity version store: numbered snapshots, history, diffs and digest checks."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlmodel import col

from audit_engine.exceptions import ConcurrentVersionConflict, NotFoundError, ValidationError
from audit_engine.models.base import now_utc
from audit_engine.models.version import EntityVersion
from audit_engine.schemas.version import (
    EntityVersionListResponse,
    EntityVersionResponse,
    FieldChange,
    SnapshotDiff,
    VersionDiffResponse,
    VersionRef,
    VersionVerificationResponse,
)
from audit_engine.services.canonical import canonical_equal, normalize_snapshot

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession
    from sqlmodel import SQLModel

    from audit_engine.services.integrity import IntegrityHasher

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
_RETRY_BASE_DELAY_SECONDS = 0.01


def build_version_response(version: EntityVersion, *, include_snapshot: bool = True) -> EntityVersionResponse:
    return EntityVersionResponse(
        id=version.id,
        entity_type=version.entity_type,
        entity_id=version.entity_id,
        version_number=version.version_number,
        change_description=version.change_description,
        version_digest=version.version_digest,
        created_at=version.created_at,
        created_by=version.created_by,
        snapshot=version.snapshot if include_snapshot else None,
    )


def build_version_ref(version: EntityVersion) -> VersionRef:
    return VersionRef(
        id=version.id,
        version_number=version.version_number,
        created_at=version.created_at,
        created_by=version.created_by,
    )


# ---------------------------------------------------------------------------
# Write
# ---------------------------------------------------------------------------


async def _current_max(session: AsyncSession, entity_type: str, entity_id: str) -> int:
    result = await session.execute(
        select(func.max(col(EntityVersion.version_number))).where(
            col(EntityVersion.entity_type) == entity_type,
            col(EntityVersion.entity_id) == entity_id,
        )
    )
    return result.scalar_one_or_none() or 0


async def create_entity_version(
    session: AsyncSession,
    hasher: IntegrityHasher,
    *,
    entity_type: str,
    entity_id: str,
    snapshot: Mapping[str, Any],
    actor_id: str | None = None,
    change_description: str | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    companions: Sequence[SQLModel] = (),
) -> EntityVersion:
    """Append the next numbered version of an entity.

    The number is ``max + 1``. A concurrent writer that commits the same number
    first makes the insert fail on ``uq_entity_version_number``; the max is
    then re-read and the insert retried, up to ``max_attempts`` times.

    ``companions`` are committed in the same transaction as the version, so
    they are persisted only if a version number is allocated.
    """
    if not entity_type or not entity_id:
        raise ValidationError("entity_type and entity_id are required")
    if snapshot is None:
        raise ValidationError("snapshot is required")
    normalized = normalize_snapshot(snapshot) or {}
    actor = actor_id if isinstance(actor_id, str) and actor_id.strip() else None

    for attempt in range(1, max_attempts + 1):
        next_number = await _current_max(session, entity_type, entity_id) + 1
        version = EntityVersion(
            entity_type=entity_type,
            entity_id=entity_id,
            version_number=next_number,
            snapshot=normalized,
            change_description=change_description,
            created_at=now_utc(),
            created_by=actor,
            version_digest="",
        )
        version.version_digest = hasher.entity_version_digest(version)
        session.add(version)
        session.add_all(companions)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            logger.debug(
                "Version %d of %s/%s taken by a concurrent writer (attempt %d/%d)",
                next_number,
                entity_type,
                entity_id,
                attempt,
                max_attempts,
            )
            if attempt < max_attempts:
                await asyncio.sleep(random.uniform(0, _RETRY_BASE_DELAY_SECONDS * attempt))  # noqa: S311
            continue
        return version

    logger.critical(
        "Version allocation for %s/%s failed after %d attempts; entity is under heavy concurrent writes",
        entity_type,
        entity_id,
        max_attempts,
    )
    raise ConcurrentVersionConflict(
        f"Could not allocate a version number for {entity_type}/{entity_id} after {max_attempts} attempts"
    )


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


async def get_entity_version(session: AsyncSession, version_id: uuid.UUID) -> EntityVersion:
    """Get a single version or raise 404."""
    version = await session.get(EntityVersion, version_id, populate_existing=True)
    if version is None:
        raise NotFoundError("Version not found")
    return version


async def get_latest_version(session: AsyncSession, entity_type: str, entity_id: str) -> EntityVersion | None:
    result = await session.execute(
        select(EntityVersion)
        .where(
            col(EntityVersion.entity_type) == entity_type,
            col(EntityVersion.entity_id) == entity_id,
        )
        .order_by(col(EntityVersion.version_number).desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_version_history(
    session: AsyncSession,
    entity_type: str,
    entity_id: str,
    offset: int = 0,
    limit: int = 20,
    *,
    include_snapshot: bool = False,
) -> EntityVersionListResponse:
    """Version history of an entity, newest first."""
    base_filter = [
        col(EntityVersion.entity_type) == entity_type,
        col(EntityVersion.entity_id) == entity_id,
    ]

    count_result = await session.execute(select(func.count()).select_from(EntityVersion).where(*base_filter))
    total = count_result.scalar_one()

    result = await session.execute(
        select(EntityVersion)
        .where(*base_filter)
        .order_by(col(EntityVersion.version_number).desc())
        .offset(offset)
        .limit(limit)
    )
    versions = list(result.scalars().all())

    return EntityVersionListResponse(
        items=[build_version_response(v, include_snapshot=include_snapshot) for v in versions],
        total=total,
    )


# ---------------------------------------------------------------------------
# Diff
# ---------------------------------------------------------------------------


def _diff_into(diff: SnapshotDiff, old: Mapping[str, Any], new: Mapping[str, Any], prefix: str) -> None:
    for key in sorted(set(old) | set(new)):
        path = f"{prefix}.{key}" if prefix else key
        if key not in new:
            diff.removed[path] = old[key]
            continue
        if key not in old:
            diff.added[path] = new[key]
            continue

        before, after = old[key], new[key]
        if isinstance(before, Mapping) and isinstance(after, Mapping):
            _diff_into(diff, before, after, path)
        elif not canonical_equal(before, after):
            change = FieldChange(old=before, new=after)
            if isinstance(before, list):
                change.old_length = len(before)
            if isinstance(after, list):
                change.new_length = len(after)
            diff.changed[path] = change


def diff_snapshots(old: Mapping[str, Any] | None, new: Mapping[str, Any] | None) -> SnapshotDiff:
    """Structural diff of two snapshots.

    Nested mappings are recursed into and reported by dotted path. Lists are
    compared as whole values; there is no positional or keyed list diffing.
    """
    diff = SnapshotDiff()
    _diff_into(diff, normalize_snapshot(old) or {}, normalize_snapshot(new) or {}, "")
    return diff


async def compare_versions(
    session: AsyncSession,
    from_version_id: uuid.UUID,
    to_version_id: uuid.UUID,
) -> VersionDiffResponse:
    """Diff two versions of the same entity."""
    from_version = await get_entity_version(session, from_version_id)
    to_version = await get_entity_version(session, to_version_id)

    if (from_version.entity_type, from_version.entity_id) != (to_version.entity_type, to_version.entity_id):
        raise ValidationError("Versions must belong to the same entity")

    diff = diff_snapshots(from_version.snapshot, to_version.snapshot)
    fields_changed = sorted({*diff.added, *diff.removed, *diff.changed})

    return VersionDiffResponse(
        entity_type=from_version.entity_type,
        entity_id=from_version.entity_id,
        from_version=build_version_ref(from_version),
        to_version=build_version_ref(to_version),
        diff=diff,
        total_changes=len(fields_changed),
        fields_changed=fields_changed,
    )


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------


async def verify_entity_version(
    session: AsyncSession,
    hasher: IntegrityHasher,
    version_id: uuid.UUID,
) -> VersionVerificationResponse:
    """Recompute a version's digest from what is currently stored."""
    version = await get_entity_version(session, version_id)
    valid = hasher.verify_entity_version(version)
    return VersionVerificationResponse(
        version_id=version.id,
        valid=valid,
        reason="Version integrity verified" if valid else "Digest mismatch - version may have been tampered with",
    )
