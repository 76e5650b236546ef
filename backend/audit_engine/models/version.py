# ruff: noqa: TC003
from __future__ import annotations

from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlmodel import Field

from audit_engine.models.base import UUIDBase, now_utc


class EntityVersion(UUIDBase, table=True):
    """Immutable full snapshot of an entity, numbered per (entity_type, entity_id)."""

    __tablename__ = "entity_version"
    __table_args__ = (
        sa.UniqueConstraint("entity_type", "entity_id", "version_number", name="uq_entity_version_number"),
        sa.Index("ix_entity_version_entity", "entity_type", "entity_id"),
    )

    entity_type: str = Field(max_length=50)
    entity_id: str = Field(max_length=255)
    version_number: int
    snapshot: dict[str, Any] = Field(default_factory=dict, sa_type=sa.JSON)
    change_description: str | None = None
    version_digest: str = Field(max_length=64)
    created_at: datetime = Field(
        default_factory=now_utc,
        sa_type=sa.DateTime(timezone=True),  # ty: ignore[invalid-argument-type]
    )
    created_by: str | None = Field(default=None, max_length=255)
