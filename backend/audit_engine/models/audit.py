# ruff: noqa: TC003
from __future__ import annotations

from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlmodel import Field

from audit_engine.models.base import UUIDBase, now_utc


class AuditRecord(UUIDBase, table=True):
    """Immutable record of one mutation to one business entity."""

    __tablename__ = "audit_log"
    __table_args__ = (sa.Index("ix_audit_entity", "entity_type", "entity_id"),)

    entity_type: str = Field(max_length=50, index=True)
    entity_id: str = Field(max_length=255)
    action: str = Field(max_length=50, index=True)
    # Weak reference: no foreign key, survives deletion of the user.
    actor_id: str | None = Field(default=None, max_length=255, index=True)
    old_values: dict[str, Any] | None = Field(default=None, sa_type=sa.JSON)
    new_values: dict[str, Any] | None = Field(default=None, sa_type=sa.JSON)
    metadata_json: dict[str, Any] = Field(default_factory=dict, sa_type=sa.JSON)
    integrity_digest: str = Field(max_length=64)
    ip_address: str | None = Field(default=None, max_length=64)
    user_agent: str | None = Field(default=None, max_length=512)
    timestamp: datetime = Field(
        default_factory=now_utc,
        index=True,
        sa_type=sa.DateTime(timezone=True),  # ty: ignore[invalid-argument-type]
    )
