"""Keyed tamper-evidence digests for audit records and entity versions.

Each digest is self-contained: it covers one record only, so records can be
verified individually and pruning old history never invalidates newer ones.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from audit_engine.services.canonical import canonical_bytes

if TYPE_CHECKING:
    from collections.abc import Mapping

    from audit_engine.models.audit import AuditRecord
    from audit_engine.models.version import EntityVersion

_RECORD_SEPARATOR = b"\x1e"
_UNIT_SEPARATOR = b"\x1f"


def format_timestamp(value: datetime) -> str:
    """Render a timestamp in UTC with microsecond precision.

    Naive values are assumed to be UTC (some backends drop the offset on read).
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class IntegrityHasher:
    """HMAC-SHA256 over the canonical form of a record."""

    def __init__(self, secret_key: str | bytes) -> None:
        key = secret_key.encode("utf-8") if isinstance(secret_key, str) else secret_key
        if not key:
            raise ValueError("Integrity secret key must not be empty")
        self._key = key

    def _message(
        self,
        payload: Mapping[str, Any],
        *,
        action: str,
        entity_type: str,
        entity_id: str,
        timestamp: datetime,
    ) -> bytes:
        header = _UNIT_SEPARATOR.join(
            part.encode("utf-8") for part in (str(action), str(entity_type), str(entity_id), format_timestamp(timestamp))
        )
        return canonical_bytes(payload) + _RECORD_SEPARATOR + header

    def digest(
        self,
        payload: Mapping[str, Any],
        *,
        action: str,
        entity_type: str,
        entity_id: str,
        timestamp: datetime,
    ) -> str:
        """Compute the hex digest for a record."""
        message = self._message(
            payload, action=action, entity_type=entity_type, entity_id=entity_id, timestamp=timestamp
        )
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def verify(
        self,
        expected_digest: str | None,
        payload: Mapping[str, Any],
        *,
        action: str,
        entity_type: str,
        entity_id: str,
        timestamp: datetime,
    ) -> bool:
        """Recompute the digest and compare in constant time."""
        if not expected_digest:
            return False
        actual = self.digest(payload, action=action, entity_type=entity_type, entity_id=entity_id, timestamp=timestamp)
        return hmac.compare_digest(actual, expected_digest)

    # -- record kinds ------------------------------------------------------

    def audit_record_digest(self, record: AuditRecord) -> str:
        return self.digest(
            _audit_payload(record),
            action=record.action,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            timestamp=record.timestamp,
        )

    def verify_audit_record(self, record: AuditRecord) -> bool:
        return self.verify(
            record.integrity_digest,
            _audit_payload(record),
            action=record.action,
            entity_type=record.entity_type,
            entity_id=record.entity_id,
            timestamp=record.timestamp,
        )

    def entity_version_digest(self, version: EntityVersion) -> str:
        return self.digest(
            _version_payload(version),
            action="VERSION",
            entity_type=version.entity_type,
            entity_id=version.entity_id,
            timestamp=version.created_at,
        )

    def verify_entity_version(self, version: EntityVersion) -> bool:
        return self.verify(
            version.version_digest,
            _version_payload(version),
            action="VERSION",
            entity_type=version.entity_type,
            entity_id=version.entity_id,
            timestamp=version.created_at,
        )


def _audit_payload(record: AuditRecord) -> dict[str, Any]:
    return {
        "id": str(record.id),
        "actor_id": record.actor_id,
        "old_values": record.old_values,
        "new_values": record.new_values,
        "metadata": record.metadata_json,
        "ip_address": record.ip_address,
        "user_agent": record.user_agent,
    }


def _version_payload(version: EntityVersion) -> dict[str, Any]:
    return {
        "id": str(version.id),
        "version_number": version.version_number,
        "snapshot": version.snapshot,
        "change_description": version.change_description,
        "created_by": version.created_by,
    }
