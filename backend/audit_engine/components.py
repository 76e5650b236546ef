from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from audit_engine.config import DEV_INTEGRITY_KEY
from audit_engine.services.integrity import IntegrityHasher
from audit_engine.services.recorder import AuditRecorder
from audit_engine.services.registry import EntityRegistry, build_default_registry

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from audit_engine.config import Settings

logger = logging.getLogger(__name__)


@dataclass
class AuditComponents:
    """Process-wide collaborators, built once at startup."""

    hasher: IntegrityHasher
    registry: EntityRegistry
    recorder: AuditRecorder


def load_integrity_key(settings: Settings) -> str:
    """Read the digest key from settings, refusing the development key in production."""
    key = settings.integrity_secret_key.get_secret_value()
    if key == DEV_INTEGRITY_KEY:
        if settings.environment == "production":
            raise RuntimeError("INTEGRITY_SECRET_KEY must be set in production")
        logger.warning("Using the development integrity key; audit digests are not tamper-proof")
    return key


def build_components(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    registry: EntityRegistry | None = None,
) -> AuditComponents:
    """Wire the hasher, entity registry and recorder from settings."""
    hasher = IntegrityHasher(load_integrity_key(settings))
    registry = registry or build_default_registry(settings)
    recorder = AuditRecorder(
        session_factory,
        hasher,
        registry,
        worker_count=settings.audit_worker_count,
        queue_maxsize=settings.audit_queue_maxsize,
        version_max_attempts=settings.version_max_attempts,
        shutdown_timeout=settings.audit_shutdown_timeout_seconds,
    )
    return AuditComponents(hasher=hasher, registry=registry, recorder=recorder)
