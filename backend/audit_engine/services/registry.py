# ruff: noqa: TC003
from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from audit_engine.models.enums import AuditAction, AuditEntityType

if TYPE_CHECKING:
    from audit_engine.config import Settings

EntityLoader = Callable[[str, str], Awaitable[Mapping[str, Any] | None]]

DEFAULT_ACTION_MAP: dict[str, AuditAction] = {
    "POST": AuditAction.CREATE,
    "PUT": AuditAction.UPDATE,
    "PATCH": AuditAction.UPDATE,
    "DELETE": AuditAction.DELETE,
    "GET": AuditAction.VIEW,
}


@dataclass(frozen=True)
class EntityTypeConfig:
    """Per-entity-type capabilities used by the recorder and rollback."""

    entity_type: str
    track_versions: bool = True
    redacted_fields: frozenset[str] = frozenset()
    action_map: Mapping[str, AuditAction] = field(default_factory=lambda: dict(DEFAULT_ACTION_MAP))
    loader: EntityLoader | None = None

    def resolve_action(self, method: str | None) -> AuditAction | None:
        """Map an HTTP method to an audit action, or ``None`` if unmapped."""
        if not method:
            return None
        return self.action_map.get(method.upper())


class EntityRegistry:
    """Strategy table from entity-type tag to its capabilities.

    Populated once at startup; unknown tags fall back to a default config.
    """

    def __init__(self, global_redacted_fields: Iterable[str] = ()) -> None:
        self._configs: dict[str, EntityTypeConfig] = {}
        self._global_redacted = frozenset(f.lower() for f in global_redacted_fields)

    def register(
        self,
        entity_type: str,
        *,
        track_versions: bool = True,
        redacted_fields: Iterable[str] = (),
        action_map: Mapping[str, AuditAction] | None = None,
        loader: EntityLoader | None = None,
    ) -> EntityTypeConfig:
        merged_actions = dict(DEFAULT_ACTION_MAP)
        if action_map:
            merged_actions.update({method.upper(): action for method, action in action_map.items()})
        config = EntityTypeConfig(
            entity_type=entity_type,
            track_versions=track_versions,
            redacted_fields=frozenset(f.lower() for f in redacted_fields),
            action_map=merged_actions,
            loader=loader,
        )
        self._configs[entity_type] = config
        return config

    def set_loader(self, entity_type: str, loader: EntityLoader) -> None:
        """Attach a live-entity loader to an already registered type."""
        current = self.get(entity_type)
        self._configs[entity_type] = EntityTypeConfig(
            entity_type=entity_type,
            track_versions=current.track_versions,
            redacted_fields=current.redacted_fields,
            action_map=current.action_map,
            loader=loader,
        )

    def get(self, entity_type: str) -> EntityTypeConfig:
        config = self._configs.get(entity_type)
        if config is None:
            return EntityTypeConfig(entity_type=entity_type)
        return config

    def redacted_fields_for(self, entity_type: str) -> frozenset[str]:
        return self._global_redacted | self.get(entity_type).redacted_fields

    def __contains__(self, entity_type: object) -> bool:
        return entity_type in self._configs


def redact(snapshot: Mapping[str, Any] | None, fields: frozenset[str]) -> dict[str, Any] | None:
    """Drop sensitive keys (case-insensitive) at every nesting level."""
    if snapshot is None:
        return None
    return _redact_value(snapshot, fields, set())


def _redact_value(value: Any, fields: frozenset[str], active: set[int]) -> Any:
    if not isinstance(value, Mapping | list | tuple):
        return value
    # Cycles are left in place for the canonicalizer to reject.
    if id(value) in active:
        return value
    active.add(id(value))
    try:
        if isinstance(value, Mapping):
            return {
                key: _redact_value(item, fields, active)
                for key, item in value.items()
                if not (isinstance(key, str) and key.lower() in fields)
            }
        return [_redact_value(item, fields, active) for item in value]
    finally:
        active.discard(id(value))


def build_default_registry(settings: Settings) -> EntityRegistry:
    """Entity types of the contract system and how each is audited."""
    registry = EntityRegistry(settings.redacted_fields)
    registry.register(AuditEntityType.CONTRACT)
    registry.register(AuditEntityType.LEARNED_RULE)
    registry.register(AuditEntityType.TEMPLATE)
    registry.register(AuditEntityType.USER, redacted_fields=("password", "resetToken"))
    registry.register(
        AuditEntityType.UPLOADED_FILE,
        track_versions=False,
        action_map={"POST": AuditAction.UPLOAD},
    )
    return registry
