from sqlmodel import SQLModel

from audit_engine.models.audit import AuditRecord
from audit_engine.models.base import UUIDBase
from audit_engine.models.enums import AuditAction, AuditEntityType
from audit_engine.models.version import EntityVersion

__all__ = [
    "AuditAction",
    "AuditEntityType",
    "AuditRecord",
    "EntityVersion",
    "SQLModel",
    "UUIDBase",
]
