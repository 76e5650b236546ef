from __future__ import annotations

import enum


class AuditAction(enum.StrEnum):
    """Action recorded in the audit log."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    VIEW = "VIEW"
    UPLOAD = "UPLOAD"
    ROLLBACK = "ROLLBACK"


class AuditEntityType(enum.StrEnum):
    """Entity types known to the contract system.

    The stores accept any tag; these are the ones registered by default.
    """

    CONTRACT = "CONTRACT"
    LEARNED_RULE = "LEARNED_RULE"
    TEMPLATE = "TEMPLATE"
    USER = "USER"
    UPLOADED_FILE = "UPLOADED_FILE"


# Actions that describe a new full state of the entity and may produce a version.
VERSIONED_ACTIONS = frozenset({AuditAction.CREATE, AuditAction.UPDATE, AuditAction.UPLOAD, AuditAction.ROLLBACK})
