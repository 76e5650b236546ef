from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Header, Request, status

from audit_engine.components import AuditComponents
from audit_engine.exceptions import AppError
from audit_engine.schemas.auth import AuthContext
from audit_engine.services.recorder import RequestContext


async def get_auth_context(
    x_user_id: str = Header(min_length=1),
    x_role: str = Header(default="user"),
) -> AuthContext:
    """Extract dev auth context from request headers."""
    return AuthContext(user_id=x_user_id, role=x_role)


AuthDep = Annotated[AuthContext, Depends(get_auth_context)]


async def require_admin(
    auth: AuthDep,
) -> AuthContext:
    """Require admin role for the request."""
    if not auth.is_admin:
        raise AppError("Admin access required", status_code=status.HTTP_403_FORBIDDEN)
    return auth


AdminDep = Annotated[AuthContext, Depends(require_admin)]


def get_components(request: Request) -> AuditComponents:
    """Components built by the application lifespan."""
    components = getattr(request.app.state, "components", None)
    if components is None:
        raise AppError("Audit engine is not initialised", status_code=status.HTTP_503_SERVICE_UNAVAILABLE)
    return components


ComponentsDep = Annotated[AuditComponents, Depends(get_components)]


def get_request_context(request: Request) -> RequestContext:
    """HTTP details recorded alongside audit entries created by this request."""
    return RequestContext(
        method=request.method,
        path=request.url.path,
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
        origin=request.headers.get("origin"),
    )


RequestContextDep = Annotated[RequestContext, Depends(get_request_context)]
