from fastapi import APIRouter

from audit_engine.api.audit import audit_router
from audit_engine.api.versions import versions_router

api_router = APIRouter()
api_router.include_router(audit_router)
api_router.include_router(versions_router)
