"""
Tenant context middleware.

Tenant authentication happens upstream; by the time a request reaches this
service the caller's tenant is carried in the ``X-Tenant-ID`` header.
"""

from contextvars import ContextVar
from typing import Optional

from fastapi import Header, HTTPException, Request, status
from starlette.middleware.base import BaseHTTPMiddleware

from pos_sync.utils.logger import get_logger

logger = get_logger(__name__)

TENANT_HEADER = "X-Tenant-ID"

# Context variable for request-scoped tenant
current_tenant_context: ContextVar[Optional[str]] = ContextVar("current_tenant", default=None)


class TenantContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware to expose the tenant of the current request.

    Sets ``current_tenant_context`` for log records and handlers; rejecting
    requests without a tenant is left to the routes that need one.
    """

    async def dispatch(self, request: Request, call_next):
        tenant_id = request.headers.get(TENANT_HEADER)
        token = current_tenant_context.set(tenant_id.strip() if tenant_id else None)
        try:
            return await call_next(request)
        finally:
            current_tenant_context.reset(token)


def get_current_tenant(x_tenant_id: Optional[str] = Header(None, alias=TENANT_HEADER)) -> str:
    """
    Dependency returning the tenant of the request.

    Usage:
        @router.post("/connect")
        def connect(tenant_id: str = Depends(get_current_tenant)):
            ...
    """
    tenant_id = (x_tenant_id or "").strip()
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Missing {TENANT_HEADER} header",
        )
    if len(tenant_id) > 64:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Tenant id too long",
        )
    return tenant_id
