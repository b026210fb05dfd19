"""
FastAPI middleware components.
"""

from .tenant_context import TenantContextMiddleware, get_current_tenant
from .error_handler import ErrorHandlerMiddleware

__all__ = [
    "TenantContextMiddleware",
    "get_current_tenant",
    "ErrorHandlerMiddleware",
]
