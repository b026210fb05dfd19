"""
Sync routes: trigger runs, poll them, browse history and pending conflicts.
"""

import math
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from pos_sync.api.dependencies import (
    SyncDispatcher, get_orchestrator, get_provider, get_repository, get_sync_dispatcher,
)
from pos_sync.api.middleware.tenant_context import get_current_tenant
from pos_sync.core.models import Direction, Scope
from pos_sync.database.repository import IntegrationRepository
from pos_sync.services.sync_orchestrator import SyncOrchestrator
from pos_sync.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


class SyncRequest(BaseModel):
    """Body of ``POST /sync``."""
    model_config = ConfigDict(populate_by_name=True)

    direction: Direction = Direction.IMPORT
    scope: Scope = Scope.FULL
    dry_run: bool = Field(False, alias="dryRun")


class SyncAccepted(BaseModel):
    sync_log_id: str
    status: str


class SyncLogResponse(BaseModel):
    id: str
    integration_id: str
    tenant_id: str
    provider: str
    direction: str
    scope: str
    dry_run: bool
    status: str
    counts: Dict[str, int]
    error_summary: Optional[str] = None
    error_code: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    duration_ms: Optional[int] = None


class SyncLogDetailResponse(SyncLogResponse):
    item_results: List[Dict[str, Any]] = []


class SyncLogListResponse(BaseModel):
    """Paginated SyncLog history."""
    items: List[SyncLogResponse]
    total: int
    page: int
    page_size: int
    total_pages: int


class ConflictResponse(BaseModel):
    id: str
    integration_id: str
    mapping_id: Optional[str] = None
    external_product_id: Optional[str] = None
    platform_product_id: Optional[str] = None
    field: str
    external_value: Any = None
    platform_value: Any = None
    status: str
    reason: Optional[str] = None
    created_at: Optional[str] = None


@router.post("/sync", response_model=SyncAccepted, status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(
    body: SyncRequest,
    provider: str = Depends(get_provider),
    tenant_id: str = Depends(get_current_tenant),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    dispatch: SyncDispatcher = Depends(get_sync_dispatcher),
):
    """
    Queue a sync run and hand it to the workers.

    Poll ``GET /sync/{sync_log_id}`` for progress.
    """
    sync_log = orchestrator.enqueue(tenant_id, body.direction, body.scope, body.dry_run, provider)
    dispatch(str(sync_log.id))
    return SyncAccepted(sync_log_id=str(sync_log.id), status=sync_log.status)


@router.get("/sync/{sync_log_id}", response_model=SyncLogDetailResponse)
async def get_sync(
    sync_log_id: str,
    tenant_id: str = Depends(get_current_tenant),
    repository: IntegrationRepository = Depends(get_repository),
):
    sync_log = repository.get_sync_log(sync_log_id)
    # Other tenants' runs are indistinguishable from missing ones
    if sync_log is None or sync_log.tenant_id != tenant_id:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Sync run not found",
        )
    return SyncLogDetailResponse(**sync_log.to_dict(include_items=True))


@router.get("/logs", response_model=SyncLogListResponse)
async def list_logs(
    tenant_id_param: Optional[str] = Query(None, alias="tenantId"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    provider: str = Depends(get_provider),
    tenant_id: str = Depends(get_current_tenant),
    repository: IntegrationRepository = Depends(get_repository),
):
    """
    SyncLog history of the tenant for this provider, newest first.
    """
    if tenant_id_param and tenant_id_param != tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Cannot read another tenant's sync history",
        )

    logs, total = repository.list_sync_logs(tenant_id, page=page, page_size=page_size,
                                            provider=provider)
    return SyncLogListResponse(
        items=[SyncLogResponse(**log.to_dict()) for log in logs],
        total=total,
        page=page,
        page_size=page_size,
        total_pages=math.ceil(total / page_size) if total else 0,
    )


@router.get("/conflicts", response_model=List[ConflictResponse])
async def list_conflicts(
    provider: str = Depends(get_provider),
    tenant_id: str = Depends(get_current_tenant),
    repository: IntegrationRepository = Depends(get_repository),
):
    """Field conflicts waiting for manual review."""
    integration = repository.get_active_integration(tenant_id, provider)
    if integration is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No active {provider} integration",
        )
    return [ConflictResponse(**conflict.to_dict())
            for conflict in repository.list_pending_conflicts(integration.id)]
