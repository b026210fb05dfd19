"""
Integration connection routes: connect, OAuth callback, disconnect, status.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel

from pos_sync.api.dependencies import get_limiters, get_oauth_service, get_provider, get_repository
from pos_sync.api.middleware.tenant_context import get_current_tenant
from pos_sync.database.repository import IntegrationRepository
from pos_sync.services.oauth_service import OAuthService
from pos_sync.utils.logger import get_logger
from pos_sync.utils.rate_limiting import RateLimiterRegistry

logger = get_logger(__name__)

router = APIRouter()


class ConnectResponse(BaseModel):
    """Where to send the user to authorize the integration."""
    authorization_url: str
    state: str


class IntegrationResponse(BaseModel):
    id: str
    tenant_id: str
    provider: str
    environment: str
    merchant_id: Optional[str] = None
    location_id: Optional[str] = None
    is_active: bool
    token_expires_at: Optional[str] = None
    last_sync_at: Optional[str] = None
    created_at: Optional[str] = None


class StatusResponse(BaseModel):
    provider: str
    state: str
    integration: Optional[IntegrationResponse] = None


@router.post("/connect", response_model=ConnectResponse)
async def connect(
    tenant_id: str = Depends(get_current_tenant),
    oauth: OAuthService = Depends(get_oauth_service),
):
    """
    Start the OAuth authorization-code flow.

    The state must come back unchanged on the callback; it is single use
    and expires after the configured lifetime.
    """
    url, state = oauth.build_authorization_url(tenant_id)
    return ConnectResponse(authorization_url=url, state=state)


@router.get("/callback", response_model=IntegrationResponse)
async def callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None, description="Set by the provider when the user declined"),
    location_id: Optional[str] = Query(None),
    oauth: OAuthService = Depends(get_oauth_service),
):
    """
    Provider redirect target. The tenant is recovered from the state.
    """
    if error:
        logger.warning(f"{oauth.provider} authorization declined: {error}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Authorization declined: {error}",
        )
    if not code or not state:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Both code and state are required",
        )

    integration = await oauth.complete_authorization(code, state, location_id=location_id)
    return IntegrationResponse(**integration.to_dict())


@router.post("/disconnect")
async def disconnect(
    provider: str = Depends(get_provider),
    tenant_id: str = Depends(get_current_tenant),
    oauth: OAuthService = Depends(get_oauth_service),
    repository: IntegrationRepository = Depends(get_repository),
    limiters: RateLimiterRegistry = Depends(get_limiters),
) -> Dict[str, Any]:
    """Revoke the provider token (best effort) and deactivate the integration."""
    integration = repository.get_active_integration(tenant_id, provider)
    if integration is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No active {provider} integration",
        )

    await oauth.revoke(integration)
    limiters.remove(integration.id)
    logger.info(f"Tenant {tenant_id} disconnected {provider}")
    return {"status": "disconnected", "integration_id": str(integration.id)}


@router.get("/status", response_model=StatusResponse)
async def connection_status(
    provider: str = Depends(get_provider),
    tenant_id: str = Depends(get_current_tenant),
    oauth: OAuthService = Depends(get_oauth_service),
    repository: IntegrationRepository = Depends(get_repository),
):
    state = oauth.connection_state(tenant_id)
    integration = repository.get_active_integration(tenant_id, provider)
    return StatusResponse(
        provider=provider,
        state=state.value,
        integration=IntegrationResponse(**integration.to_dict()) if integration else None,
    )
