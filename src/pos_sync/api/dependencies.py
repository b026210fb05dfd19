"""
Shared FastAPI dependencies.

Everything a route needs is built here from the request-scoped database
session, so tests can swap any piece through ``app.dependency_overrides``.
"""

from typing import AsyncGenerator, Callable

from fastapi import Depends, HTTPException, Path, status
from sqlalchemy.orm import Session

from pos_sync.database.connection import get_db
from pos_sync.database.platform_store import PlatformProductStore
from pos_sync.database.repository import IntegrationRepository
from pos_sync.providers.factory import ADAPTERS, create_adapter
from pos_sync.security.encryption import get_encryptor
from pos_sync.services.oauth_service import OAuthService
from pos_sync.services.sync_orchestrator import SyncOrchestrator
from pos_sync.utils.config import PosSyncConfig, get_config
from pos_sync.utils.rate_limiting import RateLimiterRegistry, get_rate_limiter_registry

SyncDispatcher = Callable[[str], None]


def get_settings() -> PosSyncConfig:
    return get_config()


def get_limiters() -> RateLimiterRegistry:
    return get_rate_limiter_registry()


def get_repository(db: Session = Depends(get_db)) -> IntegrationRepository:
    return IntegrationRepository(db, get_encryptor())


def get_platform_store(db: Session = Depends(get_db)) -> PlatformProductStore:
    return PlatformProductStore(db)


def get_provider(provider: str = Path(..., description="POS provider, e.g. square or clover")) -> str:
    """Validate the ``{provider}`` path segment."""
    provider = provider.lower()
    if provider not in ADAPTERS:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unsupported provider: {provider}",
        )
    return provider


async def get_oauth_service(
    provider: str = Depends(get_provider),
    repository: IntegrationRepository = Depends(get_repository),
    config: PosSyncConfig = Depends(get_settings),
) -> AsyncGenerator[OAuthService, None]:
    """OAuth service with an adapter that is closed after the request."""
    provider_config = config.provider_config(provider)
    adapter = create_adapter(provider_config)
    try:
        yield OAuthService(provider_config, repository, adapter, config.oauth)
    finally:
        await adapter.aclose()


def get_orchestrator(
    repository: IntegrationRepository = Depends(get_repository),
    platform_store: PlatformProductStore = Depends(get_platform_store),
    config: PosSyncConfig = Depends(get_settings),
    limiters: RateLimiterRegistry = Depends(get_limiters),
) -> SyncOrchestrator:
    return SyncOrchestrator(repository, platform_store, config=config, limiters=limiters)


def dispatch_to_worker(sync_log_id: str) -> None:
    # Imported lazily so the API process only touches the broker on enqueue
    from pos_sync.workers.tasks import run_sync_task
    run_sync_task.delay(sync_log_id)


def get_sync_dispatcher() -> SyncDispatcher:
    """Hands a queued SyncLog id to the worker pool."""
    return dispatch_to_worker
