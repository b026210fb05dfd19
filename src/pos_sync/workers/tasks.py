"""
Celery tasks for background processing.

Tasks:
- run_sync: Execute a queued sync run
- refresh_expiring_tokens: Refresh tokens that are inside the refresh margin
- abandon_expired_authorizations: Drop connect flows whose callback never came
"""

import asyncio
from datetime import timedelta
from typing import Optional

from celery import Task
from sqlalchemy.orm import Session

from .celery_app import celery_app
from ..core.models import SyncStatus, utcnow
from ..database.connection import SessionLocal
from ..database.platform_store import PlatformProductStore
from ..database.repository import IntegrationRepository
from ..monitoring.prometheus_metrics import get_metrics
from ..providers.factory import create_adapter
from ..security.encryption import get_encryptor
from ..services.oauth_service import OAuthService
from ..services.sync_orchestrator import SyncOrchestrator
from ..utils.config import PosSyncConfig, get_config
from ..utils.exceptions import PosSyncError, RepositoryError
from ..utils.logger import get_logger
from ..utils.rate_limiting import get_rate_limiter_registry

logger = get_logger(__name__)


class DatabaseTask(Task):
    """
    Base task class that provides database session management.

    Automatically creates and closes database sessions for tasks.
    """
    _db: Optional[Session] = None

    @property
    def db(self) -> Session:
        if self._db is None:
            self._db = SessionLocal()
        return self._db

    def after_return(self, *args, **kwargs):
        """Close database session after task completion."""
        if self._db is not None:
            self._db.close()
            self._db = None

    def on_success(self, retval, task_id, args, kwargs):
        get_metrics().track_celery_task(self.name, "success")

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        get_metrics().track_celery_task(self.name, "failed")

    def on_retry(self, exc, task_id, args, kwargs, einfo):
        get_metrics().track_celery_task(self.name, "retry")


async def execute_sync(session: Session, sync_log_id: str,
                       config: Optional[PosSyncConfig] = None, adapter_factory=None) -> dict:
    """Run a queued SyncLog to completion on ``session``."""
    repository = IntegrationRepository(session, get_encryptor())
    sync_log = repository.get_sync_log(sync_log_id)
    if sync_log is None:
        logger.error(f"Sync log {sync_log_id} not found; nothing to run")
        return {"status": "missing", "sync_log_id": sync_log_id}

    orchestrator = SyncOrchestrator(
        repository,
        PlatformProductStore(session),
        config=config,
        limiters=get_rate_limiter_registry(),
        adapter_factory=adapter_factory,
    )
    sync_log = await orchestrator.run(tenant_id=sync_log.tenant_id, sync_log_id=sync_log.id)
    return {
        "status": sync_log.status,
        "sync_log_id": str(sync_log.id),
        "counts": sync_log.counts,
        "error_code": sync_log.error_code,
    }


async def refresh_expiring(session: Session, config: Optional[PosSyncConfig] = None,
                           adapter_factory=create_adapter) -> dict:
    """Refresh every active Integration whose token expires within the margin."""
    config = config or get_config()
    repository = IntegrationRepository(session, get_encryptor())
    before = utcnow() + timedelta(seconds=config.token_refresh_margin_seconds)

    refreshed, failed = 0, 0
    for integration in repository.list_expiring_integrations(before):
        provider_config = config.provider_config(integration.provider)
        adapter = adapter_factory(provider_config, merchant_id=integration.merchant_id,
                                  location_id=integration.location_id)
        try:
            oauth = OAuthService(provider_config, repository, adapter, config.oauth)
            await oauth.ensure_fresh_token(integration)
            refreshed += 1
        except PosSyncError as e:
            failed += 1
            logger.warning(f"Proactive refresh of integration {integration.id} failed: {e}")
        finally:
            await adapter.aclose()

    if refreshed or failed:
        logger.info(f"Token upkeep: {refreshed} refreshed, {failed} failed")
    return {"refreshed": refreshed, "failed": failed}


@celery_app.task(
    bind=True,
    base=DatabaseTask,
    name="pos_sync.run_sync",
    max_retries=3,
    default_retry_delay=60,
)
def run_sync_task(self, sync_log_id: str) -> dict:
    """
    Execute a queued sync run.

    Args:
        sync_log_id: SyncLog created by ``POST /sync``

    Returns:
        dict: Final status and counts of the run
    """
    db: Session = self.db
    try:
        return asyncio.run(execute_sync(db, sync_log_id))
    except RepositoryError as exc:
        # Only retry while the run never left the queue
        db.rollback()
        sync_log = IntegrationRepository(db).get_sync_log(sync_log_id)
        if sync_log is not None and sync_log.status == SyncStatus.QUEUED.value \
                and self.request.retries < self.max_retries:
            logger.info(f"Retrying sync {sync_log_id} (attempt {self.request.retries + 1})")
            raise self.retry(exc=exc)
        logger.error(f"Sync {sync_log_id} failed: {exc}")
        raise


@celery_app.task(
    bind=True,
    base=DatabaseTask,
    name="pos_sync.refresh_expiring_tokens",
)
def refresh_expiring_tokens(self) -> dict:
    return asyncio.run(refresh_expiring(self.db))


@celery_app.task(
    bind=True,
    base=DatabaseTask,
    name="pos_sync.abandon_expired_authorizations",
)
def abandon_expired_authorizations(self) -> dict:
    """
    Drop authorization states whose callback never arrived.

    Returns:
        dict: Cleanup statistics (deleted_count)
    """
    repository = IntegrationRepository(self.db)
    deleted = repository.delete_expired_authorization_states()
    if deleted:
        logger.info(f"Abandoned {deleted} expired authorization state(s)")
    return {"deleted_count": deleted}
