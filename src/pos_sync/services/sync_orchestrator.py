"""
Sync Orchestrator.

Top-level entry point of a sync run: resolves the Integration, makes sure
its token is fresh, runs catalog and/or inventory sync through the batch
processor and keeps the run's SyncLog up to date until it is final.
"""

import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pos_sync.core.models import Direction, Scope, SyncStatus
from pos_sync.database.models import Integration, SyncLog
from pos_sync.database.platform_store import PlatformProductStore
from pos_sync.database.repository import IntegrationRepository
from pos_sync.monitoring.prometheus_metrics import get_metrics
from pos_sync.monitoring.sentry_config import add_breadcrumb, set_integration_context
from pos_sync.providers.base import PosAdapter
from pos_sync.providers.factory import create_adapter
from pos_sync.services.batch_processor import BatchProcessor, BatchResult, ItemOutcome
from pos_sync.services.catalog_sync import CatalogSync
from pos_sync.services.conflict_resolver import ConflictPolicy, ConflictResolver
from pos_sync.services.inventory_sync import InventorySync
from pos_sync.services.oauth_service import OAuthService
from pos_sync.services.sync_context import SyncContext
from pos_sync.utils.cancellation import CancellationToken
from pos_sync.utils.config import PosSyncConfig, ProviderConfig, get_config
from pos_sync.utils.exceptions import (
    IntegrationNotFound, OperationCancelled, PosSyncError, RefreshFailed, RepositoryError,
    ValidationError, WouldExceedDeadline,
)
from pos_sync.utils.logger import get_logger
from pos_sync.utils.rate_limiting import RateLimiter, RateLimiterRegistry, get_rate_limiter_registry
from pos_sync.utils.retry import RetryPolicy

logger = get_logger(__name__)

ProgressCallback = Callable[[str, int, int], Any]
AdapterFactory = Callable[[ProviderConfig, Integration, str, RateLimiter], PosAdapter]


def default_adapter_factory(provider_config: ProviderConfig, integration: Integration,
                            access_token: str, rate_limiter: RateLimiter) -> PosAdapter:
    return create_adapter(
        provider_config,
        access_token=access_token,
        merchant_id=integration.merchant_id,
        location_id=integration.location_id,
        rate_limiter=rate_limiter,
    )


def summarize_failures(failures: Dict[str, int]) -> Optional[str]:
    """``"3 item(s) failed: rate_limited×2, permanent_provider_error×1"``"""
    total = sum(failures.values())
    if not total:
        return None
    parts = ", ".join(f"{code}×{count}" for code, count in
                      sorted(failures.items(), key=lambda kv: (-kv[1], kv[0])))
    return f"{total} item(s) failed: {parts}"


class SyncOrchestrator:
    """
    Runs sync jobs for tenants.

    Args:
        repository: Integration repository bound to the run's session
        platform_store: Platform product store on the same session
        config: Application configuration (defaults to the global one)
        limiters: Per-Integration rate limiter registry
        adapter_factory: ``(provider_config, integration, access_token, limiter) -> PosAdapter``
        sleep: Backoff sleep, injectable for tests
    """

    def __init__(self, repository: IntegrationRepository, platform_store: PlatformProductStore,
                 config: Optional[PosSyncConfig] = None,
                 limiters: Optional[RateLimiterRegistry] = None,
                 adapter_factory: Optional[AdapterFactory] = None,
                 sleep: Optional[Callable[[float], Awaitable[Any]]] = None):
        self.repository = repository
        self.platform_store = platform_store
        self.config = config or get_config()
        self.limiters = limiters or get_rate_limiter_registry()
        self.adapter_factory = adapter_factory or default_adapter_factory
        self._sleep = sleep
        self.metrics = get_metrics()

    # ------------------------------------------------------------------
    # Run setup
    # ------------------------------------------------------------------

    def resolve_integration(self, tenant_id: str, provider: Optional[str] = None) -> Integration:
        """
        Find the tenant's active Integration.

        Raises:
            IntegrationNotFound: Nothing active matches
            ValidationError: No provider given and the tenant has several
        """
        if provider:
            integration = self.repository.get_active_integration(tenant_id, provider)
            if integration is None:
                raise IntegrationNotFound(f"No active {provider} integration for tenant {tenant_id}",
                                          {"tenant_id": tenant_id, "provider": provider})
            return integration

        integrations = self.repository.list_active_integrations(tenant_id)
        if not integrations:
            raise IntegrationNotFound(f"No active integration for tenant {tenant_id}",
                                      {"tenant_id": tenant_id})
        if len(integrations) > 1:
            raise ValidationError("Tenant has several integrations; provider is required",
                                  field="provider")
        return integrations[0]

    def enqueue(self, tenant_id: str, direction: Direction, scope: Scope, dry_run: bool = False,
                provider: Optional[str] = None) -> SyncLog:
        """Create the queued SyncLog of a run that a worker will execute."""
        integration = self.resolve_integration(tenant_id, provider)
        sync_log = self.repository.create_sync_log(integration, Direction(direction), Scope(scope), dry_run)
        logger.info(f"Queued sync {sync_log.id}: tenant={tenant_id} provider={integration.provider} "
                    f"direction={sync_log.direction} scope={sync_log.scope} dry_run={dry_run}")
        return sync_log

    def _load_run(self, tenant_id: str, direction, scope, dry_run: bool, provider: Optional[str],
                  sync_log_id) -> Tuple[Integration, SyncLog]:
        if sync_log_id is None:
            integration = self.resolve_integration(tenant_id, provider)
            sync_log = self.repository.create_sync_log(integration, Direction(direction), Scope(scope), dry_run)
            return integration, sync_log

        sync_log = self.repository.get_sync_log(sync_log_id)
        if sync_log is None:
            raise ValidationError("Unknown sync log", field="sync_log_id", value=sync_log_id)
        integration = self.repository.get_integration(sync_log.integration_id)
        if integration is None:
            raise IntegrationNotFound("Integration of sync log no longer exists",
                                      {"sync_log_id": str(sync_log_id)})
        return integration, sync_log

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, tenant_id: str, direction: Direction = Direction.IMPORT,
                  scope: Scope = Scope.FULL, dry_run: bool = False,
                  provider: Optional[str] = None,
                  cancel_token: Optional[CancellationToken] = None,
                  sync_log_id=None,
                  progress: Optional[ProgressCallback] = None) -> SyncLog:
        """
        Execute one sync run and return its final SyncLog.

        Args:
            tenant_id: Tenant to sync
            direction: import, export or bidirectional
            scope: catalog, inventory or full
            dry_run: Compute outcomes without writing to either side
            provider: Provider to sync (optional if the tenant has one integration)
            cancel_token: Cancellation/deadline for the whole run
            sync_log_id: Execute this queued SyncLog instead of creating one
            progress: ``(stage, completed_stages, total_stages)`` callback

        Raises:
            IntegrationNotFound: No Integration to run against (no SyncLog is written)
            RepositoryError: The SyncLog itself could not be written
        """
        integration, sync_log = self._load_run(tenant_id, direction, scope, dry_run, provider, sync_log_id)

        if SyncStatus(sync_log.status) != SyncStatus.QUEUED:
            logger.warning(f"Sync {sync_log.id} is already {sync_log.status}; not running it again")
            return sync_log

        if sync_log.tenant_id != tenant_id:
            raise ValidationError("Sync log belongs to another tenant", field="tenant_id", value=tenant_id)

        direction = Direction(sync_log.direction)
        scope = Scope(sync_log.scope)
        dry_run = bool(sync_log.dry_run)

        if cancel_token is None:
            cancel_token = CancellationToken.with_timeout(self.config.sync_run_deadline_seconds)

        self.repository.mark_sync_running(sync_log)
        set_integration_context(tenant_id, integration.provider, str(integration.id))
        add_breadcrumb(f"sync {sync_log.id} started", direction=direction.value, scope=scope.value)
        logger.info(f"Sync {sync_log.id} started: tenant={tenant_id} provider={integration.provider} "
                    f"direction={direction.value} scope={scope.value} dry_run={dry_run}")

        stages = ["authenticating"]
        if scope.includes_catalog:
            stages.append("catalog")
        if scope.includes_inventory:
            stages.append("inventory")
        stages.append("finalizing")

        def report(stage: str) -> None:
            if progress is not None:
                progress(stage, stages.index(stage), len(stages))

        in_progress = self.metrics.runs_in_progress.labels(provider=integration.provider)
        in_progress.inc()
        started = time.monotonic()
        adapter = None
        try:
            report("authenticating")
            try:
                provider_config = self.config.provider_config(integration.provider)
                limiter = self.limiters.get(integration.id)
                token_set = self.repository.get_token_set(integration)
                adapter = self.adapter_factory(provider_config, integration, token_set.access_token, limiter)
                oauth = OAuthService(provider_config, self.repository, adapter, self.config.oauth)
                await oauth.ensure_fresh_token(integration)
            except RepositoryError:
                raise
            except RefreshFailed as e:
                logger.error(f"Sync {sync_log.id} cannot start: {e}")
                return self._finish(sync_log, integration, SyncStatus.FAILED, started,
                                    error_summary=f"Token refresh failed: {e.message}", error_code=e.code)
            except PosSyncError as e:
                logger.error(f"Sync {sync_log.id} cannot start: {e}")
                return self._finish(sync_log, integration, SyncStatus.FAILED, started,
                                    error_summary=e.message, error_code=e.code)

            context = SyncContext(
                integration=integration,
                adapter=adapter,
                repository=self.repository,
                platform_store=self.platform_store,
                resolver=ConflictResolver(ConflictPolicy.from_settings(self.config.conflicts)),
                batch_processor=BatchProcessor(
                    RetryPolicy.from_settings(self.config.batch),
                    rate_limiter=limiter,
                    settings=self.config.batch,
                    sleep=self._sleep,
                    on_chunk_complete=lambda outcomes: self._record(sync_log, integration, outcomes, dry_run),
                ),
                dry_run=dry_run,
                cancel_token=cancel_token,
            )
            wait_before = limiter.stats["total_wait_seconds"]

            components = []
            if scope.includes_catalog:
                components.append(("catalog", CatalogSync(context)))
            if scope.includes_inventory:
                components.append(("inventory", InventorySync(context)))

            total = BatchResult()
            component_errors: List[PosSyncError] = []
            for stage, component in components:
                report(stage)
                try:
                    result = await self._run_component(component, direction, tenant_id)
                except (WouldExceedDeadline, OperationCancelled):
                    cancel_token.cancel("deadline_exceeded")
                    logger.warning(f"Sync {sync_log.id}: {stage} stopped by cancellation")
                    continue
                except RepositoryError:
                    raise
                except PosSyncError as e:
                    # Could not enumerate the work at all; other components still run
                    logger.error(f"Sync {sync_log.id}: {stage} failed: {e}")
                    self.metrics.track_provider_error(integration.provider, e.code)
                    component_errors.append(e)
                    continue

                total = total.merge(result)

            self.metrics.track_rate_limit_wait(integration.provider,
                                               limiter.stats["total_wait_seconds"] - wait_before)
            report("finalizing")
            return self._finalize(sync_log, integration, total, component_errors,
                                  cancel_token.cancelled, started, dry_run)

        except RepositoryError as e:
            logger.error(f"Sync {sync_log.id} aborted by persistence failure: {e}")
            try:
                return self._finish(sync_log, integration, SyncStatus.FAILED, started,
                                    error_summary=f"Persistence failure: {e.message}", error_code=e.code)
            except RepositoryError:
                logger.error(f"Sync {sync_log.id} could not be finalized")
                raise e
        finally:
            in_progress.dec()
            if adapter is not None:
                await adapter.aclose()

    @staticmethod
    async def _run_component(component, direction: Direction, tenant_id: str) -> BatchResult:
        if direction == Direction.IMPORT:
            return await component.sync_from_external(tenant_id)
        if direction == Direction.EXPORT:
            return await component.sync_to_external(tenant_id)
        return await component.sync_bidirectional(tenant_id)

    def _record(self, sync_log: SyncLog, integration: Integration, outcomes: List[ItemOutcome],
                dry_run: bool) -> None:
        """Persist one finished chunk so the SyncLog can be polled mid-run."""
        result = BatchResult(total=len(outcomes), outcomes=outcomes)
        self.repository.record_batch_result(sync_log, result.counts(),
                                            [outcome.to_dict() for outcome in outcomes])
        if dry_run:
            return
        for record in result.conflicts:
            if record.pending_review:
                self.repository.save_conflict(integration.id, record, sync_log_id=sync_log.id)

    def _finalize(self, sync_log: SyncLog, integration: Integration, total: BatchResult,
                  component_errors: List[PosSyncError], cancelled: bool, started: float,
                  dry_run: bool) -> SyncLog:
        if total.total > 0 and total.failed == total.total:
            status = SyncStatus.FAILED
        elif component_errors and total.total == 0:
            status = SyncStatus.FAILED
        elif total.failed or cancelled or component_errors:
            status = SyncStatus.PARTIAL_FAILURE
        else:
            status = SyncStatus.SUCCESS

        summary = summarize_failures(total.failures_by_code())
        error_code = None
        if component_errors:
            error_code = component_errors[0].code
            messages = "; ".join(e.message for e in component_errors)
            summary = f"{summary}; {messages}" if summary else messages
        elif cancelled:
            error_code = "cancelled"
            summary = f"{summary}; run cancelled" if summary else "Run cancelled before all items were attempted"

        sync_log = self._finish(sync_log, integration, status, started, error_summary=summary,
                                error_code=error_code)
        if not dry_run and status != SyncStatus.FAILED:
            self.repository.touch_last_sync(integration)
        return sync_log

    def _finish(self, sync_log: SyncLog, integration: Integration, status: SyncStatus, started: float,
                error_summary: Optional[str] = None, error_code: Optional[str] = None) -> SyncLog:
        sync_log = self.repository.finalize_sync_log(sync_log, status, error_summary=error_summary,
                                                     error_code=error_code)
        duration = time.monotonic() - started
        self.metrics.track_sync_run(integration.provider, sync_log.scope, status.value, duration,
                                    sync_log.counts)
        logger.info(f"Sync {sync_log.id} finished: {status.value} in {duration:.1f}s "
                    f"counts={sync_log.counts}"
                    + (f" ({error_summary})" if error_summary else ""))
        return sync_log
