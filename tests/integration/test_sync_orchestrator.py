"""
Integration tests for complete sync runs through SyncOrchestrator
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from pos_sync.core.models import Direction, Scope, utcnow
from pos_sync.services.sync_orchestrator import SyncOrchestrator, summarize_failures
from pos_sync.utils.cancellation import CancellationToken
from pos_sync.utils.config import PosSyncConfig
from pos_sync.utils.exceptions import (
    IntegrationNotFound, PermanentProviderError, RateLimited, TransientProviderError, ValidationError,
)
from pos_sync.utils.rate_limiting import RateLimiterRegistry

pytestmark = pytest.mark.integration


@pytest.fixture
def config():
    return PosSyncConfig(conflict_price_threshold=Decimal("5.00"), retry_jitter_ratio=0.0)


@pytest.fixture
def orchestrator(repository, platform_store, config, fake_adapter, fake_clock):
    return SyncOrchestrator(
        repository, platform_store,
        config=config,
        limiters=RateLimiterRegistry(config.rate_limits),
        adapter_factory=lambda provider_config, integration, access_token, limiter: fake_adapter,
        sleep=fake_clock.sleep,
    )


def mapped_product(fake_adapter, repository, platform_store, integration, external_price,
                   platform_price, external_id="X-1"):
    fake_adapter.add_item(external_id, "Latte", price=external_price)
    product = platform_store.create_product(integration.tenant_id,
                                            {"name": "Latte", "price": Decimal(platform_price)})
    repository.upsert_mapping(integration.id, external_id, product.platform_id)
    return product


class TestFullImport:

    async def test_catalog_and_inventory(self, orchestrator, integration, fake_adapter, platform_store,
                                         repository):
        later = utcnow() + timedelta(minutes=1)
        fake_adapter.add_item("X-1", "Latte", price="4.50", quantity=5, updated_at=later)
        fake_adapter.add_item("X-2", "Mocha", price="5.25", quantity=2, updated_at=later)

        sync_log = await orchestrator.run("tenant-1", Direction.IMPORT, Scope.FULL)

        assert sync_log.status == "success"
        assert sync_log.counts["created"] == 2
        assert sync_log.counts["updated"] == 2
        assert len(sync_log.item_results) == 4
        assert sorted(p.quantity for p in platform_store.list_products("tenant-1")) == [2, 5]
        assert integration.last_sync_at is not None

    async def test_second_run_changes_nothing(self, orchestrator, integration, fake_adapter, platform_store):
        fake_adapter.add_item("X-1", "Latte", price="4.50")
        fake_adapter.add_item("X-2", "Mocha", price="5.25")

        await orchestrator.run("tenant-1", Direction.IMPORT, Scope.CATALOG)
        second = await orchestrator.run("tenant-1", Direction.IMPORT, Scope.CATALOG)

        assert second.status == "success"
        assert second.counts == {"created": 0, "updated": 0, "skipped": 2, "conflicted": 0, "failed": 0}
        assert len(platform_store.list_products("tenant-1")) == 2

    async def test_progress_callback(self, orchestrator, integration, fake_adapter):
        stages = []

        await orchestrator.run("tenant-1", Direction.IMPORT, Scope.FULL,
                               progress=lambda stage, done, total: stages.append((stage, done, total)))

        assert stages == [("authenticating", 0, 4), ("catalog", 1, 4), ("inventory", 2, 4),
                          ("finalizing", 3, 4)]


class TestPriceConflicts:
    """Conflicting prices with a review threshold of 5.00"""

    async def test_small_gap_takes_pos_price(self, orchestrator, integration, fake_adapter, repository,
                                             platform_store):
        product = mapped_product(fake_adapter, repository, platform_store, integration, "10.00", "12.00")

        sync_log = await orchestrator.run("tenant-1", Direction.IMPORT, Scope.CATALOG)

        assert sync_log.status == "success"
        assert sync_log.counts["updated"] == 1
        assert platform_store.get_product("tenant-1", product.platform_id).price == Decimal("10.00")
        assert repository.list_pending_conflicts(integration.id) == []

    async def test_large_gap_goes_to_review(self, orchestrator, integration, fake_adapter, repository,
                                            platform_store):
        product = mapped_product(fake_adapter, repository, platform_store, integration, "50.00", "12.00")

        sync_log = await orchestrator.run("tenant-1", Direction.IMPORT, Scope.CATALOG)

        assert sync_log.status == "success"
        assert sync_log.counts["conflicted"] == 1
        assert sync_log.item_results[0]["action"] == "conflicted"
        assert platform_store.get_product("tenant-1", product.platform_id).price == Decimal("12.00")

        conflicts = repository.list_pending_conflicts(integration.id)
        assert len(conflicts) == 1
        assert conflicts[0].field == "price"
        assert conflicts[0].external_value == "50.00"
        assert conflicts[0].platform_value == "12.00"
        assert conflicts[0].sync_log_id == sync_log.id

    async def test_repeated_run_keeps_one_open_conflict(self, orchestrator, integration, fake_adapter,
                                                        repository, platform_store):
        mapped_product(fake_adapter, repository, platform_store, integration, "50.00", "12.00")

        await orchestrator.run("tenant-1", Direction.IMPORT, Scope.CATALOG)
        await orchestrator.run("tenant-1", Direction.IMPORT, Scope.CATALOG)

        assert len(repository.list_pending_conflicts(integration.id)) == 1

    async def test_dry_run_persists_no_conflict(self, orchestrator, integration, fake_adapter,
                                                repository, platform_store):
        mapped_product(fake_adapter, repository, platform_store, integration, "50.00", "12.00")
        fake_adapter.add_item("X-2", "Scone")

        sync_log = await orchestrator.run("tenant-1", Direction.IMPORT, Scope.CATALOG, dry_run=True)

        assert sync_log.dry_run is True
        assert sync_log.counts["conflicted"] == 1
        assert sync_log.counts["created"] == 1
        assert repository.list_pending_conflicts(integration.id) == []
        assert len(platform_store.list_products("tenant-1")) == 1
        assert integration.last_sync_at is None


class TestRunStatus:

    async def test_refresh_failure_fails_run(self, orchestrator, make_integration, fake_adapter,
                                             repository):
        integration = make_integration(expires_in=timedelta(minutes=1))
        fake_adapter.errors["refresh"] = [PermanentProviderError("invalid_grant", status_code=401)]

        sync_log = await orchestrator.run("tenant-1", Direction.IMPORT, Scope.FULL)

        assert sync_log.status == "failed"
        assert sync_log.error_code == "refresh_failed"
        assert sync_log.finished_at is not None
        assert integration.is_active is False
        assert integration.last_sync_at is None
        assert fake_adapter.calls.get("fetch_catalog") is None

    async def test_token_refreshed_before_run(self, orchestrator, make_integration, fake_adapter,
                                              repository):
        integration = make_integration(expires_in=timedelta(minutes=2))

        sync_log = await orchestrator.run("tenant-1", Direction.IMPORT, Scope.CATALOG)

        assert sync_log.status == "success"
        assert fake_adapter.calls["refresh"] == 1
        assert fake_adapter.access_token == "new-access"
        assert repository.get_token_set(integration).access_token == "new-access"

    async def test_partial_failure_summary(self, orchestrator, integration, fake_adapter,
                                           platform_store):
        platform_store.create_product("tenant-1", {"name": "A"})
        platform_store.create_product("tenant-1", {"name": "B"})
        fake_adapter.errors["upsert"] = [PermanentProviderError("invalid", status_code=400)]

        sync_log = await orchestrator.run("tenant-1", Direction.EXPORT, Scope.CATALOG)

        assert sync_log.status == "partial_failure"
        assert sync_log.counts["created"] == 1
        assert sync_log.counts["failed"] == 1
        assert sync_log.error_summary == "1 item(s) failed: permanent_provider_error×1"
        assert integration.last_sync_at is not None

    async def test_all_items_failed(self, orchestrator, integration, fake_adapter, platform_store):
        platform_store.create_product("tenant-1", {"name": "A"})
        fake_adapter.errors["upsert"] = [PermanentProviderError("invalid", status_code=400)]

        sync_log = await orchestrator.run("tenant-1", Direction.EXPORT, Scope.CATALOG)

        assert sync_log.status == "failed"
        assert integration.last_sync_at is None

    async def test_catalog_listing_failure(self, orchestrator, integration, fake_adapter):
        fake_adapter.errors["fetch_catalog"] = [PermanentProviderError("forbidden", status_code=403)]

        sync_log = await orchestrator.run("tenant-1", Direction.IMPORT, Scope.CATALOG)

        assert sync_log.status == "failed"
        assert sync_log.error_code == "permanent_provider_error"

    async def test_catalog_failure_with_inventory_success(self, orchestrator, integration, fake_adapter,
                                                          repository, platform_store):
        mapped_product(fake_adapter, repository, platform_store, integration, "1.00", "1.00")
        fake_adapter.errors["fetch_catalog"] = [PermanentProviderError("forbidden", status_code=403)]

        sync_log = await orchestrator.run("tenant-1", Direction.IMPORT, Scope.FULL)

        assert sync_log.status == "partial_failure"
        assert "forbidden" in sync_log.error_summary

    async def test_cancelled_run(self, orchestrator, integration, fake_adapter):
        fake_adapter.add_item("X-1", "Latte")
        token = CancellationToken()
        token.cancel()

        sync_log = await orchestrator.run("tenant-1", Direction.IMPORT, Scope.CATALOG, cancel_token=token)

        assert sync_log.status == "partial_failure"
        assert sync_log.error_code == "cancelled"
        assert sync_log.counts["skipped"] == 1

    async def test_no_integration(self, orchestrator, repository):
        with pytest.raises(IntegrationNotFound):
            await orchestrator.run("tenant-unknown")

        assert repository.list_sync_logs("tenant-unknown")[1] == 0

    async def test_several_integrations_need_provider(self, orchestrator, make_integration):
        make_integration(provider="square")
        make_integration(provider="clover", merchant_id="CL-1")

        with pytest.raises(ValidationError):
            await orchestrator.run("tenant-1")


class TestQueuedRuns:

    async def test_enqueue_then_execute(self, orchestrator, integration, fake_adapter, repository):
        fake_adapter.add_item("X-1", "Latte")
        queued = orchestrator.enqueue("tenant-1", Direction.IMPORT, Scope.CATALOG)
        assert queued.status == "queued"

        finished = await orchestrator.run("tenant-1", sync_log_id=queued.id)

        assert finished.id == queued.id
        assert finished.status == "success"
        assert finished.direction == "import"
        assert finished.scope == "catalog"

    async def test_finished_log_not_run_again(self, orchestrator, integration, fake_adapter):
        queued = orchestrator.enqueue("tenant-1", Direction.IMPORT, Scope.CATALOG)
        await orchestrator.run("tenant-1", sync_log_id=queued.id)
        calls = fake_adapter.calls["fetch_catalog"]

        again = await orchestrator.run("tenant-1", sync_log_id=queued.id)

        assert again.status == "success"
        assert fake_adapter.calls["fetch_catalog"] == calls

    async def test_other_tenant_cannot_run_log(self, orchestrator, integration):
        queued = orchestrator.enqueue("tenant-1", Direction.IMPORT, Scope.CATALOG)

        with pytest.raises(ValidationError):
            await orchestrator.run("tenant-2", sync_log_id=queued.id)


class TestCatalogListingRetry:
    """Throttled or flaky catalog pages are retried instead of failing the run"""

    async def test_throttled_second_page(self, orchestrator, integration, fake_adapter, fake_clock):
        for i in range(3):
            fake_adapter.add_item(f"X-{i}", f"Item {i}")
        fake_adapter.page_size = 2
        fetch_page = fake_adapter.fetch_catalog_page
        throttled = []

        async def throttle_once(cursor=None, cancel_token=None):
            if cursor and not throttled:
                throttled.append(cursor)
                raise RateLimited(retry_after=2)
            return await fetch_page(cursor, cancel_token=cancel_token)

        fake_adapter.fetch_catalog_page = throttle_once

        sync_log = await orchestrator.run("tenant-1", Direction.IMPORT, Scope.CATALOG)

        assert sync_log.status == "success"
        assert sync_log.counts["created"] == 3
        assert throttled == ["2"]
        assert 2.0 in fake_clock.sleeps
        assert orchestrator.limiters.get(integration.id).stats["pauses"] == 1

    async def test_transient_listing_error(self, orchestrator, integration, fake_adapter):
        fake_adapter.add_item("X-1", "Latte")
        fake_adapter.errors["fetch_catalog"] = [TransientProviderError("unavailable", status_code=503)]

        sync_log = await orchestrator.run("tenant-1", Direction.IMPORT, Scope.CATALOG)

        assert sync_log.status == "success"
        assert sync_log.counts["created"] == 1
        assert fake_adapter.calls["fetch_catalog"] == 2


class TestIncrementalProgress:

    async def test_counts_written_as_chunks_finish(self, repository, platform_store, integration,
                                                   fake_adapter, fake_clock, monkeypatch):
        config = PosSyncConfig(batch_size=1, batch_max_concurrency=1, retry_jitter_ratio=0.0)
        orchestrator = SyncOrchestrator(
            repository, platform_store,
            config=config,
            limiters=RateLimiterRegistry(config.rate_limits),
            adapter_factory=lambda provider_config, integration, access_token, limiter: fake_adapter,
            sleep=fake_clock.sleep,
        )
        for i in range(3):
            fake_adapter.add_item(f"X-{i}", f"Item {i}")
        queued = orchestrator.enqueue("tenant-1", Direction.IMPORT, Scope.CATALOG)

        created_so_far = []
        create_product = platform_store.create_product

        def recording_create(*args, **kwargs):
            created_so_far.append(repository.get_sync_log(queued.id).counts["created"])
            return create_product(*args, **kwargs)

        monkeypatch.setattr(platform_store, "create_product", recording_create)

        sync_log = await orchestrator.run("tenant-1", sync_log_id=queued.id)

        assert created_so_far == [0, 1, 2]
        assert sync_log.counts["created"] == 3
        assert len(sync_log.item_results) == 3


class TestSummaries:

    def test_summarize_failures(self):
        assert summarize_failures({}) is None
        assert summarize_failures({"rate_limited": 1, "permanent_provider_error": 2}) == \
            "3 item(s) failed: permanent_provider_error×2, rate_limited×1"
