"""
Unit tests for inventory sync
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from pos_sync.core.fingerprint import inventory_fingerprint
from pos_sync.core.models import Direction, InventoryLevel, utcnow
from pos_sync.services.batch_processor import BatchProcessor
from pos_sync.services.conflict_resolver import ConflictResolver
from pos_sync.services.inventory_sync import InventorySync
from pos_sync.services.sync_context import SyncContext
from pos_sync.utils.exceptions import IntegrationNotFound, TransientProviderError
from pos_sync.utils.retry import RetryPolicy, no_jitter


@pytest.fixture
def make_inventory_sync(integration, fake_adapter, repository, platform_store, fake_clock):
    def _make(dry_run=False):
        context = SyncContext(
            integration=integration,
            adapter=fake_adapter,
            repository=repository,
            platform_store=platform_store,
            resolver=ConflictResolver(),
            batch_processor=BatchProcessor(retry_policy=RetryPolicy(jitter=no_jitter),
                                           sleep=fake_clock.sleep),
            dry_run=dry_run,
        )
        return InventorySync(context)
    return _make


@pytest.fixture
def stocked(fake_adapter, repository, platform_store, integration):
    """Mapped product with platform and POS quantities and an agreed baseline."""
    def _make(platform_qty, external_qty, baseline_qty=None, external_id="X-1"):
        product = platform_store.create_product("tenant-1", {"name": external_id, "price": Decimal("1.00")},
                                                quantity=platform_qty)
        fake_adapter.add_item(external_id, external_id, quantity=external_qty)
        baseline = inventory_fingerprint(baseline_qty) if baseline_qty is not None else None
        repository.upsert_mapping(integration.id, external_id, product.platform_id,
                                  last_inventory_hash=baseline)
        return product
    return _make


class TestInventoryImport:

    async def test_external_change_applied(self, make_inventory_sync, stocked, platform_store,
                                           repository, integration):
        product = stocked(platform_qty=3, external_qty=7, baseline_qty=3)

        result = await make_inventory_sync().sync_from_external("tenant-1")

        assert result.outcomes[0].action == "updated"
        assert platform_store.get_product("tenant-1", product.platform_id).quantity == 7
        mapping = repository.get_mapping(integration.id, "X-1")
        assert mapping.last_inventory_hash == inventory_fingerprint(7)

    async def test_equal_quantities_unchanged(self, make_inventory_sync, stocked, fake_adapter):
        stocked(platform_qty=5, external_qty=5)

        result = await make_inventory_sync().sync_from_external("tenant-1")

        assert result.outcomes[0].action == "unchanged"
        assert fake_adapter.level_writes == []

    async def test_untracked_item_skipped(self, make_inventory_sync, stocked):
        stocked(platform_qty=5, external_qty=None)

        result = await make_inventory_sync().sync_from_external("tenant-1")

        assert result.outcomes[0].action == "untracked"

    async def test_orphaned_mapping(self, make_inventory_sync, repository, integration):
        repository.upsert_mapping(integration.id, "X-9", "00000000-0000-0000-0000-000000000000")

        result = await make_inventory_sync().sync_from_external("tenant-1")

        assert result.outcomes[0].action == "orphaned_mapping"

    async def test_platform_only_change_ignored(self, make_inventory_sync, stocked, platform_store):
        product = stocked(platform_qty=9, external_qty=3, baseline_qty=3)

        result = await make_inventory_sync().sync_from_external("tenant-1")

        assert result.outcomes[0].action == "unchanged"
        assert platform_store.get_product("tenant-1", product.platform_id).quantity == 9

    async def test_level_fetch_retried(self, make_inventory_sync, stocked, fake_adapter, fake_clock):
        stocked(platform_qty=3, external_qty=7, baseline_qty=3)
        fake_adapter.errors["fetch_levels"] = [TransientProviderError("503", status_code=503)]

        result = await make_inventory_sync().sync_from_external("tenant-1")

        assert result.succeeded == 1
        assert fake_adapter.calls["fetch_levels"] == 2
        assert fake_clock.sleeps == [1.0]

    async def test_dry_run(self, make_inventory_sync, stocked, platform_store):
        product = stocked(platform_qty=3, external_qty=7, baseline_qty=3)

        result = await make_inventory_sync(dry_run=True).sync_from_external("tenant-1")

        assert result.outcomes[0].action == "updated"
        assert platform_store.get_product("tenant-1", product.platform_id).quantity == 3


class TestInventoryExport:

    async def test_platform_change_pushed(self, make_inventory_sync, stocked, fake_adapter):
        stocked(platform_qty=9, external_qty=3, baseline_qty=3)

        result = await make_inventory_sync().sync_to_external("tenant-1")

        assert result.outcomes[0].action == "updated"
        assert fake_adapter.level_writes == [("X-1", 9)]

    async def test_external_only_change_ignored(self, make_inventory_sync, stocked, fake_adapter):
        stocked(platform_qty=3, external_qty=8, baseline_qty=3)

        result = await make_inventory_sync().sync_to_external("tenant-1")

        assert result.outcomes[0].action == "unchanged"
        assert fake_adapter.level_writes == []

    async def test_untracked_item_seeded(self, make_inventory_sync, stocked, fake_adapter):
        stocked(platform_qty=4, external_qty=None)

        await make_inventory_sync().sync_to_external("tenant-1")

        assert fake_adapter.level_writes == [("X-1", 4)]


class TestInventoryBidirectional:

    async def test_most_recent_wins_when_both_changed(self, make_inventory_sync, stocked, fake_adapter,
                                                      platform_store):
        product = stocked(platform_qty=6, external_qty=8, baseline_qty=3)
        fake_adapter.levels["X-1"] = InventoryLevel("X-1", 8, utcnow() + timedelta(minutes=1))

        result = await make_inventory_sync().sync_bidirectional("tenant-1")

        outcome = result.outcomes[0]
        assert outcome.action == "updated"
        assert outcome.conflicts[0].field == "quantity"
        assert platform_store.get_product("tenant-1", product.platform_id).quantity == 8
        assert fake_adapter.level_writes == []

    async def test_platform_more_recent(self, make_inventory_sync, stocked, fake_adapter, platform_store):
        product = stocked(platform_qty=6, external_qty=8, baseline_qty=3)
        fake_adapter.levels["X-1"] = InventoryLevel("X-1", 8, utcnow() - timedelta(hours=1))

        await make_inventory_sync().sync_bidirectional("tenant-1")

        assert fake_adapter.level_writes == [("X-1", 6)]
        assert platform_store.get_product("tenant-1", product.platform_id).quantity == 6


class TestInventoryHelpers:

    async def test_find_discrepancies(self, make_inventory_sync, stocked):
        stocked(platform_qty=5, external_qty=5, external_id="X-1")
        stocked(platform_qty=5, external_qty=2, external_id="X-2")
        stocked(platform_qty=1, external_qty=None, external_id="X-3")

        discrepancies = await make_inventory_sync().find_discrepancies("tenant-1")

        by_id = {d.external_id: d for d in discrepancies}
        assert set(by_id) == {"X-2", "X-3"}
        assert by_id["X-2"].difference == -3
        assert by_id["X-3"].external_quantity is None

    async def test_sync_single_product(self, make_inventory_sync, stocked, platform_store):
        product = stocked(platform_qty=3, external_qty=7, baseline_qty=3)

        outcome = await make_inventory_sync().sync_product("tenant-1", product.platform_id,
                                                           Direction.IMPORT)

        assert outcome.action == "updated"
        assert platform_store.get_product("tenant-1", product.platform_id).quantity == 7

    async def test_sync_unmapped_product(self, make_inventory_sync):
        with pytest.raises(IntegrationNotFound):
            await make_inventory_sync().sync_product("tenant-1", "00000000-0000-0000-0000-000000000001")
