"""
Inventory Sync.

Keeps quantity-on-hand consistent for mapped products. Only products that
already have a ProductMapping take part; catalog sync creates the mappings.
"""

from typing import Dict, List, Optional

from pos_sync.core.fingerprint import inventory_fingerprint
from pos_sync.core.models import Direction, InventoryDiscrepancy, InventoryLevel, utcnow
from pos_sync.database.models import ProductMapping
from pos_sync.services.batch_processor import BatchResult, ItemOutcome
from pos_sync.services.sync_context import SyncContext
from pos_sync.utils.exceptions import IntegrationNotFound
from pos_sync.utils.logger import get_logger

logger = get_logger(__name__)


def inventory_key(mapping: ProductMapping) -> str:
    """External id the POS tracks stock under (the variation when there is one)."""
    return mapping.external_variation_id or mapping.external_product_id


class InventorySync:
    """Quantity import, export and bidirectional reconciliation for one Integration."""

    def __init__(self, context: SyncContext):
        self.context = context

    async def sync_from_external(self, tenant_id: str) -> BatchResult:
        self.context.check_tenant(tenant_id)
        return await self._run(Direction.IMPORT)

    async def sync_to_external(self, tenant_id: str) -> BatchResult:
        self.context.check_tenant(tenant_id)
        return await self._run(Direction.EXPORT)

    async def sync_bidirectional(self, tenant_id: str) -> BatchResult:
        self.context.check_tenant(tenant_id)
        return await self._run(Direction.BIDIRECTIONAL)

    async def sync_product(self, tenant_id: str, platform_id: str,
                           direction: Direction = Direction.BIDIRECTIONAL) -> ItemOutcome:
        """Reconcile the quantity of a single mapped product."""
        ctx = self.context
        ctx.check_tenant(tenant_id)
        mapping = ctx.repository.get_mapping_by_platform_id(ctx.integration_id, platform_id)
        if mapping is None:
            raise IntegrationNotFound(f"Product {platform_id} is not mapped to {ctx.provider}",
                                      {"platform_id": platform_id})
        levels = await self._fetch_levels([mapping])
        return await self.process_mapping(mapping, levels, Direction(direction))

    async def find_discrepancies(self, tenant_id: str) -> List[InventoryDiscrepancy]:
        """
        Compare platform and POS quantities without changing either.

        Returns:
            One entry per mapped product whose quantities differ, including
            products the POS does not track stock for (``external_quantity`` None).
        """
        ctx = self.context
        ctx.check_tenant(tenant_id)
        mappings = ctx.repository.list_mappings(ctx.integration_id)
        batch_size = ctx.batch_size or ctx.batch_processor.settings.batch_size

        discrepancies = []
        for start in range(0, len(mappings), batch_size):
            chunk = mappings[start:start + batch_size]
            levels = await self._fetch_levels(chunk)
            for mapping in chunk:
                product = ctx.platform_store.get_product(tenant_id, mapping.platform_product_id)
                if product is None:
                    continue
                level = levels.get(inventory_key(mapping))
                external_quantity = level.quantity if level is not None else None
                if external_quantity != product.quantity:
                    discrepancies.append(InventoryDiscrepancy(
                        external_id=inventory_key(mapping),
                        platform_id=product.platform_id,
                        platform_quantity=product.quantity,
                        external_quantity=external_quantity,
                    ))

        logger.info(f"Found {len(discrepancies)} inventory discrepancies for integration "
                    f"{ctx.integration_id}")
        return discrepancies

    async def _fetch_levels(self, mappings: List[ProductMapping]) -> Dict[str, InventoryLevel]:
        keys = [inventory_key(m) for m in mappings]
        return await self.context.adapter.fetch_inventory_levels(keys, cancel_token=self.context.cancel_token)

    async def _run(self, direction: Direction) -> BatchResult:
        ctx = self.context
        mappings = ctx.repository.list_mappings(ctx.integration_id)
        logger.info(f"Inventory {direction.value} for integration {ctx.integration_id}: "
                    f"{len(mappings)} mapped product(s){' (dry run)' if ctx.dry_run else ''}")

        async def operation(mapping: ProductMapping, levels: Dict[str, InventoryLevel]) -> ItemOutcome:
            return await self.process_mapping(mapping, levels, direction)

        return await ctx.batch_processor.run(
            mappings, operation,
            batch_size=ctx.batch_size,
            max_concurrency=ctx.max_concurrency,
            key=inventory_key,
            chunk_setup=self._fetch_levels,
            cancel_token=ctx.cancel_token,
        )

    async def process_mapping(self, mapping: ProductMapping, levels: Dict[str, InventoryLevel],
                              direction: Direction) -> ItemOutcome:
        ctx = self.context
        key = inventory_key(mapping)
        tenant_id = ctx.integration.tenant_id

        product = ctx.platform_store.get_product(tenant_id, mapping.platform_product_id)
        if product is None:
            return ItemOutcome.skipped(key, "orphaned_mapping", platform_id=mapping.platform_product_id)

        level = levels.get(key)
        if level is None and direction == Direction.IMPORT:
            return ItemOutcome.skipped(key, "untracked")

        external_quantity = level.quantity if level is not None else None
        external_updated_at = level.updated_at if level is not None else None
        platform_quantity = product.quantity

        external_hash = inventory_fingerprint(external_quantity)
        platform_hash = inventory_fingerprint(platform_quantity)
        baseline = mapping.last_inventory_hash

        if external_quantity == platform_quantity:
            if baseline != platform_hash and not ctx.dry_run:
                self._save_baseline(mapping, platform_hash)
            return ItemOutcome.skipped(key, "unchanged")

        external_changed = baseline is None or external_hash != baseline
        platform_changed = baseline is None or platform_hash != baseline

        if direction == Direction.IMPORT and not external_changed:
            return ItemOutcome.skipped(key, "unchanged")
        if direction == Direction.EXPORT and not platform_changed:
            return ItemOutcome.skipped(key, "unchanged")

        conflicts = []
        if level is None:
            # POS has no stock record; the platform quantity seeds it
            target = platform_quantity
        elif external_changed and not platform_changed:
            target = external_quantity
        elif platform_changed and not external_changed:
            target = platform_quantity
        else:
            resolution = ctx.resolver.resolve("quantity", external_quantity, external_updated_at,
                                              platform_quantity, product.quantity_updated_at)
            conflicts.append(ctx.resolver.to_record(
                resolution, external_quantity, platform_quantity,
                external_id=key, platform_id=product.platform_id,
                mapping_id=str(mapping.id) if mapping.id else None,
            ))
            if resolution.pending_review:
                return ItemOutcome.success(key, "conflicted", conflicts, pending_fields=["quantity"])
            target = resolution.value

        write_platform = direction != Direction.EXPORT and target != platform_quantity
        write_external = direction != Direction.IMPORT and target != external_quantity

        if direction == Direction.IMPORT:
            new_baseline = external_hash
        elif direction == Direction.EXPORT:
            new_baseline = platform_hash
        else:
            new_baseline = inventory_fingerprint(target)

        if not ctx.dry_run:
            await self._apply(mapping, product.platform_id, key, target,
                              write_platform, write_external, external_updated_at, new_baseline)

        if not (write_platform or write_external):
            outcome = ItemOutcome.skipped(key, "unchanged")
            outcome.conflicts = conflicts
            return outcome

        return ItemOutcome.success(key, "updated", conflicts,
                                   quantity=target, previous_platform=platform_quantity,
                                   previous_external=external_quantity)

    async def _apply(self, mapping: ProductMapping, platform_id: str, key: str, quantity: int,
                     write_platform: bool, write_external: bool,
                     external_updated_at, baseline: str) -> None:
        ctx = self.context
        if write_external:
            await ctx.adapter.set_inventory_level(key, quantity, cancel_token=ctx.cancel_token)

        with ctx.repository.transaction():
            if write_platform:
                ctx.platform_store.set_quantity(ctx.integration.tenant_id, platform_id, quantity,
                                                updated_at=external_updated_at or utcnow())
            self._save_baseline(mapping, baseline)

    def _save_baseline(self, mapping: ProductMapping, baseline: Optional[str]) -> None:
        self.context.repository.upsert_mapping(
            self.context.integration_id, mapping.external_product_id, mapping.platform_product_id,
            last_inventory_hash=baseline,
        )
