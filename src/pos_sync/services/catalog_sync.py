"""
Catalog Sync.

Reconciles catalog fields (name, description, price, SKU, images, category)
between the POS and the platform. Change detection is hash based: each
ProductMapping keeps the fingerprint both sides agreed on last time, so an
item whose fingerprints still match is skipped without consulting the
conflict resolver.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pos_sync.core.fingerprint import catalog_fingerprint
from pos_sync.core.models import (
    CATALOG_FIELDS, ConflictRecord, Direction, ExternalCatalogItem, PlatformProduct,
)
from pos_sync.database.models import ProductMapping
from pos_sync.services.batch_processor import BatchResult, ItemOutcome
from pos_sync.services.conflict_resolver import Resolution, values_equal
from pos_sync.services.sync_context import SyncContext
from pos_sync.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class CatalogWorkItem:
    """One unit of catalog work: an external item, a platform product, or both."""

    external: Optional[ExternalCatalogItem] = None
    product: Optional[PlatformProduct] = None
    mapping: Optional[ProductMapping] = None

    @property
    def key(self) -> str:
        if self.external is not None and self.external.external_id:
            return self.external.external_id
        return f"platform:{self.product.platform_id}"


def _fields_equal(a: Dict[str, Any], b: Dict[str, Any]) -> bool:
    return all(values_equal(a.get(name), b.get(name)) for name in CATALOG_FIELDS)


class CatalogSync:
    """Catalog import, export and bidirectional reconciliation for one Integration."""

    def __init__(self, context: SyncContext):
        self.context = context

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def sync_from_external(self, tenant_id: str) -> BatchResult:
        """Import POS catalog changes into the platform."""
        self.context.check_tenant(tenant_id)
        work = await self._external_work(include_unmapped_products=False)
        return await self._run(work, Direction.IMPORT)

    async def sync_to_external(self, tenant_id: str) -> BatchResult:
        """Export platform catalog changes to the POS."""
        self.context.check_tenant(tenant_id)
        externals = await self._external_index()
        products = self.context.platform_store.list_products(tenant_id)

        work = []
        for product in products:
            mapping = self.context.repository.get_mapping_by_platform_id(
                self.context.integration_id, product.platform_id)
            external = externals.get(mapping.external_product_id) if mapping is not None else None
            work.append(CatalogWorkItem(external=external, product=product, mapping=mapping))
        return await self._run(work, Direction.EXPORT)

    async def sync_bidirectional(self, tenant_id: str) -> BatchResult:
        """
        Reconcile both ways in one pass.

        Items changed on one side only are copied across; items changed on
        both sides since the last sync are merged field by field.
        """
        self.context.check_tenant(tenant_id)
        work = await self._external_work(include_unmapped_products=True)
        return await self._run(work, Direction.BIDIRECTIONAL)

    # ------------------------------------------------------------------
    # Work list
    # ------------------------------------------------------------------

    async def _external_index(self) -> Dict[str, ExternalCatalogItem]:
        ctx = self.context

        async def fetch_page(cursor, cancel_token=None):
            return await ctx.batch_processor.call_with_retry(
                ctx.adapter.fetch_catalog_page, cursor, cancel_token=cancel_token)

        items = await ctx.adapter.fetch_all_catalog_items(cancel_token=ctx.cancel_token,
                                                          fetch_page=fetch_page)
        return {item.external_id: item for item in items}

    async def _external_work(self, include_unmapped_products: bool) -> List[CatalogWorkItem]:
        ctx = self.context
        externals = await self._external_index()
        tenant_id = ctx.integration.tenant_id
        mapped_platform_ids = set()

        work = []
        for external in externals.values():
            mapping = ctx.repository.get_mapping(ctx.integration_id, external.external_id)
            product = None
            if mapping is not None:
                mapped_platform_ids.add(mapping.platform_product_id)
                product = ctx.platform_store.get_product(tenant_id, mapping.platform_product_id)
            work.append(CatalogWorkItem(external=external, product=product, mapping=mapping))

        if include_unmapped_products:
            for product in ctx.platform_store.list_products(tenant_id):
                if product.platform_id in mapped_platform_ids:
                    continue
                if ctx.repository.get_mapping_by_platform_id(ctx.integration_id, product.platform_id):
                    # Mapped to an item no longer listed by the POS
                    continue
                work.append(CatalogWorkItem(product=product))

        return work

    async def _run(self, work: List[CatalogWorkItem], direction: Direction) -> BatchResult:
        ctx = self.context
        logger.info(f"Catalog {direction.value} for integration {ctx.integration_id}: "
                    f"{len(work)} item(s){' (dry run)' if ctx.dry_run else ''}")

        async def operation(item: CatalogWorkItem, _context) -> ItemOutcome:
            return await self.process_item(item, direction)

        return await ctx.batch_processor.run(
            work, operation,
            batch_size=ctx.batch_size,
            max_concurrency=ctx.max_concurrency,
            key=lambda item: item.key,
            cancel_token=ctx.cancel_token,
        )

    # ------------------------------------------------------------------
    # Per item
    # ------------------------------------------------------------------

    async def process_item(self, item: CatalogWorkItem, direction: Direction) -> ItemOutcome:
        if item.mapping is None:
            if item.external is not None and direction != Direction.EXPORT:
                return self._create_platform_product(item)
            if item.product is not None and direction != Direction.IMPORT:
                return await self._create_external_item(item)
            return ItemOutcome.skipped(item.key, "not_applicable")

        if item.product is None:
            # Platform product was removed after the mapping was made
            return ItemOutcome.skipped(item.key, "orphaned_mapping",
                                       platform_id=item.mapping.platform_product_id)
        if item.external is None:
            return ItemOutcome.skipped(item.key, "external_missing",
                                       external_id=item.mapping.external_product_id)

        return await self._reconcile(item, direction)

    def _create_platform_product(self, item: CatalogWorkItem) -> ItemOutcome:
        ctx = self.context
        external = item.external
        fields = external.to_fields()
        fields["currency"] = external.currency
        baseline = catalog_fingerprint(fields)

        if ctx.dry_run:
            return ItemOutcome.success(item.key, "created", dry_run=True)

        # Product and mapping commit together or not at all
        with ctx.repository.transaction():
            product = ctx.platform_store.create_product(ctx.integration.tenant_id, fields,
                                                        source=ctx.provider)
            ctx.repository.upsert_mapping(
                ctx.integration_id, external.external_id, product.platform_id,
                variation_id=external.variation_id,
                last_known_hash=baseline,
            )

        logger.debug(f"Imported {external.external_id} as platform product {product.platform_id}")
        return ItemOutcome.success(item.key, "created", platform_id=product.platform_id)

    async def _create_external_item(self, item: CatalogWorkItem) -> ItemOutcome:
        ctx = self.context
        product = item.product
        fields = product.to_fields()
        baseline = catalog_fingerprint(fields)

        if ctx.dry_run:
            return ItemOutcome.success(item.key, "created", dry_run=True)

        external_item = ExternalCatalogItem(external_id=None, currency=product.currency, **fields)
        idempotency_key = f"{ctx.integration_id}:{product.platform_id}:{baseline}"
        external_id = await ctx.adapter.upsert_catalog_item(
            external_item, idempotency_key, cancel_token=ctx.cancel_token)

        ctx.repository.upsert_mapping(ctx.integration_id, external_id, product.platform_id,
                                      last_known_hash=baseline)
        logger.debug(f"Exported platform product {product.platform_id} as {external_id}")
        return ItemOutcome.success(item.key, "created", external_id=external_id)

    async def _reconcile(self, item: CatalogWorkItem, direction: Direction) -> ItemOutcome:
        ctx = self.context
        external, product, mapping = item.external, item.product, item.mapping

        external_fields = external.to_fields()
        platform_fields = product.to_fields()
        external_hash = catalog_fingerprint(external_fields)
        platform_hash = catalog_fingerprint(platform_fields)
        baseline = mapping.last_known_hash

        if external_hash == platform_hash:
            if baseline != external_hash and not ctx.dry_run:
                self._save_baseline(item, external_hash)
            return ItemOutcome.skipped(item.key, "unchanged")

        external_changed = baseline is None or external_hash != baseline
        platform_changed = baseline is None or platform_hash != baseline

        if direction == Direction.IMPORT and not external_changed:
            return ItemOutcome.skipped(item.key, "unchanged")
        if direction == Direction.EXPORT and not platform_changed:
            return ItemOutcome.skipped(item.key, "unchanged")

        resolutions: List[Resolution] = []
        if external_changed and not platform_changed:
            target_platform = dict(external_fields)
            target_external = dict(external_fields)
        elif platform_changed and not external_changed:
            target_platform = dict(platform_fields)
            target_external = dict(platform_fields)
        else:
            resolutions = ctx.resolver.resolve_all(
                external_fields, external.updated_at,
                platform_fields, product.updated_at,
                fields=CATALOG_FIELDS,
            )
            target_platform = ctx.resolver.apply_resolutions(platform_fields, resolutions)
            target_external = ctx.resolver.apply_resolutions(external_fields, resolutions)

        conflicts = [
            ctx.resolver.to_record(
                r, external_fields.get(r.field), platform_fields.get(r.field),
                external_id=external.external_id,
                platform_id=product.platform_id,
                mapping_id=str(mapping.id) if mapping.id else None,
            )
            for r in resolutions
        ]
        pending = [c for c in conflicts if c.pending_review]

        write_platform = direction != Direction.EXPORT and not _fields_equal(target_platform, platform_fields)
        write_external = direction != Direction.IMPORT and not _fields_equal(target_external, external_fields)

        if pending:
            # Leave the baseline unset so the item is re-examined until reviewed
            new_baseline = None
        elif direction == Direction.IMPORT:
            new_baseline = external_hash
        elif direction == Direction.EXPORT:
            new_baseline = platform_hash
        else:
            new_baseline = catalog_fingerprint(target_platform)

        if not ctx.dry_run:
            await self._apply(item, target_platform if write_platform else None,
                              target_external if write_external else None, new_baseline)

        return self._outcome(item.key, conflicts, pending, write_platform or write_external)

    async def _apply(self, item: CatalogWorkItem, platform_values: Optional[Dict[str, Any]],
                     external_values: Optional[Dict[str, Any]], baseline: Optional[str]) -> None:
        ctx = self.context
        external, product = item.external, item.product

        if external_values is not None:
            updated = ExternalCatalogItem(
                external_id=external.external_id,
                currency=external.currency,
                variation_id=external.variation_id,
                version=external.version,
                **external_values,
            )
            idempotency_key = (f"{ctx.integration_id}:{product.platform_id}:"
                               f"{catalog_fingerprint(external_values)}")
            await ctx.adapter.upsert_catalog_item(updated, idempotency_key, cancel_token=ctx.cancel_token)

        with ctx.repository.transaction():
            if platform_values is not None:
                ctx.platform_store.update_product(ctx.integration.tenant_id, product.platform_id,
                                                  platform_values)
            self._save_baseline(item, baseline)

    def _save_baseline(self, item: CatalogWorkItem, baseline: Optional[str]) -> None:
        ctx = self.context
        ctx.repository.upsert_mapping(
            ctx.integration_id, item.mapping.external_product_id, item.mapping.platform_product_id,
            variation_id=item.external.variation_id if item.external else None,
            last_known_hash=baseline,
        )

    @staticmethod
    def _outcome(key: str, conflicts: List[ConflictRecord], pending: List[ConflictRecord],
                 wrote: bool) -> ItemOutcome:
        if pending:
            return ItemOutcome.success(key, "conflicted", conflicts,
                                       pending_fields=[c.field for c in pending])
        if wrote:
            return ItemOutcome.success(key, "updated", conflicts)
        outcome = ItemOutcome.skipped(key, "unchanged")
        outcome.conflicts = conflicts
        return outcome
