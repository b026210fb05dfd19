"""
Platform product store.

Reads and writes the platform's own product rows through normalized
``PlatformProduct`` values. Writes only flush; the surrounding
``IntegrationRepository.transaction()`` commits them together with the
mapping they belong to.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pos_sync.core.models import CATALOG_FIELDS, PlatformProduct, utcnow
from pos_sync.database.models import PlatformProduct as PlatformProductRow
from pos_sync.database.repository import as_uuid
from pos_sync.utils.exceptions import RepositoryError, ValidationError
from pos_sync.utils.logger import get_logger


logger = get_logger(__name__)


def _to_domain(row: PlatformProductRow) -> PlatformProduct:
    return PlatformProduct(
        platform_id=str(row.id),
        tenant_id=row.tenant_id,
        name=row.name,
        description=row.description,
        price=Decimal(str(row.price)) if row.price is not None else None,
        currency=row.currency,
        sku=row.sku,
        images=list(row.images or []),
        category=row.category,
        quantity=row.quantity or 0,
        updated_at=row.updated_at,
        quantity_updated_at=row.quantity_updated_at,
    )


class PlatformProductStore:
    """Access to platform products of one database session."""

    def __init__(self, session: Session):
        self.session = session

    def _get_row(self, tenant_id: str, platform_id: str) -> Optional[PlatformProductRow]:
        try:
            product_uuid = as_uuid(platform_id)
        except ValidationError:
            return None
        row = self.session.get(PlatformProductRow, product_uuid)
        if row is None or row.tenant_id != tenant_id:
            return None
        return row

    def list_products(self, tenant_id: str, active_only: bool = True) -> List[PlatformProduct]:
        try:
            query = self.session.query(PlatformProductRow).filter(PlatformProductRow.tenant_id == tenant_id)
            if active_only:
                query = query.filter(PlatformProductRow.is_active.is_(True))
            return [_to_domain(row) for row in query.order_by(PlatformProductRow.created_at).all()]
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to list products: {e.__class__.__name__}",
                                  operation="list_products", table="platform_products") from e

    def get_product(self, tenant_id: str, platform_id: str) -> Optional[PlatformProduct]:
        try:
            row = self._get_row(tenant_id, platform_id)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to load product: {e.__class__.__name__}",
                                  operation="get_product", table="platform_products") from e
        return _to_domain(row) if row is not None else None

    def create_product(self, tenant_id: str, fields: Dict[str, Any], quantity: int = 0,
                       source: str = "platform") -> PlatformProduct:
        """
        Create a product from catalog field values.

        Args:
            tenant_id: Owning tenant
            fields: Values for any of the catalog fields
            quantity: Initial quantity on hand
            source: Origin of the row (provider name for imports)
        """
        if not fields.get("name"):
            raise ValidationError("Product name is required", field="name")

        now = utcnow()
        row = PlatformProductRow(
            tenant_id=tenant_id,
            name=fields["name"],
            description=fields.get("description"),
            price=fields.get("price"),
            currency=fields.get("currency") or "USD",
            sku=fields.get("sku"),
            images=list(fields.get("images") or []),
            category=fields.get("category"),
            quantity=quantity,
            quantity_updated_at=now,
            source=source,
            created_at=now,
            updated_at=now,
        )
        try:
            self.session.add(row)
            self.session.flush()
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to create product: {e.__class__.__name__}",
                                  operation="create_product", table="platform_products") from e

        logger.debug(f"Created platform product {row.id} for tenant {tenant_id}")
        return _to_domain(row)

    def update_product(self, tenant_id: str, platform_id: str,
                       fields: Dict[str, Any]) -> Optional[PlatformProduct]:
        """Apply catalog field values; unknown keys are ignored."""
        try:
            row = self._get_row(tenant_id, platform_id)
            if row is None:
                return None

            changed = False
            for name in CATALOG_FIELDS:
                if name not in fields:
                    continue
                value = fields[name]
                if name == "images":
                    value = list(value or [])
                if getattr(row, name) != value:
                    setattr(row, name, value)
                    changed = True

            if changed:
                row.updated_at = utcnow()
                self.session.flush()
            return _to_domain(row)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to update product: {e.__class__.__name__}",
                                  operation="update_product", table="platform_products") from e

    def set_quantity(self, tenant_id: str, platform_id: str, quantity: int,
                     updated_at: Optional[datetime] = None) -> Optional[PlatformProduct]:
        try:
            row = self._get_row(tenant_id, platform_id)
            if row is None:
                return None
            row.quantity = quantity
            row.quantity_updated_at = updated_at or utcnow()
            self.session.flush()
            return _to_domain(row)
        except SQLAlchemyError as e:
            raise RepositoryError(f"Failed to set quantity: {e.__class__.__name__}",
                                  operation="set_quantity", table="platform_products") from e
