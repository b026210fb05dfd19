"""
PlatformProduct model - the platform's store of record for products.

Only the fields the POS mapping reads or writes are modelled here.
"""

import uuid

from sqlalchemy import Column, String, Integer, Numeric, DateTime, Index, Boolean, Text, Uuid

from pos_sync.core.models import utcnow
from .base import Base, JSONType


class PlatformProduct(Base):
    """Platform product row."""

    __tablename__ = "platform_products"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False, index=True)

    # Catalog fields
    name = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=False, default="USD")
    sku = Column(String(128), nullable=True)
    images = Column(JSONType, nullable=True)
    category = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    # Inventory
    quantity = Column(Integer, default=0, nullable=False)
    quantity_updated_at = Column(DateTime(timezone=True), nullable=True)

    # Where the row came from (platform, square, clover)
    source = Column(String(32), nullable=False, default="platform")

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_platform_products_tenant_sku", "tenant_id", "sku"),
    )

    def __repr__(self):
        return f"<PlatformProduct(id={self.id}, tenant_id='{self.tenant_id}', sku='{self.sku}')>"
