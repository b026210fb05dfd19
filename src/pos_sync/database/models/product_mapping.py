"""
ProductMapping model - external catalog item to platform product link.
"""

import uuid

from sqlalchemy import Column, String, DateTime, ForeignKey, Index, UniqueConstraint, Uuid
from sqlalchemy.orm import relationship

from pos_sync.core.models import utcnow
from .base import Base


class ProductMapping(Base):
    """
    Join record between one external item and one platform product.

    1:1 within an Integration. The hashes describe the values both sides
    agreed on after the last successful sync of the catalog and inventory
    fields respectively.
    """

    __tablename__ = "product_mappings"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    integration_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("integrations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    external_product_id = Column(String(128), nullable=False)
    external_variation_id = Column(String(128), nullable=True)
    platform_product_id = Column(String(64), nullable=False)

    # Change detection
    last_known_hash = Column(String(64), nullable=True)
    last_inventory_hash = Column(String(64), nullable=True)

    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    integration = relationship("Integration", back_populates="mappings")

    __table_args__ = (
        UniqueConstraint("integration_id", "external_product_id", name="uq_mapping_external"),
        UniqueConstraint("integration_id", "platform_product_id", name="uq_mapping_platform"),
        Index("ix_mappings_platform", "platform_product_id"),
    )

    def __repr__(self):
        return (f"<ProductMapping(external='{self.external_product_id}', "
                f"platform='{self.platform_product_id}')>")

    def to_dict(self):
        return {
            "id": str(self.id),
            "integration_id": str(self.integration_id),
            "external_product_id": self.external_product_id,
            "external_variation_id": self.external_variation_id,
            "platform_product_id": self.platform_product_id,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
        }
