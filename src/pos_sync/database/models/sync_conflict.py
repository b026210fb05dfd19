"""
SyncConflict model - field conflicts deferred to manual review.
"""

import uuid

from sqlalchemy import Column, String, DateTime, ForeignKey, Index, Text, Uuid
from sqlalchemy.orm import relationship

from pos_sync.core.models import utcnow
from .base import Base, JSONType


class SyncConflict(Base):
    """Persisted conflict record; one open row per (mapping, field)."""

    __tablename__ = "sync_conflicts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    integration_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("integrations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    mapping_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("product_mappings.id", ondelete="CASCADE"),
        nullable=True
    )
    sync_log_id = Column(Uuid(as_uuid=True), ForeignKey("sync_logs.id", ondelete="SET NULL"), nullable=True)

    external_product_id = Column(String(128), nullable=True)
    platform_product_id = Column(String(64), nullable=True)

    field = Column(String(64), nullable=False)
    external_value = Column(JSONType, nullable=True)
    platform_value = Column(JSONType, nullable=True)

    status = Column(String(20), nullable=False, default="pending_review")  # pending_review, resolved
    resolved_value = Column(JSONType, nullable=True)
    reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    mapping = relationship("ProductMapping")

    __table_args__ = (
        Index("ix_sync_conflicts_open", "integration_id", "status"),
        Index("ix_sync_conflicts_mapping_field", "mapping_id", "field"),
    )

    def __repr__(self):
        return f"<SyncConflict(field='{self.field}', status='{self.status}')>"

    def to_dict(self):
        return {
            "id": str(self.id),
            "integration_id": str(self.integration_id),
            "mapping_id": str(self.mapping_id) if self.mapping_id else None,
            "external_product_id": self.external_product_id,
            "platform_product_id": self.platform_product_id,
            "field": self.field,
            "external_value": self.external_value,
            "platform_value": self.platform_value,
            "status": self.status,
            "resolved_value": self.resolved_value,
            "reason": self.reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
