"""
SyncLog model - audit record of one sync run.
"""

import uuid

from sqlalchemy import Column, String, Integer, DateTime, ForeignKey, Index, Text, Boolean, Uuid
from sqlalchemy.orm import relationship

from pos_sync.core.models import utcnow
from .base import Base, JSONType


class SyncLog(Base):
    """
    Log entry for each sync run.

    Status only moves forward (queued -> running -> terminal) and
    ``finished_at`` is written exactly once, with the terminal status.
    """

    __tablename__ = "sync_logs"

    # Primary Key
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Integration Relationship
    integration_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("integrations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    tenant_id = Column(String(64), nullable=False)
    provider = Column(String(32), nullable=False)

    # Run parameters
    direction = Column(String(20), nullable=False)  # import, export, bidirectional
    scope = Column(String(20), nullable=False)  # catalog, inventory, full
    dry_run = Column(Boolean, default=False, nullable=False)
    status = Column(String(32), nullable=False, default="queued")

    # Counts
    created_count = Column(Integer, default=0, nullable=False)
    updated_count = Column(Integer, default=0, nullable=False)
    skipped_count = Column(Integer, default=0, nullable=False)
    conflicted_count = Column(Integer, default=0, nullable=False)
    failed_count = Column(Integer, default=0, nullable=False)

    # Error Information
    error_summary = Column(Text, nullable=True)
    error_code = Column(String(100), nullable=True)

    # Per-item outcomes for debugging
    item_results = Column(JSONType, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)

    integration = relationship("Integration", back_populates="sync_logs")

    __table_args__ = (
        Index("ix_sync_logs_tenant_created", "tenant_id", "created_at"),
        Index("ix_sync_logs_status", "status"),
    )

    def __repr__(self):
        return (f"<SyncLog(id={self.id}, integration_id={self.integration_id}, "
                f"status='{self.status}', failed={self.failed_count})>")

    @property
    def counts(self):
        return {
            "created": self.created_count,
            "updated": self.updated_count,
            "skipped": self.skipped_count,
            "conflicted": self.conflicted_count,
            "failed": self.failed_count,
        }

    def to_dict(self, include_items: bool = False):
        data = {
            "id": str(self.id),
            "integration_id": str(self.integration_id),
            "tenant_id": self.tenant_id,
            "provider": self.provider,
            "direction": self.direction,
            "scope": self.scope,
            "dry_run": self.dry_run,
            "status": self.status,
            "counts": self.counts,
            "error_summary": self.error_summary,
            "error_code": self.error_code,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
        }
        if include_items:
            data["item_results"] = self.item_results or []
        return data
