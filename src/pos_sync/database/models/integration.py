"""
Integration model - OAuth connection between a tenant and a POS account.
"""

import uuid

from sqlalchemy import Column, String, DateTime, Boolean, Index, Text, Uuid, text
from sqlalchemy.orm import relationship

from pos_sync.core.models import utcnow, as_utc
from .base import Base, JSONType


class Integration(Base):
    """
    Persisted OAuth connection for one (tenant, provider) pair.

    Tokens are stored encrypted. Rows are deactivated on disconnect, never
    deleted, so sync history keeps its parent.
    """

    __tablename__ = "integrations"

    # Primary Key
    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    # Ownership
    tenant_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    environment = Column(String(20), nullable=False, default="sandbox")

    # Credentials (Fernet ciphertext)
    access_token_encrypted = Column(Text, nullable=False)
    refresh_token_encrypted = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    scopes = Column(JSONType, nullable=True)

    # External account
    merchant_id = Column(String(128), nullable=True)
    location_id = Column(String(128), nullable=True)

    # Status
    is_active = Column(Boolean, default=True, nullable=False)
    disconnect_reason = Column(String(255), nullable=True)

    # Timestamps
    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    disconnected_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    mappings = relationship("ProductMapping", back_populates="integration", lazy="dynamic")
    sync_logs = relationship("SyncLog", back_populates="integration", lazy="dynamic")

    __table_args__ = (
        # At most one active integration per (tenant, provider)
        Index(
            "uq_integrations_active_tenant_provider",
            "tenant_id", "provider",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
        Index("ix_integrations_tenant_provider", "tenant_id", "provider"),
    )

    def __repr__(self):
        return (f"<Integration(id={self.id}, tenant_id='{self.tenant_id}', "
                f"provider='{self.provider}', active={self.is_active})>")

    def to_dict(self):
        """Public view; never includes token material."""
        expires_at = as_utc(self.token_expires_at)
        return {
            "id": str(self.id),
            "tenant_id": self.tenant_id,
            "provider": self.provider,
            "environment": self.environment,
            "merchant_id": self.merchant_id,
            "location_id": self.location_id,
            "is_active": self.is_active,
            "token_expires_at": expires_at.isoformat() if expires_at else None,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
