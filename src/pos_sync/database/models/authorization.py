"""
OAuthAuthorization model - pending authorization-code flows.
"""

from datetime import datetime
from typing import Optional
import uuid

from sqlalchemy import Column, String, DateTime, Index, Uuid

from pos_sync.core.models import utcnow, as_utc
from .base import Base


class OAuthAuthorization(Base):
    """
    One started connect flow, waiting for its callback.

    Only the SHA-256 of the state value is stored. A row is single-use and
    abandoned once ``expires_at`` passes.
    """

    __tablename__ = "oauth_authorizations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    state_hash = Column(String(64), unique=True, nullable=False, index=True)
    tenant_id = Column(String(64), nullable=False)
    provider = Column(String(32), nullable=False)

    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    consumed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_oauth_authorizations_tenant_provider", "tenant_id", "provider"),
        Index("ix_oauth_authorizations_expires", "expires_at"),
    )

    def __repr__(self):
        return (f"<OAuthAuthorization(tenant_id='{self.tenant_id}', provider='{self.provider}', "
                f"consumed={self.consumed_at is not None})>")

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= as_utc(self.expires_at)

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.consumed_at is None and not self.is_expired(now)
