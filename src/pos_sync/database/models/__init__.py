"""
SQLAlchemy models for POS Sync.

Models:
- Integration: OAuth connection per (tenant, provider)
- OAuthAuthorization: pending connect flows
- ProductMapping: external item <-> platform product links
- SyncLog: sync run history
- SyncConflict: conflicts waiting for manual review
- PlatformProduct: platform product store (mapping-relevant fields)
"""

from .base import Base, JSONType
from .integration import Integration
from .authorization import OAuthAuthorization
from .product_mapping import ProductMapping
from .sync_log import SyncLog
from .sync_conflict import SyncConflict
from .platform_product import PlatformProduct

__all__ = [
    "Base",
    "JSONType",
    "Integration",
    "OAuthAuthorization",
    "ProductMapping",
    "SyncLog",
    "SyncConflict",
    "PlatformProduct",
]
