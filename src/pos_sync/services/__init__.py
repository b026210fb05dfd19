"""
Sync engine services: OAuth, batching, conflict resolution, catalog and
inventory sync, and the orchestrator that ties them together.
"""

from .batch_processor import BatchProcessor, BatchResult, ItemOutcome, ItemStatus
from .catalog_sync import CatalogSync
from .conflict_resolver import ConflictPolicy, ConflictResolver, Resolution, Strategy, resolve
from .inventory_sync import InventorySync
from .oauth_service import OAuthService
from .sync_context import SyncContext
from .sync_orchestrator import SyncOrchestrator

__all__ = [
    "BatchProcessor",
    "BatchResult",
    "ItemOutcome",
    "ItemStatus",
    "CatalogSync",
    "ConflictPolicy",
    "ConflictResolver",
    "Resolution",
    "Strategy",
    "resolve",
    "InventorySync",
    "OAuthService",
    "SyncContext",
    "SyncOrchestrator",
]
