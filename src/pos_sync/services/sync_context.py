"""
Collaborators shared by the catalog and inventory sync components of one run.
"""

from dataclasses import dataclass, field
from typing import Optional

from pos_sync.database.models import Integration
from pos_sync.database.platform_store import PlatformProductStore
from pos_sync.database.repository import IntegrationRepository
from pos_sync.providers.base import PosAdapter
from pos_sync.services.batch_processor import BatchProcessor
from pos_sync.services.conflict_resolver import ConflictResolver
from pos_sync.utils.cancellation import CancellationToken
from pos_sync.utils.exceptions import ValidationError


@dataclass
class SyncContext:
    integration: Integration
    adapter: PosAdapter
    repository: IntegrationRepository
    platform_store: PlatformProductStore
    resolver: ConflictResolver = field(default_factory=ConflictResolver)
    batch_processor: BatchProcessor = field(default_factory=BatchProcessor)
    dry_run: bool = False
    cancel_token: Optional[CancellationToken] = None
    batch_size: Optional[int] = None
    max_concurrency: Optional[int] = None

    @property
    def integration_id(self):
        return self.integration.id

    @property
    def provider(self) -> str:
        return self.integration.provider

    def check_tenant(self, tenant_id: str) -> None:
        if tenant_id != self.integration.tenant_id:
            raise ValidationError("Tenant does not own this integration",
                                  field="tenant_id", value=tenant_id)
