"""
Domain models for POS Sync.

Normalized structures the engine works with. Provider adapters translate
their own payloads into these types; nothing past the adapter edge sees a
provider-specific shape or a minor-unit money amount.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


CATALOG_FIELDS = ("name", "description", "price", "sku", "images", "category")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Direction(str, Enum):
    """Which way data flows in a run."""
    IMPORT = "import"
    EXPORT = "export"
    BIDIRECTIONAL = "bidirectional"


class Scope(str, Enum):
    """What a run synchronizes."""
    CATALOG = "catalog"
    INVENTORY = "inventory"
    FULL = "full"

    @property
    def includes_catalog(self) -> bool:
        return self in (Scope.CATALOG, Scope.FULL)

    @property
    def includes_inventory(self) -> bool:
        return self in (Scope.INVENTORY, Scope.FULL)


class SyncStatus(str, Enum):
    """SyncLog status. Moves forward only."""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStatus.SUCCESS, SyncStatus.PARTIAL_FAILURE, SyncStatus.FAILED)

    def can_transition_to(self, target: "SyncStatus") -> bool:
        if self == SyncStatus.QUEUED:
            return target == SyncStatus.RUNNING
        if self == SyncStatus.RUNNING:
            return target.is_terminal
        return False


class IntegrationState(str, Enum):
    """Connection lifecycle of one (tenant, provider) pair."""
    DISCONNECTED = "disconnected"
    AUTHORIZING = "authorizing"
    CONNECTED = "connected"
    TOKEN_EXPIRING = "token_expiring"
    REFRESHING = "refreshing"


class Environment(str, Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"


@dataclass
class TokenSet:
    """OAuth credentials for one external account."""

    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]
    merchant_id: Optional[str] = None
    token_type: str = "bearer"
    scopes: List[str] = field(default_factory=list)

    def __post_init__(self):
        self.expires_at = as_utc(self.expires_at)

    def expires_within(self, margin: timedelta, now: Optional[datetime] = None) -> bool:
        """True if the token expires inside ``margin`` from ``now``."""
        if self.expires_at is None:
            return False
        now = now or utcnow()
        return self.expires_at - now <= margin

    def __repr__(self) -> str:
        # Never leak token values into logs
        return (f"TokenSet(expires_at={self.expires_at!r}, merchant_id={self.merchant_id!r}, "
                f"has_refresh_token={bool(self.refresh_token)})")


@dataclass
class ExternalCatalogItem:
    """A catalog item as seen by the POS, normalized."""

    external_id: Optional[str]
    name: str
    description: Optional[str] = None
    price: Optional[Decimal] = None
    currency: str = "USD"
    sku: Optional[str] = None
    images: List[str] = field(default_factory=list)
    category: Optional[str] = None
    updated_at: Optional[datetime] = None
    variation_id: Optional[str] = None
    version: Optional[int] = None

    def __post_init__(self):
        self.updated_at = as_utc(self.updated_at)

    def to_fields(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in CATALOG_FIELDS}


@dataclass
class PlatformProduct:
    """The subset of a platform product relevant to POS mapping."""

    platform_id: str
    tenant_id: str
    name: str
    description: Optional[str] = None
    price: Optional[Decimal] = None
    currency: str = "USD"
    sku: Optional[str] = None
    images: List[str] = field(default_factory=list)
    category: Optional[str] = None
    quantity: int = 0
    updated_at: Optional[datetime] = None
    quantity_updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.updated_at = as_utc(self.updated_at)
        self.quantity_updated_at = as_utc(self.quantity_updated_at)

    def to_fields(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in CATALOG_FIELDS}


@dataclass
class InventoryLevel:
    """Quantity on hand reported by the POS for one item."""

    external_id: str
    quantity: int
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.updated_at = as_utc(self.updated_at)


@dataclass
class CatalogPage:
    """One page of a paginated catalog read."""

    items: List[ExternalCatalogItem]
    next_cursor: Optional[str] = None


@dataclass
class InventoryDiscrepancy:
    """Read-only comparison of quantities for one mapped product."""

    external_id: str
    platform_id: str
    platform_quantity: int
    external_quantity: Optional[int]

    @property
    def difference(self) -> Optional[int]:
        if self.external_quantity is None:
            return None
        return self.external_quantity - self.platform_quantity


class ResolutionSource(str, Enum):
    EXTERNAL = "external"
    PLATFORM = "platform"
    PENDING_REVIEW = "pending_review"


def _json_safe(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    return value


@dataclass
class ConflictRecord:
    """
    One field of one item where both sides changed.

    Produced by the sync components; only records left pending review are
    persisted.
    """

    field: str
    external_value: Any
    platform_value: Any
    resolution: ResolutionSource
    resolved_value: Any = None
    reason: str = ""
    external_id: Optional[str] = None
    platform_id: Optional[str] = None
    mapping_id: Optional[str] = None

    @property
    def pending_review(self) -> bool:
        return self.resolution == ResolutionSource.PENDING_REVIEW

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "external_value": _json_safe(self.external_value),
            "platform_value": _json_safe(self.platform_value),
            "resolution": self.resolution.value,
            "resolved_value": _json_safe(self.resolved_value),
            "reason": self.reason,
            "external_id": self.external_id,
            "platform_id": self.platform_id,
        }


def json_safe(value: Any) -> Any:
    """Convert Decimals and datetimes recursively for JSON columns."""
    return _json_safe(value)
