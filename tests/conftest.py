"""
Test configuration and fixtures for POS Sync
"""
import os

from cryptography.fernet import Fernet

# Configuration must be in place before pos_sync reads it
TEST_ENCRYPTION_KEY = Fernet.generate_key().decode()
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["ENCRYPTION_MASTER_KEY"] = TEST_ENCRYPTION_KEY
os.environ.setdefault("SQUARE_CLIENT_ID", "sq-client")
os.environ.setdefault("SQUARE_CLIENT_SECRET", "sq-secret")
os.environ.setdefault("CLOVER_CLIENT_ID", "cl-client")
os.environ.setdefault("CLOVER_CLIENT_SECRET", "cl-secret")

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Generator, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pos_sync.core.models import (
    CatalogPage, ExternalCatalogItem, InventoryLevel, TokenSet, utcnow,
)
from pos_sync.database.connection import init_db
from pos_sync.database.platform_store import PlatformProductStore
from pos_sync.database.repository import IntegrationRepository
from pos_sync.providers.base import PosAdapter
from pos_sync.security.encryption import TokenEncryptor
from pos_sync.utils.config import ProviderConfig


# =============================================================================
# Test Database Setup
# =============================================================================

@pytest.fixture(scope="function")
def engine():
    """In-memory SQLite shared by every connection of one test"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(engine) -> Generator[Session, None, None]:
    """Create a new database session for each test"""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False,
                                       expire_on_commit=False, bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def encryptor() -> TokenEncryptor:
    return TokenEncryptor(TEST_ENCRYPTION_KEY)


@pytest.fixture
def repository(db_session, encryptor) -> IntegrationRepository:
    return IntegrationRepository(db_session, encryptor)


@pytest.fixture
def platform_store(db_session) -> PlatformProductStore:
    return PlatformProductStore(db_session)


# =============================================================================
# Clock and sleep
# =============================================================================

class FakeClock:
    """Monotonic clock whose sleeps advance time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Provider doubles
# =============================================================================

@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(
        provider="square",
        client_id="sq-client",
        client_secret="sq-secret",
        redirect_uri="https://app.example.com/api/v1/integrations/square/callback",
        scopes=["ITEMS_READ", "ITEMS_WRITE"],
    )


class FakePosAdapter(PosAdapter):
    """
    In-memory POS.

    ``errors`` maps an operation name (``upsert``, ``set_level``, ``fetch_levels``,
    ``refresh``, ``exchange``, ``revoke``) or ``upsert:<external_id>`` to a list of
    exceptions raised by successive calls.
    """

    def __init__(self, config: ProviderConfig, page_size: int = 50, **kwargs):
        super().__init__(config, **kwargs)
        self.page_size = page_size
        self.items: Dict[str, ExternalCatalogItem] = {}
        self.levels: Dict[str, InventoryLevel] = {}
        self.errors: Dict[str, List[Exception]] = {}
        self.calls: Dict[str, int] = {}
        self.upserts: List[ExternalCatalogItem] = []
        self.level_writes: List[tuple] = []
        self.idempotency_keys: List[str] = []
        self.next_token = TokenSet("new-access", "new-refresh", utcnow() + timedelta(hours=1),
                                   merchant_id="M-1")
        self._counter = 0

    @property
    def provider_name(self) -> str:
        return "square"

    @property
    def api_base_url(self) -> str:
        return "https://pos.test"

    def _track(self, name: str, error_key: Optional[str] = None) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1
        for key in (error_key, name):
            if key and self.errors.get(key):
                raise self.errors[key].pop(0)

    def add_item(self, external_id: str, name: str, price: str = "10.00", sku: Optional[str] = None,
                 updated_at: Optional[datetime] = None, quantity: Optional[int] = None,
                 **fields) -> ExternalCatalogItem:
        item = ExternalCatalogItem(
            external_id=external_id, name=name, price=Decimal(price), sku=sku,
            updated_at=updated_at or utcnow(), **fields,
        )
        self.items[external_id] = item
        if quantity is not None:
            self.levels[external_id] = InventoryLevel(external_id, quantity, updated_at or utcnow())
        return item

    # OAuth

    def authorization_url(self, state: str) -> str:
        return f"https://pos.test/oauth2/authorize?client_id={self.config.client_id}&state={state}"

    async def exchange_code(self, code: str) -> TokenSet:
        self._track("exchange")
        return self.next_token

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        self._track("refresh")
        return self.next_token

    async def revoke_token(self, access_token: str) -> None:
        self._track("revoke")

    # Catalog and inventory

    async def fetch_catalog_page(self, cursor=None, cancel_token=None) -> CatalogPage:
        self._track("fetch_catalog")
        ordered = sorted(self.items.values(), key=lambda i: i.external_id)
        start = int(cursor or 0)
        page = ordered[start:start + self.page_size]
        next_cursor = str(start + self.page_size) if start + self.page_size < len(ordered) else None
        return CatalogPage(items=page, next_cursor=next_cursor)

    async def upsert_catalog_item(self, item, idempotency_key, cancel_token=None) -> str:
        self._track("upsert", f"upsert:{item.external_id}")
        self.idempotency_keys.append(idempotency_key)
        if item.external_id is None:
            self._counter += 1
            item.external_id = f"NEW-{self._counter}"
        self.items[item.external_id] = item
        self.upserts.append(item)
        return item.external_id

    async def fetch_inventory_levels(self, external_ids, cancel_token=None):
        self._track("fetch_levels")
        return {i: self.levels[i] for i in external_ids if i in self.levels}

    async def set_inventory_level(self, external_id, quantity, cancel_token=None) -> None:
        self._track("set_level", f"set_level:{external_id}")
        self.level_writes.append((external_id, quantity))
        self.levels[external_id] = InventoryLevel(external_id, quantity, utcnow())


@pytest.fixture
def fake_adapter(provider_config) -> FakePosAdapter:
    return FakePosAdapter(provider_config, access_token="old-access")


# =============================================================================
# Test Data Fixtures
# =============================================================================

@pytest.fixture
def make_integration(repository):
    """Create an active Integration whose token expires after ``expires_in``."""
    def _make(tenant_id: str = "tenant-1", provider: str = "square",
              expires_in: Optional[timedelta] = timedelta(hours=1),
              refresh_token: Optional[str] = "refresh-1", merchant_id: str = "M-1"):
        expires_at = utcnow() + expires_in if expires_in is not None else None
        token_set = TokenSet("access-1", refresh_token, expires_at, merchant_id=merchant_id)
        return repository.create_integration(tenant_id, provider, token_set)
    return _make


@pytest.fixture
def integration(make_integration):
    return make_integration()
