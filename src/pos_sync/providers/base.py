"""
Abstract base class for POS provider adapters.

Every provider exposes the same async contract over normalized domain types.
Adapters own their wire format, their money conversion and their error
mapping; the engine never sees a provider payload.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from pos_sync.core.models import CatalogPage, ExternalCatalogItem, InventoryLevel, TokenSet
from pos_sync.utils.cancellation import CancellationToken
from pos_sync.utils.config import ProviderConfig
from pos_sync.utils.exceptions import (
    TransientProviderError, WouldExceedDeadline, raise_for_provider_response,
)
from pos_sync.utils.logger import get_logger
from pos_sync.utils.rate_limiting import RateLimiter

logger = get_logger(__name__)


class PosAdapter(ABC):
    """
    Abstract POS adapter interface.

    Data calls pass through the Integration's rate limiter; OAuth calls do
    not. Rate-limit responses surface as ``RateLimited`` whatever the
    provider, so the batch processor can back off uniformly.
    """

    def __init__(self, config: ProviderConfig, access_token: Optional[str] = None,
                 merchant_id: Optional[str] = None, location_id: Optional[str] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize adapter.

        Args:
            config: Provider OAuth/endpoint configuration
            access_token: Current access token, if connected
            merchant_id: External merchant identifier
            location_id: External location used for inventory
            rate_limiter: The Integration's limiter
            http_client: Shared client (tests inject one with a mock transport)
        """
        self.config = config
        self.access_token = access_token
        self.merchant_id = merchant_id
        self.location_id = location_id
        self.rate_limiter = rate_limiter
        self._client = http_client
        self._owns_client = http_client is None

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier."""

    @property
    @abstractmethod
    def api_base_url(self) -> str:
        """Base URL of the data API for the configured environment."""

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.request_timeout)
        return self._client

    def set_access_token(self, access_token: str) -> None:
        self.access_token = access_token

    def _default_headers(self) -> Dict[str, str]:
        return {"Accept": "application/json", "Content-Type": "application/json"}

    def _auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    async def _request(self, method: str, url: str, *, gated: bool = True, authenticated: bool = True,
                       cancel_token: Optional[CancellationToken] = None,
                       headers: Optional[Dict[str, str]] = None, **kwargs) -> Any:
        """
        Perform one HTTP call and map failures onto the error taxonomy.

        Args:
            method: HTTP method
            url: Absolute URL
            gated: Acquire a rate-limit grant first
            authenticated: Send the bearer token
            cancel_token: Run token; its deadline caps the request timeout

        Returns:
            Decoded JSON body ({} for empty bodies)
        """
        if gated and self.rate_limiter is not None:
            await self.rate_limiter.acquire(cancel_token=cancel_token)

        timeout = self.config.request_timeout
        if cancel_token is not None:
            remaining = cancel_token.remaining()
            if remaining is not None:
                if remaining <= 0:
                    raise WouldExceedDeadline("Run deadline reached before request", wait_seconds=0.0)
                timeout = min(timeout, remaining)

        request_headers = self._default_headers()
        if authenticated:
            request_headers.update(self._auth_headers())
        if headers:
            request_headers.update(headers)

        endpoint = url.replace(self.api_base_url, "")
        try:
            response = await self.client.request(method, url, headers=request_headers,
                                                 timeout=timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"{self.provider_name} request timed out",
                                         provider=self.provider_name, endpoint=endpoint) from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"{self.provider_name} connection failed: {e.__class__.__name__}",
                                         provider=self.provider_name, endpoint=endpoint) from e

        if response.status_code >= 400:
            logger.warning(f"{self.provider_name} {method} {endpoint} -> {response.status_code}")
            raise_for_provider_response(response, self.provider_name, endpoint)

        if not response.content:
            return {}
        return response.json()

    # OAuth

    @abstractmethod
    def authorization_url(self, state: str) -> str:
        """URL the user is redirected to in order to grant access."""

    @abstractmethod
    async def exchange_code(self, code: str) -> TokenSet:
        """Exchange a one-time authorization code for tokens."""

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> TokenSet:
        """Obtain a new token set from a refresh token."""

    @abstractmethod
    async def revoke_token(self, access_token: str) -> None:
        """Revoke an access token at the provider."""

    # Catalog and inventory

    @abstractmethod
    async def fetch_catalog_page(self, cursor: Optional[str] = None,
                                 cancel_token: Optional[CancellationToken] = None) -> CatalogPage:
        """
        Read one page of the catalog.

        Args:
            cursor: Opaque cursor from the previous page, None for the first

        Returns:
            CatalogPage with ``next_cursor`` None on the last page
        """

    @abstractmethod
    async def upsert_catalog_item(self, item: ExternalCatalogItem, idempotency_key: str,
                                  cancel_token: Optional[CancellationToken] = None) -> str:
        """
        Create (``item.external_id`` None) or update a catalog item.

        Returns:
            External id of the item
        """

    @abstractmethod
    async def fetch_inventory_levels(self, external_ids: List[str],
                                     cancel_token: Optional[CancellationToken] = None
                                     ) -> Dict[str, InventoryLevel]:
        """
        Quantities on hand for the given items.

        Returns:
            Dict mapping external id -> InventoryLevel; untracked ids are absent
        """

    @abstractmethod
    async def set_inventory_level(self, external_id: str, quantity: int,
                                  cancel_token: Optional[CancellationToken] = None) -> None:
        """Set the absolute quantity on hand for one item."""

    async def fetch_all_catalog_items(self, cancel_token: Optional[CancellationToken] = None,
                                      fetch_page: Optional[Callable[..., Awaitable[CatalogPage]]] = None
                                      ) -> List[ExternalCatalogItem]:
        """
        Follow catalog pagination to the end.

        Args:
            fetch_page: Replacement for ``fetch_catalog_page`` with the same
                signature, e.g. one that retries throttled pages
        """
        fetch_page = fetch_page or self.fetch_catalog_page
        items: List[ExternalCatalogItem] = []
        cursor = None
        while True:
            page = await fetch_page(cursor, cancel_token=cancel_token)
            items.extend(page.items)
            if not page.next_cursor:
                break
            cursor = page.next_cursor
        logger.debug(f"Fetched {len(items)} catalog items from {self.provider_name}")
        return items

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
