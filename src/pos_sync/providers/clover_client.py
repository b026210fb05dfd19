"""
Clover POS adapter.

Clover items carry the price directly (in cents) and stock lives in a
separate ``item_stocks`` resource. Pagination is offset based.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from pos_sync.core.models import CatalogPage, ExternalCatalogItem, InventoryLevel, TokenSet
from pos_sync.core.money import major_to_minor, minor_to_major
from pos_sync.providers.base import PosAdapter
from pos_sync.utils.cancellation import CancellationToken
from pos_sync.utils.exceptions import ConfigurationError, PermanentProviderError
from pos_sync.utils.logger import get_logger

logger = get_logger(__name__)

CLOVER_API_URLS = {
    "sandbox": "https://apisandbox.dev.clover.com",
    "production": "https://api.clover.com",
}
CLOVER_AUTHORIZE_URLS = {
    "sandbox": "https://sandbox.dev.clover.com/oauth/v2/authorize",
    "production": "https://www.clover.com/oauth/v2/authorize",
}

PAGE_SIZE = 100


def _from_millis(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def _from_seconds(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class CloverAdapter(PosAdapter):
    """Clover REST v3 inventory API and OAuth v2."""

    @property
    def provider_name(self) -> str:
        return "clover"

    @property
    def api_base_url(self) -> str:
        return CLOVER_API_URLS["production" if self.config.is_production else "sandbox"]

    def _merchant_url(self, path: str) -> str:
        if not self.merchant_id:
            raise ConfigurationError("Clover calls require a merchant id", {"provider": "clover"})
        return f"{self.api_base_url}/v3/merchants/{self.merchant_id}{path}"

    # OAuth

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.config.client_id,
            "response_type": "code",
            "state": state,
        }
        if self.config.redirect_uri:
            params["redirect_uri"] = self.config.redirect_uri
        base = CLOVER_AUTHORIZE_URLS["production" if self.config.is_production else "sandbox"]
        return f"{base}?{urlencode(params)}"

    def _token_set(self, data: Dict[str, Any], previous_refresh: Optional[str] = None) -> TokenSet:
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or previous_refresh,
            expires_at=_from_seconds(data.get("access_token_expiration")),
            merchant_id=data.get("merchant_id") or self.merchant_id,
        )

    async def exchange_code(self, code: str) -> TokenSet:
        data = await self._request(
            "POST", f"{self.api_base_url}/oauth/v2/token",
            gated=False, authenticated=False,
            json={
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "code": code,
            },
        )
        return self._token_set(data)

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        data = await self._request(
            "POST", f"{self.api_base_url}/oauth/v2/refresh",
            gated=False, authenticated=False,
            json={"client_id": self.config.client_id, "refresh_token": refresh_token},
        )
        return self._token_set(data, previous_refresh=refresh_token)

    async def revoke_token(self, access_token: str) -> None:
        # Clover exposes no revocation endpoint; the app is uninstalled from the merchant dashboard
        logger.info("Clover has no token revocation endpoint; skipping remote revoke")

    # Catalog

    def _item_from_element(self, element: Dict[str, Any]) -> ExternalCatalogItem:
        categories = (element.get("categories") or {}).get("elements") or []
        return ExternalCatalogItem(
            external_id=element["id"],
            name=element.get("name") or "",
            description=element.get("alternateName"),
            price=minor_to_major(element.get("price"), "USD"),
            currency="USD",
            sku=element.get("sku") or element.get("code"),
            images=[],
            category=categories[0].get("name") if categories else None,
            updated_at=_from_millis(element.get("modifiedTime")),
        )

    async def fetch_catalog_page(self, cursor: Optional[str] = None,
                                 cancel_token: Optional[CancellationToken] = None) -> CatalogPage:
        offset = int(cursor or 0)
        data = await self._request(
            "GET", self._merchant_url("/items"),
            cancel_token=cancel_token,
            params={"limit": PAGE_SIZE, "offset": offset, "expand": "categories"},
        )
        elements = data.get("elements", [])
        items = [self._item_from_element(e) for e in elements if not e.get("deleted")]
        next_cursor = str(offset + len(elements)) if len(elements) == PAGE_SIZE else None
        return CatalogPage(items=items, next_cursor=next_cursor)

    async def upsert_catalog_item(self, item: ExternalCatalogItem, idempotency_key: str,
                                  cancel_token: Optional[CancellationToken] = None) -> str:
        body: Dict[str, Any] = {"name": item.name}
        if item.price is not None:
            body["price"] = major_to_minor(item.price, item.currency)
        if item.sku:
            body["sku"] = item.sku
        if item.description is not None:
            body["alternateName"] = item.description

        path = f"/items/{item.external_id}" if item.external_id else "/items"
        data = await self._request("POST", self._merchant_url(path), cancel_token=cancel_token,
                                   headers={"Idempotency-Key": idempotency_key}, json=body)
        external_id = data.get("id") or item.external_id
        if not external_id:
            raise PermanentProviderError("Clover upsert returned no item id",
                                         provider=self.provider_name, endpoint=path, response_data=data)
        return external_id

    # Inventory

    async def fetch_inventory_levels(self, external_ids: List[str],
                                     cancel_token: Optional[CancellationToken] = None
                                     ) -> Dict[str, InventoryLevel]:
        levels: Dict[str, InventoryLevel] = {}
        for external_id in external_ids:
            try:
                data = await self._request("GET", self._merchant_url(f"/item_stocks/{external_id}"),
                                           cancel_token=cancel_token)
            except PermanentProviderError as e:
                if e.status_code == 404:
                    # Stock not tracked for this item
                    continue
                raise
            quantity = data.get("quantity")
            if quantity is None:
                continue
            levels[external_id] = InventoryLevel(
                external_id=external_id,
                quantity=int(quantity),
                updated_at=_from_millis(data.get("modifiedTime")),
            )
        return levels

    async def set_inventory_level(self, external_id: str, quantity: int,
                                  cancel_token: Optional[CancellationToken] = None) -> None:
        await self._request("POST", self._merchant_url(f"/item_stocks/{external_id}"),
                            cancel_token=cancel_token, json={"quantity": quantity})
