"""
Square POS adapter.

Catalog items map to ``ITEM`` objects whose first variation carries the SKU
and price; inventory is tracked per variation at one location.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from pos_sync.core.models import (
    CatalogPage, ExternalCatalogItem, InventoryLevel, TokenSet, utcnow,
)
from pos_sync.core.money import major_to_minor, minor_to_major
from pos_sync.providers.base import PosAdapter
from pos_sync.utils.cancellation import CancellationToken
from pos_sync.utils.exceptions import PermanentProviderError
from pos_sync.utils.logger import get_logger

logger = get_logger(__name__)

SQUARE_VERSION = "2024-01-18"

SQUARE_BASE_URLS = {
    "sandbox": "https://connect.squareupsandbox.com",
    "production": "https://connect.squareup.com",
}


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class SquareAdapter(PosAdapter):
    """Square Catalog, Inventory and OAuth APIs."""

    @property
    def provider_name(self) -> str:
        return "square"

    @property
    def api_base_url(self) -> str:
        return SQUARE_BASE_URLS["production" if self.config.is_production else "sandbox"]

    def _default_headers(self) -> Dict[str, str]:
        headers = super()._default_headers()
        headers["Square-Version"] = SQUARE_VERSION
        return headers

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.config.client_id,
            "scope": " ".join(self.config.scopes),
            "session": "false",
            "state": state,
        }
        if self.config.redirect_uri:
            params["redirect_uri"] = self.config.redirect_uri
        return f"{self.api_base_url}/oauth2/authorize?{urlencode(params)}"

    def _token_set(self, data: Dict[str, Any]) -> TokenSet:
        expires_at = _parse_timestamp(data.get("expires_at"))
        if expires_at is None and data.get("expires_in"):
            expires_at = utcnow() + timedelta(seconds=int(data["expires_in"]))
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
            merchant_id=data.get("merchant_id"),
            token_type=(data.get("token_type") or "bearer").lower(),
            scopes=list(data.get("scopes") or self.config.scopes),
        )

    async def exchange_code(self, code: str) -> TokenSet:
        payload = {
            "client_id": self.config.client_id,
            "client_secret": self.config.client_secret,
            "code": code,
            "grant_type": "authorization_code",
        }
        if self.config.redirect_uri:
            payload["redirect_uri"] = self.config.redirect_uri

        data = await self._request("POST", f"{self.api_base_url}/oauth2/token",
                                   gated=False, authenticated=False, json=payload)
        return self._token_set(data)

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        data = await self._request(
            "POST", f"{self.api_base_url}/oauth2/token",
            gated=False, authenticated=False,
            json={
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            },
        )
        token_set = self._token_set(data)
        # Square keeps the refresh token unless it rotates it
        if not token_set.refresh_token:
            token_set.refresh_token = refresh_token
        return token_set

    async def revoke_token(self, access_token: str) -> None:
        await self._request(
            "POST", f"{self.api_base_url}/oauth2/revoke",
            gated=False, authenticated=False,
            headers={"Authorization": f"Client {self.config.client_secret}"},
            json={"client_id": self.config.client_id, "access_token": access_token},
        )

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def _item_from_object(self, obj: Dict[str, Any]) -> ExternalCatalogItem:
        item_data = obj.get("item_data") or {}
        variations = item_data.get("variations") or []
        variation = variations[0] if variations else {}
        variation_data = variation.get("item_variation_data") or {}
        price_money = variation_data.get("price_money") or {}
        currency = price_money.get("currency") or "USD"

        category = item_data.get("category_id")
        if not category and item_data.get("categories"):
            category = item_data["categories"][0].get("id")

        return ExternalCatalogItem(
            external_id=obj["id"],
            name=item_data.get("name") or "",
            description=item_data.get("description"),
            price=minor_to_major(price_money.get("amount"), currency),
            currency=currency,
            sku=variation_data.get("sku"),
            images=list(item_data.get("image_ids") or []),
            category=category,
            updated_at=_parse_timestamp(obj.get("updated_at")),
            variation_id=variation.get("id"),
            version=obj.get("version"),
        )

    async def fetch_catalog_page(self, cursor: Optional[str] = None,
                                 cancel_token: Optional[CancellationToken] = None) -> CatalogPage:
        params = {"types": "ITEM"}
        if cursor:
            params["cursor"] = cursor

        data = await self._request("GET", f"{self.api_base_url}/v2/catalog/list",
                                   cancel_token=cancel_token, params=params)
        items = [
            self._item_from_object(obj)
            for obj in data.get("objects", [])
            if obj.get("type") == "ITEM" and not obj.get("is_deleted")
        ]
        return CatalogPage(items=items, next_cursor=data.get("cursor"))

    def _object_from_item(self, item: ExternalCatalogItem, idempotency_key: str) -> Dict[str, Any]:
        variation_data: Dict[str, Any] = {
            "name": "Regular",
            "pricing_type": "FIXED_PRICING",
        }
        if item.sku:
            variation_data["sku"] = item.sku
        if item.price is not None:
            variation_data["price_money"] = {
                "amount": major_to_minor(item.price, item.currency),
                "currency": item.currency,
            }

        item_id = item.external_id or f"#item-{idempotency_key}"
        variation: Dict[str, Any] = {
            "type": "ITEM_VARIATION",
            "id": item.variation_id or f"#variation-{idempotency_key}",
            "item_variation_data": {**variation_data, "item_id": item_id},
        }

        item_data: Dict[str, Any] = {"name": item.name, "variations": [variation]}
        if item.description is not None:
            item_data["description"] = item.description
        if item.category:
            item_data["category_id"] = item.category
        if item.images:
            item_data["image_ids"] = list(item.images)

        obj: Dict[str, Any] = {"type": "ITEM", "id": item_id, "item_data": item_data}
        if item.version is not None:
            obj["version"] = item.version
        return obj

    async def upsert_catalog_item(self, item: ExternalCatalogItem, idempotency_key: str,
                                  cancel_token: Optional[CancellationToken] = None) -> str:
        data = await self._request(
            "POST", f"{self.api_base_url}/v2/catalog/object",
            cancel_token=cancel_token,
            json={"idempotency_key": idempotency_key, "object": self._object_from_item(item, idempotency_key)},
        )
        catalog_object = data.get("catalog_object") or {}
        external_id = catalog_object.get("id")
        if not external_id:
            raise PermanentProviderError("Square upsert returned no catalog object",
                                         provider=self.provider_name, endpoint="/v2/catalog/object",
                                         response_data=data)
        return external_id

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    async def _ensure_location(self, cancel_token: Optional[CancellationToken]) -> str:
        if self.location_id:
            return self.location_id

        data = await self._request("GET", f"{self.api_base_url}/v2/locations", cancel_token=cancel_token)
        active = [loc for loc in data.get("locations", []) if loc.get("status", "ACTIVE") == "ACTIVE"]
        if not active:
            raise PermanentProviderError("Square account has no active location",
                                         provider=self.provider_name, endpoint="/v2/locations")
        self.location_id = active[0]["id"]
        logger.info(f"Using Square location {self.location_id}")
        return self.location_id

    async def fetch_inventory_levels(self, external_ids: List[str],
                                     cancel_token: Optional[CancellationToken] = None
                                     ) -> Dict[str, InventoryLevel]:
        if not external_ids:
            return {}

        location_id = await self._ensure_location(cancel_token)
        levels: Dict[str, InventoryLevel] = {}
        cursor = None

        while True:
            body: Dict[str, Any] = {
                "catalog_object_ids": list(external_ids),
                "location_ids": [location_id],
                "states": ["IN_STOCK"],
            }
            if cursor:
                body["cursor"] = cursor

            data = await self._request("POST", f"{self.api_base_url}/v2/inventory/counts/batch-retrieve",
                                       cancel_token=cancel_token, json=body)

            for count in data.get("counts", []):
                object_id = count["catalog_object_id"]
                quantity = int(float(count.get("quantity") or 0))
                calculated_at = _parse_timestamp(count.get("calculated_at"))
                existing = levels.get(object_id)
                if existing is None:
                    levels[object_id] = InventoryLevel(object_id, quantity, calculated_at)
                else:
                    existing.quantity += quantity
                    if calculated_at and (existing.updated_at is None or calculated_at > existing.updated_at):
                        existing.updated_at = calculated_at

            cursor = data.get("cursor")
            if not cursor:
                break

        return levels

    async def set_inventory_level(self, external_id: str, quantity: int,
                                  cancel_token: Optional[CancellationToken] = None) -> None:
        location_id = await self._ensure_location(cancel_token)
        occurred_at = utcnow()
        await self._request(
            "POST", f"{self.api_base_url}/v2/inventory/changes/batch-create",
            cancel_token=cancel_token,
            json={
                "idempotency_key": f"{external_id}-{quantity}-{int(occurred_at.timestamp())}",
                "changes": [{
                    "type": "PHYSICAL_COUNT",
                    "physical_count": {
                        "catalog_object_id": external_id,
                        "state": "IN_STOCK",
                        "location_id": location_id,
                        "quantity": str(quantity),
                        "occurred_at": occurred_at.isoformat().replace("+00:00", "Z"),
                    },
                }],
            },
        )
