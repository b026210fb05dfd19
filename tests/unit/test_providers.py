"""
Unit tests for the Square and Clover adapters against a mocked HTTP transport
"""
import json
from decimal import Decimal
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from pos_sync.core.models import ExternalCatalogItem
from pos_sync.providers.clover_client import CloverAdapter
from pos_sync.providers.factory import create_adapter
from pos_sync.providers.square_client import SquareAdapter
from pos_sync.utils.config import ProviderConfig, RateLimitSettings
from pos_sync.utils.exceptions import (
    ConfigurationError, PermanentProviderError, RateLimited, TransientProviderError,
)
from pos_sync.utils.rate_limiting import RateLimiter

SANDBOX = "https://connect.squareupsandbox.com"


class Recorder:
    """Mock transport handler that records requests and serves queued responses per path."""

    def __init__(self):
        self.requests = []
        self.responses = {}

    def add(self, path, *responses):
        self.responses.setdefault(path, []).extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.responses.get(request.url.path)
        if not queue:
            return httpx.Response(404, json={"errors": [{"code": "NOT_FOUND"}]})
        return queue.pop(0) if len(queue) > 1 else queue[0]


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def square(provider_config, recorder):
    client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
    return SquareAdapter(provider_config, access_token="sq-token", http_client=client)


def catalog_object(object_id, name, amount, sku=None, variation_id=None):
    return {
        "type": "ITEM",
        "id": object_id,
        "version": 7,
        "updated_at": "2024-03-01T12:00:00Z",
        "item_data": {
            "name": name,
            "variations": [{
                "id": variation_id or f"{object_id}-V",
                "item_variation_data": {
                    "sku": sku,
                    "price_money": {"amount": amount, "currency": "USD"},
                },
            }],
        },
    }


class TestSquareErrorMapping:
    """HTTP failures map onto the error taxonomy"""

    async def test_429_is_rate_limited_with_retry_after(self, square, recorder):
        recorder.add("/v2/catalog/list", httpx.Response(429, headers={"Retry-After": "3"},
                                                        json={"errors": []}))

        with pytest.raises(RateLimited) as exc_info:
            await square.fetch_catalog_page()

        assert exc_info.value.retry_after == 3.0
        assert exc_info.value.retryable

    async def test_5xx_is_transient(self, square, recorder):
        recorder.add("/v2/catalog/list", httpx.Response(503, text="unavailable"))

        with pytest.raises(TransientProviderError) as exc_info:
            await square.fetch_catalog_page()

        assert exc_info.value.status_code == 503

    async def test_4xx_is_permanent(self, square, recorder):
        recorder.add("/v2/catalog/object", httpx.Response(400, json={"errors": [{"code": "BAD_REQUEST"}]}))

        with pytest.raises(PermanentProviderError) as exc_info:
            await square.upsert_catalog_item(ExternalCatalogItem(None, "Latte"), "key-1")

        assert not exc_info.value.retryable
        assert exc_info.value.response_data == {"errors": [{"code": "BAD_REQUEST"}]}

    async def test_timeout_is_transient(self, provider_config):
        def raise_timeout(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(raise_timeout))
        adapter = SquareAdapter(provider_config, access_token="t", http_client=client)

        with pytest.raises(TransientProviderError):
            await adapter.fetch_catalog_page()


class TestSquareCatalog:

    async def test_pagination_and_money(self, square, recorder):
        recorder.add(
            "/v2/catalog/list",
            httpx.Response(200, json={"objects": [catalog_object("A", "Latte", 450, sku="L-1")],
                                      "cursor": "next-page"}),
            httpx.Response(200, json={"objects": [
                catalog_object("B", "Mocha", 1099),
                {"type": "ITEM", "id": "C", "is_deleted": True, "item_data": {"name": "Gone"}},
            ]}),
        )

        items = await square.fetch_all_catalog_items()

        assert [i.external_id for i in items] == ["A", "B"]
        assert items[0].price == Decimal("4.50")
        assert items[0].sku == "L-1"
        assert items[0].variation_id == "A-V"
        assert items[1].price == Decimal("10.99")
        assert items[1].updated_at.tzinfo is not None
        second_query = parse_qs(urlparse(str(recorder.requests[1].url)).query)
        assert second_query["cursor"] == ["next-page"]

    async def test_headers(self, square, recorder):
        recorder.add("/v2/catalog/list", httpx.Response(200, json={"objects": []}))

        await square.fetch_catalog_page()

        request = recorder.requests[0]
        assert request.headers["Authorization"] == "Bearer sq-token"
        assert "Square-Version" in request.headers

    async def test_upsert_sends_minor_units(self, square, recorder):
        recorder.add("/v2/catalog/object", httpx.Response(200, json={"catalog_object": {"id": "NEW-1"}}))
        item = ExternalCatalogItem(None, "Latte", price=Decimal("4.50"), sku="L-1")

        external_id = await square.upsert_catalog_item(item, "idem-1")

        body = json.loads(recorder.requests[0].content)
        variation = body["object"]["item_data"]["variations"][0]["item_variation_data"]
        assert external_id == "NEW-1"
        assert body["idempotency_key"] == "idem-1"
        assert body["object"]["id"] == "#item-idem-1"
        assert variation["price_money"] == {"amount": 450, "currency": "USD"}

    async def test_upsert_without_object_is_permanent_error(self, square, recorder):
        recorder.add("/v2/catalog/object", httpx.Response(200, json={}))

        with pytest.raises(PermanentProviderError):
            await square.upsert_catalog_item(ExternalCatalogItem("A", "Latte"), "idem-2")


class TestSquareInventory:

    async def test_levels_use_first_active_location(self, square, recorder):
        recorder.add("/v2/locations", httpx.Response(200, json={"locations": [
            {"id": "L-OFF", "status": "INACTIVE"}, {"id": "L-1", "status": "ACTIVE"},
        ]}))
        recorder.add("/v2/inventory/counts/batch-retrieve", httpx.Response(200, json={"counts": [
            {"catalog_object_id": "A", "quantity": "5", "calculated_at": "2024-03-01T12:00:00Z"},
        ]}))

        levels = await square.fetch_inventory_levels(["A", "B"])

        assert square.location_id == "L-1"
        assert levels["A"].quantity == 5
        assert "B" not in levels

    async def test_empty_ids_make_no_request(self, square, recorder):
        assert await square.fetch_inventory_levels([]) == {}
        assert recorder.requests == []

    async def test_set_level(self, square, recorder):
        square.location_id = "L-1"
        recorder.add("/v2/inventory/changes/batch-create", httpx.Response(200, json={"counts": []}))

        await square.set_inventory_level("A", 12)

        change = json.loads(recorder.requests[0].content)["changes"][0]["physical_count"]
        assert change["quantity"] == "12"
        assert change["location_id"] == "L-1"


class TestSquareOAuth:

    def test_authorization_url(self, square):
        url = square.authorization_url("state-1")
        query = parse_qs(urlparse(url).query)

        assert url.startswith(f"{SANDBOX}/oauth2/authorize")
        assert query["state"] == ["state-1"]
        assert query["client_id"] == ["sq-client"]

    async def test_exchange_code_not_rate_limited(self, provider_config, recorder):
        limiter = RateLimiter(RateLimitSettings(requests_per_second=1, requests_per_minute=1))
        await limiter.acquire()
        client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        adapter = SquareAdapter(provider_config, rate_limiter=limiter, http_client=client)
        recorder.add("/oauth2/token", httpx.Response(200, json={
            "access_token": "a", "refresh_token": "r", "expires_at": "2030-01-01T00:00:00Z",
            "merchant_id": "M-1",
        }))

        token_set = await adapter.exchange_code("code")

        assert token_set.merchant_id == "M-1"
        assert token_set.expires_at.year == 2030

    async def test_refresh_keeps_refresh_token(self, square, recorder):
        recorder.add("/oauth2/token", httpx.Response(200, json={
            "access_token": "a2", "expires_at": "2030-01-01T00:00:00Z",
        }))

        token_set = await square.refresh_token("r-1")

        assert token_set.refresh_token == "r-1"


class TestCloverAdapter:

    @pytest.fixture
    def clover(self, recorder):
        config = ProviderConfig(provider="clover", client_id="cl-client", client_secret="cl-secret")
        client = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        return CloverAdapter(config, access_token="cl-token", merchant_id="MER", http_client=client)

    async def test_catalog(self, clover, recorder):
        recorder.add("/v3/merchants/MER/items", httpx.Response(200, json={"elements": [
            {"id": "I-1", "name": "Bagel", "price": 325, "sku": "B-1", "modifiedTime": 1709294400000,
             "categories": {"elements": [{"name": "Bakery"}]}},
        ]}))

        page = await clover.fetch_catalog_page()

        assert page.next_cursor is None
        assert page.items[0].price == Decimal("3.25")
        assert page.items[0].category == "Bakery"

    async def test_untracked_stock_is_absent(self, clover, recorder):
        recorder.add("/v3/merchants/MER/item_stocks/I-1", httpx.Response(200, json={"quantity": 4}))

        levels = await clover.fetch_inventory_levels(["I-1", "I-2"])

        assert levels["I-1"].quantity == 4
        assert "I-2" not in levels

    async def test_merchant_required(self, recorder):
        config = ProviderConfig(provider="clover", client_id="c", client_secret="s")
        adapter = CloverAdapter(config, access_token="t",
                                http_client=httpx.AsyncClient(transport=httpx.MockTransport(recorder)))

        with pytest.raises(ConfigurationError):
            await adapter.fetch_catalog_page()


class TestFactory:

    def test_create_adapter(self, provider_config):
        assert isinstance(create_adapter(provider_config), SquareAdapter)

    def test_unknown_provider_rejected_by_config(self):
        with pytest.raises(ValueError):
            ProviderConfig(provider="toast", client_id="c", client_secret="s")
