"""
Unit tests for domain helpers: fingerprints, money conversion, enums
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from pos_sync.core.fingerprint import catalog_fingerprint, fingerprint, inventory_fingerprint
from pos_sync.core.models import (
    ExternalCatalogItem, InventoryDiscrepancy, Scope, SyncStatus, TokenSet, as_utc,
)
from pos_sync.core.money import currency_exponent, major_to_minor, minor_to_major


class TestFingerprint:

    def test_decimal_scale_does_not_matter(self):
        assert fingerprint({"price": Decimal("10")}) == fingerprint({"price": Decimal("10.00")})

    def test_key_order_does_not_matter(self):
        assert fingerprint({"a": 1, "b": 2}) == fingerprint({"b": 2, "a": 1})

    def test_value_change_changes_hash(self):
        assert fingerprint({"price": Decimal("10")}) != fingerprint({"price": Decimal("10.01")})

    def test_catalog_fingerprint_ignores_extra_fields(self):
        item = ExternalCatalogItem("X-1", "Latte", price=Decimal("4.50"), sku="L-1")
        fields = item.to_fields()
        noisy = dict(fields, version=42, updated_at=datetime.now(timezone.utc))

        assert catalog_fingerprint(fields) == catalog_fingerprint(noisy)
        assert len(catalog_fingerprint(fields)) == 64

    def test_inventory_fingerprint(self):
        assert inventory_fingerprint(5) == inventory_fingerprint(5)
        assert inventory_fingerprint(5) != inventory_fingerprint(6)
        assert inventory_fingerprint(None) != inventory_fingerprint(0)


class TestMoney:
    """Minor units only exist at the adapter edge"""

    @pytest.mark.parametrize("amount,currency,expected", [
        (1099, "USD", Decimal("10.99")),
        (500, "JPY", Decimal("500")),
        (12345, "KWD", Decimal("12.345")),
        (0, "EUR", Decimal("0.00")),
    ])
    def test_minor_to_major(self, amount, currency, expected):
        assert minor_to_major(amount, currency) == expected

    def test_major_to_minor_rounds_half_up(self):
        assert major_to_minor(Decimal("10.995")) == 1100
        assert major_to_minor(Decimal("10.99")) == 1099
        assert major_to_minor(Decimal("500"), "JPY") == 500

    def test_none_passes_through(self):
        assert minor_to_major(None) is None
        assert major_to_minor(None) is None

    def test_exponents(self):
        assert currency_exponent(None) == 2
        assert currency_exponent("jpy") == 0


class TestModels:

    def test_status_moves_forward_only(self):
        assert SyncStatus.QUEUED.can_transition_to(SyncStatus.RUNNING)
        assert SyncStatus.RUNNING.can_transition_to(SyncStatus.PARTIAL_FAILURE)
        assert not SyncStatus.QUEUED.can_transition_to(SyncStatus.SUCCESS)
        assert not SyncStatus.SUCCESS.can_transition_to(SyncStatus.RUNNING)
        assert not SyncStatus.FAILED.can_transition_to(SyncStatus.SUCCESS)

    def test_scope_flags(self):
        assert Scope.FULL.includes_catalog and Scope.FULL.includes_inventory
        assert not Scope.CATALOG.includes_inventory
        assert not Scope.INVENTORY.includes_catalog

    def test_token_expires_within(self):
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        token = TokenSet("a", "r", now + timedelta(minutes=2))

        assert token.expires_within(timedelta(minutes=5), now=now)
        assert not token.expires_within(timedelta(minutes=1), now=now)
        assert not TokenSet("a", None, None).expires_within(timedelta(days=1))

    def test_as_utc(self):
        naive = datetime(2024, 1, 1, 12, 0)

        assert as_utc(naive).tzinfo == timezone.utc
        assert as_utc(None) is None

    def test_discrepancy(self):
        assert InventoryDiscrepancy("X", "P", 5, 8).difference == 3
        assert InventoryDiscrepancy("X", "P", 5, None).difference is None
