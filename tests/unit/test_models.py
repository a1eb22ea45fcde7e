"""Tests for PriceBridge pydantic models."""

from datetime import datetime
from decimal import Decimal

import pytest
from pydantic import ValidationError

from pricebridge.models import (
    ClaimResult,
    ClaimStatus,
    Classification,
    ReconcileResult,
    ReconcileStatus,
    RunState,
    VendorHit,
    VendorLookup,
)

FETCHED = datetime(2024, 6, 1, 12, 0, 0)


class TestVendorLookup:
    def test_positive_price_with_url_is_hit(self):
        assert VendorLookup(url="https://v.example/p", price=Decimal("1.00")).is_hit

    @pytest.mark.parametrize("price", [None, Decimal("0"), Decimal("-2")])
    def test_non_positive_price_is_not_hit(self, price):
        assert not VendorLookup(url="https://v.example/p", price=price).is_hit

    def test_missing_url_is_not_hit(self):
        assert not VendorLookup(url=None, price=Decimal("3")).is_hit
        assert not VendorLookup(url="", price=Decimal("3")).is_hit


class TestVendorHit:
    def test_from_lookup(self):
        lookup = VendorLookup(url="https://v.example/p", source_sku="S1", name="W", price=Decimal("7"))

        hit = VendorHit.from_lookup("super99", lookup, FETCHED, identifier="0012345678905")

        assert hit.vendor_id == "super99"
        assert hit.price == Decimal("7")
        assert hit.source_sku == "S1"
        assert hit.identifier == "0012345678905"
        assert hit.fetched_at == FETCHED

    def test_rejects_zero_price(self):
        with pytest.raises(ValidationError):
            VendorHit(vendor_id="v", price=Decimal("0"), url="https://v.example", fetched_at=FETCHED)


class TestClassification:
    @pytest.mark.parametrize("raw", [None, "", "null", " NULL "])
    def test_missing_pack_size(self, raw):
        assert Classification(pack_size=raw).pack_size is None

    def test_pack_size_is_stripped(self):
        assert Classification(pack_size=" 500 ml ").pack_size == "500 ml"


def test_result_convenience_properties():
    ok = ReconcileResult(
        record_id="r", period_key="20240601", status=ReconcileStatus.OK, state=RunState.COMMITTED
    )
    busy = ReconcileResult(
        record_id="r", period_key="20240601", status=ReconcileStatus.BUSY, state=RunState.ABORTED
    )
    assert ok.ok and not busy.ok
    assert ClaimResult(record_id="r", status=ClaimStatus.CLAIMED).claimed
    assert not ClaimResult(record_id="r", status=ClaimStatus.BUSY).claimed


def test_results_serialize_to_json_values():
    result = ReconcileResult(
        record_id="r", period_key="20240601", status=ReconcileStatus.BUSY, state=RunState.ABORTED
    )
    dumped = result.model_dump(mode="json")
    assert dumped["status"] == "busy"
    assert dumped["state"] == "aborted"
