"""Tests for vendor adapters, price parsing and the YAML registry loader."""

from decimal import Decimal

import pytest

from pricebridge.integration.vendors import (
    JsonSearchVendorAdapter,
    SourceHint,
    VendorRegistry,
    get_path,
    load_vendor_registry,
    parse_price,
)
from pricebridge.models import HttpResult


class FakeHttp:
    """Stands in for SafeHttpClient; answers every call with one result."""

    def __init__(self, result: HttpResult):
        self.result = result
        self.calls: list[tuple] = []

    async def get(self, url, *, context=None, **kwargs):
        self.calls.append(("GET", url, None, kwargs))
        return self.result

    async def post(self, url, data=None, *, context=None, **kwargs):
        self.calls.append(("POST", url, data, kwargs))
        return self.result


def ok(data) -> HttpResult:
    return HttpResult(success=True, data=data, status=200, attempts=1)


class TestGetPath:
    def test_nested_dicts_and_lists(self):
        data = {"data": {"items": [{"price": {"value": 3.5}}]}}
        assert get_path(data, "data.items.0.price.value") == 3.5

    def test_missing_key_returns_default(self):
        assert get_path({"a": {}}, "a.b.c", "x") == "x"

    def test_index_out_of_range(self):
        assert get_path({"a": [1]}, "a.3") is None

    def test_empty_path_returns_object(self):
        assert get_path([1, 2], "") == [1, 2]


class TestParsePrice:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            (12.5, Decimal("12.5")),
            (3, Decimal("3")),
            ("B/. 1,234.50", Decimal("1234.50")),
            ("$2.99", Decimal("2.99")),
            ("12", Decimal("12")),
        ],
    )
    def test_parses(self, raw, expected):
        assert parse_price(raw) == expected

    @pytest.mark.parametrize("raw", [None, True, "", "agotado", float("nan")])
    def test_unparseable(self, raw):
        assert parse_price(raw) is None


class TestJsonSearchVendorAdapter:
    @pytest.mark.asyncio
    async def test_get_search_extracts_first_result(self):
        http = FakeHttp(
            ok({"products": [{"price": "4.25", "slug": "leche-1l", "id": 77, "name": "Leche 1L"}]})
        )
        adapter = JsonSearchVendorAdapter(
            "superxtra",
            {
                "search_url": "https://shop.example/search?barcode={identifier}",
                "results_path": "products",
                "base_url": "https://shop.example/p/",
                "fields": {"url": "slug", "sku": "id"},
            },
            http,
        )

        result = await adapter.lookup("superxtra", "7501234567893")

        assert http.calls[0][0] == "GET"
        assert http.calls[0][1] == "https://shop.example/search?barcode=7501234567893"
        assert result.price == Decimal("4.25")
        assert result.url == "https://shop.example/p/leche-1l"
        assert result.source_sku == "77"
        assert result.name == "Leche 1L"
        assert result.is_hit

    @pytest.mark.asyncio
    async def test_post_renders_body_template(self):
        http = FakeHttp(ok({"data": {"items": []}}))
        adapter = JsonSearchVendorAdapter(
            "super99",
            {
                "search_url": "https://gateway.example/graphql",
                "method": "post",
                "body": {"variables": {"phrase": "{identifier}"}},
                "headers": {"Store": "default"},
                "results_path": "data.items",
            },
            http,
        )

        result = await adapter.lookup("super99", "012345678905")

        method, url, body, kwargs = http.calls[0]
        assert method == "POST"
        assert body == {"variables": {"phrase": "012345678905"}}
        assert kwargs["headers"] == {"Store": "default"}
        assert result is None

    @pytest.mark.asyncio
    async def test_source_sku_replaces_identifier_as_query(self):
        http = FakeHttp(ok({"items": [{"price": 2, "url": "https://shop.example/p/9"}]}))
        adapter = JsonSearchVendorAdapter(
            "ribasmith",
            {"search_url": "https://shop.example/q?term={identifier}", "results_path": "items"},
            http,
        )

        await adapter.lookup("ribasmith", "7501234567893", SourceHint(source_sku="SKU 9"))

        assert http.calls[0][1] == "https://shop.example/q?term=SKU%209"

    @pytest.mark.asyncio
    async def test_match_field_filters_results(self):
        http = FakeHttp(
            ok(
                {
                    "products": [
                        {"barcode": "111", "price": 1, "url": "https://shop.example/a"},
                        {"barcode": "7501234567893", "price": 5, "url": "https://shop.example/b"},
                    ]
                }
            )
        )
        adapter = JsonSearchVendorAdapter(
            "superxtra",
            {
                "search_url": "https://shop.example/s?b={identifier}",
                "results_path": "products",
                "match_field": "barcode",
            },
            http,
        )

        result = await adapter.lookup("superxtra", "7501234567893")

        assert result.url == "https://shop.example/b"
        assert result.price == Decimal("5")

    @pytest.mark.asyncio
    async def test_missing_url_falls_back_to_hint(self):
        http = FakeHttp(ok({"items": [{"price": 3}]}))
        adapter = JsonSearchVendorAdapter(
            "v", {"search_url": "https://shop.example/s?q={identifier}", "results_path": "items"}, http
        )

        result = await adapter.lookup("v", "x", SourceHint(url="https://shop.example/known"))

        assert result.url == "https://shop.example/known"

    @pytest.mark.asyncio
    async def test_failed_request_is_no_hit(self):
        http = FakeHttp(HttpResult(success=False, status=503, retryable=True, error="HTTP 503"))
        adapter = JsonSearchVendorAdapter("v", {"search_url": "https://shop.example/s"}, http)

        assert await adapter.lookup("v", "x") is None

    def test_requires_search_url(self):
        with pytest.raises(ValueError, match="search_url"):
            JsonSearchVendorAdapter("v", {}, FakeHttp(ok({})))


class TestVendorRegistry:
    def test_preserves_registration_order(self):
        registry = VendorRegistry()
        registry.register("b", object())
        registry.register("a", object())

        assert registry.vendor_ids() == ["b", "a"]
        assert "a" in registry
        assert len(registry) == 2
        assert registry.get("missing") is None

    def test_load_skips_disabled_and_unknown(self, tmp_path):
        config_file = tmp_path / "vendors.yaml"
        config_file.write_text(
            """
vendors:
  - id: first
    type: json_search
    config:
      search_url: https://first.example/s?q={identifier}
  - id: off
    enabled: false
    config:
      search_url: https://off.example/s
  - id: strange
    type: scraper
    config: {}
  - id: broken
    type: json_search
    config: {}
  - id: second
    config:
      search_url: https://second.example/s?q={identifier}
"""
        )

        registry = load_vendor_registry(config_file, FakeHttp(ok({})))

        assert registry.vendor_ids() == ["first", "second"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_vendor_registry(tmp_path / "nope.yaml", FakeHttp(ok({})))

    def test_missing_vendors_section(self, tmp_path):
        config_file = tmp_path / "vendors.yaml"
        config_file.write_text("other: 1\n")

        with pytest.raises(ValueError, match="vendors"):
            load_vendor_registry(config_file, FakeHttp(ok({})))
