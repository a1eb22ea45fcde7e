"""Vendor adapters and their registry.

Per-retailer extraction logic lives behind the :class:`VendorAdapter`
protocol. The generic :class:`JsonSearchVendorAdapter` covers vendors that
expose a JSON search endpoint (Algolia, GraphQL gateways, storefront search
APIs) and is configured entirely from ``config/vendors.yaml``.
"""

from __future__ import annotations

import logging
import re
import urllib.parse
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Protocol

import yaml

from pricebridge.integration.http_client import SafeHttpClient
from pricebridge.models import VendorLookup

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceHint:
    """What a previous hit remembered about where the product lives."""

    url: str | None = None
    source_sku: str | None = None


class VendorAdapter(Protocol):
    """Looks a product up at one vendor.

    Returns ``None`` (or a lookup without a positive price and URL) when the
    vendor does not carry the product. Exceptions are treated as "no hit" by
    the caller.
    """

    async def lookup(
        self, vendor_id: str, identifier: str, source_hint: SourceHint | None = None
    ) -> VendorLookup | None: ...


def get_path(obj: Any, path: str | None, default: Any = None) -> Any:
    """Safe dotted-path access into nested dicts and lists.

    Example:
        >>> get_path({"hits": [{"price": 3}]}, "hits.0.price")
        3
    """
    if not path:
        return obj
    result = obj
    for key in path.split("."):
        if isinstance(result, dict):
            result = result.get(key)
        elif isinstance(result, list) and key.lstrip("-").isdigit():
            index = int(key)
            result = result[index] if -len(result) <= index < len(result) else None
        else:
            return default
        if result is None:
            return default
    return result


_PRICE_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")


def parse_price(value: Any) -> Decimal | None:
    """Parse a vendor price ("B/. 1,234.50", 12.5, "12") into a Decimal.

    Returns None for anything unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        price = Decimal(str(value))
        return price if price.is_finite() else None
    match = _PRICE_NUMBER.search(str(value).replace(",", ""))
    if not match:
        return None
    try:
        return Decimal(match.group())
    except InvalidOperation:
        return None


def _render(template: Any, values: dict[str, str]) -> Any:
    """Substitute ``{identifier}``-style placeholders through nested data."""
    if isinstance(template, str):
        for key, value in values.items():
            template = template.replace("{" + key + "}", value)
        return template
    if isinstance(template, dict):
        return {k: _render(v, values) for k, v in template.items()}
    if isinstance(template, list):
        return [_render(v, values) for v in template]
    return template


# Adapter type registry (maps config type to class)
ADAPTER_TYPES: dict[str, type] = {}


def register_adapter(adapter_type: str):
    """Decorator to register adapter classes.

    Usage:
        @register_adapter("json_search")
        class JsonSearchVendorAdapter:
            ...
    """

    def decorator(cls):
        ADAPTER_TYPES[adapter_type] = cls
        return cls

    return decorator


@register_adapter("json_search")
class JsonSearchVendorAdapter:
    """Configuration-driven adapter for JSON search endpoints.

    Config keys:
        search_url: URL template with ``{identifier}`` (URL-encoded)
        method: GET (default) or POST
        body: JSON body template for POST
        headers: Extra request headers
        results_path: Dotted path to the result list (or single result)
        fields: Dotted paths for ``price``, ``url``, ``sku`` and ``name``
        match_field: Optional dotted path that must equal the identifier
        base_url: Prefix for relative product URLs
    """

    def __init__(self, vendor_id: str, config: dict[str, Any], http: SafeHttpClient):
        if "search_url" not in config:
            raise ValueError(f"Vendor {vendor_id} missing 'search_url'")
        self.vendor_id = vendor_id
        self.http = http
        self.search_url: str = config["search_url"]
        self.method: str = config.get("method", "GET").upper()
        self.body: Any = config.get("body")
        self.headers: dict[str, str] = config.get("headers", {})
        self.results_path: str | None = config.get("results_path")
        self.fields: dict[str, str] = {
            "price": "price",
            "url": "url",
            "sku": "sku",
            "name": "name",
            **config.get("fields", {}),
        }
        self.match_field: str | None = config.get("match_field")
        self.base_url: str | None = config.get("base_url")

    async def lookup(
        self, vendor_id: str, identifier: str, source_hint: SourceHint | None = None
    ) -> VendorLookup | None:
        # A remembered SKU is a more precise search key than a barcode variant
        query = source_hint.source_sku if source_hint and source_hint.source_sku else identifier
        values = {"identifier": urllib.parse.quote(query, safe=""), "raw_identifier": query}
        url = _render(self.search_url, values)
        context = f"{self.vendor_id}/{query}"

        if self.method == "POST":
            result = await self.http.post(
                url, _render(self.body, {"identifier": query}), context=context, headers=self.headers
            )
        else:
            result = await self.http.get(url, context=context, headers=self.headers)

        if not result.success or not isinstance(result.data, (dict, list)):
            return None

        for item in self._candidates(result.data):
            if self.match_field and str(get_path(item, self.match_field, "")) != query:
                continue
            return self._to_lookup(item, source_hint)

        logger.debug(f"[{context}] no matching result")
        return None

    def _candidates(self, data: Any) -> list[dict]:
        found = get_path(data, self.results_path)
        if isinstance(found, dict):
            return [found]
        if isinstance(found, list):
            return [item for item in found if isinstance(item, dict)]
        return []

    def _to_lookup(self, item: dict, source_hint: SourceHint | None) -> VendorLookup:
        url = get_path(item, self.fields["url"])
        if url and self.base_url and not urllib.parse.urlsplit(str(url)).scheme:
            url = urllib.parse.urljoin(self.base_url, str(url))
        if not url and source_hint:
            url = source_hint.url
        sku = get_path(item, self.fields["sku"])
        name = get_path(item, self.fields["name"])
        return VendorLookup(
            url=str(url) if url else None,
            source_sku=str(sku) if sku is not None else None,
            name=str(name) if name is not None else None,
            price=parse_price(get_path(item, self.fields["price"])),
            raw=item,
        )


@dataclass
class VendorRegistry:
    """Maps vendor ids to adapters, in configured order."""

    adapters: dict[str, VendorAdapter] = field(default_factory=dict)

    def register(self, vendor_id: str, adapter: VendorAdapter) -> None:
        self.adapters[vendor_id] = adapter

    def get(self, vendor_id: str) -> VendorAdapter | None:
        return self.adapters.get(vendor_id)

    def vendor_ids(self) -> list[str]:
        return list(self.adapters)

    def __contains__(self, vendor_id: object) -> bool:
        return vendor_id in self.adapters

    def __len__(self) -> int:
        return len(self.adapters)


def load_vendor_registry(config_path: Path, http: SafeHttpClient) -> VendorRegistry:
    """Load vendor definitions from YAML and instantiate adapters.

    Args:
        config_path: Path to vendors.yaml
        http: Shared rate-gated HTTP client

    Returns:
        VendorRegistry with every enabled, well-formed vendor

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config has no 'vendors' section
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Vendor config not found: {config_path}")

    with open(config_path) as f:
        config = yaml.safe_load(f)

    if not config or "vendors" not in config:
        raise ValueError("Invalid vendor config: missing 'vendors' section")

    registry = VendorRegistry()

    for vendor_config in config["vendors"]:
        vendor_id = vendor_config.get("id")
        if not vendor_config.get("enabled", True):
            logger.info(f"Skipping disabled vendor: {vendor_id}")
            continue

        adapter_type = vendor_config.get("type", "json_search")
        adapter_cls = ADAPTER_TYPES.get(adapter_type)
        if not vendor_id or adapter_cls is None:
            logger.error(f"Skipping vendor {vendor_id!r}: unknown type {adapter_type!r}")
            continue

        try:
            registry.register(vendor_id, adapter_cls(vendor_id, vendor_config.get("config", {}), http))
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Failed to load vendor {vendor_id}: {e}")
            continue

    logger.info(f"Loaded {len(registry)} vendor adapters from {config_path}")
    return registry
