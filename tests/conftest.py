"""Pytest configuration and fixtures for PriceBridge tests.

Provides a file-backed SQLite database per test, a controllable clock, record
factories and in-memory vendor adapters.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from pricebridge.canonical.barcodes import identifier_variants
from pricebridge.canonical.keys import record_id_for
from pricebridge.config import DBConfig, LeaseConfig, ReconcileConfig
from pricebridge.db.connection import create_engine_for, create_session_factory, init_db
from pricebridge.db.models import AggregateRecordModel, VendorLinkModel
from pricebridge.integration.vendors import SourceHint, VendorRegistry
from pricebridge.models import VendorLookup
from pricebridge.reconciliation.engine import ReconciliationEngine
from pricebridge.reconciliation.leases import LeaseManager

START = datetime(2024, 6, 1, 12, 0, 0)


class FakeClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class FakeVendorAdapter:
    """In-memory vendor: answers from a table of identifier -> lookup.

    A value may also be an exception instance (raised) or a coroutine function
    (awaited) to simulate slow or failing vendors.
    """

    def __init__(self, results: dict | None = None, by_sku: dict | None = None):
        self.results = results or {}
        self.by_sku = by_sku or {}
        self.calls: list[tuple[str, str, SourceHint | None]] = []

    async def lookup(self, vendor_id, identifier, source_hint=None):
        self.calls.append((vendor_id, identifier, source_hint))
        if source_hint is not None and source_hint.source_sku in self.by_sku:
            value = self.by_sku[source_hint.source_sku]
        else:
            value = self.results.get(identifier)
        if isinstance(value, Exception):
            raise value
        if callable(value):
            return await value()
        return value


def lookup(price: str | None, url: str = "https://vendor.example/p/1", sku: str = "SKU-1", name: str = "Widget"):
    return VendorLookup(
        url=url,
        source_sku=sku,
        name=name,
        price=Decimal(price) if price is not None else None,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'pricebridge.db'}"


@pytest_asyncio.fixture()
async def engine(db_url):
    """File-backed SQLite database with every table created."""
    engine = create_engine_for(DBConfig(url=db_url))
    await init_db(engine)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def make_record(session_factory, clock):
    """Insert an aggregate record; returns its id."""

    async def _make(
        identifier: str = "7501234567893",
        name: str | None = "Widget 500g",
        temporary: bool = False,
        processed: bool = False,
        created_at: datetime | None = None,
        best_price: str | None = None,
        best_price_vendor_id: str | None = None,
        product_input: str | None = None,
    ) -> str:
        record_id = record_id_for(identifier)
        async with session_factory() as session:
            async with session.begin():
                session.add(
                    AggregateRecordModel(
                        id=record_id,
                        canonical_identifier=identifier,
                        name=name,
                        identifier_variants=identifier_variants(identifier) or [identifier],
                        temporary=temporary,
                        processed=processed,
                        best_price=Decimal(best_price) if best_price else None,
                        best_price_vendor_id=best_price_vendor_id,
                        product_input=product_input,
                        created_at=created_at or clock(),
                        updated_at=created_at or clock(),
                    )
                )
        return record_id

    return _make


@pytest.fixture
def make_link(session_factory):
    """Insert a vendor link for a record."""

    async def _make(
        record_id: str,
        vendor_id: str,
        last_fetched_at: datetime,
        active: bool = True,
        source_sku: str | None = None,
        last_price: str = "10.00",
    ) -> None:
        async with session_factory() as session:
            async with session.begin():
                session.add(
                    VendorLinkModel(
                        record_id=record_id,
                        vendor_id=vendor_id,
                        active=active,
                        last_fetched_at=last_fetched_at,
                        last_price=Decimal(last_price),
                        source_url=f"https://{vendor_id}.example/p/{source_sku or 'x'}",
                        source_sku=source_sku,
                    )
                )

    return _make


@pytest.fixture
def leases(session_factory, clock) -> LeaseManager:
    return LeaseManager(session_factory, LeaseConfig(ttl_seconds=1200, heartbeat_seconds=300), clock=clock)


@pytest.fixture
def make_engine(session_factory, leases, clock):
    """Build a ReconciliationEngine over the given fake adapters."""

    def _make(adapters: dict[str, FakeVendorAdapter], staleness_days: int = 7, **kwargs) -> ReconciliationEngine:
        registry = VendorRegistry()
        for vendor_id, adapter in adapters.items():
            registry.register(vendor_id, adapter)
        config = ReconcileConfig(
            vendor_ids=tuple(adapters),
            staleness_days=staleness_days,
            lookup_timeout_seconds=5,
        )
        return ReconciliationEngine(session_factory, leases, registry, config, clock=clock, **kwargs)

    return _make


@pytest.fixture
def fake_vendor():
    return FakeVendorAdapter


@pytest.fixture
def vendor_lookup():
    return lookup
