"""Fixtures for web route tests: a mocked service graph."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from pricebridge.config import WorkerConfig
from pricebridge.web.app import create_app


@pytest.fixture
def mock_db_session():
    """Mock database session with async context manager."""
    session = AsyncMock()
    session.execute = AsyncMock()

    async_cm = AsyncMock()
    async_cm.__aenter__.return_value = session
    async_cm.__aexit__.return_value = None
    return async_cm


@pytest.fixture
def services(mock_db_session):
    return SimpleNamespace(
        config=SimpleNamespace(worker=WorkerConfig(temporary_ttl_hours=24, trigger_page_size=500)),
        session_factory=MagicMock(return_value=mock_db_session),
        reconciler=SimpleNamespace(reconcile=AsyncMock()),
        completion=SimpleNamespace(complete=AsyncMock()),
        leases=SimpleNamespace(status=AsyncMock(), cleanup_expired=AsyncMock()),
        rate_limiter=MagicMock(),
        vendors=["super99", "ribasmith"],
        tasks=SimpleNamespace(pending=0),
    )


@pytest.fixture
def client(services):
    """TestClient running the app lifespan with the mocked services."""
    with TestClient(create_app(services=services)) as test_client:
        yield test_client
