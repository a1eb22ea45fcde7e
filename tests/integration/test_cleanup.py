"""Integration tests for temporary record maintenance."""

from datetime import timedelta

import pytest
from sqlalchemy import select

from pricebridge.db.models import AggregateRecordModel, VendorLinkModel
from pricebridge.reconciliation.cleanup import (
    TemporaryCheck,
    cleanup_stale_temporary_records,
    expire_temporary_record,
)

pytestmark = pytest.mark.integration


async def exists(session_factory, record_id) -> bool:
    async with session_factory() as session:
        return await session.get(AggregateRecordModel, record_id) is not None


@pytest.mark.asyncio
async def test_expire_deletes_uncompleted_temporary_record(session_factory, make_record, make_link, clock):
    record_id = await make_record(temporary=True)
    await make_link(record_id, "super99", last_fetched_at=clock())

    assert await expire_temporary_record(session_factory, record_id) is TemporaryCheck.CLEANED_UP
    assert not await exists(session_factory, record_id)
    async with session_factory() as session:
        assert (await session.execute(select(VendorLinkModel))).scalars().all() == []


@pytest.mark.asyncio
async def test_expire_keeps_completed_records(session_factory, make_record):
    permanent = await make_record("7501234567893")
    processed = await make_record("4006381333931", temporary=True, processed=True)

    assert await expire_temporary_record(session_factory, permanent) is TemporaryCheck.NO_LONGER_TEMPORARY
    assert await expire_temporary_record(session_factory, processed) is TemporaryCheck.ALREADY_PROCESSED
    assert await expire_temporary_record(session_factory, "missing") is TemporaryCheck.NOT_FOUND
    assert await exists(session_factory, permanent)
    assert await exists(session_factory, processed)


@pytest.mark.asyncio
async def test_sweep_deletes_only_old_uncompleted_temporary_records(session_factory, make_record, clock):
    old = clock() - timedelta(hours=25)
    stale = await make_record("7501234567893", temporary=True, created_at=old)
    fresh = await make_record("4006381333931", temporary=True, created_at=clock() - timedelta(hours=1))
    permanent = await make_record("0012345678905", created_at=old)
    completed = await make_record("9780306406157", temporary=True, processed=True, created_at=old)

    result = await cleanup_stale_temporary_records(session_factory, ttl_hours=24, batch_size=1, clock=clock)

    assert result.deleted == 1
    assert result.scanned == 2
    assert result.errors == 0
    assert not await exists(session_factory, stale)
    assert await exists(session_factory, fresh)
    assert await exists(session_factory, permanent)
    assert await exists(session_factory, completed)


@pytest.mark.asyncio
async def test_sweep_on_empty_store(session_factory, clock):
    result = await cleanup_stale_temporary_records(session_factory, clock=clock)

    assert result.deleted == 0
    assert result.scanned == 0
