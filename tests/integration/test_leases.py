"""Integration tests for distributed leases on SQLite."""

import asyncio

import pytest

from pricebridge.core.errors import BusyError, LeaseLostError, NotFoundError
from pricebridge.reconciliation.leases import VENDOR_PRICES

pytestmark = pytest.mark.integration


@pytest.mark.asyncio
async def test_acquire_is_exclusive(leases, make_record):
    record_id = await make_record()

    grant = await leases.acquire(record_id, "worker-a")

    assert grant.holder_id == "worker-a"
    assert grant.took_over_from is None
    with pytest.raises(BusyError) as exc_info:
        await leases.acquire(record_id, "worker-b")
    assert exc_info.value.holder_id == "worker-a"
    assert exc_info.value.remaining_seconds == pytest.approx(1200)


@pytest.mark.asyncio
async def test_concurrent_acquirers_have_one_winner(leases, make_record):
    record_id = await make_record()

    outcomes = await asyncio.gather(
        *(leases.acquire(record_id, f"worker-{i}") for i in range(5)), return_exceptions=True
    )

    winners = [o for o in outcomes if not isinstance(o, Exception)]
    assert len(winners) == 1
    assert all(isinstance(o, BusyError) for o in outcomes if o not in winners)


@pytest.mark.asyncio
async def test_lease_types_are_independent(leases, make_record):
    record_id = await make_record()

    await leases.acquire(record_id, "worker-a", VENDOR_PRICES)
    grant = await leases.acquire(record_id, "worker-b", "completion")

    assert grant.lease_type == "completion"


@pytest.mark.asyncio
async def test_stale_lease_is_taken_over(leases, make_record, clock):
    record_id = await make_record()
    await leases.acquire(record_id, "crashed")

    clock.advance(seconds=1201)
    grant = await leases.acquire(record_id, "worker-b")

    assert grant.took_over_from == "crashed"
    status = await leases.status(record_id)
    assert status.holder_id == "worker-b"
    assert status.held


@pytest.mark.asyncio
async def test_acquire_missing_record(leases):
    with pytest.raises(NotFoundError):
        await leases.acquire("no-such-record", "worker-a")


@pytest.mark.asyncio
async def test_release_by_non_holder_is_a_no_op(leases, make_record):
    record_id = await make_record()
    await leases.acquire(record_id, "worker-a")

    assert await leases.release(record_id, "worker-b") is False
    assert (await leases.status(record_id)).holder_id == "worker-a"

    assert await leases.release(record_id, "worker-a") is True
    assert (await leases.status(record_id)).held is False
    assert await leases.release(record_id, "worker-a") is False


@pytest.mark.asyncio
async def test_extend_pushes_expiry(leases, make_record, clock):
    record_id = await make_record()
    await leases.acquire(record_id, "worker-a")

    clock.advance(seconds=1000)
    assert await leases.extend(record_id, "worker-a")

    clock.advance(seconds=1000)
    status = await leases.status(record_id)
    assert status.held
    assert status.remaining_seconds == pytest.approx(200)
    assert status.extension_count == 1
    assert status.age_seconds == pytest.approx(2000)


@pytest.mark.asyncio
async def test_extend_by_non_holder_fails(leases, make_record):
    record_id = await make_record()
    await leases.acquire(record_id, "worker-a")

    assert await leases.extend(record_id, "worker-b") is False
    assert await leases.extend("other-record", "worker-a") is False


@pytest.mark.asyncio
async def test_verify_fences_out_lost_leases(leases, make_record, session_factory, clock):
    record_id = await make_record()
    await leases.acquire(record_id, "worker-a")

    async with session_factory() as session:
        await leases.verify(session, record_id, "worker-a")

        with pytest.raises(LeaseLostError):
            await leases.verify(session, record_id, "worker-b")

        clock.advance(seconds=1201)
        with pytest.raises(LeaseLostError):
            await leases.verify(session, record_id, "worker-a")


@pytest.mark.asyncio
async def test_status_reports_expired_lease(leases, make_record, clock):
    record_id = await make_record()
    await leases.acquire(record_id, "worker-a")

    clock.advance(seconds=1500)
    status = await leases.status(record_id)

    assert status.expired
    assert not status.held
    assert status.holder_id == "worker-a"
    assert status.remaining_seconds == 0


@pytest.mark.asyncio
async def test_cleanup_deletes_only_expired(leases, make_record, clock):
    old = await make_record("7501234567893")
    fresh = await make_record("4006381333931")
    await leases.acquire(old, "worker-a")
    clock.advance(seconds=1300)
    await leases.acquire(fresh, "worker-b")

    result = await leases.cleanup_expired(batch_size=1)

    assert result.deleted == 1
    assert (await leases.status(old)).holder_id is None
    assert (await leases.status(fresh)).held


@pytest.mark.asyncio
async def test_heartbeat_extends_while_running(leases, make_record):
    record_id = await make_record()
    await leases.acquire(record_id, "worker-a")

    async with leases.heartbeat(record_id, "worker-a", interval=0.01):
        await asyncio.sleep(0.1)

    assert (await leases.status(record_id)).extension_count >= 1
