"""Tests for arq job functions (services and redis mocked)."""

from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from arq import Retry

from pricebridge import worker
from pricebridge.config import WorkerConfig
from pricebridge.core.queue import reconcile_job_id
from pricebridge.models import ReconcileResult, ReconcileStatus, RunState


def result(status: ReconcileStatus, should_retry: bool = False, remaining: float = 0.0):
    return ReconcileResult(
        record_id="rec-1",
        period_key="20240601",
        status=status,
        state=RunState.COMMITTED if status is ReconcileStatus.OK else RunState.ABORTED,
        should_retry=should_retry,
        remaining_seconds=remaining,
    )


def make_ctx(reconcile_result=None, job_try: int = 1, **worker_config):
    services = SimpleNamespace(
        config=SimpleNamespace(worker=WorkerConfig(**worker_config)),
        reconciler=SimpleNamespace(reconcile=AsyncMock(return_value=reconcile_result)),
        recorder=SimpleNamespace(ensure_record=AsyncMock()),
        completion=None,
    )
    return {
        "services": services,
        "redis": SimpleNamespace(enqueue_job=AsyncMock()),
        "job_try": job_try,
        "job_id": "job-1",
    }


class TestRetryDelay:
    def test_busy_waits_for_lease_expiry(self):
        assert worker.retry_delay(remaining_seconds=120, job_try=1) == 121

    def test_failures_back_off_per_try(self):
        assert worker.retry_delay(remaining_seconds=0, job_try=4) == 20

    def test_capped(self):
        assert worker.retry_delay(remaining_seconds=5000, job_try=1) == 600


class TestReconcileJob:
    @pytest.mark.asyncio
    async def test_ok_returns_result(self):
        ctx = make_ctx(result(ReconcileStatus.OK))

        dumped = await worker.reconcile_vendor_prices(ctx, "rec-1", "20240601")

        assert dumped["status"] == "ok"
        ctx["services"].reconciler.reconcile.assert_awaited_once_with("rec-1", "20240601")

    @pytest.mark.asyncio
    async def test_busy_is_deferred_past_the_lease(self):
        ctx = make_ctx(result(ReconcileStatus.BUSY, should_retry=True, remaining=300))

        with pytest.raises(Retry) as exc_info:
            await worker.reconcile_vendor_prices(ctx, "rec-1")

        assert exc_info.value.defer_score == 301 * 1000

    @pytest.mark.asyncio
    async def test_last_try_returns_instead_of_retrying(self):
        ctx = make_ctx(result(ReconcileStatus.FAILED, should_retry=True), job_try=3, max_tries=3)

        dumped = await worker.reconcile_vendor_prices(ctx, "rec-1")

        assert dumped["status"] == "failed"

    @pytest.mark.asyncio
    async def test_not_found_is_dropped(self):
        ctx = make_ctx(result(ReconcileStatus.NOT_FOUND))

        dumped = await worker.reconcile_vendor_prices(ctx, "rec-1")

        assert dumped["status"] == "not_found"


class TestRegisterJob:
    @pytest.mark.asyncio
    async def test_temporary_record_gets_delayed_expiry(self):
        ctx = make_ctx(temporary_delay_seconds=90)
        ctx["services"].recorder.ensure_record.return_value = ("rec-1", True)

        dumped = await worker.register_record(ctx, "7501234567893", temporary=True)

        assert dumped == {"record_id": "rec-1", "created": True}
        calls = ctx["redis"].enqueue_job.await_args_list
        assert calls[0].args[0] == "reconcile_vendor_prices"
        assert calls[0].kwargs["_job_id"] == reconcile_job_id("rec-1", calls[0].args[2])
        assert calls[1].args == ("expire_temporary_record", "rec-1")
        assert calls[1].kwargs == {"_defer_by": 90}

    @pytest.mark.asyncio
    async def test_existing_record_only_reconciles(self):
        ctx = make_ctx()
        ctx["services"].recorder.ensure_record.return_value = ("rec-1", False)

        await worker.register_record(ctx, "7501234567893", temporary=True)

        assert ctx["redis"].enqueue_job.await_count == 1


@pytest.mark.asyncio
async def test_completion_job_without_classifier_is_skipped():
    ctx = make_ctx()

    dumped = await worker.complete_record(ctx, "rec-1")

    assert dumped["status"] == "skipped"


def test_worker_registers_every_job():
    names = {getattr(f, "name", getattr(f, "__name__", None)) for f in worker.WorkerSettings.functions}
    assert {
        "reconcile_vendor_prices",
        "trigger_reconciliation",
        "register_record",
        "complete_record",
        "cleanup_expired_leases",
        "cleanup_temporary_records",
        "expire_temporary_record",
    } <= names


def test_job_id_collapses_duplicates():
    assert reconcile_job_id("rec-1", "20240601") == "vp:rec-1:20240601"
