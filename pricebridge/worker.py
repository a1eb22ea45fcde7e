"""arq worker: reconciliation, completion and maintenance jobs.

Run with ``arq pricebridge.worker.WorkerSettings``.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import structlog
from arq import Retry
from arq.cron import cron
from arq.worker import func

from pricebridge.canonical.keys import period_key_for
from pricebridge.config import get_config
from pricebridge.core.logging import configure_logging
from pricebridge.core.queue import enqueue_reconcile, get_redis_settings
from pricebridge.models import ReconcileStatus
from pricebridge.reconciliation.cleanup import (
    cleanup_stale_temporary_records,
    expire_temporary_record,
)
from pricebridge.reconciliation.trigger import trigger_vendor_prices
from pricebridge.runtime import Services
from pricebridge.utils.clock import utcnow

logger = logging.getLogger(__name__)

MIN_RETRY_DELAY_SECONDS = 5
MAX_RETRY_DELAY_SECONDS = 600


def retry_delay(remaining_seconds: float, job_try: int) -> int:
    """Seconds to defer a retried reconciliation.

    A busy record is retried shortly after the current lease would expire;
    failures back off linearly with the attempt number.
    """
    delay = max(remaining_seconds + 1, MIN_RETRY_DELAY_SECONDS * job_try)
    return int(min(delay, MAX_RETRY_DELAY_SECONDS))


async def startup(ctx: dict[str, Any]) -> None:
    """Initialize resources when worker starts."""
    config = get_config()
    configure_logging(config.log_level, config.log_format == "json")
    ctx["services"] = await Services.create(config)
    logger.info("Worker started. Services initialized.")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Cleanup resources when worker stops."""
    services: Services | None = ctx.get("services")
    if services is not None:
        await services.close()
    logger.info("Worker stopped. Services closed.")


async def reconcile_vendor_prices(
    ctx: dict[str, Any], record_id: str, period_key: str | None = None
) -> dict[str, Any]:
    """Reconcile one record; busy and failed runs are retried by arq."""
    services: Services = ctx["services"]
    with structlog.contextvars.bound_contextvars(job_id=ctx.get("job_id")):
        result = await services.reconciler.reconcile(record_id, period_key)

    if result.should_retry:
        job_try = ctx.get("job_try", 1)
        if job_try < services.config.worker.max_tries:
            defer = retry_delay(result.remaining_seconds, job_try)
            logger.info(f"Reconciliation of {record_id} {result.status.value}; retrying in {defer}s")
            raise Retry(defer=defer)
        logger.error(f"Giving up on {record_id} after {job_try} tries: {result.message}")

    if result.status is ReconcileStatus.NOT_FOUND:
        logger.warning(f"Dropping reconciliation for missing record {record_id}")
    return result.model_dump(mode="json")


async def trigger_reconciliation(ctx: dict[str, Any], period_key: str | None = None) -> dict[str, Any]:
    """Enqueue one reconciliation job per aggregate record."""
    services: Services = ctx["services"]
    redis = ctx["redis"]

    async def publish(record_id: str, period: str) -> None:
        await enqueue_reconcile(redis, record_id, period)

    result = await trigger_vendor_prices(
        services.session_factory,
        publish,
        page_size=services.config.worker.trigger_page_size,
        period_key=period_key,
    )
    return result.model_dump(mode="json")


async def register_record(
    ctx: dict[str, Any],
    canonical_identifier: str,
    name: str | None = None,
    temporary: bool = False,
    product_input: str | None = None,
) -> dict[str, Any]:
    """Create (or find) a record and queue its first reconciliation.

    Temporary records also get a delayed check that removes them if no vendor
    hit completed them in the meantime.
    """
    services: Services = ctx["services"]
    redis = ctx["redis"]
    record_id, created = await services.recorder.ensure_record(
        canonical_identifier, name=name, temporary=temporary, product_input=product_input
    )
    await enqueue_reconcile(redis, record_id, period_key_for(utcnow()))
    if created and temporary:
        await redis.enqueue_job(
            "expire_temporary_record",
            record_id,
            _defer_by=services.config.worker.temporary_delay_seconds,
        )
    return {"record_id": record_id, "created": created}


async def complete_record(
    ctx: dict[str, Any], record_id: str, product_input: str | None = None
) -> dict[str, Any]:
    """Run one-time completion (classification and brand) for a record."""
    services: Services = ctx["services"]
    if services.completion is None:
        logger.warning(f"Completion requested for {record_id} but no classifier is configured")
        return {"record_id": record_id, "status": "skipped", "message": "classifier disabled"}
    with structlog.contextvars.bound_contextvars(job_id=ctx.get("job_id"), record_id=record_id):
        result = await services.completion.complete(record_id, product_input)
    return result.model_dump(mode="json")


async def cleanup_expired_leases(ctx: dict[str, Any]) -> dict[str, Any]:
    services: Services = ctx["services"]
    result = await services.leases.cleanup_expired()
    return result.model_dump(mode="json")


async def cleanup_temporary_records(ctx: dict[str, Any]) -> dict[str, Any]:
    services: Services = ctx["services"]
    worker = services.config.worker
    result = await cleanup_stale_temporary_records(
        services.session_factory,
        ttl_hours=worker.temporary_ttl_hours,
        batch_size=worker.trigger_page_size,
    )
    return result.model_dump(mode="json")


async def expire_temporary_record_job(ctx: dict[str, Any], record_id: str) -> dict[str, Any]:
    """Delayed check scheduled when a temporary record is registered."""
    services: Services = ctx["services"]
    outcome = await expire_temporary_record(services.session_factory, record_id)
    return {"record_id": record_id, "status": outcome.value}


class WorkerSettings:
    functions = [
        reconcile_vendor_prices,
        trigger_reconciliation,
        register_record,
        complete_record,
        cleanup_expired_leases,
        cleanup_temporary_records,
        func(expire_temporary_record_job, name="expire_temporary_record"),
    ]
    cron_jobs = [
        # Daily fan-out just after the UTC period rolls over
        cron(trigger_reconciliation, hour=0, minute=5, run_at_startup=False),
        cron(cleanup_expired_leases, minute={0, 15, 30, 45}),
        cron(cleanup_temporary_records, minute=30),
    ]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = get_redis_settings(os.environ.get("REDIS_URL", "redis://redis:6379"))
    max_jobs = int(os.environ.get("BATCH_CONCURRENCY", "1000"))
    job_timeout = int(os.environ.get("JOB_TIMEOUT_SECONDS", "1800"))
    max_tries = int(os.environ.get("JOB_MAX_TRIES", "10"))
