from __future__ import annotations

from typing import Any

from arq.connections import ArqRedis, RedisSettings, create_pool
from arq.jobs import Job

from pricebridge.config import get_config


def get_redis_settings(redis_url: str | None = None) -> RedisSettings:
    """Get Redis settings from configuration."""
    return RedisSettings.from_dsn(redis_url or get_config().worker.redis_url)


async def get_queue(redis_url: str | None = None) -> ArqRedis:
    """Create a connection pool to the Redis queue."""
    return await create_pool(get_redis_settings(redis_url))


def reconcile_job_id(record_id: str, period_key: str) -> str:
    """Job id that collapses duplicate enqueues for the same record and period."""
    return f"vp:{record_id}:{period_key}"


async def enqueue_reconcile(
    queue: ArqRedis, record_id: str, period_key: str, **kwargs: Any
) -> Job | None:
    """Publish one reconciliation message.

    Returns None when a job with the same id is already queued or running.
    """
    return await queue.enqueue_job(
        "reconcile_vendor_prices",
        record_id,
        period_key,
        _job_id=reconcile_job_id(record_id, period_key),
        **kwargs,
    )
