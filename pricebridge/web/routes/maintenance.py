"""Maintenance routes for operators and schedulers."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from pricebridge.reconciliation.cleanup import cleanup_stale_temporary_records
from pricebridge.runtime import Services
from pricebridge.web.dependencies import get_services

router = APIRouter(tags=["maintenance"])


@router.get("/rate-limiter/stats")
async def rate_limiter_stats(
    include_idle: bool = Query(default=False),
    services: Services = Depends(get_services),
):
    limiter = services.rate_limiter
    return limiter.all_stats() if include_idle else limiter.stats()


@router.post("/cleanup/expired-leases")
async def cleanup_expired_leases(services: Services = Depends(get_services)):
    result = await services.leases.cleanup_expired()
    return result.model_dump()


@router.post("/cleanup/temporary-records")
async def cleanup_temporary_records(
    ttl_hours: int | None = Query(default=None, ge=1),
    services: Services = Depends(get_services),
):
    """Delete temporary records that never completed."""
    worker = services.config.worker
    result = await cleanup_stale_temporary_records(
        services.session_factory,
        ttl_hours=ttl_hours or worker.temporary_ttl_hours,
        batch_size=worker.trigger_page_size,
    )
    return result.model_dump()
