"""Reconciliation and completion routes.

Routes:
- POST /vendor-prices/{record_id}  - Run one reconciliation pass now
- POST /completion/{record_id}     - Run one-time completion now
- GET  /leases/{record_id}         - Inspect the lease on a record
"""

from __future__ import annotations

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from pricebridge.models import CompletionStatus, ReconcileStatus
from pricebridge.reconciliation.leases import VENDOR_PRICES
from pricebridge.runtime import Services
from pricebridge.web.dependencies import get_services
from pricebridge.web.models import CompletionRequest

router = APIRouter(tags=["reconciliation"])

RECONCILE_STATUS_CODES = {
    ReconcileStatus.OK: status.HTTP_200_OK,
    ReconcileStatus.BUSY: status.HTTP_409_CONFLICT,
    ReconcileStatus.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ReconcileStatus.FAILED: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@router.post("/vendor-prices/{record_id}")
async def reconcile_record(
    record_id: str,
    period_key: str | None = Query(default=None, pattern=r"^\d{8}$"),
    services: Services = Depends(get_services),
):
    """Reconcile vendor prices for one record and report the outcome."""
    result = await services.reconciler.reconcile(record_id, period_key)
    return JSONResponse(
        status_code=RECONCILE_STATUS_CODES[result.status],
        content=result.model_dump(mode="json"),
    )


@router.post("/completion/{record_id}")
async def complete_record(
    record_id: str,
    payload: CompletionRequest | None = Body(default=None),
    services: Services = Depends(get_services),
):
    """Classify and complete a temporary record."""
    if services.completion is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Product classifier is not configured",
        )
    result = await services.completion.complete(
        record_id, payload.product_input if payload else None
    )
    code = (
        status.HTTP_500_INTERNAL_SERVER_ERROR
        if result.status is CompletionStatus.FAILED
        else status.HTTP_200_OK
    )
    return JSONResponse(status_code=code, content=result.model_dump(mode="json"))


@router.get("/leases/{record_id}")
async def lease_status(
    record_id: str,
    lease_type: str = Query(default=VENDOR_PRICES),
    services: Services = Depends(get_services),
):
    """Snapshot of the lease on a record (may be stale by the time it is read)."""
    lease = await services.leases.status(record_id, lease_type)
    return lease.model_dump(mode="json")
