"""Health check API routes."""

from fastapi import APIRouter, Depends, status
from sqlalchemy import text

from pricebridge.runtime import Services
from pricebridge.web.dependencies import get_services

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("", status_code=status.HTTP_200_OK)
async def health_check(services: Services = Depends(get_services)):
    """Check application health.

    Verifies database connectivity and reports background work.
    """
    try:
        async with services.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        return {"status": "error", "database": "disconnected", "detail": str(e)}

    return {
        "status": "ok",
        "database": "connected",
        "vendors": len(services.vendors),
        "background_tasks": services.tasks.pending,
    }
