"""Shared dependencies for PriceBridge web routes.

Route handlers receive the process-wide service graph through FastAPI's
``Depends()``:

    @router.get("/thing")
    async def handler(services: Services = Depends(get_services)):
        ...
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from pricebridge.runtime import Services


def get_services(request: Request) -> Services:
    """Return the Services instance attached to the app at startup.

    Raises:
        HTTPException: 503 while the app is still starting
    """
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Services not initialized"
        )
    return services
