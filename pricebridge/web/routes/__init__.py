"""PriceBridge route modules.

Each module exports a ``router`` (APIRouter) included by ``pricebridge.web.app``.
"""

from pricebridge.web.routes import health, maintenance, reconciliation

__all__ = ["health", "maintenance", "reconciliation"]
