"""Database layer for PriceBridge with async SQLAlchemy."""

from pricebridge.db.connection import create_engine_for, create_session_factory, init_db
from pricebridge.db.models import (
    AggregateRecordModel,
    Base,
    BrandModel,
    LeaseModel,
    PriceObservationModel,
    ProcessingClaimModel,
    VendorLinkModel,
)
from pricebridge.db.transaction import run_transaction

__all__ = [
    "Base",
    "AggregateRecordModel",
    "VendorLinkModel",
    "PriceObservationModel",
    "LeaseModel",
    "ProcessingClaimModel",
    "BrandModel",
    "create_engine_for",
    "create_session_factory",
    "init_db",
    "run_transaction",
]
