"""SQLAlchemy async database models for PriceBridge.

An aggregate record owns its vendor links, price observations, leases and its
processing claim. Child rows are addressed by deterministic keys derived from
business identifiers so that redelivered work lands on the same rows.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from pricebridge.utils.clock import utcnow


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class AggregateRecordModel(Base):
    """Canonical cross-vendor product keyed by its normalized identifier."""

    __tablename__ = "aggregate_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    canonical_identifier: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str | None] = mapped_column(Text)
    category: Mapped[str | None] = mapped_column(Text, index=True)
    identifier_variants: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    # Best price pointer (minimum among the latest run's hits)
    best_price_vendor_id: Mapped[str | None] = mapped_column(String(64))
    best_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    best_price_at: Mapped[datetime | None] = mapped_column(DateTime)
    active_vendor_brands: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Completion state
    temporary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime)
    processed_by: Mapped[str | None] = mapped_column(String(64))
    product_input: Mapped[str | None] = mapped_column(Text)
    brand_id: Mapped[str | None] = mapped_column(ForeignKey("brands.id", ondelete="SET NULL"))
    brand_name: Mapped[str | None] = mapped_column(Text)
    pack_size: Mapped[str | None] = mapped_column(Text)

    # Audit
    last_reconciled_at: Mapped[datetime | None] = mapped_column(DateTime)
    last_reconciled_by: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    vendor_links: Mapped[list[VendorLinkModel]] = relationship(
        back_populates="record", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        Index("idx_records_temporary_created", "temporary", "created_at"),
    )


class VendorLinkModel(Base):
    """Per-vendor association tracking fetch freshness and last known price."""

    __tablename__ = "vendor_links"

    record_id: Mapped[str] = mapped_column(
        ForeignKey("aggregate_records.id", ondelete="CASCADE"), primary_key=True
    )
    vendor_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_fetched_at: Mapped[datetime | None] = mapped_column(DateTime)
    last_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    source_url: Mapped[str | None] = mapped_column(Text)
    source_sku: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
    updated_by: Mapped[str | None] = mapped_column(String(64))

    record: Mapped[AggregateRecordModel] = relationship(back_populates="vendor_links")

    __table_args__ = (
        Index("idx_vendor_links_active", "record_id", "active"),
    )


class PriceObservationModel(Base):
    """Immutable per-period price sample for one vendor."""

    __tablename__ = "price_observations"

    record_id: Mapped[str] = mapped_column(
        ForeignKey("aggregate_records.id", ondelete="CASCADE"), primary_key=True
    )
    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # hash(vendor_period)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_key: Mapped[str] = mapped_column(String(8), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    fetched_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        # Write-once per (vendor, period)
        UniqueConstraint("record_id", "vendor_id", "period_key", name="uq_observation_period"),
    )


class LeaseModel(Base):
    """Time-bounded mutual-exclusion grant on an aggregate record."""

    __tablename__ = "leases"

    record_id: Mapped[str] = mapped_column(
        ForeignKey("aggregate_records.id", ondelete="CASCADE"), primary_key=True
    )
    lease_type: Mapped[str] = mapped_column(String(32), primary_key=True)
    holder_id: Mapped[str] = mapped_column(String(64), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    ttl_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    extended_at: Mapped[datetime | None] = mapped_column(DateTime)
    extension_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class ProcessingClaimModel(Base):
    """Claim on the one-time completion work for an aggregate record."""

    __tablename__ = "processing_claims"

    record_id: Mapped[str] = mapped_column(
        ForeignKey("aggregate_records.id", ondelete="CASCADE"), primary_key=True
    )
    holder_id: Mapped[str] = mapped_column(String(64), nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class BrandModel(Base):
    """Product brand detected during completion, keyed by hash of its URL."""

    __tablename__ = "brands"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
