"""PriceBridge Pydantic models for type-safe data exchange.

Results returned by the public entrypoints are plain values: expected
outcomes (a held lease, a missing record) are statuses, not exceptions.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class RunState(str, Enum):
    """Reconciliation run states."""

    IDLE = "idle"
    LEASE_ACQUIRED = "lease_acquired"
    EXTERNAL_FETCH = "external_fetch"
    MERGING = "merging"
    COMMITTED = "committed"
    ABORTED = "aborted"  # lease busy or record missing
    FAILED = "failed"  # unrecoverable error after lease acquisition


class ReconcileStatus(str, Enum):
    OK = "ok"
    BUSY = "busy"
    NOT_FOUND = "not_found"
    FAILED = "failed"


class ClaimStatus(str, Enum):
    CLAIMED = "claimed"
    BUSY = "busy"
    ALREADY_PROCESSED = "already_processed"
    NOT_FOUND = "not_found"


class CompletionStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class VendorLookup(BaseModel):
    """Raw result of one vendor adapter call."""

    url: str | None = None
    source_sku: str | None = None
    name: str | None = None
    price: Decimal | None = None
    raw: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_hit(self) -> bool:
        """Only a strictly positive price with a URL counts as a hit."""
        return self.price is not None and self.price > 0 and bool(self.url)


class VendorHit(BaseModel):
    """A successful per-vendor lookup within a reconciliation run."""

    vendor_id: str
    price: Decimal
    url: str
    source_sku: str | None = None
    name: str | None = None
    identifier: str | None = None  # variant that matched
    fetched_at: datetime

    @field_validator("price")
    @classmethod
    def validate_price(cls, v: Decimal) -> Decimal:
        if v <= 0:
            raise ValueError("price must be positive")
        return v

    @classmethod
    def from_lookup(
        cls,
        vendor_id: str,
        lookup: VendorLookup,
        fetched_at: datetime,
        identifier: str | None = None,
    ) -> VendorHit:
        return cls(
            vendor_id=vendor_id,
            price=lookup.price,
            url=lookup.url,
            source_sku=lookup.source_sku,
            name=lookup.name,
            identifier=identifier,
            fetched_at=fetched_at,
        )


class LeaseGrant(BaseModel):
    """Lease held by a caller after a successful acquire."""

    record_id: str
    lease_type: str
    holder_id: str
    acquired_at: datetime
    expires_at: datetime
    ttl_seconds: float
    took_over_from: str | None = None  # previous holder of a stale lease


class LeaseStatus(BaseModel):
    """Non-authoritative snapshot of a lease."""

    record_id: str
    lease_type: str
    held: bool
    holder_id: str | None = None
    remaining_seconds: float = 0.0
    age_seconds: float = 0.0
    extension_count: int = 0
    expired: bool = False


class MergeStats(BaseModel):
    """What a committed merge changed."""

    hits: int = 0
    links_created: int = 0
    links_updated: int = 0
    links_deactivated: int = 0
    observations_created: int = 0
    active_vendor_brands: int = 0
    best_price_vendor_id: str | None = None
    best_price: Decimal | None = None
    completion_pending: bool = False  # temporary record got its first hits


class ReconcileResult(BaseModel):
    """Outcome of one reconciliation run."""

    record_id: str
    period_key: str
    status: ReconcileStatus
    state: RunState
    message: str = ""
    should_retry: bool = False
    holder_id: str | None = None  # current holder when busy
    remaining_seconds: float = 0.0
    stats: MergeStats | None = None
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == ReconcileStatus.OK


class ClaimResult(BaseModel):
    """Outcome of a completion claim attempt."""

    record_id: str
    status: ClaimStatus
    holder_id: str | None = None  # winner, or current holder when busy
    remaining_seconds: float = 0.0
    cached: bool = False  # decided by the in-process cache

    @property
    def claimed(self) -> bool:
        return self.status == ClaimStatus.CLAIMED


class Classification(BaseModel):
    """Standardized name, pack size and category for a product."""

    name: str | None = None
    pack_size: str | None = None
    category: str | None = None

    @field_validator("pack_size")
    @classmethod
    def normalize_pack_size(cls, v: str | None) -> str | None:
        # Models occasionally return the literal string "null"
        if v is None or v.strip().lower() in ("", "null"):
            return None
        return v.strip()


class BrandDetection(BaseModel):
    """Consumer-facing brand with its canonical website."""

    name: str | None = None
    url: str | None = None


class CompletionResult(BaseModel):
    """Outcome of the one-time completion path."""

    record_id: str
    status: CompletionStatus
    claim_status: ClaimStatus | None = None
    holder_id: str | None = None
    category: str | None = None
    brand_id: str | None = None
    message: str = ""


class TriggerResult(BaseModel):
    """Summary of a reconciliation fan-out."""

    period_key: str
    published: int = 0
    failed: int = 0
    pages: int = 0


class CleanupResult(BaseModel):
    """Summary of a maintenance sweep."""

    deleted: int = 0
    errors: int = 0
    scanned: int = 0


class HttpResult(BaseModel):
    """Outcome of a rate-gated outbound HTTP call."""

    success: bool
    data: Any = None
    status: int | None = None
    retryable: bool = False
    error: str | None = None
    attempts: int = 0
