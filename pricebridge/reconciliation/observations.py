"""Write path for records and single vendor hits outside a reconciliation run."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from pricebridge.canonical.barcodes import identifier_variants
from pricebridge.canonical.keys import (
    normalize_identifier,
    observation_id,
    period_key_for,
    record_id_for,
)
from pricebridge.core.errors import NotFoundError
from pricebridge.core.tasks import BackgroundTaskQueue
from pricebridge.db.models import AggregateRecordModel, PriceObservationModel, VendorLinkModel
from pricebridge.db.transaction import run_transaction
from pricebridge.models import VendorHit
from pricebridge.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

CompletionHook = Callable[[str, str | None], Awaitable[object]]


def product_input_from_hit(hit: VendorHit) -> str:
    """Describe a vendor hit for the classifier."""
    raw = {"name": hit.name, "price": str(hit.price), "url": hit.url, "sku": hit.source_sku}
    return (
        f"Code: {hit.identifier or hit.source_sku or ''}\n"
        f"Description: {hit.name or ''}\n"
        f"Vendor Product Data: {json.dumps(raw, ensure_ascii=False)}"
    )


class ObservationRecorder:
    """Creates aggregate records and records individual vendor hits.

    When a hit lands on a record that is still ``temporary``, completion is
    submitted to the background task queue.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        tasks: BackgroundTaskQueue | None = None,
        on_temporary_hit: CompletionHook | None = None,
        clock: Clock = utcnow,
        transaction_attempts: int = 5,
    ):
        self.session_factory = session_factory
        self.tasks = tasks
        self.on_temporary_hit = on_temporary_hit
        self.clock = clock
        self.transaction_attempts = transaction_attempts

    async def ensure_record(
        self,
        canonical_identifier: str,
        name: str | None = None,
        temporary: bool = False,
        product_input: str | None = None,
    ) -> tuple[str, bool]:
        """Create or get the aggregate record for an identifier.

        Concurrent callers resolve to the same row: the id is derived from
        the identifier and a losing insert is retried as a read.

        Returns:
            ``(record_id, created)``
        """
        identifier = normalize_identifier(canonical_identifier)
        if not identifier:
            raise ValueError("canonical identifier must not be empty")
        record_id = record_id_for(identifier)
        variants = identifier_variants(identifier) or [identifier]

        async def work(session: AsyncSession) -> bool:
            existing = await session.scalar(
                select(AggregateRecordModel.id).where(AggregateRecordModel.id == record_id)
            )
            if existing is not None:
                return False
            now = self.clock()
            session.add(
                AggregateRecordModel(
                    id=record_id,
                    canonical_identifier=identifier,
                    name=name,
                    identifier_variants=variants,
                    temporary=temporary,
                    processed=False,
                    product_input=product_input,
                    active_vendor_brands=0,
                    created_at=now,
                    updated_at=now,
                )
            )
            await session.flush()
            return True

        created = await run_transaction(
            self.session_factory, work, self.transaction_attempts, label=f"ensure record {identifier}"
        )
        if created:
            logger.info(f"Created aggregate record {record_id} for {identifier} ({len(variants)} variants)")
        return record_id, created

    async def record_hit(
        self, record_id: str, hit: VendorHit, period_key: str | None = None
    ) -> bool:
        """Record one vendor hit: create-if-absent link and observation.

        Returns:
            True if a new observation was written for the period

        Raises:
            NotFoundError: If the record does not exist
        """
        period = period_key or period_key_for(self.clock())
        obs_id = observation_id(hit.vendor_id, period)

        async def work(session: AsyncSession) -> tuple[bool, bool]:
            record = (
                await session.execute(
                    select(AggregateRecordModel).where(AggregateRecordModel.id == record_id)
                )
            ).scalar_one_or_none()
            if record is None:
                raise NotFoundError(record_id)

            link = await session.get(VendorLinkModel, (record_id, hit.vendor_id))
            if link is None:
                session.add(
                    VendorLinkModel(
                        record_id=record_id,
                        vendor_id=hit.vendor_id,
                        active=True,
                        last_fetched_at=hit.fetched_at,
                        last_price=hit.price,
                        source_url=hit.url,
                        source_sku=hit.source_sku,
                    )
                )
                record.active_vendor_brands = (record.active_vendor_brands or 0) + 1

            created = False
            if await session.get(PriceObservationModel, (record_id, obs_id)) is None:
                session.add(
                    PriceObservationModel(
                        record_id=record_id,
                        id=obs_id,
                        vendor_id=hit.vendor_id,
                        period_key=period,
                        price=hit.price,
                        fetched_at=hit.fetched_at,
                        active=True,
                    )
                )
                created = True

            await session.flush()
            pending_completion = record.temporary and not record.processed
            return created, pending_completion

        created, pending_completion = await run_transaction(
            self.session_factory, work, self.transaction_attempts, label=f"record hit {record_id}"
        )

        if pending_completion and self.on_temporary_hit is not None:
            product_input = product_input_from_hit(hit)
            hook = self.on_temporary_hit
            if self.tasks is not None:
                self.tasks.submit(f"complete-{record_id}", lambda: hook(record_id, product_input))
            else:
                await hook(record_id, product_input)

        return created
