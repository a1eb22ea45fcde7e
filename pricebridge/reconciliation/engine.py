"""Two-phase vendor price reconciliation for one aggregate record.

Run lifecycle::

    IDLE -> LEASE_ACQUIRED -> EXTERNAL_FETCH -> MERGING -> COMMITTED
    IDLE -> ABORTED                      (lease busy, record missing)
    any  -> FAILED                       (unrecoverable error)

Phase 1 (external fetch) talks to vendors outside any transaction. Phase 2
(merge) re-reads everything inside one transaction, checks that this run
still holds its lease, and writes links, observations and the best-price
pointer atomically. The lease is released whatever happens.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from pricebridge.canonical.keys import new_holder_id, observation_id, period_key_for
from pricebridge.config import ReconcileConfig
from pricebridge.core.errors import BusyError, FatalError, NotFoundError
from pricebridge.core.tasks import BackgroundTaskQueue
from pricebridge.db.models import AggregateRecordModel, PriceObservationModel, VendorLinkModel
from pricebridge.db.transaction import run_transaction
from pricebridge.integration.vendors import SourceHint, VendorAdapter, VendorRegistry
from pricebridge.models import (
    MergeStats,
    ReconcileResult,
    ReconcileStatus,
    RunState,
    VendorHit,
)
from pricebridge.reconciliation.leases import VENDOR_PRICES, LeaseManager
from pricebridge.reconciliation.observations import CompletionHook, product_input_from_hit
from pricebridge.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


@dataclass
class LinkSnapshot:
    vendor_id: str
    source_url: str | None
    source_sku: str | None


@dataclass
class RecordSnapshot:
    """Phase 1 view of a record; may be stale by merge time."""

    record_id: str
    name: str | None
    identifiers: list[str]
    active_links: list[LinkSnapshot] = field(default_factory=list)


class ReconciliationEngine:
    """Fetch current vendor prices for a record and merge them atomically."""

    def __init__(
        self,
        session_factory: sessionmaker,
        leases: LeaseManager,
        vendors: VendorRegistry,
        config: ReconcileConfig | None = None,
        clock: Clock = utcnow,
        heartbeat_interval: float | None = None,
        tasks: BackgroundTaskQueue | None = None,
        on_temporary_hit: CompletionHook | None = None,
    ):
        self.session_factory = session_factory
        self.leases = leases
        self.vendors = vendors
        self.config = config or ReconcileConfig()
        self.clock = clock
        self.heartbeat_interval = heartbeat_interval
        self.tasks = tasks
        self.on_temporary_hit = on_temporary_hit

    @property
    def vendor_order(self) -> list[str]:
        """Configured vendors that have an adapter, in configured order."""
        configured = [v for v in self.config.vendor_ids if v in self.vendors]
        return configured or self.vendors.vendor_ids()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def reconcile(self, record_id: str, period_key: str | None = None) -> ReconcileResult:
        """Run one reconciliation pass.

        Never raises for expected outcomes: a held lease returns ``busy``
        (retry later), a missing record returns ``not_found`` (drop), and an
        unrecoverable error returns ``failed`` after the lease is released.
        """
        holder_id = new_holder_id("vp")
        period = period_key or period_key_for(self.clock())
        started = time.monotonic()

        def result(status: ReconcileStatus, state: RunState, message: str, **kwargs) -> ReconcileResult:
            return ReconcileResult(
                record_id=record_id,
                period_key=period,
                status=status,
                state=state,
                message=message,
                duration_seconds=time.monotonic() - started,
                **kwargs,
            )

        with structlog.contextvars.bound_contextvars(record_id=record_id, run_id=holder_id):
            logger.info(f"[{holder_id}] Starting vendor prices processing for {record_id}")

            try:
                await self.leases.acquire(record_id, holder_id, VENDOR_PRICES)
            except BusyError as e:
                return result(
                    ReconcileStatus.BUSY,
                    RunState.ABORTED,
                    "Already locked by another worker",
                    should_retry=True,
                    holder_id=e.holder_id,
                    remaining_seconds=e.remaining_seconds,
                )
            except NotFoundError:
                logger.error(f"[{holder_id}] Aggregate record not found: {record_id}")
                return result(ReconcileStatus.NOT_FOUND, RunState.ABORTED, "Record not found")
            except FatalError as e:
                logger.error(f"[{holder_id}] Lease error: {e}")
                return result(
                    ReconcileStatus.FAILED, RunState.FAILED, f"Lease error: {e}", should_retry=True
                )

            state = RunState.LEASE_ACQUIRED
            try:
                async with self.leases.heartbeat(
                    record_id, holder_id, VENDOR_PRICES, self.heartbeat_interval
                ):
                    snapshot = await self.read_snapshot(record_id)
                    if snapshot is None:
                        logger.error(f"[{holder_id}] Record not found after lease")
                        return result(ReconcileStatus.NOT_FOUND, RunState.ABORTED, "Record not found")

                    state = RunState.EXTERNAL_FETCH
                    hits = await self.fetch(snapshot)

                    state = RunState.MERGING
                    stats = await self.merge(snapshot, holder_id, hits, period)

                if stats.completion_pending:
                    await self._schedule_completion(record_id, hits)

                logger.info(
                    f"[{holder_id}] Completed: {stats.links_updated} updated, "
                    f"{stats.links_created} created, {stats.links_deactivated} deactivated, "
                    f"active vendors: {stats.active_vendor_brands}"
                )
                return result(
                    ReconcileStatus.OK, RunState.COMMITTED, "Processing succeeded", stats=stats
                )
            except NotFoundError:
                logger.error(f"[{holder_id}] Record deleted during processing")
                return result(ReconcileStatus.NOT_FOUND, RunState.ABORTED, "Record deleted during processing")
            except Exception as e:
                logger.error(f"[{holder_id}] Error during {state.value}: {e}", exc_info=True)
                return result(
                    ReconcileStatus.FAILED, RunState.FAILED, f"{type(e).__name__}: {e}", should_retry=True
                )
            finally:
                try:
                    await self.leases.release(record_id, holder_id, VENDOR_PRICES)
                except Exception as e:
                    logger.error(f"[{holder_id}] Lease release error: {e}")

    async def _schedule_completion(self, record_id: str, hits: list[VendorHit]) -> None:
        if self.on_temporary_hit is None:
            return
        product_input = product_input_from_hit(hits[0])
        hook = self.on_temporary_hit
        if self.tasks is not None:
            self.tasks.submit(f"complete-{record_id}", lambda: hook(record_id, product_input))
        else:
            await hook(record_id, product_input)

    # ------------------------------------------------------------------
    # Phase 1: external fetch
    # ------------------------------------------------------------------

    async def read_snapshot(self, record_id: str) -> RecordSnapshot | None:
        async with self.session_factory() as session:
            record = await session.get(AggregateRecordModel, record_id)
            if record is None:
                return None
            links = (
                await session.execute(
                    select(VendorLinkModel).where(
                        VendorLinkModel.record_id == record_id, VendorLinkModel.active.is_(True)
                    )
                )
            ).scalars().all()

        order = {vendor_id: index for index, vendor_id in enumerate(self.vendor_order)}
        active_links = sorted(
            (LinkSnapshot(link.vendor_id, link.source_url, link.source_sku) for link in links),
            key=lambda link: (order.get(link.vendor_id, len(order)), link.vendor_id),
        )
        identifiers = list(record.identifier_variants or []) or [record.canonical_identifier]
        return RecordSnapshot(
            record_id=record_id,
            name=record.name,
            identifiers=identifiers,
            active_links=active_links,
        )

    async def fetch(self, snapshot: RecordSnapshot) -> list[VendorHit]:
        """Query vendors concurrently.

        Existing active links are re-queried with their remembered SKU/URL;
        every other configured vendor is searched by all identifier variants
        and the first variant that hits wins.

        Returns:
            Hits ordered existing links first, then configured vendor order
        """
        linked = {link.vendor_id for link in snapshot.active_links}

        existing = [
            self._lookup(
                link.vendor_id,
                link.source_sku or snapshot.identifiers[0],
                SourceHint(url=link.source_url, source_sku=link.source_sku),
            )
            for link in snapshot.active_links
            if link.vendor_id in self.vendors
        ]
        missing = [
            self._first_hit(vendor_id, snapshot.identifiers)
            for vendor_id in self.vendor_order
            if vendor_id not in linked
        ]

        # One gather; result order is existing links first, then vendor order
        results = await asyncio.gather(*existing, *missing)

        hits = [hit for hit in results if hit is not None]
        logger.info(
            f"Fetched {len(hits)} hits for {snapshot.record_id} "
            f"({len(existing)} linked, {len(missing)} searched)"
        )
        return hits

    async def _lookup(
        self, vendor_id: str, identifier: str, hint: SourceHint | None = None
    ) -> VendorHit | None:
        adapter: VendorAdapter | None = self.vendors.get(vendor_id)
        if adapter is None:
            return None
        try:
            lookup = await asyncio.wait_for(
                adapter.lookup(vendor_id, identifier, hint),
                timeout=self.config.lookup_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[{vendor_id}/{identifier}] Lookup timed out")
            return None
        except Exception as e:
            logger.warning(f"[{vendor_id}/{identifier}] Lookup error: {e}")
            return None

        if lookup is None or not lookup.is_hit:
            return None
        return VendorHit.from_lookup(vendor_id, lookup, self.clock(), identifier)

    async def _first_hit(self, vendor_id: str, identifiers: list[str]) -> VendorHit | None:
        if not identifiers:
            return None
        attempts = [asyncio.create_task(self._lookup(vendor_id, code)) for code in identifiers]
        try:
            for next_done in asyncio.as_completed(attempts):
                hit = await next_done
                if hit is not None:
                    return hit
            return None
        finally:
            for attempt in attempts:
                attempt.cancel()
            await asyncio.gather(*attempts, return_exceptions=True)

    # ------------------------------------------------------------------
    # Phase 2: merge
    # ------------------------------------------------------------------

    async def merge(
        self,
        snapshot: RecordSnapshot,
        holder_id: str,
        hits: list[VendorHit],
        period_key: str,
    ) -> MergeStats:
        """Apply this run's hits atomically, re-reading all state first.

        Raises:
            LeaseLostError: If the lease expired or was taken over
            NotFoundError: If the record was deleted meanwhile
            FatalError: If the transaction kept conflicting
        """
        record_id = snapshot.record_id

        async def work(session: AsyncSession) -> MergeStats:
            await self.leases.verify(session, record_id, holder_id, VENDOR_PRICES)

            record = (
                await session.execute(
                    select(AggregateRecordModel).where(AggregateRecordModel.id == record_id)
                )
            ).scalar_one_or_none()
            if record is None:
                raise NotFoundError(record_id)

            links = {
                link.vendor_id: link
                for link in (
                    await session.execute(
                        select(VendorLinkModel).where(VendorLinkModel.record_id == record_id)
                    )
                ).scalars()
            }

            now = self.clock()
            cutoff = now - timedelta(days=self.config.staleness_days)
            stats = MergeStats(hits=len(hits))
            hit_vendors = {hit.vendor_id for hit in hits}

            for hit in hits:
                link = links.get(hit.vendor_id)
                if link is None:
                    link = VendorLinkModel(
                        record_id=record_id,
                        vendor_id=hit.vendor_id,
                        active=True,
                        last_fetched_at=hit.fetched_at,
                        last_price=hit.price,
                        source_url=hit.url,
                        source_sku=hit.source_sku,
                        updated_by=holder_id,
                    )
                    session.add(link)
                    links[hit.vendor_id] = link
                    stats.links_created += 1
                else:
                    link.active = True
                    link.last_fetched_at = hit.fetched_at
                    link.last_price = hit.price
                    link.source_url = hit.url
                    link.source_sku = hit.source_sku or link.source_sku
                    link.updated_by = holder_id
                    stats.links_updated += 1

                obs_id = observation_id(hit.vendor_id, period_key)
                existing = await session.scalar(
                    select(PriceObservationModel.id).where(
                        PriceObservationModel.record_id == record_id,
                        PriceObservationModel.id == obs_id,
                    )
                )
                if existing is None:
                    session.add(
                        PriceObservationModel(
                            record_id=record_id,
                            id=obs_id,
                            vendor_id=hit.vendor_id,
                            period_key=period_key,
                            price=hit.price,
                            fetched_at=hit.fetched_at,
                            active=True,
                        )
                    )
                    stats.observations_created += 1

            for vendor_id, link in links.items():
                if vendor_id in hit_vendors or not link.active:
                    continue
                if link.last_fetched_at is not None and link.last_fetched_at < cutoff:
                    link.active = False
                    link.updated_by = holder_id
                    stats.links_deactivated += 1

            await session.flush()

            stats.active_vendor_brands = await session.scalar(
                select(func.count())
                .select_from(VendorLinkModel)
                .where(VendorLinkModel.record_id == record_id, VendorLinkModel.active.is_(True))
            )
            record.active_vendor_brands = stats.active_vendor_brands

            if hits:
                # min() keeps the first of equal prices
                best = min(hits, key=lambda hit: hit.price)
                record.best_price_vendor_id = best.vendor_id
                record.best_price = best.price
                record.best_price_at = now
                stats.best_price_vendor_id = best.vendor_id
                stats.best_price = best.price

            stats.completion_pending = bool(hits) and record.temporary and not record.processed

            record.last_reconciled_at = now
            record.last_reconciled_by = holder_id
            return stats

        return await run_transaction(
            self.session_factory,
            work,
            max_attempts=self.config.transaction_attempts,
            label=f"merge {record_id}",
        )
