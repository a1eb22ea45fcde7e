"""Distributed leases for long-running work on an aggregate record.

A lease is a row keyed by ``(record_id, lease_type)`` naming its holder and
expiry. At most one unexpired lease exists per key; a crashed holder's lease
simply expires and the next acquirer takes it over with a compare-and-set
update, so two racing acquirers cannot both win.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from pricebridge.config import LeaseConfig
from pricebridge.core.errors import BusyError, ConflictRetryError, LeaseLostError, NotFoundError
from pricebridge.db.models import AggregateRecordModel, LeaseModel
from pricebridge.db.transaction import run_transaction
from pricebridge.models import CleanupResult, LeaseGrant, LeaseStatus
from pricebridge.utils.clock import Clock, seconds_between, utcnow

logger = logging.getLogger(__name__)

VENDOR_PRICES = "vendor_prices"


class LeaseManager:
    """Acquire, release, extend and inspect leases.

    Example:
        >>> leases = LeaseManager(session_factory)
        >>> grant = await leases.acquire(record_id, "vp-worker-1")
        >>> async with leases.heartbeat(record_id, "vp-worker-1"):
        ...     ...  # long-running work
        >>> await leases.release(record_id, "vp-worker-1")
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        config: LeaseConfig | None = None,
        clock: Clock = utcnow,
        transaction_attempts: int = 5,
    ):
        self.session_factory = session_factory
        self.config = config or LeaseConfig()
        self.clock = clock
        self.transaction_attempts = transaction_attempts

    async def _transaction(self, work, label: str):
        return await run_transaction(
            self.session_factory, work, max_attempts=self.transaction_attempts, label=label
        )

    async def acquire(
        self,
        record_id: str,
        holder_id: str,
        lease_type: str = VENDOR_PRICES,
        ttl: float | None = None,
    ) -> LeaseGrant:
        """Acquire the lease, taking over an expired one.

        Args:
            record_id: Aggregate record to lock
            holder_id: Unique id of the caller (one per run)
            lease_type: Independent lease namespace on the same record
            ttl: Lease duration in seconds (config default if omitted)

        Returns:
            LeaseGrant describing the held lease

        Raises:
            NotFoundError: If the record does not exist
            BusyError: If another holder has an unexpired lease
            FatalError: If the store kept conflicting
        """
        ttl_seconds = ttl or self.config.ttl_seconds

        async def work(session: AsyncSession) -> LeaseGrant:
            exists = await session.scalar(
                select(AggregateRecordModel.id).where(AggregateRecordModel.id == record_id)
            )
            if exists is None:
                raise NotFoundError(record_id)

            now = self.clock()
            expires_at = now + timedelta(seconds=ttl_seconds)
            current = (
                await session.execute(
                    select(LeaseModel).where(
                        LeaseModel.record_id == record_id, LeaseModel.lease_type == lease_type
                    )
                )
            ).scalar_one_or_none()

            if current is None:
                session.add(
                    LeaseModel(
                        record_id=record_id,
                        lease_type=lease_type,
                        holder_id=holder_id,
                        acquired_at=now,
                        expires_at=expires_at,
                        ttl_seconds=ttl_seconds,
                        extension_count=0,
                    )
                )
                # A racing insert surfaces here as IntegrityError and is retried
                await session.flush()
                return LeaseGrant(
                    record_id=record_id,
                    lease_type=lease_type,
                    holder_id=holder_id,
                    acquired_at=now,
                    expires_at=expires_at,
                    ttl_seconds=ttl_seconds,
                )

            previous_holder = current.holder_id
            if previous_holder != holder_id and current.expires_at > now:
                raise BusyError(
                    record_id,
                    previous_holder,
                    remaining_seconds=seconds_between(current.expires_at, now),
                )

            # Compare-and-set on the row we just read
            result = await session.execute(
                update(LeaseModel)
                .where(
                    LeaseModel.record_id == record_id,
                    LeaseModel.lease_type == lease_type,
                    LeaseModel.holder_id == previous_holder,
                    LeaseModel.expires_at == current.expires_at,
                )
                .values(
                    holder_id=holder_id,
                    acquired_at=now,
                    expires_at=expires_at,
                    ttl_seconds=ttl_seconds,
                    extended_at=None,
                    extension_count=0,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictRetryError(f"lease {record_id}/{lease_type} changed during takeover")

            took_over = previous_holder if previous_holder != holder_id else None
            if took_over:
                logger.info(
                    f"[{holder_id}] Overriding stale lease from {took_over} "
                    f"(expired {seconds_between(now, current.expires_at):.0f}s ago)"
                )
            return LeaseGrant(
                record_id=record_id,
                lease_type=lease_type,
                holder_id=holder_id,
                acquired_at=now,
                expires_at=expires_at,
                ttl_seconds=ttl_seconds,
                took_over_from=took_over,
            )

        try:
            grant = await self._transaction(work, f"acquire lease {record_id}")
        except BusyError as e:
            logger.info(
                f"[{holder_id}] Lease held by {e.holder_id} (remaining: {e.remaining_seconds:.0f}s)"
            )
            raise

        logger.info(f"[{holder_id}] Lease acquired on {record_id}/{lease_type}")
        return grant

    async def release(
        self, record_id: str, holder_id: str, lease_type: str = VENDOR_PRICES
    ) -> bool:
        """Release the lease if ``holder_id`` still holds it.

        Returns:
            True if a lease was deleted, False for a no-op
        """

        async def work(session: AsyncSession) -> tuple[bool, str | None]:
            result = await session.execute(
                delete(LeaseModel)
                .where(
                    LeaseModel.record_id == record_id,
                    LeaseModel.lease_type == lease_type,
                    LeaseModel.holder_id == holder_id,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return True, holder_id
            current = await session.scalar(
                select(LeaseModel.holder_id).where(
                    LeaseModel.record_id == record_id, LeaseModel.lease_type == lease_type
                )
            )
            return False, current

        released, current = await self._transaction(work, f"release lease {record_id}")
        if released:
            logger.info(f"[{holder_id}] Lease released on {record_id}/{lease_type}")
        elif current is None:
            logger.info(f"[{holder_id}] No lease to release on {record_id}/{lease_type}")
        else:
            logger.warning(f"[{holder_id}] Cannot release lease held by {current}")
        return released

    async def extend(
        self, record_id: str, holder_id: str, lease_type: str = VENDOR_PRICES
    ) -> bool:
        """Push the expiry to now + ttl if ``holder_id`` holds the lease.

        Returns:
            True if extended, False if the lease is gone or held by another
        """

        async def work(session: AsyncSession) -> bool:
            current = (
                await session.execute(
                    select(LeaseModel).where(
                        LeaseModel.record_id == record_id, LeaseModel.lease_type == lease_type
                    )
                )
            ).scalar_one_or_none()
            if current is None or current.holder_id != holder_id:
                return False

            now = self.clock()
            result = await session.execute(
                update(LeaseModel)
                .where(
                    LeaseModel.record_id == record_id,
                    LeaseModel.lease_type == lease_type,
                    LeaseModel.holder_id == holder_id,
                    LeaseModel.extension_count == current.extension_count,
                )
                .values(
                    expires_at=now + timedelta(seconds=current.ttl_seconds),
                    extended_at=now,
                    extension_count=current.extension_count + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictRetryError(f"lease {record_id}/{lease_type} changed during extend")
            return True

        extended = await self._transaction(work, f"extend lease {record_id}")
        if extended:
            logger.info(f"[{holder_id}] Lease extended on {record_id}/{lease_type}")
        return extended

    async def status(self, record_id: str, lease_type: str = VENDOR_PRICES) -> LeaseStatus:
        """Non-authoritative snapshot; may be stale by the time it is read."""
        async with self.session_factory() as session:
            current = (
                await session.execute(
                    select(LeaseModel).where(
                        LeaseModel.record_id == record_id, LeaseModel.lease_type == lease_type
                    )
                )
            ).scalar_one_or_none()

        if current is None:
            return LeaseStatus(record_id=record_id, lease_type=lease_type, held=False)

        now = self.clock()
        expired = current.expires_at <= now
        return LeaseStatus(
            record_id=record_id,
            lease_type=lease_type,
            held=not expired,
            holder_id=current.holder_id,
            remaining_seconds=max(0.0, seconds_between(current.expires_at, now)),
            age_seconds=max(0.0, seconds_between(now, current.acquired_at)),
            extension_count=current.extension_count,
            expired=expired,
        )

    async def verify(
        self,
        session: AsyncSession,
        record_id: str,
        holder_id: str,
        lease_type: str = VENDOR_PRICES,
    ) -> None:
        """Fencing check inside the caller's transaction.

        Raises:
            LeaseLostError: If the lease expired or belongs to someone else
        """
        current = (
            await session.execute(
                select(LeaseModel).where(
                    LeaseModel.record_id == record_id, LeaseModel.lease_type == lease_type
                )
            )
        ).scalar_one_or_none()

        if current is None:
            raise LeaseLostError(record_id, holder_id)
        if current.holder_id != holder_id or current.expires_at <= self.clock():
            raise LeaseLostError(record_id, holder_id, current.holder_id)

    @asynccontextmanager
    async def heartbeat(
        self,
        record_id: str,
        holder_id: str,
        lease_type: str = VENDOR_PRICES,
        interval: float | None = None,
    ) -> AsyncIterator[None]:
        """Extend the lease periodically while the block runs.

        Extension failures are logged and never raised into the block; a lost
        lease is caught later by :meth:`verify`.
        """
        interval = interval or self.config.heartbeat_seconds

        async def beat() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    if not await self.extend(record_id, holder_id, lease_type):
                        logger.warning(f"[{holder_id}] Lease on {record_id} no longer held")
                        return
                except Exception as e:
                    logger.warning(f"[{holder_id}] Lease extension error: {e}", exc_info=True)

        task = asyncio.create_task(beat(), name=f"lease-heartbeat-{record_id}")
        try:
            yield
        finally:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def cleanup_expired(self, batch_size: int | None = None) -> CleanupResult:
        """Delete expired leases in batches.

        Returns:
            CleanupResult with the number of leases deleted
        """
        batch_size = batch_size or self.config.cleanup_batch_size
        result = CleanupResult()

        async def work(session: AsyncSession) -> tuple[int, int]:
            now = self.clock()
            expired = (
                await session.execute(
                    select(LeaseModel.record_id, LeaseModel.lease_type)
                    .where(LeaseModel.expires_at < now)
                    .limit(batch_size)
                )
            ).all()
            deleted = 0
            for record_id, lease_type in expired:
                # Re-check expiry so a just-extended lease survives
                outcome = await session.execute(
                    delete(LeaseModel)
                    .where(
                        LeaseModel.record_id == record_id,
                        LeaseModel.lease_type == lease_type,
                        LeaseModel.expires_at < now,
                    )
                    .execution_options(synchronize_session=False)
                )
                deleted += outcome.rowcount
            return len(expired), deleted

        while True:
            scanned, deleted = await self._transaction(work, "cleanup expired leases")
            result.scanned += scanned
            result.deleted += deleted
            if scanned < batch_size:
                break

        logger.info(f"Cleaned up {result.deleted} expired leases")
        return result
