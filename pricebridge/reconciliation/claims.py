"""Claims guarding one-time completion work on an aggregate record.

Completion (AI classification) is expensive and must run once per record,
even when several triggers race for it. A claim is persisted next to the
record so that other processes see it; an in-process cache short-circuits
bursts of local triggers without a store round trip.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from pricebridge.config import ClaimConfig
from pricebridge.core.errors import ConflictRetryError
from pricebridge.db.models import AggregateRecordModel, ProcessingClaimModel
from pricebridge.db.transaction import run_transaction
from pricebridge.models import ClaimResult, ClaimStatus
from pricebridge.utils.clock import Clock, seconds_between, utcnow

logger = logging.getLogger(__name__)

ApplyFn = Callable[[AsyncSession, AggregateRecordModel], Awaitable[None]]


@dataclass
class _LocalClaim:
    holder_id: str
    started_at: datetime


class ProcessingClaimTracker:
    """Per-process claim tracker with a persisted claim behind it.

    Construct one per process, ``start()`` it to run the cache sweep, and
    ``stop()`` it on shutdown.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        config: ClaimConfig | None = None,
        clock: Clock = utcnow,
        transaction_attempts: int = 5,
    ):
        self.session_factory = session_factory
        self.config = config or ClaimConfig()
        self.clock = clock
        self.transaction_attempts = transaction_attempts
        self._local: dict[str, _LocalClaim] = {}
        self._sweeper: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_loop(), name="claim-cache-sweep")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        self._local.clear()

    async def __aenter__(self) -> ProcessingClaimTracker:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval_seconds)
            self.sweep()

    def sweep(self) -> int:
        """Drop expired in-process entries. Returns how many were removed."""
        now = self.clock()
        expired = [
            record_id
            for record_id, entry in self._local.items()
            if seconds_between(now, entry.started_at) > self.config.local_ttl_seconds
        ]
        for record_id in expired:
            del self._local[record_id]
        return len(expired)

    def is_claimed_locally(self, record_id: str) -> bool:
        entry = self._local.get(record_id)
        if entry is None:
            return False
        if seconds_between(self.clock(), entry.started_at) > self.config.local_ttl_seconds:
            del self._local[record_id]
            return False
        return True

    # ------------------------------------------------------------------
    # Claim protocol
    # ------------------------------------------------------------------

    async def claim(self, record_id: str, holder_id: str) -> ClaimResult:
        """Try to claim completion work for a record.

        Returns:
            ClaimResult with status ``claimed``, ``busy``,
            ``already_processed`` or ``not_found``
        """
        if self.is_claimed_locally(record_id):
            entry = self._local[record_id]
            if entry.holder_id != holder_id:
                logger.info(f"[{holder_id}] Already processing in-process, skipping {record_id}")
                return ClaimResult(
                    record_id=record_id,
                    status=ClaimStatus.BUSY,
                    holder_id=entry.holder_id,
                    remaining_seconds=max(
                        0.0,
                        self.config.local_ttl_seconds
                        - seconds_between(self.clock(), entry.started_at),
                    ),
                    cached=True,
                )

        ttl = timedelta(seconds=self.config.ttl_seconds)

        async def work(session: AsyncSession) -> ClaimResult:
            processed = (
                await session.execute(
                    select(AggregateRecordModel.processed).where(AggregateRecordModel.id == record_id)
                )
            ).scalar_one_or_none()
            if processed is None:
                return ClaimResult(record_id=record_id, status=ClaimStatus.NOT_FOUND)
            if processed:
                return ClaimResult(record_id=record_id, status=ClaimStatus.ALREADY_PROCESSED)

            now = self.clock()
            current = (
                await session.execute(
                    select(ProcessingClaimModel).where(ProcessingClaimModel.record_id == record_id)
                )
            ).scalar_one_or_none()

            if current is None:
                session.add(
                    ProcessingClaimModel(
                        record_id=record_id,
                        holder_id=holder_id,
                        claimed_at=now,
                        expires_at=now + ttl,
                    )
                )
                await session.flush()
                return ClaimResult(record_id=record_id, status=ClaimStatus.CLAIMED, holder_id=holder_id)

            if current.holder_id != holder_id and current.expires_at > now:
                return ClaimResult(
                    record_id=record_id,
                    status=ClaimStatus.BUSY,
                    holder_id=current.holder_id,
                    remaining_seconds=seconds_between(current.expires_at, now),
                )

            if current.holder_id != holder_id:
                logger.info(f"[{holder_id}] Overriding stale claim from {current.holder_id}")

            result = await session.execute(
                update(ProcessingClaimModel)
                .where(
                    ProcessingClaimModel.record_id == record_id,
                    ProcessingClaimModel.holder_id == current.holder_id,
                    ProcessingClaimModel.expires_at == current.expires_at,
                )
                .values(holder_id=holder_id, claimed_at=now, expires_at=now + ttl)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictRetryError(f"claim on {record_id} changed during takeover")
            return ClaimResult(record_id=record_id, status=ClaimStatus.CLAIMED, holder_id=holder_id)

        result = await run_transaction(
            self.session_factory, work, self.transaction_attempts, label=f"claim {record_id}"
        )

        if result.claimed:
            self._local[record_id] = _LocalClaim(holder_id=holder_id, started_at=self.clock())
        else:
            logger.info(
                f"[{holder_id}] Claim failed: {result.status.value}"
                + (f" (held by {result.holder_id})" if result.holder_id else "")
            )
        return result

    async def complete(
        self, record_id: str, holder_id: str, apply: ApplyFn | None = None
    ) -> bool:
        """Mark the record processed, apply the caller's updates and clear the claim.

        Args:
            record_id: Claimed record
            holder_id: Claim holder
            apply: Optional coroutine writing the completion results onto the
                record inside the same transaction

        Returns:
            True if this call completed the record; False if it was already
            processed or disappeared
        """

        async def work(session: AsyncSession) -> bool:
            record = (
                await session.execute(
                    select(AggregateRecordModel).where(AggregateRecordModel.id == record_id)
                )
            ).scalar_one_or_none()
            if record is None:
                logger.warning(f"[{holder_id}] Record {record_id} disappeared during processing")
                return False
            if record.processed:
                logger.info(f"[{holder_id}] Already processed by another worker, skipping update")
                return False

            now = self.clock()
            flipped = await session.execute(
                update(AggregateRecordModel)
                .where(AggregateRecordModel.id == record_id, AggregateRecordModel.processed.is_(False))
                .values(processed=True, processed_at=now, processed_by=holder_id, temporary=False)
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount != 1:
                raise ConflictRetryError(f"record {record_id} processed concurrently")

            if apply is not None:
                await apply(session, record)

            await session.execute(
                delete(ProcessingClaimModel)
                .where(ProcessingClaimModel.record_id == record_id)
                .execution_options(synchronize_session=False)
            )
            return True

        try:
            return await run_transaction(
                self.session_factory, work, self.transaction_attempts, label=f"complete {record_id}"
            )
        finally:
            self._local.pop(record_id, None)

    async def abandon(self, record_id: str, holder_id: str) -> bool:
        """Give the claim up after a failure so a retry can claim again.

        Returns:
            True if a persisted claim held by ``holder_id`` was removed
        """
        entry = self._local.get(record_id)
        if entry is not None and entry.holder_id == holder_id:
            del self._local[record_id]

        async def work(session: AsyncSession) -> bool:
            result = await session.execute(
                delete(ProcessingClaimModel)
                .where(
                    ProcessingClaimModel.record_id == record_id,
                    ProcessingClaimModel.holder_id == holder_id,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        released = await run_transaction(
            self.session_factory, work, self.transaction_attempts, label=f"abandon {record_id}"
        )
        if released:
            logger.info(f"[{holder_id}] Claim on {record_id} abandoned")
        return released
