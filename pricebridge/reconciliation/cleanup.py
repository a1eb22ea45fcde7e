"""Maintenance of temporary aggregate records.

A scan that matches nothing in the catalog still creates a ``temporary``
record so that vendor hits have somewhere to land. If no hit completes it,
the record is removed: first by a delayed per-record check, and as a safety
net by a periodic sweep over records older than the TTL.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from enum import Enum

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from pricebridge.db.models import AggregateRecordModel
from pricebridge.db.transaction import run_transaction
from pricebridge.models import CleanupResult
from pricebridge.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class TemporaryCheck(str, Enum):
    CLEANED_UP = "cleaned_up"
    NOT_FOUND = "not_found"
    NO_LONGER_TEMPORARY = "no_longer_temporary"
    ALREADY_PROCESSED = "already_processed"


async def _delete_if_still_temporary(session: AsyncSession, record_id: str) -> TemporaryCheck:
    row = (
        await session.execute(
            select(AggregateRecordModel.temporary, AggregateRecordModel.processed).where(
                AggregateRecordModel.id == record_id
            )
        )
    ).one_or_none()
    if row is None:
        return TemporaryCheck.NOT_FOUND
    temporary, processed = row
    if not temporary:
        return TemporaryCheck.NO_LONGER_TEMPORARY
    if processed:
        return TemporaryCheck.ALREADY_PROCESSED

    await session.execute(
        delete(AggregateRecordModel)
        .where(
            AggregateRecordModel.id == record_id,
            AggregateRecordModel.temporary.is_(True),
            AggregateRecordModel.processed.is_(False),
        )
        .execution_options(synchronize_session=False)
    )
    return TemporaryCheck.CLEANED_UP


async def expire_temporary_record(
    session_factory, record_id: str, transaction_attempts: int = 5
) -> TemporaryCheck:
    """Delayed check: delete the record if it is still temporary and unprocessed."""

    async def work(session: AsyncSession) -> TemporaryCheck:
        return await _delete_if_still_temporary(session, record_id)

    outcome = await run_transaction(
        session_factory, work, transaction_attempts, label=f"expire temporary {record_id}"
    )
    if outcome is TemporaryCheck.CLEANED_UP:
        logger.info(f"Deleted temporary record {record_id} that never completed")
    else:
        logger.debug(f"Temporary check for {record_id}: {outcome.value}")
    return outcome


async def cleanup_stale_temporary_records(
    session_factory,
    ttl_hours: int = 24,
    batch_size: int = 500,
    clock: Clock = utcnow,
    transaction_attempts: int = 5,
) -> CleanupResult:
    """Delete temporary, unprocessed records created before ``now - ttl_hours``.

    Each candidate is re-checked and deleted in its own transaction; a record
    completed between the scan and the delete survives. Per-record failures
    are counted, logged and skipped.

    Returns:
        CleanupResult with deleted/error counts
    """
    cutoff = clock() - timedelta(hours=ttl_hours)
    result = CleanupResult()
    last_id: str | None = None

    while True:
        stmt = (
            select(AggregateRecordModel.id)
            .where(
                AggregateRecordModel.temporary.is_(True),
                AggregateRecordModel.created_at < cutoff,
            )
            .order_by(AggregateRecordModel.id)
            .limit(batch_size)
        )
        if last_id is not None:
            stmt = stmt.where(AggregateRecordModel.id > last_id)
        async with session_factory() as session:
            ids = list((await session.execute(stmt)).scalars())
        if not ids:
            break

        for record_id in ids:
            result.scanned += 1
            try:
                outcome = await run_transaction(
                    session_factory,
                    lambda session, rid=record_id: _delete_if_still_temporary(session, rid),
                    transaction_attempts,
                    label=f"cleanup temporary {record_id}",
                )
            except Exception as e:
                result.errors += 1
                logger.error(f"Error cleaning up temporary record {record_id}: {e}", exc_info=True)
                continue
            if outcome is TemporaryCheck.CLEANED_UP:
                result.deleted += 1

        last_id = ids[-1]
        if len(ids) < batch_size:
            break

    logger.info(
        f"Stale temporary cleanup: {result.deleted} deleted, {result.errors} errors "
        f"(older than {ttl_hours}h)"
    )
    return result
