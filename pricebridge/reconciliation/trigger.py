"""Fan-out of reconciliation messages over every aggregate record."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from sqlalchemy import select

from pricebridge.canonical.keys import period_key_for
from pricebridge.db.models import AggregateRecordModel
from pricebridge.models import TriggerResult
from pricebridge.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

Publish = Callable[[str, str], Awaitable[object]]


async def trigger_vendor_prices(
    session_factory,
    publish: Publish,
    page_size: int = 500,
    period_key: str | None = None,
    clock: Clock = utcnow,
) -> TriggerResult:
    """Publish one reconciliation message per record for the current period.

    Records are paged by id (keyset pagination) so that a large table is never
    loaded at once and inserts during the scan do not shift pages. A failed
    publish is counted and logged; the scan continues.

    Args:
        session_factory: Async session factory
        publish: Coroutine ``publish(record_id, period_key)``
        page_size: Records read per page
        period_key: Period to reconcile (today, UTC, if omitted)

    Returns:
        TriggerResult with published/failed counts
    """
    period = period_key or period_key_for(clock())
    result = TriggerResult(period_key=period)
    last_id: str | None = None

    while True:
        stmt = select(AggregateRecordModel.id).order_by(AggregateRecordModel.id).limit(page_size)
        if last_id is not None:
            stmt = stmt.where(AggregateRecordModel.id > last_id)
        async with session_factory() as session:
            ids = list((await session.execute(stmt)).scalars())
        if not ids:
            break

        result.pages += 1
        for record_id in ids:
            try:
                await publish(record_id, period)
                result.published += 1
            except Exception as e:
                result.failed += 1
                logger.error(f"Failed to publish reconciliation for {record_id}: {e}", exc_info=True)

        last_id = ids[-1]
        if len(ids) < page_size:
            break

    logger.info(
        f"Triggered vendor price reconciliation for period {period}: "
        f"{result.published} published, {result.failed} failed, {result.pages} pages"
    )
    return result
