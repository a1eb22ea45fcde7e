"""Atomic read-modify-write helper.

``run_transaction`` runs a unit of work inside one database transaction and
re-runs the whole unit when a concurrent writer invalidated it. The work
function must therefore perform all of its reads inside the session it is
given and must not keep side effects outside the store.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from pricebridge.core.errors import ConflictRetryError, FatalError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# PostgreSQL serialization_failure / deadlock_detected
_RETRYABLE_SQLSTATES = {"40001", "40P01"}
_UNIQUE_VIOLATION = "23505"


def _sqlstate(exc: DBAPIError) -> str | None:
    orig = exc.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


def is_unique_violation(exc: IntegrityError) -> bool:
    """A racing insert of the same key; FK and NOT NULL violations are not."""
    if _sqlstate(exc) == _UNIQUE_VIOLATION:
        return True
    return str(exc.orig).startswith("UNIQUE constraint failed")


def is_conflict(exc: BaseException) -> bool:
    """Return True when ``exc`` means "another writer won, try again"."""
    if isinstance(exc, (ConflictRetryError, StaleDataError)):
        return True
    if isinstance(exc, IntegrityError):
        return is_unique_violation(exc)
    if isinstance(exc, OperationalError) and "database is locked" in str(exc).lower():
        return True
    if isinstance(exc, DBAPIError):
        return _sqlstate(exc) in _RETRYABLE_SQLSTATES
    return False


async def run_transaction(
    session_factory: sessionmaker,
    work: Callable[[AsyncSession], Awaitable[T]],
    max_attempts: int = 5,
    label: str = "transaction",
) -> T:
    """Run ``work(session)`` atomically, retrying on write conflicts.

    Args:
        session_factory: AsyncSession factory
        work: Coroutine function receiving the session; its return value is
            returned once the transaction commits
        max_attempts: Total attempts before giving up
        label: Name used in log messages

    Returns:
        Whatever ``work`` returned on the committed attempt

    Raises:
        FatalError: If every attempt hit a conflict
        Exception: Any non-conflict error raised by ``work`` (not retried)
    """

    async def attempt_once() -> T:
        async with session_factory() as session:
            async with session.begin():
                return await work(session)

    retrying = AsyncRetrying(
        retry=retry_if_exception(is_conflict),
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=0.05, max=2.0) + wait_random(0, 0.05),
        before_sleep=lambda state: logger.warning(
            f"{label}: conflict on attempt {state.attempt_number}, retrying "
            f"({state.outcome.exception()!r})"
        ),
    )

    try:
        return await retrying(attempt_once)
    except RetryError as e:
        cause = e.last_attempt.exception()
        logger.error(f"{label}: gave up after {max_attempts} attempts: {cause!r}")
        raise FatalError(f"{label} failed after {max_attempts} conflicting attempts") from cause
