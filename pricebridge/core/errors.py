"""Error taxonomy for PriceBridge.

Expected outcomes (a held lease, a missing record) are raised by the low-level
components and converted into result objects at the entrypoints; only fatal
errors fail a reconciliation run.
"""

from __future__ import annotations


class PriceBridgeError(Exception):
    """Base class for all PriceBridge errors."""


class NotFoundError(PriceBridgeError):
    """The addressed aggregate record does not exist."""

    def __init__(self, record_id: str):
        super().__init__(f"Aggregate record not found: {record_id}")
        self.record_id = record_id


class BusyError(PriceBridgeError):
    """A lease or claim is held by another holder."""

    def __init__(
        self,
        record_id: str,
        holder_id: str | None,
        remaining_seconds: float = 0.0,
        kind: str = "lease",
    ):
        super().__init__(
            f"{kind} on {record_id} held by {holder_id} "
            f"(remaining: {remaining_seconds:.0f}s)"
        )
        self.record_id = record_id
        self.holder_id = holder_id
        self.remaining_seconds = remaining_seconds
        self.kind = kind


class QueueSaturatedError(PriceBridgeError):
    """Rate limiter backpressure: the origin's wait queue is full."""

    def __init__(self, origin: str, depth: int, estimated_wait: float = 0.0):
        super().__init__(
            f"Rate limit queue full for {origin} "
            f"(depth: {depth}, est. wait: {estimated_wait:.1f}s)"
        )
        self.origin = origin
        self.depth = depth
        self.estimated_wait = estimated_wait


class TransportError(PriceBridgeError):
    """An outbound call failed; ``retryable`` is decided by status class."""

    def __init__(self, message: str, status: int | None = None, retryable: bool = True):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class ParseFailureError(PriceBridgeError):
    """An adapter or classifier returned a malformed response."""


class ConflictRetryError(PriceBridgeError):
    """A concurrent write was detected; the transaction must be re-run."""


class FatalError(PriceBridgeError):
    """Unrecoverable failure that aborts the current run."""


class LeaseLostError(FatalError):
    """The run no longer holds its lease (expired or taken over)."""

    def __init__(self, record_id: str, holder_id: str, current_holder: str | None = None):
        super().__init__(
            f"Lease on {record_id} lost by {holder_id} "
            f"(current holder: {current_holder or 'none'})"
        )
        self.record_id = record_id
        self.holder_id = holder_id
        self.current_holder = current_holder
