"""Rate-gated HTTP client with bounded retries.

Every attempt passes through the per-origin rate limiter. Failures come back
as an :class:`HttpResult` rather than an exception so vendor adapters can treat
them as "no hit" without try/except noise.
"""

from __future__ import annotations

import asyncio
import logging
import random
import urllib.parse
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
)

from pricebridge.config import HttpConfig
from pricebridge.core.errors import QueueSaturatedError, TransportError
from pricebridge.integration.rate_limiter import TokenBucketRateLimiter
from pricebridge.models import HttpResult

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


def is_valid_url(url: object) -> bool:
    if not url or not isinstance(url, str):
        return False
    try:
        parsed = urllib.parse.urlsplit(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, TransportError) and exc.retryable


class SafeHttpClient:
    """httpx client wrapper with rate limiting and retry/backoff.

    - 3 attempts by default, base delay doubling per attempt plus jitter
    - 4x base delay after an HTTP 429, which also penalizes the origin
    - 408/429/5xx and network errors are retried; other 4xx abort at once
    """

    def __init__(
        self,
        rate_limiter: TokenBucketRateLimiter,
        config: HttpConfig | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or HttpConfig()
        self.rate_limiter = rate_limiter
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=self.config.timeout_seconds,
            follow_redirects=True,
            headers={
                "User-Agent": self.config.user_agent,
                "Accept": "application/json, text/plain, */*",
            },
        )
        self._sleep = sleep

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> SafeHttpClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def _backoff(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        base = self.config.retry_base_seconds
        if getattr(exc, "status", None) == 429:
            base *= 4
        jitter = random.uniform(0, self.config.retry_jitter_seconds)
        return base * 2 ** (retry_state.attempt_number - 1) + jitter

    async def _attempt(self, method: str, url: str, **kwargs: Any) -> HttpResult:
        await self.rate_limiter.acquire(url)

        try:
            response = await self.client.request(method, url, **kwargs)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
            raise TransportError(f"Invalid URL: {e}", retryable=False) from e
        except httpx.TransportError as e:
            raise TransportError(f"{type(e).__name__}: {e}", retryable=True) from e

        status = response.status_code
        if status == 429:
            self.rate_limiter.penalize(url)

        if status >= 400:
            raise TransportError(
                f"HTTP {status} from {url}", status=status, retryable=status in RETRYABLE_STATUSES
            )

        try:
            data = response.json()
        except ValueError:
            data = response.text
        return HttpResult(success=True, data=data, status=status)

    async def request(
        self, method: str, url: str, *, context: str | None = None, **kwargs: Any
    ) -> HttpResult:
        """Send a request, retrying transient failures.

        Args:
            method: HTTP method
            url: Absolute http(s) URL
            context: Label for log lines (e.g. ``vendor/identifier``)
            **kwargs: Passed through to ``httpx.AsyncClient.request``

        Returns:
            HttpResult: ``success`` with parsed body, or the final failure
        """
        label = f"[{context or 'unknown'}] {method}"

        if not is_valid_url(url):
            logger.error(f"{label} invalid URL: {url!r}")
            return HttpResult(success=False, retryable=False, error=f"Invalid URL: {url!r}")

        attempts = 0
        retrying = AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.config.max_attempts),
            wait=self._backoff,
            sleep=self._sleep,
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts += 1
                    try:
                        result = await self._attempt(method, url, **kwargs)
                    except TransportError as e:
                        logger.warning(
                            f"{label} attempt {attempts}/{self.config.max_attempts} failed: "
                            f"status={e.status or 'N/A'} error={e}"
                        )
                        raise
                    result.attempts = attempts
                    return result
        except QueueSaturatedError as e:
            logger.warning(f"{label} rate limit queue saturated: {e}")
            return HttpResult(success=False, retryable=True, error=str(e), attempts=attempts)
        except TransportError as e:
            logger.error(f"{label} failed. Final status: {e.status or 'N/A'}, URL: {url}")
            return HttpResult(
                success=False,
                status=e.status,
                retryable=e.retryable,
                error=str(e),
                attempts=attempts,
            )

        # Unreachable: the retry loop either returns or raises
        return HttpResult(success=False, error="no attempts made", attempts=attempts)

    async def get(self, url: str, *, context: str | None = None, **kwargs: Any) -> HttpResult:
        return await self.request("GET", url, context=context, **kwargs)

    async def post(
        self, url: str, data: Any = None, *, context: str | None = None, **kwargs: Any
    ) -> HttpResult:
        if data is not None:
            kwargs["json"] = data
        return await self.request("POST", url, context=context, **kwargs)
