"""Rate-limited, retrying HTTP client for the remote task service."""

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from tasksync.services.errors import classify_error

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.25


def compute_backoff(
    attempt: int,
    base: float,
    cap: float,
    rng: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff ``base * 2**attempt`` capped at ``cap`` with ±25% jitter."""
    delay = min(base * (2 ** attempt), cap)
    jitter = delay * JITTER_RATIO * (rng() * 2 - 1)
    return max(delay + jitter, 0.0)


class RateLimitedClient:
    """Async wrapper around ``httpx.AsyncClient`` for one logical connection.

    Every attempt waits until ``min_interval`` seconds have passed since the
    previous request on this client. Retryable failures (network, rate limited,
    5xx) are retried with exponential backoff; everything else is raised to the
    caller as a classified ``RemoteError``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        api_version: str,
        *,
        min_interval: float = 0.35,
        max_retries: int = 3,
        backoff_base: float = 1.0,
        max_backoff: float = 30.0,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.api_version = api_version
        self.min_interval = min_interval
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.max_backoff = max_backoff
        self.timeout = timeout
        self._transport = transport
        self._sleep = sleep
        self._clock = clock
        self._rng = rng
        self._last_request_at: Optional[float] = None
        self._gate = asyncio.Lock()
        self.client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Notion-Version": self.api_version,
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self.client

    async def aclose(self) -> None:
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    async def _wait_for_slot(self) -> None:
        async with self._gate:
            if self._last_request_at is not None:
                elapsed = self._clock() - self._last_request_at
                if elapsed < self.min_interval:
                    await self._sleep(self.min_interval - elapsed)
            self._last_request_at = self._clock()

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        context: str = "remote call",
        retry_on_timeout: bool = True,
    ) -> T:
        """Run ``operation`` with rate limiting, classification and retries."""
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            await self._wait_for_slot()
            try:
                return await operation()
            except Exception as exc:
                error = classify_error(exc)

            if error.is_timeout and not retry_on_timeout:
                logger.warning(f"{context} timed out, not retrying: {error.message}")
                raise error
            if not error.retryable:
                logger.error(f"{context} failed ({error.kind.value}): {error.message}")
                raise error
            if attempt == attempts - 1:
                logger.error(f"{context} failed after {attempts} attempts: {error.message}")
                raise error

            wait_time = compute_backoff(attempt, self.backoff_base, self.max_backoff, self._rng)
            if error.retry_after is not None:
                wait_time = max(wait_time, error.retry_after)
            logger.warning(
                f"{context} failed ({error.kind.value}), waiting {wait_time:.2f}s "
                f"(attempt {attempt + 1}/{attempts})"
            )
            await self._sleep(wait_time)

        raise AssertionError("unreachable")

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        context: Optional[str] = None,
        retry_on_timeout: bool = True,
    ) -> dict[str, Any]:
        """Issue a request and return the decoded JSON body."""
        client = self._get_client()

        async def _send() -> dict[str, Any]:
            response = await client.request(method, path, json=json, params=params)
            response.raise_for_status()
            if not response.content:
                return {}
            return response.json()

        return await self.call(
            _send,
            context=context or f"{method} {path}",
            retry_on_timeout=retry_on_timeout,
        )
