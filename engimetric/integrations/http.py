"""
Provider HTTP calls with retry and pacing.

Transient statuses (429/5xx) and network errors are retried with exponential
backoff plus jitter. GitHub's primary rate limit answers 403 with
`X-RateLimit-Remaining: 0`; that is retried too when the reset is close.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import httpx
import structlog

if TYPE_CHECKING:
    from engimetric.config import Settings

logger = structlog.get_logger()

RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})
# Longer waits are left to the next scheduled run.
MAX_RATE_LIMIT_WAIT_SECONDS = 60.0


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_backoff: float = 0.5
    max_backoff: float = 8.0
    retry_statuses: frozenset[int] = RETRY_STATUSES

    @classmethod
    def from_settings(cls, settings: "Settings") -> "RetryPolicy":
        return cls(
            max_attempts=settings.http_max_attempts,
            base_backoff=settings.http_base_backoff_seconds,
            max_backoff=settings.http_max_backoff_seconds,
        )

    def backoff(self, attempt: int) -> float:
        delay = min(self.max_backoff, self.base_backoff * (2 ** (attempt - 1)))
        return delay + random.uniform(0, delay / 2)


@dataclass
class _Pacer:
    """Spaces calls sharing a key evenly across a minute."""

    per_minute: int
    next_allowed: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    async def wait(self) -> None:
        interval = 60.0 / float(self.per_minute)
        async with self.lock:
            now = time.monotonic()
            if now < self.next_allowed:
                await asyncio.sleep(self.next_allowed - now)
            self.next_allowed = max(now, self.next_allowed) + interval


_pacers: dict[str, _Pacer] = {}


async def _pace(key: str | None, per_minute: int | None) -> None:
    if not key or not per_minute or per_minute <= 0:
        return
    pacer = _pacers.setdefault(key, _Pacer(per_minute=per_minute))
    await pacer.wait()


def _rate_limit_wait(response: httpx.Response) -> float | None:
    """Seconds until GitHub's rate limit resets, when the response is a rate-limit rejection."""
    if response.status_code != 403 or response.headers.get("X-RateLimit-Remaining") != "0":
        return None
    reset = response.headers.get("X-RateLimit-Reset")
    try:
        return max(0.0, float(reset) - time.time()) if reset else None
    except ValueError:
        return None


def _retry_delay(response: httpx.Response, policy: RetryPolicy, attempt: int) -> float | None:
    """Delay before retrying `response`, or None when it should be returned as-is."""
    retry_after = response.headers.get("Retry-After")
    if response.status_code in policy.retry_statuses:
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                pass
        return policy.backoff(attempt)

    wait = _rate_limit_wait(response)
    if wait is not None and wait <= MAX_RATE_LIMIT_WAIT_SECONDS:
        return wait
    return None


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    policy: RetryPolicy | None = None,
    rate_limit_key: str | None = None,
    rate_limit_per_minute: int | None = None,
    **kwargs,
) -> httpx.Response:
    """
    Send a request, retrying transient failures under `policy`.

    Once attempts run out the last response is returned so the caller decides
    how to surface it; timeouts and network errors are re-raised.
    """
    policy = policy or RetryPolicy()

    attempt = 0
    while True:
        attempt += 1
        last_attempt = attempt >= policy.max_attempts
        await _pace(rate_limit_key, rate_limit_per_minute)
        try:
            response = await client.request(method, url, **kwargs)
        except (httpx.TimeoutException, httpx.NetworkError) as exc:
            if last_attempt:
                raise
            delay = policy.backoff(attempt)
            logger.warning(
                "Provider request failed, retrying",
                url=url,
                attempt=attempt,
                delay=delay,
                error=str(exc),
            )
            await asyncio.sleep(delay)
            continue

        delay = None if last_attempt else _retry_delay(response, policy, attempt)
        if delay is None:
            return response

        logger.warning(
            "Provider returned retryable status",
            url=url,
            status_code=response.status_code,
            attempt=attempt,
            delay=delay,
        )
        await asyncio.sleep(delay)
