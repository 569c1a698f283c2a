from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional

import httpx

from weavr.logging import get_logger
from weavr.service.errors import RequestTimeout, RetryExhausted

logger = get_logger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 30.0
DEFAULT_TIMEOUT_SECONDS = 30.0
MAX_RETRY_AFTER_SECONDS = 120.0
BODY_PREFIX_CHARS = 200

Sleep = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """Timeout and backoff settings for one outbound call.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = 1 + max_retries)
        base_delay: Backoff base in seconds; attempt ``n`` waits ``base * 2**n``
        max_delay: Cap applied to computed backoff (not to Retry-After)
        timeout: Hard per-attempt timeout in seconds
        max_retry_after: Upper bound on an honored ``Retry-After`` value
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    max_retry_after: float = MAX_RETRY_AFTER_SECONDS

    def backoff(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        jitter = rng() * self.base_delay
        return min(self.max_delay, self.base_delay * (2 ** attempt) + jitter)


DEFAULT_RETRY_POLICY = RetryPolicy()


def is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or 500 <= status_code <= 599


def parse_retry_after(value: Optional[str], *, now: Optional[datetime] = None) -> Optional[float]:
    """Parse a ``Retry-After`` header given as delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError, IndexError):
            return None
        if when is None:
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        current = now or datetime.now(timezone.utc)
        seconds = (when - current).total_seconds()
    return max(0.0, seconds)


def _body_prefix(response: httpx.Response) -> str:
    try:
        return response.text[:BODY_PREFIX_CHARS]
    except Exception:  # pragma: no cover - undecodable body
        return ""


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    sleep: Sleep = asyncio.sleep,
    rng: Callable[[], float] = random.random,
    **kwargs: Any,
) -> httpx.Response:
    """Send one request, retrying rate limits, 5xx and transport failures.

    Responses with any other status are returned to the caller untouched.
    Raises ``RequestTimeout`` when an attempt exceeds ``policy.timeout`` and
    ``RetryExhausted`` when the last allowed attempt still fails.
    """
    attempt = 0
    while True:
        try:
            response = await asyncio.wait_for(
                client.request(method, url, timeout=policy.timeout, **kwargs),
                timeout=policy.timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.warning(
                "http_request_timeout",
                method=method,
                url=url,
                attempt=attempt + 1,
                timeout_s=policy.timeout,
            )
            raise RequestTimeout(
                f"{method} {url} timed out after {policy.timeout}s",
                detail={"url": url, "attempt": attempt + 1},
            ) from exc
        except httpx.TransportError as exc:
            if attempt >= policy.max_retries:
                logger.error(
                    "http_retries_exhausted", method=method, url=url, attempts=attempt + 1, error=str(exc)
                )
                raise RetryExhausted(
                    f"{method} {url} failed after {attempt + 1} attempts: {exc}",
                    status=None,
                    body_prefix=str(exc)[:BODY_PREFIX_CHARS],
                ) from exc
            delay = policy.backoff(attempt, rng)
            logger.warning(
                "http_network_retry",
                method=method,
                url=url,
                attempt=attempt + 1,
                delay_s=delay,
                error=str(exc),
            )
            await sleep(delay)
            attempt += 1
            continue

        if not is_retryable_status(response.status_code):
            return response

        if attempt >= policy.max_retries:
            body = _body_prefix(response)
            logger.error(
                "http_retries_exhausted",
                method=method,
                url=url,
                attempts=attempt + 1,
                status=response.status_code,
            )
            raise RetryExhausted(
                f"{method} {url} returned {response.status_code} after {attempt + 1} attempts",
                status=response.status_code,
                body_prefix=body,
            )

        retry_after = parse_retry_after(response.headers.get("retry-after"))
        if retry_after is not None:
            delay = min(retry_after, policy.max_retry_after)
        else:
            delay = policy.backoff(attempt, rng)
        logger.warning(
            "http_status_retry",
            method=method,
            url=url,
            status=response.status_code,
            attempt=attempt + 1,
            delay_s=delay,
            retry_after=retry_after is not None,
        )
        await response.aclose()
        await sleep(delay)
        attempt += 1


def build_http_client(
    *,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    headers: Optional[dict[str, str]] = None,
) -> httpx.AsyncClient:
    """Create the shared async client used by actions and the agent."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout, connect=min(10.0, timeout)),
        transport=transport,
        headers=headers,
        follow_redirects=True,
    )
