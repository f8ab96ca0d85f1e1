"""
Proxy-aware retry policy for a single logical fetch.

Without a proxy: one attempt, result returned or error propagated.
With a proxy: up to MAX_PROXY_ATTEMPTS attempts, each in a freshly rotated proxy
session. A temporary-block status (403/429/503) or a transport error matching a
known proxy-failure signature retries; anything else returns (or raises)
immediately. When the attempts run out and the caller allows it, one direct
(non-proxied) attempt is made before giving up.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Optional, Protocol

from shared.logging import get_logger
from review_scraper.constants import (
    MAX_PROXY_ATTEMPTS,
    PROXY_FAILURE_SIGNATURES,
    RETRYABLE_STATUSES,
)
from review_scraper.errors import TransportError
from review_scraper.fetching import FetchResponse, ProxyConfiguration

logger = get_logger(__name__)

BACKOFF_SECONDS = (0.5, 1, 2)
JITTER_MS = 250


class Fetcher(Protocol):
    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
        proxy_url: Optional[str] = None,
    ) -> FetchResponse: ...


def _backoff_seconds(attempt: int) -> float:
    """Backoff for a 1-based attempt index plus 0-250 ms jitter."""
    base = BACKOFF_SECONDS[min(attempt - 1, len(BACKOFF_SECONDS) - 1)]
    return base + random.uniform(0, JITTER_MS / 1000.0)


def _is_retryable_status(status: Optional[int]) -> bool:
    return status in RETRYABLE_STATUSES


def _classify_failure(exc: BaseException) -> tuple[bool, str]:
    """
    Classify a fetch failure as retryable (new proxy session) or not.

    Returns (retryable, reason); reason is the matched signature or non_retryable.
    """
    if not isinstance(exc, TransportError):
        return False, "non_retryable"
    msg = str(exc).lower()
    for signature in PROXY_FAILURE_SIGNATURES:
        if signature in msg:
            return True, signature.replace(" ", "_")
    return False, "non_retryable"


async def fetch_with_retry(
    fetcher: Fetcher,
    url: str,
    *,
    method: str = "GET",
    headers: Optional[dict[str, str]] = None,
    body: Any = None,
    proxy: Optional[ProxyConfiguration] = None,
    allow_direct_fallback: bool = True,
    max_attempts: int = MAX_PROXY_ATTEMPTS,
) -> FetchResponse:
    """
    Fetch url under the proxy-aware retry policy.

    Returns the last response (possibly a blocking status) or raises the last
    TransportError once every attempt, including the direct fallback, failed.
    """
    if proxy is None:
        return await fetcher.fetch(url, method=method, headers=headers, body=body)

    last_response: Optional[FetchResponse] = None
    last_error: Optional[BaseException] = None

    for attempt in range(1, max_attempts + 1):
        proxy_url = proxy.new_url()
        try:
            response = await fetcher.fetch(
                url, method=method, headers=headers, body=body, proxy_url=proxy_url
            )
        except TransportError as e:
            retryable, reason = _classify_failure(e)
            if not retryable:
                logger.warning(
                    "fetch.failed",
                    url=url,
                    attempt=attempt,
                    failure_classification=reason,
                    error=str(e),
                )
                raise
            last_error, last_response = e, None
            logger.info(
                "fetch.retry",
                url=url,
                attempt=attempt,
                reason=reason,
                error=str(e),
            )
        else:
            if not _is_retryable_status(response.status_code):
                return response
            last_error, last_response = None, response
            logger.info(
                "fetch.retry",
                url=url,
                attempt=attempt,
                reason=f"status_{response.status_code}",
                status=response.status_code,
            )

        if attempt < max_attempts:
            await asyncio.sleep(_backoff_seconds(attempt))

    if allow_direct_fallback:
        logger.info("fetch.direct_fallback", url=url, attempts=max_attempts)
        return await fetcher.fetch(url, method=method, headers=headers, body=body)

    if last_response is not None:
        return last_response
    if last_error is None:
        raise TransportError(f"No fetch attempts made for {url}")
    raise last_error
