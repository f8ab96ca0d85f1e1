"""
Unit tests for the proxy-aware retry policy: attempts, rotation, direct fallback.

No network: a scripted fetcher returns responses or raises TransportError.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest

from review_scraper.errors import TransportError
from review_scraper.fetching import FetchResponse, ProxyConfiguration
from review_scraper.retry import (
    BACKOFF_SECONDS,
    _backoff_seconds,
    _classify_failure,
    fetch_with_retry,
)

URL = "https://www.flipkart.com/x/product-reviews/itm1"


class ScriptedFetcher:
    """Pops one outcome per call; records the proxy URL each call used."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.proxy_urls: list = []

    async def fetch(self, url, *, method="GET", headers=None, body=None, proxy_url=None):
        self.proxy_urls.append(proxy_url)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def _resp(status: int) -> FetchResponse:
    return FetchResponse(status_code=status, body="{}", url=URL)


def _proxy() -> ProxyConfiguration:
    return ProxyConfiguration(["http://user-{session}:pw@proxy.example:8000"])


@pytest.mark.asyncio
async def test_no_proxy_single_attempt_returns_result():
    fetcher = ScriptedFetcher([_resp(503)])

    response = await fetch_with_retry(fetcher, URL)

    assert response.status_code == 503
    assert fetcher.proxy_urls == [None]


@pytest.mark.asyncio
async def test_no_proxy_error_propagates():
    fetcher = ScriptedFetcher([TransportError("ConnectError: connection refused")])

    with pytest.raises(TransportError):
        await fetch_with_retry(fetcher, URL)
    assert len(fetcher.proxy_urls) == 1


@pytest.mark.asyncio
async def test_blocking_status_retries_in_fresh_sessions():
    fetcher = ScriptedFetcher([_resp(403), _resp(429), _resp(200)])

    with patch("review_scraper.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        response = await fetch_with_retry(fetcher, URL, proxy=_proxy())

    assert response.status_code == 200
    assert len(fetcher.proxy_urls) == 3
    assert len(set(fetcher.proxy_urls)) == 3
    assert all("{session}" not in u for u in fetcher.proxy_urls)
    assert sleep.await_count == 2


@pytest.mark.asyncio
async def test_exhausted_attempts_fall_back_to_direct():
    fetcher = ScriptedFetcher([_resp(503)] * 4 + [_resp(200)])

    with patch("review_scraper.retry.asyncio.sleep", new_callable=AsyncMock):
        response = await fetch_with_retry(fetcher, URL, proxy=_proxy())

    assert response.status_code == 200
    assert len(fetcher.proxy_urls) == 5
    assert fetcher.proxy_urls[-1] is None
    assert all(u is not None for u in fetcher.proxy_urls[:4])


@pytest.mark.asyncio
async def test_exhausted_without_fallback_returns_last_response():
    fetcher = ScriptedFetcher([_resp(429)] * 4)

    with patch("review_scraper.retry.asyncio.sleep", new_callable=AsyncMock):
        response = await fetch_with_retry(fetcher, URL, proxy=_proxy(), allow_direct_fallback=False)

    assert response.status_code == 429
    assert len(fetcher.proxy_urls) == 4


@pytest.mark.asyncio
async def test_exhausted_without_fallback_raises_last_error():
    fetcher = ScriptedFetcher([TransportError("ReadTimeout: timed out")] * 4)

    with patch("review_scraper.retry.asyncio.sleep", new_callable=AsyncMock):
        with pytest.raises(TransportError):
            await fetch_with_retry(fetcher, URL, proxy=_proxy(), allow_direct_fallback=False)
    assert len(fetcher.proxy_urls) == 4


@pytest.mark.asyncio
async def test_zero_attempts_without_fallback_raises_transport_error():
    fetcher = ScriptedFetcher([])

    with pytest.raises(TransportError, match="No fetch attempts"):
        await fetch_with_retry(
            fetcher, URL, proxy=_proxy(), allow_direct_fallback=False, max_attempts=0
        )
    assert fetcher.proxy_urls == []


@pytest.mark.asyncio
async def test_non_retryable_error_raised_immediately():
    fetcher = ScriptedFetcher([TransportError("UnsupportedProtocol: bad scheme")])

    with patch("review_scraper.retry.asyncio.sleep", new_callable=AsyncMock) as sleep:
        with pytest.raises(TransportError):
            await fetch_with_retry(fetcher, URL, proxy=_proxy())

    assert len(fetcher.proxy_urls) == 1
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_non_retryable_status_returned_immediately():
    fetcher = ScriptedFetcher([_resp(404)])

    response = await fetch_with_retry(fetcher, URL, proxy=_proxy())

    assert response.status_code == 404
    assert len(fetcher.proxy_urls) == 1


@pytest.mark.parametrize(
    "message,retryable",
    [
        ("ConnectError: [Errno 104] Connection reset by peer", True),
        ("ConnectError: connection refused", True),
        ("ReadTimeout: timed out", True),
        ("ProxyError: 407 Proxy Authentication Required", True),
        ("UnsupportedProtocol: bad scheme", False),
    ],
)
def test_classify_failure(message, retryable):
    assert _classify_failure(TransportError(message))[0] is retryable


def test_classify_failure_other_exceptions_not_retryable():
    assert _classify_failure(ValueError("timeout")) == (False, "non_retryable")


def test_backoff_in_range():
    for attempt in (1, 2, 3, 7):
        base = BACKOFF_SECONDS[min(attempt - 1, len(BACKOFF_SECONDS) - 1)]
        got = _backoff_seconds(attempt)
        assert base <= got <= base + 0.25
