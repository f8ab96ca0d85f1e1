"""
Unit tests for BrowserSession: scoped response observation, in-page fetch, state read.

No Playwright browser required; pages and responses are mocks.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from review_scraper.crawl.browser import BrowserSession
from review_scraper.errors import TransportError

API_URL = "https://www.flipkart.com/api/3/product/reviews?productId=MOBGTAGPTB3VS24W&page=1"


def _session() -> tuple[BrowserSession, MagicMock, MagicMock]:
    page = MagicMock()
    page.evaluate = AsyncMock()
    page.close = AsyncMock()
    context = MagicMock()
    context.close = AsyncMock()
    return BrowserSession(context, page), page, context


def _response(url: str, resource_type: str = "xhr", body: str = "{}", status: int = 200) -> MagicMock:
    request = MagicMock()
    request.resource_type = resource_type
    request.method = "POST"
    request.post_data = '{"page": 1}'
    request.headers = {"x-user-agent": "ua"}
    request.all_headers = AsyncMock(return_value={"x-user-agent": "ua", "content-type": "application/json"})
    response = MagicMock()
    response.url = url
    response.status = status
    response.request = request
    response.text = AsyncMock(return_value=body)
    return response


# --- observe_responses ---


@pytest.mark.asyncio
async def test_observe_responses_subscribes_and_unsubscribes():
    session, page, _ = _session()

    async with session.observe_responses(lambda url: "/api/" in url) as collected:
        (event, handler), _kwargs = page.on.call_args
        assert event == "response"
        page.remove_listener.assert_not_called()
        handler(_response(API_URL, body='{"RESPONSE": {}}'))
        handler(_response("https://www.flipkart.com/img/logo.png", resource_type="image"))
        handler(_response("https://www.flipkart.com/recommendations", resource_type="fetch"))

    page.remove_listener.assert_called_once_with("response", handler)
    assert len(collected) == 1
    exchange = collected[0]
    assert exchange.url == API_URL
    assert exchange.method == "POST"
    assert exchange.status == 200
    assert exchange.post_data == '{"page": 1}'
    assert exchange.request_headers["content-type"] == "application/json"
    assert exchange.body == '{"RESPONSE": {}}'


@pytest.mark.asyncio
async def test_observe_responses_unsubscribes_when_block_raises():
    session, page, _ = _session()

    with pytest.raises(RuntimeError):
        async with session.observe_responses():
            raise RuntimeError("navigation crashed")

    (event, handler), _kwargs = page.on.call_args
    page.remove_listener.assert_called_once_with("response", handler)


@pytest.mark.asyncio
async def test_observe_responses_body_unavailable_is_kept_without_body():
    session, page, _ = _session()
    response = _response(API_URL)
    response.text = AsyncMock(side_effect=Exception("Response body is unavailable for redirect responses"))
    response.request.all_headers = AsyncMock(side_effect=Exception("Target closed"))

    async with session.observe_responses() as collected:
        (_, handler), _kwargs = page.on.call_args
        handler(response)

    assert len(collected) == 1
    assert collected[0].body is None
    assert collected[0].request_headers == {"x-user-agent": "ua"}


# --- fetch_in_page ---


@pytest.mark.asyncio
async def test_fetch_in_page_failed_fetch_raises_transport_error():
    session, page, _ = _session()
    page.evaluate = AsyncMock(return_value={"ok": False, "error": "TypeError: Failed to fetch"})

    with pytest.raises(TransportError, match="Failed to fetch"):
        await session.fetch_in_page(API_URL)


@pytest.mark.asyncio
async def test_fetch_in_page_empty_result_raises_transport_error():
    session, page, _ = _session()
    page.evaluate = AsyncMock(return_value=None)

    with pytest.raises(TransportError):
        await session.fetch_in_page(API_URL)


@pytest.mark.asyncio
async def test_fetch_in_page_serializes_body_and_returns_response():
    session, page, _ = _session()
    page.evaluate = AsyncMock(
        return_value={
            "ok": True,
            "status": 200,
            "body": '{"RESPONSE": {}}',
            "headers": {"content-type": "application/json"},
            "url": API_URL,
        }
    )

    response = await session.fetch_in_page(
        API_URL, method="POST", headers={"x-user-agent": "ua"}, body={"pageUri": "/x?page=2"}
    )

    request = page.evaluate.call_args[0][1]
    assert request["method"] == "POST"
    assert request["headers"] == {"x-user-agent": "ua"}
    assert json.loads(request["body"]) == {"pageUri": "/x?page=2"}
    assert response.status_code == 200
    assert response.ok
    assert response.json() == {"RESPONSE": {}}
    assert response.headers == {"content-type": "application/json"}


# --- state and lifecycle ---


@pytest.mark.asyncio
async def test_read_state_evaluates_named_global():
    session, page, _ = _session()
    page.evaluate = AsyncMock(return_value={"a": 1})

    assert await session.read_state() == {"a": 1}
    assert page.evaluate.call_args[0][1] == "__INITIAL_STATE__"


@pytest.mark.asyncio
async def test_close_closes_context_even_when_page_close_fails():
    session, page, context = _session()
    page.close = AsyncMock(side_effect=Exception("Target closed"))

    with pytest.raises(Exception, match="Target closed"):
        await session.close()

    context.close.assert_awaited_once()
