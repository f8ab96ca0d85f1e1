"""
Tests for the escalation orchestrator and tiers with fake collaborators.

Covers CAPTCHA escalation to browser paging, quota stop, partial survival on a
later-page transport error, failure isolation between targets, and the empty run.
No network or browser: the fetcher and browser sessions are in-memory fakes.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from review_scraper.accumulator import ReviewAccumulator
from review_scraper.crawl.navigation_retry import NavigateResult
from review_scraper.deadline import Deadline
from review_scraper.errors import TransportError
from review_scraper.fetching import FetchResponse
from review_scraper.orchestrator import ReviewScraper
from review_scraper.tiers import direct_api_url

PRODUCT_URL = "https://www.flipkart.com/acme-phone/p/itm1abc"
LISTING = "https://www.flipkart.com/acme-phone/product-reviews/itm1abc"
PID = "MOBGTAGPTB3VS24W"


class ListSink:
    def __init__(self) -> None:
        self.rows: list[dict] = []

    def append(self, records: list[dict]) -> None:
        self.rows.extend(records)


class FakeFetcher:
    """Serves scripted outcomes by URL; unknown URLs get a 404."""

    def __init__(self, routes):
        self.routes = routes
        self.urls: list[str] = []

    async def fetch(self, url, *, method="GET", headers=None, body=None, proxy_url=None):
        self.urls.append(url)
        outcome = self.routes.get(url)
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            return FetchResponse(status_code=404, body="not found", url=url)
        return outcome


class FakeBrowserSession:
    def __init__(self, states):
        self.states = states
        self.navigated: list[str] = []
        self._current = None

    @asynccontextmanager
    async def observe_responses(self, url_filter=None):
        yield []

    async def navigate(self, url):
        self.navigated.append(url)
        self._current = url
        return NavigateResult(success=True, response=None, error_summary=None)

    async def wait_until_settled(self):
        return None

    async def read_state(self, name="__INITIAL_STATE__"):
        return self.states.get(self._current)

    async def current_html(self):
        return "<html><head><title>Reviews</title></head><body></body></html>"


class HtmlOnlyBrowserSession(FakeBrowserSession):
    """The in-page global is unset; state is only in the rendered HTML."""

    async def read_state(self, name="__INITIAL_STATE__"):
        return None

    async def current_html(self):
        state = self.states.get(self._current)
        if state is None:
            return await super().current_html()
        return _page(state).body


class FakeLauncher:
    def __init__(self, states=None, session_cls=FakeBrowserSession):
        self.states = states or {}
        self.session_cls = session_cls
        self.sessions: list[FakeBrowserSession] = []

    @asynccontextmanager
    async def session(self):
        session = self.session_cls(self.states)
        self.sessions.append(session)
        yield session


def _state(ids) -> dict:
    return {
        "pageDataV4": {
            "page": {
                "data": {
                    "10002": [
                        {"widget": {"data": {"renderableComponents": [
                            {"value": {"type": "ProductReviewValue", "id": i, "text": f"Review {i}", "rating": 4}}
                            for i in ids
                        ]}}}
                    ]
                }
            }
        }
    }


def _page(state: dict, title: str = "Acme Phone Reviews", head: str = "") -> FetchResponse:
    body = (
        f"<html><head><title>{title}</title>{head}</head><body>"
        f"<script>window.__INITIAL_STATE__ = {json.dumps(state)};</script>"
        "</body></html>"
    )
    return FetchResponse(status_code=200, body=body)


def _html(ids, title: str = "Acme Phone Reviews") -> FetchResponse:
    return _page(_state(ids), title)


def _api(ids) -> FetchResponse:
    payload = {"RESPONSE": {"data": [{"type": "ProductReviewValue", "id": i, "text": "t", "rating": 5} for i in ids]}}
    return FetchResponse(status_code=200, body=json.dumps(payload))


def _scraper(fetcher, sink, wanted=20, launcher=None, debug_store=None, deadline=None, max_pages=20):
    accumulator = ReviewAccumulator(sink, wanted_count=wanted)
    return ReviewScraper(
        fetcher,
        accumulator,
        deadline or Deadline.unbounded(),
        launcher=launcher,
        debug_store=debug_store,
        max_pages=max_pages,
    )


@pytest.mark.asyncio
async def test_captcha_on_first_html_page_escalates_to_browser():
    captcha = FetchResponse(
        status_code=200,
        body="<html><head><title>Please verify: CAPTCHA</title></head><body></body></html>",
    )
    fetcher = FakeFetcher({LISTING: captcha})
    launcher = FakeLauncher(
        {
            LISTING: _state(["b1", "b2"]),
            LISTING + "?page=2": _state(["b1", "b2"]),
            LISTING + "?page=3": _state(["b2"]),
            LISTING + "?page=4": _state(["b9"]),
        }
    )
    debug_store = MagicMock()
    sink = ListSink()
    scraper = _scraper(fetcher, sink, launcher=launcher, debug_store=debug_store)

    with patch("review_scraper.discovery.asyncio.sleep", new_callable=AsyncMock):
        summary = await scraper.run([PRODUCT_URL])

    assert fetcher.urls == [LISTING]
    assert [row["review_id"] for row in sink.rows] == ["b1", "b2"]
    (outcome,) = summary.targets
    assert outcome.tiers_attempted == ["discover_and_replay", "html_page_paging", "browser_page_paging"]
    assert outcome.saved == 2
    browser_session = launcher.sessions[-1]
    assert browser_session.navigated == [LISTING, LISTING + "?page=2", LISTING + "?page=3"]
    key = debug_store.put.call_args[0][0]
    assert key.startswith("blocked_page__flipkart.com__")


@pytest.mark.asyncio
async def test_quota_stop_html_paging():
    fetcher = FakeFetcher(
        {
            LISTING: _html(["r1", "r2", "r3", "r4"]),
            LISTING + "?page=2": _html(["r5", "r6", "r7", "r8"]),
            LISTING + "?page=3": _html(["r9"]),
        }
    )
    sink = ListSink()

    summary = await _scraper(fetcher, sink, wanted=5).run([PRODUCT_URL])

    assert [row["review_id"] for row in sink.rows] == ["r1", "r2", "r3", "r4", "r5"]
    assert summary.total_saved == 5
    assert fetcher.urls == [LISTING, LISTING + "?page=2"]


@pytest.mark.asyncio
async def test_quota_stop_direct_api_skips_later_tiers():
    target = f"{PRODUCT_URL}?pid={PID}"
    listing = f"{LISTING}?pid={PID}"
    fetcher = FakeFetcher(
        {
            direct_api_url(listing, PID, 1): _api(["a1", "a2", "a3", "a4"]),
            direct_api_url(listing, PID, 2): _api(["a5", "a6", "a7", "a8"]),
        }
    )
    sink = ListSink()

    summary = await _scraper(fetcher, sink, wanted=5).run([target])

    assert len(sink.rows) == 5
    assert fetcher.urls == [direct_api_url(listing, PID, 1), direct_api_url(listing, PID, 2)]
    assert summary.targets[0].tiers_attempted == ["direct_api_paging"]
    assert direct_api_url(listing, PID, 1).startswith(
        "https://www.flipkart.com/api/3/product/reviews?productId=MOBGTAGPTB3VS24W&"
    )


@pytest.mark.asyncio
async def test_transport_error_on_page_two_keeps_page_one_records():
    fetcher = FakeFetcher(
        {
            LISTING: _html(["r1", "r2", "r3"]),
            LISTING + "?page=2": TransportError("ConnectError: connection reset"),
        }
    )
    launcher = FakeLauncher()
    sink = ListSink()
    scraper = _scraper(fetcher, sink, launcher=launcher)

    with patch("review_scraper.discovery.asyncio.sleep", new_callable=AsyncMock):
        summary = await scraper.run([PRODUCT_URL])

    assert [row["review_id"] for row in sink.rows] == ["r1", "r2", "r3"]
    assert summary.total_saved == 3
    assert summary.targets[0].tiers_attempted == ["discover_and_replay", "html_page_paging"]
    assert len(launcher.sessions) == 1


@pytest.mark.asyncio
async def test_html_tier_stops_after_two_pages_without_new_records():
    fetcher = FakeFetcher(
        {
            LISTING: _html(["r1"]),
            LISTING + "?page=2": _html(["r1"]),
            LISTING + "?page=3": _html([]),
            LISTING + "?page=4": _html(["r4"]),
        }
    )
    sink = ListSink()

    await _scraper(fetcher, sink).run([PRODUCT_URL])

    assert fetcher.urls == [LISTING, LISTING + "?page=2", LISTING + "?page=3"]
    assert [row["review_id"] for row in sink.rows] == ["r1"]


@pytest.mark.asyncio
async def test_failure_in_one_target_is_isolated():
    other_listing = "https://www.flipkart.com/other/product-reviews/itm2def"
    fetcher = FakeFetcher(
        {
            LISTING: RuntimeError("unexpected"),
            other_listing: _html(["o1"]),
        }
    )
    sink = ListSink()

    summary = await _scraper(fetcher, sink).run([PRODUCT_URL, other_listing])

    first, second = summary.targets
    assert first.saved == 0
    assert first.failure_reason == "Target failed"
    assert second.saved == 1
    assert [row["review_id"] for row in sink.rows] == ["o1"]


@pytest.mark.asyncio
async def test_empty_run_reports_no_results():
    fetcher = FakeFetcher({LISTING: FetchResponse(status_code=403, body="denied")})
    sink = ListSink()
    debug_store = MagicMock()

    summary = await _scraper(fetcher, sink, debug_store=debug_store).run([PRODUCT_URL])

    assert summary.no_results
    assert summary.attempted_urls == [LISTING]
    assert summary.targets[0].failure_reason == "Blocked (403/429/503)"
    assert sink.rows == []
    debug_store.put.assert_called_once()


@pytest.mark.asyncio
async def test_missing_state_on_first_page_escalates_with_reason():
    fetcher = FakeFetcher({LISTING: FetchResponse(status_code=200, body="<html><title>x</title></html>")})
    sink = ListSink()

    summary = await _scraper(fetcher, sink).run([PRODUCT_URL])

    assert summary.targets[0].failure_reason == "Embedded state missing"
    assert fetcher.urls == [LISTING]


@pytest.mark.asyncio
async def test_page_one_state_supplies_product_id_for_records():
    state = _state(["r1"])
    state["pageDataV4"]["page"]["pageData"] = {"productId": PID}
    body = f"<html><head><title>ok</title></head><body><script>window.__INITIAL_STATE__ = {json.dumps(state)};</script></body></html>"
    fetcher = FakeFetcher({LISTING: FetchResponse(status_code=200, body=body)})
    sink = ListSink()

    await _scraper(fetcher, sink, max_pages=1).run([PRODUCT_URL])

    assert sink.rows[0]["product_id"] == PID


@pytest.mark.asyncio
async def test_expired_deadline_starts_nothing():
    fetcher = FakeFetcher({LISTING: _html(["r1"])})
    sink = ListSink()

    summary = await _scraper(fetcher, sink, deadline=Deadline(0, safety_margin_seconds=30)).run([PRODUCT_URL])

    assert fetcher.urls == []
    assert summary.deadline_reached
    assert summary.no_results


@pytest.mark.asyncio
async def test_other_product_links_in_page_state_do_not_retarget():
    other = "https://www.flipkart.com/other-phone/product-reviews/itm9zzz?pid=OTHERPID0000001"
    page_one = _state(["r1", "r2"])
    page_one["similarProducts"] = [{"url": other, "productId": "OTHERPID0000001"}]
    fetcher = FakeFetcher(
        {
            LISTING: _page(page_one),
            LISTING + "?page=2": _html(["r3"]),
        }
    )
    sink = ListSink()

    summary = await _scraper(fetcher, sink, max_pages=2).run([PRODUCT_URL])

    (outcome,) = summary.targets
    assert outcome.canonical_url == LISTING
    assert fetcher.urls == [LISTING, LISTING + "?page=2"]
    assert [row["review_id"] for row in sink.rows] == ["r1", "r2", "r3"]
    assert all(row["product_id"] != "OTHERPID0000001" for row in sink.rows)


@pytest.mark.asyncio
async def test_page_one_state_adopts_listing_url_of_same_item():
    own = f"https://www.flipkart.com/acme-phone/product-reviews/itm1abc?pid={PID}"
    page_one = _state(["r1"])
    page_one["seo"] = {"canonicalUrl": own}
    fetcher = FakeFetcher({LISTING: _page(page_one)})
    sink = ListSink()

    summary = await _scraper(fetcher, sink, max_pages=1).run([PRODUCT_URL])

    assert summary.targets[0].canonical_url == own
    assert sink.rows[0]["product_id"] == PID


@pytest.mark.asyncio
async def test_cloudflare_script_on_valid_page_is_not_a_block():
    script = '<script src="/cdn-cgi/challenge-platform/scripts/jsd/main.js"></script>'
    fetcher = FakeFetcher({LISTING: _page(_state(["r1", "r2"]), head=script)})
    launcher = FakeLauncher()
    debug_store = MagicMock()
    sink = ListSink()
    scraper = _scraper(fetcher, sink, launcher=launcher, debug_store=debug_store, max_pages=1)

    with patch("review_scraper.discovery.asyncio.sleep", new_callable=AsyncMock):
        summary = await scraper.run([PRODUCT_URL])

    assert summary.total_saved == 2
    (outcome,) = summary.targets
    assert outcome.tiers_attempted == ["discover_and_replay", "html_page_paging"]
    assert outcome.failure_reason is None
    debug_store.put.assert_not_called()


@pytest.mark.asyncio
async def test_browser_tier_reads_state_from_rendered_html_when_global_unset():
    fetcher = FakeFetcher({LISTING: FetchResponse(status_code=403, body="denied")})
    launcher = FakeLauncher(
        {
            LISTING: _state(["b1", "b2"]),
            LISTING + "?page=2": _state(["b3"]),
        },
        session_cls=HtmlOnlyBrowserSession,
    )
    sink = ListSink()
    scraper = _scraper(fetcher, sink, launcher=launcher)

    with patch("review_scraper.discovery.asyncio.sleep", new_callable=AsyncMock):
        summary = await scraper.run([PRODUCT_URL])

    assert [row["review_id"] for row in sink.rows] == ["b1", "b2", "b3"]
    assert summary.targets[0].tiers_attempted[-1] == "browser_page_paging"
    assert launcher.sessions[-1].navigated == [LISTING, LISTING + "?page=2", LISTING + "?page=3"]
