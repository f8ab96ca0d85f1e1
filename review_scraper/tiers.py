"""
Extraction tiers: discovery+replay, direct API paging, HTML paging, browser paging.

Each tier pages one target, pushes records through the shared accumulator as
it finds them, and returns a TierResult. Only the HTML tier can ask for
escalation, and only on a page-1 hard failure; later-page failures stop the
tier with whatever it already saved.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Union
from urllib.parse import parse_qsl, urlencode, urlsplit

from shared.logging import get_logger
from review_scraper.accumulator import ReviewAccumulator
from review_scraper.constants import (
    DIRECT_API_HEADERS,
    DIRECT_API_PARAMS,
    DIRECT_API_PATH,
    HTML_REQUEST_HEADERS,
    MAX_CONSECUTIVE_EMPTY_PAGES,
)
from review_scraper.crawl.blocking import block_signature, is_blocking_status
from review_scraper.crawl.browser import BrowserLauncher
from review_scraper.crawl.cards import parse_review_cards
from review_scraper.crawl.records import recognize_reviews
from review_scraper.crawl.state import (
    extract_embedded_state,
    find_listing_url,
    find_product_id,
)
from review_scraper.crawl.urls import (
    canonicalize_url,
    is_valid_product_id,
    item_token,
    listing_page_url,
)
from review_scraper.deadline import Deadline
from review_scraper.discovery import discover_contract, replay_contract
from review_scraper.errors import (
    BlockedResponse,
    MalformedPayload,
    TransportError,
    get_user_safe_failure_reason,
)
from review_scraper.fetching import FetchResponse, ProxyConfiguration
from review_scraper.models import JsonValue, ReviewRecord, TargetState
from review_scraper.retry import Fetcher, fetch_with_retry
from review_scraper.storage import build_debug_key

logger = get_logger(__name__)

DIRECT_API_PRODUCT_PARAM = "productId"


class DebugStore(Protocol):
    def put(self, key: str, blob: Union[str, dict, list]) -> object: ...


@dataclass
class TierResult:
    """What a tier saved and, when it failed, the user-safe reason."""

    saved: int = 0
    escalate: bool = False
    failure_reason: Optional[str] = None


def _save_debug(
    debug_store: Optional[DebugStore],
    reason: str,
    url: str,
    page: int,
    blob: Union[str, dict, list, None],
) -> None:
    if debug_store is None or blob is None:
        return
    debug_store.put(build_debug_key(reason, url, page), blob)


def _should_stop(accumulator: ReviewAccumulator, deadline: Deadline) -> bool:
    if accumulator.quota_reached:
        return True
    if deadline.near():
        logger.info("tier.deadline_near", remaining_seconds=round(deadline.remaining(), 1))
        return True
    return False


def records_from_html(
    html: str,
    source_url: str,
    product_id: Optional[str],
    state: JsonValue = None,
) -> tuple[JsonValue, list[ReviewRecord]]:
    """
    Records from a page's state (extracted from html unless given), else from review cards.

    Returns (state, records); state is None when none was found.
    """
    if state is None:
        state = extract_embedded_state(html)
    records: list[ReviewRecord] = []
    if state is not None:
        records = recognize_reviews(state, source_url, product_id=product_id)
    if not records and html:
        records = parse_review_cards(html, source_url, product_id=product_id)
        if records:
            logger.info("cards.fallback_used", url=source_url, records=len(records))
    return state, records


def _product_id_from_url(url: str) -> Optional[str]:
    for key, value in parse_qsl(urlsplit(url).query):
        if key in (DIRECT_API_PRODUCT_PARAM, "pid") and is_valid_product_id(value):
            return value
    return None


async def run_discovery_tier(
    launcher: BrowserLauncher,
    target: TargetState,
    accumulator: ReviewAccumulator,
    deadline: Deadline,
    *,
    max_pages: int,
) -> TierResult:
    """Discover the page's reviews API in a browser session and replay it."""
    async with launcher.session() as session:
        result = await discover_contract(session, target.canonical_url, target.product_id)
        saved = await accumulator.add_many(result.records)
        if result.contract is None:
            return TierResult(saved=saved, failure_reason=result.navigation_error)

        if not target.product_id:
            product_id = _product_id_from_url(result.contract.url)
            if product_id:
                target.product_id = product_id
                logger.info("target.product_id_discovered", product_id=product_id)

        if not _should_stop(accumulator, deadline):
            saved += await replay_contract(
                session,
                result.contract,
                accumulator,
                deadline,
                max_pages=max_pages,
                target_url=target.canonical_url,
                product_id=target.product_id,
            )
    return TierResult(saved=saved)


def direct_api_url(canonical_url: str, product_id: str, page: int) -> str:
    parts = urlsplit(canonical_url)
    params = {DIRECT_API_PRODUCT_PARAM: product_id, **DIRECT_API_PARAMS, "page": page}
    return f"{parts.scheme}://{parts.netloc}{DIRECT_API_PATH}?{urlencode(params)}"


async def run_direct_api_tier(
    fetcher: Fetcher,
    target: TargetState,
    accumulator: ReviewAccumulator,
    deadline: Deadline,
    *,
    max_pages: int,
    proxy: Optional[ProxyConfiguration] = None,
) -> TierResult:
    """
    Page the known reviews endpoint by product id.

    Ends after two consecutive zero-yield pages or on any HTTP or transport error.
    """
    if not target.product_id:
        logger.info("tier.skipped", reason="no_product_id")
        return TierResult()

    saved = 0
    empty_streak = 0
    for page in range(1, max_pages + 1):
        if _should_stop(accumulator, deadline):
            break
        url = direct_api_url(target.canonical_url, target.product_id, page)
        try:
            response = await fetch_with_retry(
                fetcher, url, headers=DIRECT_API_HEADERS, proxy=proxy
            )
        except TransportError as e:
            logger.warning("direct_api.fetch_failed", page=page, error=str(e), error_type=type(e).__name__)
            return TierResult(saved=saved, failure_reason="Transport error")

        if not response.ok:
            logger.info("direct_api.http_error", page=page, status=response.status_code)
            reason = "Blocked (403/429/503)" if is_blocking_status(response.status_code) else None
            return TierResult(saved=saved, failure_reason=reason)

        try:
            payload = response.json()
        except MalformedPayload:
            logger.info("direct_api.malformed_payload", page=page)
            return TierResult(saved=saved, failure_reason="Malformed payload")

        records = recognize_reviews(payload, target.canonical_url, product_id=target.product_id)
        new = await accumulator.add_many(records)
        saved += new
        logger.info("direct_api.page", page=page, records=len(records), new=new, total_saved=accumulator.total_saved)

        empty_streak = 0 if new else empty_streak + 1
        if empty_streak >= MAX_CONSECUTIVE_EMPTY_PAGES:
            break
    return TierResult(saved=saved)


def _rederive_target(target: TargetState, state: JsonValue) -> None:
    """Adopt a better canonical URL and product id found in page-1 state."""
    listing_url = find_listing_url(state, target.canonical_url)
    if listing_url and listing_url != target.canonical_url:
        better = canonicalize_url(listing_url)
        logger.info("target.canonical_updated", old=target.canonical_url, new=better.url)
        target.canonical_url = better.url
        target.product_id = better.product_id or target.product_id
        target.listing_id = better.listing_id or target.listing_id
    if not target.product_id:
        target.product_id = find_product_id(state, item_token(target.canonical_url))


def _check_blocked(response: FetchResponse, state: JsonValue) -> None:
    """Raise BlockedResponse for a blocking status, or for a block page that has no state."""
    if is_blocking_status(response.status_code):
        raise BlockedResponse(f"status {response.status_code}", status=response.status_code)
    if state is None:
        signature = block_signature(response.body)
        if signature:
            raise BlockedResponse(f"block signature {signature}")


async def run_html_tier(
    fetcher: Fetcher,
    target: TargetState,
    accumulator: ReviewAccumulator,
    deadline: Deadline,
    *,
    max_pages: int,
    proxy: Optional[ProxyConfiguration] = None,
    debug_store: Optional[DebugStore] = None,
) -> TierResult:
    """
    Fetch sequential server-rendered listing pages.

    A transport error, blocking status, block page, or missing state/zero
    records on page 1 escalates. The same on a later page stops the tier.
    """
    saved = 0
    empty_streak = 0

    def _fail(page: int, reason: str) -> TierResult:
        if page == 1:
            logger.warning("tier.escalate", page=page, reason=reason)
            return TierResult(saved=saved, escalate=True, failure_reason=reason)
        logger.info("html.stopped", page=page, reason=reason)
        return TierResult(saved=saved)

    for page in range(1, max_pages + 1):
        if _should_stop(accumulator, deadline):
            break
        url = listing_page_url(target.canonical_url, page)
        try:
            response = await fetch_with_retry(
                fetcher, url, headers=HTML_REQUEST_HEADERS, proxy=proxy
            )
        except TransportError as e:
            logger.warning("html.fetch_failed", page=page, error=str(e), error_type=type(e).__name__)
            return _fail(page, "Transport error")

        state = extract_embedded_state(response.body)
        try:
            _check_blocked(response, state)
        except BlockedResponse as e:
            logger.info("html.blocked", page=page, status=e.status, detail=str(e))
            debug_reason = "blocked_status" if e.status is not None else "blocked_page"
            _save_debug(debug_store, debug_reason, url, page, response.body)
            return _fail(page, get_user_safe_failure_reason(e))

        if not response.ok:
            logger.info("html.http_error", page=page, status=response.status_code)
            return _fail(page, "Navigation failed")

        if page == 1 and state is not None:
            _rederive_target(target, state)
        _, records = records_from_html(response.body, url, target.product_id, state=state)

        if not records:
            if state is None:
                _save_debug(debug_store, "state_missing", url, page, response.body)
                return _fail(page, "Embedded state missing")
            if page == 1:
                _save_debug(debug_store, "zero_records", url, page, response.body)
                return _fail(page, "No records on first page")

        new = await accumulator.add_many(records)
        saved += new
        logger.info("html.page", page=page, records=len(records), new=new, total_saved=accumulator.total_saved)

        empty_streak = 0 if new else empty_streak + 1
        if empty_streak >= MAX_CONSECUTIVE_EMPTY_PAGES:
            break
    return TierResult(saved=saved)


async def run_browser_tier(
    launcher: BrowserLauncher,
    target: TargetState,
    accumulator: ReviewAccumulator,
    deadline: Deadline,
    *,
    max_pages: int,
    debug_store: Optional[DebugStore] = None,
) -> TierResult:
    """Navigate a real browser to each listing page and read its state."""
    saved = 0
    empty_streak = 0
    async with launcher.session() as session:
        for page in range(1, max_pages + 1):
            if _should_stop(accumulator, deadline):
                break
            url = listing_page_url(target.canonical_url, page)
            nav = await session.navigate(url)
            if not nav.success:
                reason = nav.error_summary or "Navigation failed"
                logger.warning("browser.navigation_failed", page=page, error_summary=reason)
                return TierResult(saved=saved, failure_reason=reason if page == 1 else None)

            await session.wait_until_settled()
            html = await session.current_html()
            state = await session.read_state()
            state, records = records_from_html(html, url, target.product_id, state=state)

            if not records:
                if page == 1:
                    _save_debug(debug_store, "browser_zero_records", url, page, html)
                    reason = "Embedded state missing" if state is None else "No records on first page"
                    return TierResult(saved=saved, failure_reason=reason)
                if state is None:
                    break

            new = await accumulator.add_many(records)
            saved += new
            logger.info("browser.page", page=page, records=len(records), new=new, total_saved=accumulator.total_saved)

            empty_streak = 0 if new else empty_streak + 1
            if empty_streak >= MAX_CONSECUTIVE_EMPTY_PAGES:
                break
    return TierResult(saved=saved)
