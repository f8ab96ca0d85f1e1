"""
API contract discovery: watch one browser session, pick the exchange that looks
most like the reviews API, and turn it into a replayable, paginated request.

Scoring is an ordered list of (name, weight, measure) rules summed explicitly;
each measure returns a fraction in [0, 1]. Pagination is inferred from the
observed *request* (query first, then JSON body), never from the response.
"""

from __future__ import annotations

import asyncio
import copy
import json
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Optional
from urllib.parse import parse_qsl, urlsplit, urlunsplit

from shared.logging import get_logger
from review_scraper.accumulator import ReviewAccumulator
from review_scraper.constants import (
    DISCOVERY_DWELL_MS,
    MAX_CONSECUTIVE_EMPTY_PAGES,
    REPLAY_CONCURRENCY,
)
from review_scraper.crawl.browser import ObservedExchange
from review_scraper.crawl.jsonwalk import get_path, set_path
from review_scraper.crawl.records import recognize_reviews
from review_scraper.crawl.urls import LISTING_PATH_MARKER, get_etld_plus_one
from review_scraper.deadline import Deadline
from review_scraper.errors import MalformedPayload
from review_scraper.fetching import FetchResponse
from review_scraper.models import ApiContract, JsonValue, PaginationRule, ReviewRecord

if TYPE_CHECKING:
    from review_scraper.crawl.browser import BrowserSession

logger = get_logger(__name__)

API_PATH_MARKER = "/api/"
RANKING_PARAMS = ("sortOrder", "ratings", "reviewerType", "sort")
PAGINATION_MARKERS = RANKING_PARAMS + ("page", "pageNumber", "offset", "limit", "start", "count")
REVIEW_ENDPOINT_RE = re.compile(r"/api/\d+/product/reviews", re.IGNORECASE)
RECORD_SCORE_CAP = 20

PAGE_KEYS = ("page", "pageNumber", "pageNo")
OFFSET_KEY_PAIRS = (("offset", "limit"), ("start", "count"))
# Body string fields that carry a page URI (e.g. {"pageUri": "/x/product-reviews/itm1?page=2"})
URI_FIELD_SEPARATOR = "?"

ALLOWED_HEADERS = frozenset({"accept", "content-type"})
DROPPED_CUSTOM_HEADERS = ("x-forwarded-", "x-real-ip", "x-client-ip")


@dataclass
class Candidate:
    """An observed exchange plus the records recognized in its body."""

    exchange: ObservedExchange
    records: list[ReviewRecord] = field(default_factory=list)
    score: float = 0.0


@dataclass(frozen=True)
class ScoringRule:
    name: str
    weight: float
    measure: Callable[[Candidate], float]


@dataclass
class DiscoveryResult:
    contract: Optional[ApiContract]
    records: list[ReviewRecord]
    candidates: int
    navigation_error: Optional[str] = None


def _markers_in(url: str, post_data: Optional[str], names: tuple[str, ...]) -> bool:
    query_keys = {k for k, _ in parse_qsl(urlsplit(url).query, keep_blank_values=True)}
    if any(name in query_keys for name in names):
        return True
    return bool(post_data) and any(f'"{name}"' in post_data for name in names)


def _is_2xx(candidate: Candidate) -> float:
    return 1.0 if 200 <= candidate.exchange.status < 300 else 0.0


def _review_endpoint_shape(candidate: Candidate) -> float:
    return 1.0 if REVIEW_ENDPOINT_RE.search(urlsplit(candidate.exchange.url).path) else 0.0


def _pagination_markers(candidate: Candidate) -> float:
    ex = candidate.exchange
    return 1.0 if _markers_in(ex.url, ex.post_data, PAGINATION_MARKERS) else 0.0


def _record_yield(candidate: Candidate) -> float:
    return min(len(candidate.records), RECORD_SCORE_CAP) / RECORD_SCORE_CAP


SCORING_RULES: tuple[ScoringRule, ...] = (
    ScoringRule("status_2xx", 30, _is_2xx),
    ScoringRule("review_endpoint_shape", 50, _review_endpoint_shape),
    ScoringRule("pagination_markers", 10, _pagination_markers),
    ScoringRule("record_yield", 40, _record_yield),
)


def score_candidate(candidate: Candidate, rules: tuple[ScoringRule, ...] = SCORING_RULES) -> float:
    return sum(rule.weight * rule.measure(candidate) for rule in rules)


def is_same_site_api(url: str, site: str) -> bool:
    parts = urlsplit(url)
    return get_etld_plus_one(parts.netloc) == site and API_PATH_MARKER in parts.path


def is_candidate_exchange(url: str, site: str, post_data: Optional[str] = None) -> bool:
    """
    Plausibly the reviews API: same site, an /api/ path, and any of a "review"
    mention, a ranking parameter, or a review-listing path fragment.
    """
    if not is_same_site_api(url, site):
        return False
    lowered = url.lower()
    if "review" in lowered:
        return True
    if _markers_in(url, post_data, RANKING_PARAMS):
        return True
    return bool(post_data) and LISTING_PATH_MARKER in post_data


def sanitize_headers(headers: dict[str, str]) -> dict[str, str]:
    """Keep accept, content-type and custom x- headers; drop everything else."""
    kept: dict[str, str] = {}
    for name, value in headers.items():
        lowered = name.lower()
        if lowered.startswith(DROPPED_CUSTOM_HEADERS):
            continue
        if lowered in ALLOWED_HEADERS or lowered.startswith("x-"):
            kept[lowered] = value
    return kept


def _as_int(value: JsonValue) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _query_rule(query: str, kind_prefix: str, key_prefix: str = "") -> Optional[tuple[PaginationRule, int]]:
    params = dict(parse_qsl(query, keep_blank_values=True))
    for key in PAGE_KEYS:
        page = _as_int(params.get(key))
        if page is not None and page >= 1:
            return PaginationRule(kind=f"{kind_prefix}-page", key=key_prefix + key), page  # type: ignore[arg-type]
    for offset_key, limit_key in OFFSET_KEY_PAIRS:
        offset, limit = _as_int(params.get(offset_key)), _as_int(params.get(limit_key))
        if offset is not None and limit:
            rule = PaginationRule(
                kind=f"{kind_prefix}-offset",  # type: ignore[arg-type]
                key=key_prefix + offset_key,
                step=limit,
                base=offset,
            )
            return rule, 1
    return None


def _iter_dicts_with_path(obj: JsonValue, prefix: str = ""):
    if isinstance(obj, dict):
        yield prefix, obj
        for key, value in obj.items():
            if isinstance(value, dict):
                yield from _iter_dicts_with_path(value, f"{prefix}{key}.")


def _body_rule(body: dict) -> Optional[tuple[PaginationRule, int]]:
    for prefix, obj in _iter_dicts_with_path(body):
        for key in PAGE_KEYS:
            page = _as_int(obj.get(key))
            if page is not None and page >= 1:
                return PaginationRule(kind="body-page", key=prefix + key), page
        for offset_key, limit_key in OFFSET_KEY_PAIRS:
            offset, limit = _as_int(obj.get(offset_key)), _as_int(obj.get(limit_key))
            if offset is not None and limit:
                rule = PaginationRule(
                    kind="body-offset", key=prefix + offset_key, step=limit, base=offset
                )
                return rule, 1
    # Page carried inside a URI string field, e.g. "pageUri": "/...?page=2"
    for prefix, obj in _iter_dicts_with_path(body):
        for key, value in obj.items():
            if isinstance(value, str) and URI_FIELD_SEPARATOR in value and "=" in value:
                found = _query_rule(urlsplit(value).query, "body", f"{prefix}{key}{URI_FIELD_SEPARATOR}")
                if found and found[0].kind == "body-page":
                    return found
    return None


def parse_json_body(post_data: Optional[str]) -> Optional[dict]:
    if not post_data:
        return None
    try:
        body = json.loads(post_data)
    except (json.JSONDecodeError, TypeError):
        return None
    return body if isinstance(body, dict) else None


def infer_pagination(url: str, post_data: Optional[str] = None) -> tuple[Optional[PaginationRule], int]:
    """
    Pagination rule and the page number of the observed request.

    A page parameter gives a page rule; an offset+limit pair gives an offset
    rule stepping by the observed limit. Query first, then JSON body.
    Returns (None, 1) when no signal is found.
    """
    found = _query_rule(urlsplit(url).query, "query")
    if found is None:
        body = parse_json_body(post_data)
        if body is not None:
            found = _body_rule(body)
    if found is None:
        return None, 1
    return found


def _set_query_param(url: str, key: str, value: int) -> str:
    """Replace (or append) one query parameter, leaving every other part verbatim."""
    parts = urlsplit(url)
    pieces = [p for p in parts.query.split("&") if p]
    replaced = False
    for i, piece in enumerate(pieces):
        if piece.split("=", 1)[0] == key:
            pieces[i] = f"{key}={value}"
            replaced = True
    if not replaced:
        pieces.append(f"{key}={value}")
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "&".join(pieces), parts.fragment))


def _set_body_value(body: dict, key: str, value: int) -> None:
    if URI_FIELD_SEPARATOR in key:
        field_path, param = key.split(URI_FIELD_SEPARATOR, 1)
        uri = get_path(body, field_path)
        if isinstance(uri, str):
            set_path(body, field_path, _set_query_param(uri, param, value))
        return
    current = get_path(body, key)
    set_path(body, key, str(value) if isinstance(current, str) else value)


def build_page_request(contract: ApiContract, page: int) -> tuple[str, Optional[dict]]:
    """URL and body for page n of a contract; other parameters stay unchanged."""
    body = copy.deepcopy(contract.body_template) if contract.body_template is not None else None
    rule = contract.pagination
    if rule is None:
        return contract.url, body
    value = rule.value_for_page(page)
    if rule.in_body:
        if body is not None:
            _set_body_value(body, rule.key, value)
        return contract.url, body
    return _set_query_param(contract.url, rule.key, value), body


def build_contract(exchange: ObservedExchange) -> ApiContract:
    rule, start_page = infer_pagination(exchange.url, exchange.post_data)
    return ApiContract(
        method=exchange.method.upper(),
        url=exchange.url,
        headers=sanitize_headers(exchange.request_headers),
        body_template=parse_json_body(exchange.post_data),
        pagination=rule,
        start_page=start_page,
    )


def _records_from_body(
    body: Optional[str],
    source_url: str,
    product_id: Optional[str],
) -> list[ReviewRecord]:
    if not body:
        return []
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return []
    return recognize_reviews(payload, source_url, product_id=product_id)


def select_best_candidate(
    exchanges: list[ObservedExchange],
    target_url: str,
    product_id: Optional[str] = None,
) -> tuple[Optional[Candidate], int]:
    """Score every candidate exchange; the first highest score wins."""
    site = get_etld_plus_one(urlsplit(target_url).netloc)
    best: Optional[Candidate] = None
    count = 0
    for exchange in exchanges:
        if not is_candidate_exchange(exchange.url, site, exchange.post_data):
            continue
        count += 1
        candidate = Candidate(
            exchange=exchange,
            records=_records_from_body(exchange.body, target_url, product_id),
        )
        candidate.score = score_candidate(candidate)
        logger.debug(
            "discovery.candidate",
            url=exchange.url,
            status=exchange.status,
            score=candidate.score,
            records=len(candidate.records),
        )
        if best is None or candidate.score > best.score:
            best = candidate
    return best, count


async def discover_contract(
    session: "BrowserSession",
    target_url: str,
    product_id: Optional[str] = None,
) -> DiscoveryResult:
    """
    Navigate once, observe traffic, and build a contract from the best exchange.

    Records found in the winning exchange are returned for accumulation.
    """
    site = get_etld_plus_one(urlsplit(target_url).netloc)
    async with session.observe_responses(lambda u: is_same_site_api(u, site)) as exchanges:
        nav = await session.navigate(target_url)
        if nav.success:
            await session.wait_until_settled()
            await asyncio.sleep(DISCOVERY_DWELL_MS / 1000)

    if not nav.success:
        logger.warning("discovery.navigation_failed", error_summary=nav.error_summary)

    best, count = select_best_candidate(exchanges, target_url, product_id)
    if best is None:
        logger.info("discovery.no_candidates", observed=len(exchanges))
        return DiscoveryResult(None, [], 0, nav.error_summary)

    contract = build_contract(best.exchange)
    logger.info(
        "discovery.contract",
        method=contract.method,
        url=contract.url,
        score=best.score,
        candidates=count,
        pagination=contract.pagination.kind if contract.pagination else None,
        pagination_key=contract.pagination.key if contract.pagination else None,
        records=len(best.records),
    )
    return DiscoveryResult(contract, best.records, count, nav.error_summary)


async def _fetch_contract_page(
    session: "BrowserSession",
    contract: ApiContract,
    page: int,
) -> FetchResponse:
    url, body = build_page_request(contract, page)
    return await session.fetch_in_page(url, method=contract.method, headers=contract.headers, body=body)


async def replay_contract(
    session: "BrowserSession",
    contract: ApiContract,
    accumulator: ReviewAccumulator,
    deadline: Deadline,
    *,
    max_pages: int,
    target_url: str,
    product_id: Optional[str] = None,
) -> int:
    """
    Replay a paginated contract from inside the browser, page after page.

    Pages are fetched in windows of REPLAY_CONCURRENCY and handled in page order.
    Stops after two consecutive pages without new identities, on any non-2xx
    status or fetch error, or at quota, deadline or max_pages. Returns new records.
    """
    if not contract.paginated:
        logger.info("replay.skipped", reason="no_pagination")
        return 0

    added = 0
    empty_streak = 0
    page = contract.start_page + 1
    last_page = contract.start_page + max_pages - 1

    while page <= last_page:
        if accumulator.quota_reached or deadline.near():
            break
        window = list(range(page, min(page + REPLAY_CONCURRENCY, last_page + 1)))
        results = await asyncio.gather(
            *(_fetch_contract_page(session, contract, n) for n in window),
            return_exceptions=True,
        )
        for n, result in zip(window, results):
            if isinstance(result, BaseException):
                logger.warning("replay.page_failed", page=n, error=str(result), error_type=type(result).__name__)
                return added
            if not result.ok:
                logger.info("replay.stopped", page=n, reason="status", status=result.status_code)
                return added
            try:
                payload = result.json()
            except MalformedPayload:
                logger.info("replay.stopped", page=n, reason="malformed_payload")
                return added
            records = recognize_reviews(payload, target_url, product_id=product_id)
            new = await accumulator.add_many(records)
            added += new
            empty_streak = 0 if new else empty_streak + 1
            logger.info("replay.page", page=n, records=len(records), new=new, total_saved=accumulator.total_saved)
            if accumulator.quota_reached:
                return added
            if empty_streak >= MAX_CONSECUTIVE_EMPTY_PAGES:
                logger.info("replay.stopped", page=n, reason="no_new_records")
                return added
        page += len(window)
    return added
