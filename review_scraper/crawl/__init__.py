"""
Page-level crawling helpers: URL canonicalization, embedded state, record
recognition, block detection and the Playwright browser handle.

Public API: re-exports the symbols used by the tiers and tests so that
`from review_scraper.crawl import ...` works.
"""

from __future__ import annotations

from review_scraper.crawl.blocking import (
    BLOCK_TITLE_INDICATORS,
    CHALLENGE_VENDOR_MARKERS,
    block_signature,
    is_block_page,
    is_blocking_status,
)
from review_scraper.crawl.browser import (
    BrowserLauncher,
    BrowserSession,
    ObservedExchange,
    create_browser_context,
)
from review_scraper.crawl.cards import parse_review_cards
from review_scraper.crawl.jsonwalk import get_path, iter_objects, iter_strings, set_path
from review_scraper.crawl.navigation_retry import (
    NavigateResult,
    is_bot_block_page,
    navigate_with_retry,
)
from review_scraper.crawl.readiness import wait_for_page_ready
from review_scraper.crawl.records import (
    coerce_number,
    is_loose_review,
    is_strict_review,
    recognize_reviews,
)
from review_scraper.crawl.state import (
    STATE_GLOBAL,
    extract_embedded_state,
    find_balanced_object,
    find_listing_url,
    find_product_id,
)
from review_scraper.crawl.text import first_sentence_title, normalize_whitespace
from review_scraper.crawl.urls import (
    CanonicalTarget,
    canonicalize_url,
    get_etld_plus_one,
    is_valid_product_id,
    item_token,
    listing_page_url,
    product_info_from_url,
)

__all__ = [
    # urls
    "CanonicalTarget",
    "canonicalize_url",
    "get_etld_plus_one",
    "is_valid_product_id",
    "item_token",
    "listing_page_url",
    "product_info_from_url",
    # state
    "STATE_GLOBAL",
    "extract_embedded_state",
    "find_balanced_object",
    "find_listing_url",
    "find_product_id",
    # records
    "coerce_number",
    "is_strict_review",
    "is_loose_review",
    "recognize_reviews",
    # cards
    "parse_review_cards",
    # jsonwalk
    "iter_objects",
    "iter_strings",
    "get_path",
    "set_path",
    # blocking
    "BLOCK_TITLE_INDICATORS",
    "CHALLENGE_VENDOR_MARKERS",
    "block_signature",
    "is_block_page",
    "is_blocking_status",
    # browser
    "BrowserLauncher",
    "BrowserSession",
    "ObservedExchange",
    "create_browser_context",
    # navigation_retry
    "NavigateResult",
    "navigate_with_retry",
    "is_bot_block_page",
    # readiness
    "wait_for_page_ready",
    # text
    "normalize_whitespace",
    "first_sentence_title",
]
