"""
Anti-bot block detection on fetched responses.

Deterministic, text-only checks: blocking status codes, block-page titles and
challenge-vendor markers in the body. Used by the HTML tier on raw responses
and by navigation on rendered pages. A page that carries the embedded
application state is never a block page.
"""

from __future__ import annotations

import re
from typing import Optional

from review_scraper.constants import BLOCKING_STATUSES
from review_scraper.crawl.state import STATE_GLOBAL

# Lowercase substrings that mark a block page when found in <title>
BLOCK_TITLE_INDICATORS = (
    "access denied",
    "captcha",
    "robot",
    "verify you are human",
    "attention required",
)

# Lowercase body markers left by challenge vendors. Cloudflare's
# /cdn-cgi/challenge-platform/ script also ships on unblocked pages, so only
# its interstitial markers count.
CHALLENGE_VENDOR_MARKERS = (
    "cf-chl-",
    "_cf_chl_opt",
    "captcha-delivery.com",
    "px-captcha",
    "_incapsula_resource",
    "/_sec/cp_challenge",
)

_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


def is_blocking_status(status: Optional[int]) -> bool:
    """403, 429 and 503 are treated as temporary blocks."""
    return status in BLOCKING_STATUSES


def extract_title(html: str) -> str:
    match = _TITLE_RE.search(html or "")
    return match.group(1).strip() if match else ""


def is_block_title(title: str) -> bool:
    lowered = (title or "").lower()
    return any(ind in lowered for ind in BLOCK_TITLE_INDICATORS)


def block_signature(html: str, title: Optional[str] = None) -> Optional[str]:
    """
    Name of the first block signature found in an HTML body, or None.

    Returns "title" for a block-page title, else the matching vendor marker.
    `title` overrides the <title> parsed from html (rendered pages).
    """
    if not html or STATE_GLOBAL in html:
        return None
    if is_block_title(extract_title(html) if title is None else title):
        return "title"
    lowered = html.lower()
    for marker in CHALLENGE_VENDOR_MARKERS:
        if marker in lowered:
            return marker
    return None


def is_block_page(html: str, title: Optional[str] = None) -> bool:
    return block_signature(html, title) is not None
