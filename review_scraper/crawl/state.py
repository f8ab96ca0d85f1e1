"""
Embedded application-state extraction from server-rendered HTML.

The state blob is assigned by a script statement (`window.__INITIAL_STATE__ = {...};`),
so it is not a standalone document node; a balanced-brace scan bounds the literal
before it is handed to json.loads.
"""

from __future__ import annotations

import json
from typing import Optional, Sequence
from urllib.parse import urljoin, urlsplit

from shared.logging import get_logger
from review_scraper.crawl.jsonwalk import iter_strings
from review_scraper.crawl.urls import (
    LISTING_PATH_MARKER,
    canonicalize_url,
    get_etld_plus_one,
    is_valid_product_id,
    item_token,
)
from review_scraper.models import JsonValue

logger = get_logger(__name__)

STATE_GLOBAL = "__INITIAL_STATE__"
STATE_MARKERS = (f"window.{STATE_GLOBAL}", STATE_GLOBAL)

# Keys under which the page state carries the product identifier
PRODUCT_ID_KEYS = ("productId", "pid")

# Keys whose object describes the page's own product
OWN_PRODUCT_NODE_KEYS = ("pageContext", "pageData", "productContext")


def find_balanced_object(text: str, start: int) -> Optional[str]:
    """
    Return the object literal opening at text[start] up to its matching brace.

    Single forward pass tracking brace depth and whether the scanner is inside a
    double-quoted string; a backslash inside a string escapes the next character,
    so quotes and braces within string values never affect depth.
    Returns None when text[start] is not '{' or the literal is unterminated.
    """
    if start < 0 or start >= len(text) or text[start] != "{":
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def extract_embedded_state(
    html: str,
    markers: Sequence[str] = STATE_MARKERS,
) -> Optional[JsonValue]:
    """
    Locate the first marker, scan to the first '{', bound the literal and parse it.

    Returns None when no marker, no balanced literal, or invalid JSON; parse
    failures are logged, never raised.
    """
    if not html:
        return None

    marker_pos = -1
    marker_len = 0
    for marker in markers:
        marker_pos = html.find(marker)
        if marker_pos >= 0:
            marker_len = len(marker)
            break
    if marker_pos < 0:
        return None

    brace = html.find("{", marker_pos + marker_len)
    if brace < 0:
        return None

    literal = find_balanced_object(html, brace)
    if literal is None:
        logger.warning("embedded_state_unterminated", offset=brace)
        return None

    try:
        return json.loads(literal)
    except json.JSONDecodeError as e:
        logger.warning(
            "embedded_state_parse_failed",
            error=str(e),
            length=len(literal),
        )
        return None


def find_listing_url(state: JsonValue, base_url: str) -> Optional[str]:
    """
    Most specific same-site review-listing URL for the base URL's own item.

    Listing URLs of other items (recommendation widgets, similar products) are
    ignored; without an item token in base_url nothing is adopted. Prefers a
    URL carrying a pid parameter. Returns the canonicalized URL or None.
    """
    base_token = item_token(base_url)
    if base_token is None:
        return None
    base_site = get_etld_plus_one(urlsplit(base_url).netloc)
    fallback: Optional[str] = None
    for value in iter_strings(state):
        if LISTING_PATH_MARKER not in value or len(value) > 2048:
            continue
        absolute = urljoin(base_url, value.strip())
        parts = urlsplit(absolute)
        if parts.scheme not in ("http", "https"):
            continue
        if get_etld_plus_one(parts.netloc) != base_site:
            continue
        if item_token(absolute) != base_token:
            continue
        target = canonicalize_url(absolute)
        if target.product_id:
            return target.url
        if fallback is None:
            fallback = target.url
    return fallback


def _product_id_of(node: dict) -> Optional[str]:
    for key in PRODUCT_ID_KEYS:
        value = node.get(key)
        if isinstance(value, str) and is_valid_product_id(value):
            return value
    return None


def _mentions_token(node: dict, token: str) -> bool:
    return any(isinstance(v, str) and token in v.lower() for v in node.values())


def find_product_id(state: JsonValue, token: Optional[str] = None) -> Optional[str]:
    """
    Product identifier of the page's own item.

    Taken from an object under a page-context key, or from an object whose
    string fields mention the item token. Identifiers in any other object
    (recommendation widgets, similar products) are ignored.
    """
    stack: list[tuple[Optional[str], JsonValue]] = [(None, state)]
    while stack:
        key, node = stack.pop()
        if isinstance(node, dict):
            product_id = _product_id_of(node)
            if product_id and (key in OWN_PRODUCT_NODE_KEYS or (token and _mentions_token(node, token))):
                return product_id
            stack.extend(reversed(list(node.items())))
        elif isinstance(node, list):
            stack.extend((None, item) for item in reversed(node))
    return None
