"""
URL canonicalization: any product or review URL -> review-listing URL + identifiers.

Pure functions; no network. Query strings are edited as raw `&`-separated
parts so that parameters we do not touch keep their original encoding and
canonicalization stays idempotent.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qsl, unquote, urlsplit, urlunsplit

LISTING_PATH_MARKER = "/product-reviews/"
PAGE_PARAM = "page"
PRODUCT_ID_PARAM = "pid"
LISTING_ID_PARAM = "lid"

PRODUCT_PATH_RE = re.compile(r"/([^/]+)/p/(itm[a-z0-9]+)", re.IGNORECASE)
LISTING_PATH_RE = re.compile(r"/([^/]+)/product-reviews/([a-z0-9]+)", re.IGNORECASE)
ITEM_TOKEN_RE = re.compile(r"(itm[a-z0-9]+)", re.IGNORECASE)
PRODUCT_ID_RE = re.compile(r"^[A-Za-z0-9]{10,24}$")
LISTING_ID_RE = re.compile(r"^[A-Za-z0-9]{10,40}$")


@dataclass(frozen=True)
class CanonicalTarget:
    """Canonical review-listing URL and the identifiers found on the way."""

    url: str
    product_id: Optional[str]
    listing_id: Optional[str]


def is_valid_product_id(value: Optional[str]) -> bool:
    """Product ids are alphanumeric, 10-24 chars; anything else is unknown."""
    return bool(value) and bool(PRODUCT_ID_RE.match(value or ""))


def get_etld_plus_one(netloc: str) -> str:
    """
    Return eTLD+1 (site domain) for same-site comparison.

    Heuristic: strip leading "www." and any port, then for 3+ parts use the last two
    (e.g. rome.api.example.com -> example.com).
    """
    n = (netloc or "").lower().strip().split(":")[0]
    if not n:
        return ""
    if n.startswith("www."):
        n = n[4:]
    parts = n.split(".")
    if len(parts) >= 3:
        return ".".join(parts[-2:])
    return n


def _query_parts(query: str) -> list[str]:
    return [p for p in query.split("&") if p]


def _part_key(part: str) -> str:
    return unquote(part.split("=", 1)[0])


def _without_param(query: str, name: str) -> str:
    return "&".join(p for p in _query_parts(query) if _part_key(p) != name)


def _query_value(query: str, name: str) -> Optional[str]:
    for key, value in parse_qsl(query, keep_blank_values=True):
        if key == name:
            return value.strip() or None
    return None


def _identifiers(query: str) -> tuple[Optional[str], Optional[str]]:
    pid = _query_value(query, PRODUCT_ID_PARAM)
    lid = _query_value(query, LISTING_ID_PARAM)
    product_id = pid if is_valid_product_id(pid) else None
    listing_id = lid if lid and LISTING_ID_RE.match(lid) else None
    return product_id, listing_id


def _carried_query(query: str) -> str:
    """Keep only pid/lid parts, verbatim, in their original order."""
    keep = {PRODUCT_ID_PARAM, LISTING_ID_PARAM}
    return "&".join(p for p in _query_parts(query) if _part_key(p) in keep)


def canonicalize_url(url: str) -> CanonicalTarget:
    """
    Turn an arbitrary product or review URL into a canonical review-listing URL.

    Rules, first match wins:
    1. Path already a review listing: keep verbatim, strip only the page parameter.
    2. Product-detail path /{slug}/p/{itm-token}: rewrite to
       /{slug}/product-reviews/{itm-token}, carrying pid/lid over.
    3. An itm token elsewhere in the path (or, failing that, a valid pid):
       synthesize the listing path from the first path segment as slug.
    4. Otherwise return the input unchanged.

    Idempotent: canonicalize_url(canonicalize_url(u).url) == canonicalize_url(u).
    """
    raw = (url or "").strip()
    try:
        parts = urlsplit(raw)
    except ValueError:
        return CanonicalTarget(raw, None, None)
    if parts.scheme not in ("http", "https") or not parts.netloc:
        return CanonicalTarget(raw, None, None)

    product_id, listing_id = _identifiers(parts.query)
    path = parts.path or "/"

    if LISTING_PATH_MARKER in path:
        query = _without_param(parts.query, PAGE_PARAM)
        canonical = urlunsplit((parts.scheme, parts.netloc, path, query, parts.fragment))
        return CanonicalTarget(canonical, product_id, listing_id)

    match = PRODUCT_PATH_RE.search(path)
    if match:
        slug, token = match.group(1), match.group(2)
    else:
        segments = [s for s in path.split("/") if s]
        token_match = ITEM_TOKEN_RE.search(path)
        if token_match:
            token = token_match.group(1)
        elif product_id:
            token = product_id
        else:
            return CanonicalTarget(raw, product_id, listing_id)
        slug = segments[0] if segments and segments[0] != token else "product"

    listing_path = f"/{slug}/product-reviews/{token}"
    canonical = urlunsplit(
        (parts.scheme, parts.netloc, listing_path, _carried_query(parts.query), "")
    )
    return CanonicalTarget(canonical, product_id, listing_id)


def listing_page_url(url: str, page: int) -> str:
    """Listing URL for a 1-based page; page 1 carries no page parameter."""
    parts = urlsplit(url)
    query = _without_param(parts.query, PAGE_PARAM)
    if page > 1:
        query = f"{query}&{PAGE_PARAM}={page}" if query else f"{PAGE_PARAM}={page}"
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


def product_info_from_url(url: str) -> tuple[Optional[str], Optional[str]]:
    """
    Product name and item token from a listing or product path.

    Name is the slug with dashes turned into spaces.
    """
    path = urlsplit(url or "").path
    match = LISTING_PATH_RE.search(path) or PRODUCT_PATH_RE.search(path)
    if not match:
        return None, None
    return match.group(1).replace("-", " "), match.group(2)


def item_token(url: str) -> Optional[str]:
    """Lowercased item token of a listing or product URL, or None."""
    token = product_info_from_url(url)[1]
    return token.lower() if token else None
