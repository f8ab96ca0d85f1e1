"""
Review-card fallback: parse rendered review cards out of listing HTML.

Used when a page carries no usable embedded state. Selector lists are tried in
order; the site rotates class names, so several generations are kept.
"""

from __future__ import annotations

import re
from typing import Optional

from bs4 import BeautifulSoup, Tag

from review_scraper.crawl.text import first_sentence_title, normalize_whitespace
from review_scraper.crawl.urls import product_info_from_url
from review_scraper.models import ReviewRecord, derive_review_id

CARD_CONTAINER_SELECTORS = ("div.gMdEY7.rmo75L", "div.col.EPCmJX")
CARD_FALLBACK_CONTAINER = "div[data-id]"
CARD_RATING_SELECTOR = "div.MKiFS6, div._3LWZlK, div.XQDdHH"
CARD_TEXT_SELECTOR = "div.HM2vKw, div.t-ZTKy, div.ZmyHeo, div._6K-7Co"
CARD_AUTHOR_SELECTOR = "p.zJ1ZGa.ZDi3w2, p._2sc7Ds, span._2V4MzO"
CARD_META_SELECTOR = "p.zJ1ZGa, p._2sc7Ds"
CARD_VERIFIED_SELECTOR = "p.Zhmv6U"
CARD_HELPFUL_SELECTOR = "span.Fp3hrV, span._3c3Px5"

CERTIFIED_BUYER_TEXT = "Certified Buyer"
DATE_PATTERN = re.compile(
    r"\b(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*,?\s*\d{4}",
    re.IGNORECASE,
)
DIGITS_PATTERN = re.compile(r"(\d+)")


def _find_containers(soup: BeautifulSoup) -> list[Tag]:
    for selector in CARD_CONTAINER_SELECTORS:
        found = soup.select(selector)
        if found:
            return found
    return [
        el for el in soup.select(CARD_FALLBACK_CONTAINER) if el.select_one(CARD_RATING_SELECTOR)
    ]


def _element_text(el: Optional[Tag]) -> Optional[str]:
    if el is None:
        return None
    return normalize_whitespace(el.get_text(" ")) or None


def _parse_card(
    card: Tag,
    source_url: str,
    product_name: Optional[str],
    product_id: Optional[str],
) -> Optional[ReviewRecord]:
    rating_text = _element_text(card.select_one(CARD_RATING_SELECTOR))
    rating_match = DIGITS_PATTERN.search(rating_text or "")
    rating = float(rating_match.group(1)) if rating_match else None
    if rating is not None and not 1 <= rating <= 5:
        rating = None

    text = _element_text(card.select_one(CARD_TEXT_SELECTOR))
    if not rating or not text:
        return None

    author = _element_text(card.select_one(CARD_AUTHOR_SELECTOR))

    date = None
    for meta in card.select(CARD_META_SELECTOR):
        meta_text = _element_text(meta)
        if meta_text and DATE_PATTERN.search(meta_text):
            date = meta_text
            break

    verified = card.select_one(CARD_VERIFIED_SELECTOR) is not None or (
        CERTIFIED_BUYER_TEXT in card.get_text(" ")
    )

    helpful_text = _element_text(card.select_one(CARD_HELPFUL_SELECTOR))
    helpful_match = DIGITS_PATTERN.search(helpful_text or "")
    helpful_count = int(helpful_match.group(1)) if helpful_match else 0

    title = first_sentence_title(text)
    return ReviewRecord(
        review_id=derive_review_id(author, title, text, date, rating),
        source_url=source_url,
        product_name=product_name,
        product_id=product_id,
        rating=rating,
        title=title,
        text=text,
        author=author,
        date=date,
        verified_purchase=verified,
        helpful_count=helpful_count,
    )


def parse_review_cards(
    html: str,
    source_url: str,
    product_id: Optional[str] = None,
) -> list[ReviewRecord]:
    """
    Review records from rendered review cards; cards without rating or text are skipped.

    Identity is always derived by hash since cards carry no review id.
    """
    if not html:
        return []
    url_name, url_token = product_info_from_url(source_url)
    soup = BeautifulSoup(html, "html.parser")

    records: list[ReviewRecord] = []
    seen: set[str] = set()
    for card in _find_containers(soup):
        record = _parse_card(card, source_url, url_name, product_id or url_token)
        if record is None or record.review_id in seen:
            continue
        seen.add(record.review_id)
        records.append(record)
    return records
