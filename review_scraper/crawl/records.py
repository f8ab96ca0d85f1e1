"""
Structural review recognition over schema-less JSON.

Works on any parsed JSON regardless of the channel that produced it (page
state, discovered API, direct API). Two passes, first non-empty wins:

- strict: objects carrying a known review type discriminator and a string id
- loose: objects with an id-like string, a text- or title-like string and a
  finite numeric rating, under any of several field-name aliases

Records are deduplicated by identity within one call only; cross-channel
dedup is the accumulator's job.
"""

from __future__ import annotations

import math
from typing import Any, Callable, Optional, Sequence
from urllib.parse import urljoin

from review_scraper.crawl.jsonwalk import get_path, iter_objects
from review_scraper.crawl.text import normalize_whitespace
from review_scraper.crawl.urls import is_valid_product_id, product_info_from_url
from review_scraper.models import JsonValue, ReviewRecord, derive_review_id

TYPE_KEYS = ("type", "__typename")
REVIEW_TYPE_DISCRIMINATORS = frozenset(
    {"ProductReviewValue", "ReviewValue", "ProductReview", "UserReview"}
)

ID_ALIASES = ("id", "reviewId", "review_id", "reviewID", "uuid")
TEXT_ALIASES = ("text", "reviewText", "review_text", "reviewBody", "body", "content", "comment")
TITLE_ALIASES = ("title", "reviewTitle", "headline", "summary")
RATING_ALIASES = (
    "rating",
    "ratingValue",
    "overallRating",
    "stars",
    "score",
    "reviewRating.ratingValue",
)
AUTHOR_ALIASES = ("author", "authorName", "reviewerName", "userName", "nickname", "user.name")
DATE_ALIASES = (
    "created",
    "date",
    "createdAt",
    "created_at",
    "reviewDate",
    "submissionTime",
    "datePublished",
)
VERIFIED_ALIASES = ("certifiedBuyer", "verifiedPurchase", "verified_purchase", "isVerified", "verified")
HELPFUL_ALIASES = (
    "helpfulCount",
    "upvote.value.count",
    "upvote.count",
    "helpfulVotes",
    "helpful_count",
    "upvotes",
    "likes",
)
IMAGE_LIST_ALIASES = ("images", "reviewImages", "photos", "media")
IMAGE_URL_KEYS = ("url", "imageURL", "imageUrl", "src", "value.imageURL", "value.url")
PRODUCT_ID_ALIASES = ("productId", "pid")

# Image URL templates carry size/quality placeholders; request the largest rendition.
IMAGE_TEMPLATE_VALUES = {
    "{@width}": "1920",
    "{@height}": "1920",
    "{@quality}": "100",
}


def coerce_number(value: Any) -> Optional[float]:
    """Number from an int/float or numeric string; None when absent or not finite."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _lookup(obj: dict, key: str) -> JsonValue:
    return get_path(obj, key) if "." in key else obj.get(key)


def _first_string(obj: dict, aliases: Sequence[str]) -> Optional[str]:
    for key in aliases:
        value = _lookup(obj, key)
        if isinstance(value, str):
            text = normalize_whitespace(value)
            if text:
                return text
    return None


def _first_number(obj: dict, aliases: Sequence[str]) -> Optional[float]:
    for key in aliases:
        number = coerce_number(_lookup(obj, key))
        if number is not None:
            return number
    return None


def _author(obj: dict) -> Optional[str]:
    for key in AUTHOR_ALIASES:
        value = _lookup(obj, key)
        if isinstance(value, dict):
            value = value.get("name") or value.get("displayName")
        if isinstance(value, str) and value.strip():
            return normalize_whitespace(value)
    return None


def _verified(obj: dict) -> bool:
    for key in VERIFIED_ALIASES:
        value = obj.get(key)
        if value is not None:
            return bool(value)
    return False


def _helpful_count(obj: dict) -> int:
    number = _first_number(obj, HELPFUL_ALIASES)
    if number is None:
        return 0
    return max(0, int(number))


def _rating(obj: dict) -> Optional[float]:
    number = _first_number(obj, RATING_ALIASES)
    if number is None or not 1 <= number <= 5:
        return None
    return number


def _location(obj: dict) -> Optional[str]:
    value = obj.get("location")
    if isinstance(value, str):
        return normalize_whitespace(value) or None
    if isinstance(value, dict):
        parts = [
            normalize_whitespace(str(value[k]))
            for k in ("city", "state", "country")
            if isinstance(value.get(k), str) and value[k].strip()
        ]
        return ", ".join(parts) or None
    return None


def resolve_image_url(raw: str, base_url: str) -> Optional[str]:
    """Fill size/quality placeholders and make the URL absolute."""
    url = raw.strip()
    if not url:
        return None
    for placeholder, value in IMAGE_TEMPLATE_VALUES.items():
        url = url.replace(placeholder, value)
    if url.startswith("//"):
        url = "https:" + url
    absolute = urljoin(base_url, url)
    if not absolute.startswith(("http://", "https://")):
        return None
    return absolute


def _images(obj: dict, base_url: str) -> list[str]:
    raw_urls: list[str] = []
    for key in IMAGE_LIST_ALIASES:
        items = obj.get(key)
        if not isinstance(items, list):
            continue
        for item in items:
            if isinstance(item, str):
                raw_urls.append(item)
            elif isinstance(item, dict):
                for url_key in IMAGE_URL_KEYS:
                    value = _lookup(item, url_key)
                    if isinstance(value, str):
                        raw_urls.append(value)
                        break

    seen: set[str] = set()
    images: list[str] = []
    for raw in raw_urls:
        url = resolve_image_url(raw, base_url)
        if url and url not in seen:
            seen.add(url)
            images.append(url)
    return images


def _identity(obj: dict) -> Optional[str]:
    for key in ID_ALIASES:
        value = obj.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _build_record(
    obj: dict,
    review_id: Optional[str],
    source_url: str,
    product_id: Optional[str],
    product_name: Optional[str],
) -> ReviewRecord:
    title = _first_string(obj, TITLE_ALIASES)
    text = _first_string(obj, TEXT_ALIASES)
    author = _author(obj)
    date = _first_string(obj, DATE_ALIASES)
    rating = _rating(obj)

    own_product_id = _first_string(obj, PRODUCT_ID_ALIASES)
    if not is_valid_product_id(own_product_id):
        own_product_id = None

    return ReviewRecord(
        review_id=review_id or derive_review_id(author, title, text, date, rating),
        source_url=source_url,
        product_name=product_name,
        product_id=own_product_id or product_id,
        rating=rating,
        title=title,
        text=text,
        author=author,
        date=date,
        verified_purchase=_verified(obj),
        helpful_count=_helpful_count(obj),
        images=_images(obj, source_url),
        location=_location(obj),
    )


def is_strict_review(obj: dict) -> bool:
    """Known type discriminator plus a string id."""
    type_value = next((obj.get(k) for k in TYPE_KEYS if isinstance(obj.get(k), str)), None)
    if type_value not in REVIEW_TYPE_DISCRIMINATORS:
        return False
    review_id = obj.get("id")
    return isinstance(review_id, str) and bool(review_id.strip())


def is_loose_review(obj: dict) -> bool:
    """Id-like string, text- or title-like string and a finite numeric rating."""
    if _identity(obj) is None:
        return False
    if _first_string(obj, TEXT_ALIASES) is None and _first_string(obj, TITLE_ALIASES) is None:
        return False
    return _first_number(obj, RATING_ALIASES) is not None


def _collect(
    value: JsonValue,
    predicate: Callable[[dict], bool],
    source_url: str,
    product_id: Optional[str],
    product_name: Optional[str],
) -> list[ReviewRecord]:
    records: list[ReviewRecord] = []
    seen: set[str] = set()
    for obj in iter_objects(value):
        if not predicate(obj):
            continue
        record = _build_record(obj, _identity(obj), source_url, product_id, product_name)
        if record.review_id in seen:
            continue
        seen.add(record.review_id)
        records.append(record)
    return records


def recognize_reviews(
    value: JsonValue,
    source_url: str,
    product_id: Optional[str] = None,
    product_name: Optional[str] = None,
) -> list[ReviewRecord]:
    """
    Every review-shaped node in `value`, strict pass first, loose pass as fallback.

    Product name/id fall back to the caller's context, then to the URL slug and
    item token.
    """
    if value is None or isinstance(value, (str, int, float, bool)):
        return []

    url_name, url_token = product_info_from_url(source_url)
    product_name = product_name or url_name
    product_id = product_id or url_token

    records = _collect(value, is_strict_review, source_url, product_id, product_name)
    if records:
        return records
    return _collect(value, is_loose_review, source_url, product_id, product_name)
