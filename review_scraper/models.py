"""
Pipeline data model: review records, per-target state, discovered API contracts.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Literal, Optional, Union

# Parsed JSON as produced by json.loads; walkers dispatch on isinstance.
JsonValue = Union[None, bool, int, float, str, list, dict]

PaginationKind = Literal["query-page", "query-offset", "body-page", "body-offset"]


class Tier(str, Enum):
    """Extraction tiers in escalation order."""

    DISCOVER_AND_REPLAY = "discover_and_replay"
    DIRECT_API_PAGING = "direct_api_paging"
    HTML_PAGE_PAGING = "html_page_paging"
    BROWSER_PAGE_PAGING = "browser_page_paging"
    DONE = "done"


TIER_ORDER = (
    Tier.DISCOVER_AND_REPLAY,
    Tier.DIRECT_API_PAGING,
    Tier.HTML_PAGE_PAGING,
    Tier.BROWSER_PAGE_PAGING,
)


def derive_review_id(
    author: Optional[str],
    title: Optional[str],
    text: Optional[str],
    date: Optional[str],
    rating: Optional[float],
) -> str:
    """
    Deterministic identity for records whose source carries none.

    Same fields give the same id across channels. Distinct reviews with
    identical fields collide; that is accepted.
    """
    payload = json.dumps([author, title, text, date, rating], ensure_ascii=False)
    return "h-" + hashlib.sha1(payload.encode("utf-8")).hexdigest()[:24]


@dataclass(frozen=True)
class ReviewRecord:
    """One extracted review; the unit appended to the output dataset."""

    review_id: str
    source_url: str
    product_name: Optional[str] = None
    product_id: Optional[str] = None
    rating: Optional[float] = None
    title: Optional[str] = None
    text: Optional[str] = None
    author: Optional[str] = None
    date: Optional[str] = None
    verified_purchase: bool = False
    helpful_count: int = 0
    images: list[str] = field(default_factory=list)
    location: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TargetState:
    """Mutable per-target state; lives while one input URL is processed."""

    input_url: str
    canonical_url: str
    product_id: Optional[str] = None
    listing_id: Optional[str] = None
    consecutive_empty_pages: int = 0
    current_tier: Tier = Tier.DISCOVER_AND_REPLAY
    failure_reason: Optional[str] = None


@dataclass(frozen=True)
class PaginationRule:
    """
    How to advance a discovered request to page n.

    Page kinds write n itself into `key`. Offset kinds write
    base + (n - 1) * step, treating the observed request as page 1.
    Body keys may be dotted paths into nested objects.
    """

    kind: PaginationKind
    key: str
    step: int = 1
    base: int = 0

    @property
    def in_body(self) -> bool:
        return self.kind.startswith("body-")

    def value_for_page(self, page: int) -> int:
        if self.kind.endswith("-page"):
            return page
        return self.base + (page - 1) * self.step


@dataclass(frozen=True)
class ApiContract:
    """A replayable request template inferred from one observed exchange."""

    method: str
    url: str
    headers: dict[str, str]
    body_template: Optional[dict] = None
    pagination: Optional[PaginationRule] = None
    # Page number the observed request corresponds to
    start_page: int = 1

    @property
    def paginated(self) -> bool:
        return self.pagination is not None


@dataclass
class TargetOutcome:
    """Per-target result for the run summary."""

    input_url: str
    canonical_url: str
    saved: int
    tiers_attempted: list[str] = field(default_factory=list)
    failure_reason: Optional[str] = None


@dataclass
class RunSummary:
    """What the run produced; `no_results` is the user-visible empty condition."""

    total_saved: int
    wanted: int
    deadline_reached: bool
    targets: list[TargetOutcome] = field(default_factory=list)

    @property
    def no_results(self) -> bool:
        return self.total_saved == 0

    @property
    def attempted_urls(self) -> list[str]:
        return [t.canonical_url for t in self.targets]
