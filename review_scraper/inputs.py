"""
Run input: start URLs, quotas and proxy descriptor, read from a JSON input file.

URLs are merged from `startUrls` (strings or {"url": ...} objects), `startUrl`
and `url`, in that order, without duplicates. `results_wanted` is floored at 1
and `max_pages` capped at 200.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Optional, Sequence, Union

from shared.logging import get_logger
from review_scraper.constants import DEFAULT_MAX_PAGES, DEFAULT_RESULTS_WANTED, MAX_PAGES_CEILING

logger = get_logger(__name__)


def _coerce_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def clamp_results_wanted(value: Any) -> int:
    return max(1, _coerce_int(value, DEFAULT_RESULTS_WANTED))


def clamp_max_pages(value: Any) -> int:
    return min(MAX_PAGES_CEILING, max(1, _coerce_int(value, DEFAULT_MAX_PAGES)))


def merge_start_urls(data: dict) -> list[str]:
    urls: list[str] = []
    start_urls = data.get("startUrls") or []
    if isinstance(start_urls, (str, dict)):
        start_urls = [start_urls]
    candidates: list[Any] = list(start_urls) + [data.get("startUrl"), data.get("url")]
    for item in candidates:
        if isinstance(item, dict):
            item = item.get("url")
        if isinstance(item, str) and item.strip() and item.strip() not in urls:
            urls.append(item.strip())
    return urls


@dataclass(frozen=True)
class RunInput:
    urls: list[str]
    results_wanted: int = DEFAULT_RESULTS_WANTED
    max_pages: int = DEFAULT_MAX_PAGES
    proxy_configuration: Optional[dict] = None
    use_browser: bool = True
    fail_on_empty: bool = False

    @classmethod
    def from_mapping(cls, data: Optional[dict]) -> "RunInput":
        data = data or {}
        proxy = data.get("proxyConfiguration")
        return cls(
            urls=merge_start_urls(data),
            results_wanted=clamp_results_wanted(data.get("results_wanted", DEFAULT_RESULTS_WANTED)),
            max_pages=clamp_max_pages(data.get("max_pages", DEFAULT_MAX_PAGES)),
            proxy_configuration=proxy if isinstance(proxy, dict) else None,
            use_browser=bool(data.get("useBrowser", True)),
            fail_on_empty=bool(data.get("failOnEmpty", False)),
        )

    def with_overrides(
        self,
        *,
        urls: Optional[Sequence[str]] = None,
        results_wanted: Optional[int] = None,
        max_pages: Optional[int] = None,
        use_browser: Optional[bool] = None,
    ) -> "RunInput":
        """Apply command-line overrides; CLI URLs are added before file URLs."""
        changes: dict[str, Any] = {}
        if urls:
            merged = [u.strip() for u in urls if u and u.strip()]
            changes["urls"] = merged + [u for u in self.urls if u not in merged]
        if results_wanted is not None:
            changes["results_wanted"] = clamp_results_wanted(results_wanted)
        if max_pages is not None:
            changes["max_pages"] = clamp_max_pages(max_pages)
        if use_browser is not None:
            changes["use_browser"] = use_browser
        return replace(self, **changes) if changes else self

    def validate(self) -> None:
        if not self.urls:
            raise ValueError("No start URLs: provide startUrls, startUrl or url")


def load_run_input(path: Union[str, Path]) -> RunInput:
    """
    Read the input file. A missing file gives an empty input (CLI may supply URLs).

    Raises ValueError on invalid JSON or a non-object document.
    """
    path = Path(path)
    if not path.exists():
        logger.info("input_file_missing", path=str(path))
        return RunInput.from_mapping({})
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in input file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Input file {path} must contain a JSON object")
    return RunInput.from_mapping(data)
