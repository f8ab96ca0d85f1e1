"""
Escalation orchestrator: runs each target through the tiers in order.

Per target: DISCOVER_AND_REPLAY -> DIRECT_API_PAGING -> HTML_PAGE_PAGING,
then BROWSER_PAGE_PAGING only when HTML paging failed hard on page 1. Every
tier is gated on an unmet quota and a deadline that is not near. Targets run
sequentially; a failure in one is logged and isolated.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Optional, Sequence

from shared.logging import bind_request_context, clear_request_context, get_logger
from review_scraper.accumulator import ReviewAccumulator
from review_scraper.constants import DEFAULT_MAX_PAGES
from review_scraper.crawl.browser import BrowserLauncher
from review_scraper.crawl.urls import canonicalize_url
from review_scraper.deadline import Deadline
from review_scraper.errors import get_user_safe_failure_reason
from review_scraper.fetching import ProxyConfiguration
from review_scraper.models import RunSummary, TargetOutcome, TargetState, Tier
from review_scraper.retry import Fetcher
from review_scraper.tiers import (
    DebugStore,
    TierResult,
    run_browser_tier,
    run_direct_api_tier,
    run_discovery_tier,
    run_html_tier,
)

logger = get_logger(__name__)


class ReviewScraper:
    """
    Runs the tier pipeline for a list of input URLs.

    `launcher` is optional; without it the browser tiers are skipped.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        accumulator: ReviewAccumulator,
        deadline: Deadline,
        *,
        launcher: Optional[BrowserLauncher] = None,
        proxy: Optional[ProxyConfiguration] = None,
        debug_store: Optional[DebugStore] = None,
        max_pages: int = DEFAULT_MAX_PAGES,
    ) -> None:
        self.fetcher = fetcher
        self.accumulator = accumulator
        self.deadline = deadline
        self.launcher = launcher
        self.proxy = proxy
        self.debug_store = debug_store
        self.max_pages = max_pages

    def _can_continue(self) -> bool:
        return not self.accumulator.quota_reached and not self.deadline.near()

    async def _run_tier(
        self,
        target: TargetState,
        outcome: TargetOutcome,
        tier: Tier,
        runner: Callable[[], Awaitable[TierResult]],
    ) -> Optional[TierResult]:
        """Run one tier under bound log context; an unexpected error ends only that tier."""
        target.current_tier = tier
        outcome.tiers_attempted.append(tier.value)
        bind_request_context(target_url=target.canonical_url, tier=tier.value, product_id=target.product_id)
        logger.info("tier.start", total_saved=self.accumulator.total_saved)
        try:
            result = await runner()
        except Exception as e:
            logger.error("tier.failed", error=str(e), error_type=type(e).__name__)
            target.failure_reason = get_user_safe_failure_reason(e)
            return None
        if result.failure_reason:
            target.failure_reason = result.failure_reason
        logger.info(
            "tier.done",
            saved=result.saved,
            escalate=result.escalate,
            failure_reason=result.failure_reason,
            total_saved=self.accumulator.total_saved,
        )
        return result

    async def scrape_target(self, input_url: str) -> TargetOutcome:
        canonical = canonicalize_url(input_url)
        target = TargetState(
            input_url=input_url,
            canonical_url=canonical.url,
            product_id=canonical.product_id,
            listing_id=canonical.listing_id,
        )
        outcome = TargetOutcome(input_url=input_url, canonical_url=target.canonical_url, saved=0)
        bind_request_context(target_url=target.canonical_url, product_id=target.product_id)
        logger.info("target.start", input_url=input_url)
        before = self.accumulator.total_saved
        pages = self.max_pages

        if self.launcher is not None and self._can_continue():
            launcher = self.launcher
            await self._run_tier(
                target,
                outcome,
                Tier.DISCOVER_AND_REPLAY,
                lambda: run_discovery_tier(launcher, target, self.accumulator, self.deadline, max_pages=pages),
            )

        if target.product_id and self._can_continue():
            await self._run_tier(
                target,
                outcome,
                Tier.DIRECT_API_PAGING,
                lambda: run_direct_api_tier(
                    self.fetcher, target, self.accumulator, self.deadline, max_pages=pages, proxy=self.proxy
                ),
            )

        html_result: Optional[TierResult] = None
        if self._can_continue():
            html_result = await self._run_tier(
                target,
                outcome,
                Tier.HTML_PAGE_PAGING,
                lambda: run_html_tier(
                    self.fetcher,
                    target,
                    self.accumulator,
                    self.deadline,
                    max_pages=pages,
                    proxy=self.proxy,
                    debug_store=self.debug_store,
                ),
            )

        if (
            html_result is not None
            and html_result.escalate
            and self.launcher is not None
            and self._can_continue()
        ):
            launcher = self.launcher
            await self._run_tier(
                target,
                outcome,
                Tier.BROWSER_PAGE_PAGING,
                lambda: run_browser_tier(
                    launcher,
                    target,
                    self.accumulator,
                    self.deadline,
                    max_pages=pages,
                    debug_store=self.debug_store,
                ),
            )

        target.current_tier = Tier.DONE
        outcome.canonical_url = target.canonical_url
        outcome.saved = self.accumulator.total_saved - before
        if outcome.saved == 0:
            outcome.failure_reason = target.failure_reason
        logger.info(
            "target.done",
            saved=outcome.saved,
            tiers=outcome.tiers_attempted,
            failure_reason=outcome.failure_reason,
        )
        return outcome

    async def run(self, urls: Sequence[str]) -> RunSummary:
        """Scrape every URL in order, then force the final flush."""
        summary = RunSummary(total_saved=0, wanted=self.accumulator.wanted_count, deadline_reached=False)
        try:
            for url in urls:
                if not self._can_continue():
                    break
                try:
                    summary.targets.append(await self.scrape_target(url))
                except Exception as e:
                    logger.error("target_failed", input_url=url, error=str(e), error_type=type(e).__name__)
                    summary.targets.append(
                        TargetOutcome(
                            input_url=url,
                            canonical_url=canonicalize_url(url).url,
                            saved=0,
                            failure_reason=get_user_safe_failure_reason(e),
                        )
                    )
                finally:
                    clear_request_context()
        finally:
            await self.accumulator.flush()

        summary.total_saved = self.accumulator.total_saved
        summary.deadline_reached = self.deadline.near()
        if summary.no_results:
            logger.warning("no_results", attempted_urls=summary.attempted_urls)
        logger.info(
            "run.done",
            total_saved=summary.total_saved,
            wanted=summary.wanted,
            deadline_reached=summary.deadline_reached,
        )
        return summary
