"""
Browser navigation with retries: backoff, failure classification, bot-block mitigation.

Every browser navigation (discovery and browser paging) goes through
navigate_with_retry: max 3 attempts with 1s/2s/4s backoff plus jitter, retry on
timeouts, net::ERR_* and 403/429/503, and at most one bot-block mitigation
(wait 2 s, reload) before giving up.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Optional

from playwright.async_api import Page, Response
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from shared.logging import get_logger
from review_scraper.constants import NAV_TIMEOUT_MS
from review_scraper.crawl.blocking import is_block_page

logger = get_logger(__name__)

MAX_NAV_ATTEMPTS = 3
BACKOFF_SECONDS = (1, 2, 4)
JITTER_MS = 500
HARD_PAGE_TIMEOUT_MS = 120_000
BOT_BLOCK_WAIT_SECONDS = 2


@dataclass
class NavigateResult:
    """Result of navigate_with_retry."""

    success: bool
    response: Optional[Response]
    error_summary: Optional[str]
    bot_block_mitigation_used: bool = False

    @property
    def status(self) -> Optional[int]:
        return self.response.status if self.response is not None else None


def _backoff_seconds(attempt: int) -> float:
    """Exponential backoff for attempt 1-based index; add jitter 0-500 ms."""
    base = BACKOFF_SECONDS[min(attempt - 1, len(BACKOFF_SECONDS) - 1)]
    jitter = random.uniform(0, JITTER_MS / 1000.0)
    return base + jitter


def _classify_failure(exc: BaseException) -> tuple[bool, str]:
    """
    Classify navigation failure as retryable or not.

    Returns (retryable, reason). Reason is one of: navigation_timeout, net_err,
    or non_retryable.
    """
    if isinstance(exc, PlaywrightTimeoutError):
        return True, "navigation_timeout"
    msg = (getattr(exc, "message", None) or str(exc)).lower()
    if "net::err_" in msg:
        return True, "net_err"
    return False, "non_retryable"


def _is_retryable_status(status: Optional[int]) -> bool:
    """Retry only on 403, 503, or 429 (rate-limit)."""
    return status in (403, 503, 429)


def _retry_reason_for_status(status: int) -> str:
    if status == 429:
        return "status_429"
    return "status_403_503"


async def is_bot_block_page(page: Page) -> bool:
    """
    Detect a rendered block page: block-page title or challenge-vendor markup.

    Pages carrying the embedded state are not blocked. Any failure reading the
    page counts as not blocked.
    """
    try:
        title = await page.title()
        html = await page.content()
        return is_block_page(html, title=title)
    except Exception:
        return False


async def navigate_with_retry(
    page: Page,
    url: str,
    *,
    nav_timeout_ms: int = NAV_TIMEOUT_MS,
    hard_page_timeout_ms: int = HARD_PAGE_TIMEOUT_MS,
) -> NavigateResult:
    """
    Navigate with retries: max 3 attempts, backoff, failure classification,
    and at most one bot-block mitigation (wait 2 s + reload).
    """
    page_elapsed_ms = 0.0
    last_response: Optional[Response] = None
    attempt = 0

    for attempt in range(1, MAX_NAV_ATTEMPTS + 1):
        logger.info("navigation.attempt", attempt=attempt, url=url)

        if page_elapsed_ms >= hard_page_timeout_ms:
            logger.warning(
                "navigation.failed",
                attempt=attempt,
                url=url,
                failure_classification="hard_timeout",
                elapsed_ms=page_elapsed_ms,
            )
            return NavigateResult(success=False, response=None, error_summary="Navigation timeout")

        attempt_start = time.monotonic()
        try:
            response = await page.goto(url, wait_until="domcontentloaded", timeout=nav_timeout_ms)
        except Exception as e:
            page_elapsed_ms += (time.monotonic() - attempt_start) * 1000
            retryable, reason = _classify_failure(e)
            if retryable and attempt < MAX_NAV_ATTEMPTS:
                backoff = _backoff_seconds(attempt)
                logger.info(
                    "navigation.retry",
                    reason=reason,
                    attempt=attempt,
                    backoff_s=round(backoff, 2),
                    url=url,
                    error=str(e),
                )
                await asyncio.sleep(backoff)
                page_elapsed_ms += backoff * 1000
                continue
            logger.error(
                "navigation.failed",
                attempt=attempt,
                url=url,
                failure_classification=reason,
                error=str(e),
            )
            return NavigateResult(
                success=False,
                response=None,
                error_summary=(
                    "Navigation timeout" if reason == "navigation_timeout" else "Navigation failed"
                ),
            )

        page_elapsed_ms += (time.monotonic() - attempt_start) * 1000
        last_response = response
        if response is None:
            break

        status = response.status
        if _is_retryable_status(status):
            reason_status = _retry_reason_for_status(status)
            if attempt < MAX_NAV_ATTEMPTS:
                backoff = _backoff_seconds(attempt)
                logger.info(
                    "navigation.retry",
                    reason=reason_status,
                    attempt=attempt,
                    backoff_s=round(backoff, 2),
                    url=url,
                    status=status,
                )
                await asyncio.sleep(backoff)
                page_elapsed_ms += backoff * 1000
                continue
            logger.info(
                "navigation.failed",
                attempt=attempt,
                url=url,
                failure_classification=reason_status,
                status=status,
            )
            return NavigateResult(
                success=False,
                response=response,
                error_summary="Blocked (403/429/503)",
            )

        if status >= 400:
            logger.error(
                "navigation.failed",
                attempt=attempt,
                url=url,
                failure_classification="non_retryable_status",
                status=status,
            )
            return NavigateResult(success=False, response=response, error_summary="Navigation failed")

        break

    if last_response is None:
        logger.info("navigation.success", attempt=attempt, url=url)
        return NavigateResult(success=True, response=None, error_summary=None)

    if await is_bot_block_page(page):
        logger.info("bot_block_detected", url=url)
        await asyncio.sleep(BOT_BLOCK_WAIT_SECONDS)
        try:
            await page.reload(wait_until="domcontentloaded", timeout=nav_timeout_ms)
        except Exception as e:
            logger.warning(
                "navigation.failed",
                url=url,
                failure_classification="bot_block_reload_failed",
                error=str(e),
            )
            return NavigateResult(
                success=False,
                response=last_response,
                error_summary="Bot-block",
                bot_block_mitigation_used=True,
            )
        if await is_bot_block_page(page):
            logger.info("navigation.failed", url=url, failure_classification="bot_block")
            return NavigateResult(
                success=False,
                response=last_response,
                error_summary="Bot-block",
                bot_block_mitigation_used=True,
            )
        logger.info("navigation.success", attempt=attempt, url=url, bot_block_mitigation_used=True)
        return NavigateResult(
            success=True,
            response=last_response,
            error_summary=None,
            bot_block_mitigation_used=True,
        )

    logger.info("navigation.success", attempt=attempt, url=url)
    return NavigateResult(success=True, response=last_response, error_summary=None)
