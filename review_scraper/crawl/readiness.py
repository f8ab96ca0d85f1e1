"""
Page readiness: wait for the rendered document to settle before reading its state.

A soft timeout never fails the page; the caller reads whatever has rendered.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from shared.logging import get_logger
from review_scraper.constants import MINIMUM_WAIT_AFTER_LOAD, SETTLE_TIMEOUT_MS

logger = get_logger(__name__)


async def wait_for_page_ready(page: Page, soft_timeout: int = SETTLE_TIMEOUT_MS) -> dict:
    """
    Wait for network idle (bounded by soft_timeout), then a minimum dwell.

    Returns load timings with unreached milestones as None.
    """
    start_time = datetime.now(timezone.utc)
    timings: dict = {
        "navigation_start": start_time.isoformat(),
        "network_idle": None,
        "ready": None,
        "total_load_duration_ms": None,
        "soft_timeout": False,
    }

    try:
        await page.wait_for_load_state("networkidle", timeout=soft_timeout)
        timings["network_idle"] = datetime.now(timezone.utc).isoformat()
    except PlaywrightTimeoutError:
        logger.warning("page_ready_soft_timeout", timeout_ms=soft_timeout)
        timings["soft_timeout"] = True

    await asyncio.sleep(MINIMUM_WAIT_AFTER_LOAD / 1000)
    ready_time = datetime.now(timezone.utc)
    timings["ready"] = ready_time.isoformat()
    timings["total_load_duration_ms"] = (ready_time - start_time).total_seconds() * 1000

    logger.info(
        "readiness_complete",
        network_idle=timings["network_idle"],
        total_load_duration_ms=timings["total_load_duration_ms"],
        soft_timeout=timings["soft_timeout"],
    )
    return timings
