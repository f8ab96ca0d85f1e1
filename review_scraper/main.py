"""
Command entry point: load configuration and run input, scrape, exit.

Exit code is 0 on success, including a run that saved nothing, unless the
input sets failOnEmpty. Invalid input exits with 1.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

from dotenv import load_dotenv

from shared.config import AppConfig, get_config
from shared.logging import configure_logging, get_logger
from review_scraper.accumulator import ReviewAccumulator
from review_scraper.crawl.browser import BrowserLauncher
from review_scraper.deadline import Deadline
from review_scraper.fetching import HttpFetcher, ProxyConfiguration
from review_scraper.inputs import RunInput, load_run_input
from review_scraper.models import RunSummary
from review_scraper.orchestrator import ReviewScraper
from review_scraper.storage import JsonlDatasetSink, LocalDebugStore

load_dotenv()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="review-scraper",
        description="Extract product reviews through API discovery, direct API, HTML and browser paging.",
    )
    parser.add_argument("--input", help="Path to the JSON run input (default: INPUT_PATH or ./INPUT.json)")
    parser.add_argument("--url", action="append", dest="urls", help="Start URL; may be repeated")
    parser.add_argument("--results-wanted", type=int, help="Stop after this many reviews")
    parser.add_argument("--max-pages", type=int, help="Page limit per tier (max 200)")
    parser.add_argument("--no-browser", action="store_true", help="Skip the discovery and browser tiers")
    return parser


async def run(run_input: RunInput, config: AppConfig) -> RunSummary:
    """Wire the collaborators for one run and scrape every target."""
    proxy = ProxyConfiguration.from_input(run_input.proxy_configuration)
    accumulator = ReviewAccumulator(JsonlDatasetSink(config.output_dir), run_input.results_wanted)
    deadline = Deadline(config.run_timeout_seconds, config.deadline_safety_margin_seconds)
    launcher = (
        BrowserLauncher(headless=config.browser_headless, proxy=proxy) if run_input.use_browser else None
    )

    async with HttpFetcher(timeout_seconds=config.http_timeout_seconds) as fetcher:
        scraper = ReviewScraper(
            fetcher,
            accumulator,
            deadline,
            launcher=launcher,
            proxy=proxy,
            debug_store=LocalDebugStore(config.debug_dir),
            max_pages=run_input.max_pages,
        )
        try:
            return await scraper.run(run_input.urls)
        finally:
            if launcher is not None:
                await launcher.close()


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Parse arguments, run the scrape and exit with its status."""
    args = build_parser().parse_args(argv)
    config = get_config()

    log_level = logging.getLevelName(config.log_level.upper())
    configure_logging(
        level=log_level,
        log_file=config.log_file,
        log_stdout=config.log_stdout,
    )
    logger = get_logger(__name__)

    try:
        run_input = load_run_input(args.input or config.input_path).with_overrides(
            urls=args.urls,
            results_wanted=args.results_wanted,
            max_pages=args.max_pages,
            use_browser=False if args.no_browser else None,
        )
        run_input.validate()
    except ValueError as e:
        logger.error("invalid_input", error=str(e))
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    logger.info(
        "run_starting",
        urls=run_input.urls,
        results_wanted=run_input.results_wanted,
        max_pages=run_input.max_pages,
        use_browser=run_input.use_browser,
        proxied=run_input.proxy_configuration is not None,
    )

    try:
        summary = asyncio.run(run(run_input, config))
    except KeyboardInterrupt:
        logger.info("run_interrupted")
        sys.exit(130)

    if summary.no_results:
        print(
            "No reviews extracted. Attempted: " + ", ".join(summary.attempted_urls),
            file=sys.stderr,
        )
        if run_input.fail_on_empty:
            sys.exit(1)
    else:
        print(f"Saved {summary.total_saved} reviews.")


if __name__ == "__main__":
    main()
