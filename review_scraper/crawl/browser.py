"""
Playwright browser handle: context creation, scoped sessions, response observation.

A BrowserSession wraps one context + page and is owned by exactly one tier; it is
opened through BrowserLauncher.session() and closed when that block exits.
Network observation is a scoped subscription: the listener is registered on
entry and removed on exit, and captured bodies are awaited before the collected
list is final.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Optional

from playwright.async_api import (
    Browser,
    BrowserContext,
    Page,
    Playwright,
    Response,
    async_playwright,
)

from shared.logging import get_logger
from review_scraper.constants import DESKTOP_USER_AGENT
from review_scraper.crawl.navigation_retry import NavigateResult, navigate_with_retry
from review_scraper.crawl.readiness import wait_for_page_ready
from review_scraper.crawl.state import STATE_GLOBAL
from review_scraper.errors import TransportError
from review_scraper.fetching import FetchResponse, ProxyConfiguration, playwright_proxy_settings
from review_scraper.models import JsonValue

logger = get_logger(__name__)

OBSERVED_RESOURCE_TYPES = frozenset({"xhr", "fetch"})

# Reads the state global as plain JSON; null when unset or not serializable.
_READ_STATE_JS = """
(name) => {
  const value = window[name];
  if (value === undefined || value === null) return null;
  try {
    return JSON.parse(JSON.stringify(value));
  } catch (e) {
    return null;
  }
}
"""

# Same-origin fetch from inside the page so the session's cookies apply.
_IN_PAGE_FETCH_JS = """
async (req) => {
  try {
    const init = { method: req.method, headers: req.headers || {}, credentials: 'include' };
    if (req.body !== null && req.body !== undefined) init.body = req.body;
    const res = await fetch(req.url, init);
    const text = await res.text();
    const headers = {};
    res.headers.forEach((v, k) => { headers[k] = v; });
    return { ok: true, status: res.status, body: text, headers, url: res.url };
  } catch (e) {
    return { ok: false, error: String(e) };
  }
}
"""


@dataclass
class ObservedExchange:
    """One request/response pair seen while a page was loading."""

    url: str
    method: str
    status: int
    request_headers: dict[str, str]
    post_data: Optional[str]
    body: Optional[str]


async def create_browser_context(
    browser: Browser,
    proxy_url: Optional[str] = None,
) -> BrowserContext:
    """
    Create a desktop browser context.

    Uses stable UA, viewport, and timezone for anti-bot considerations.
    """
    options: dict[str, Any] = {
        "viewport": {"width": 1920, "height": 1080},
        "user_agent": DESKTOP_USER_AGENT,
        "timezone_id": "Asia/Kolkata",
        "locale": "en-IN",
    }
    if proxy_url:
        options["proxy"] = playwright_proxy_settings(proxy_url)
    return await browser.new_context(**options)


class BrowserSession:
    """Navigation, evaluation and observation on a single page."""

    def __init__(self, context: BrowserContext, page: Page) -> None:
        self._context = context
        self.page = page

    async def navigate(self, url: str) -> NavigateResult:
        return await navigate_with_retry(self.page, url)

    async def wait_until_settled(self) -> None:
        await wait_for_page_ready(self.page)

    async def evaluate(self, expression: str, arg: Any = None) -> Any:
        return await self.page.evaluate(expression, arg)

    async def current_html(self) -> str:
        return await self.page.content()

    async def read_state(self, name: str = STATE_GLOBAL) -> JsonValue:
        """The page's evaluated state global, or None when unset."""
        return await self.evaluate(_READ_STATE_JS, name)

    async def fetch_in_page(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
    ) -> FetchResponse:
        """Issue a fetch from the page context; raises TransportError when it throws."""
        if isinstance(body, (dict, list)):
            body = json.dumps(body)
        raw = await self.evaluate(
            _IN_PAGE_FETCH_JS,
            {"url": url, "method": method, "headers": headers or {}, "body": body},
        )
        if not raw or not raw.get("ok"):
            error = (raw or {}).get("error", "in-page fetch failed")
            raise TransportError(f"in-page fetch: {error}")
        return FetchResponse(
            status_code=int(raw.get("status", 0)),
            body=raw.get("body") or "",
            headers=raw.get("headers") or {},
            url=raw.get("url") or url,
        )

    @asynccontextmanager
    async def observe_responses(
        self,
        url_filter: Optional[Callable[[str], bool]] = None,
    ) -> AsyncIterator[list[ObservedExchange]]:
        """
        Collect xhr/fetch exchanges while the block runs.

        The yielded list is complete only after the block exits.
        """
        collected: list[ObservedExchange] = []
        pending: set[asyncio.Task] = set()

        async def _capture(response: Response) -> None:
            request = response.request
            try:
                headers = await request.all_headers()
            except Exception:
                headers = dict(request.headers)
            try:
                body: Optional[str] = await response.text()
            except Exception as e:
                logger.debug("observe.body_unavailable", url=response.url, error=str(e))
                body = None
            collected.append(
                ObservedExchange(
                    url=response.url,
                    method=request.method,
                    status=response.status,
                    request_headers=headers,
                    post_data=request.post_data,
                    body=body,
                )
            )

        def _on_response(response: Response) -> None:
            if response.request.resource_type not in OBSERVED_RESOURCE_TYPES:
                return
            if url_filter is not None and not url_filter(response.url):
                return
            task = asyncio.ensure_future(_capture(response))
            pending.add(task)
            task.add_done_callback(pending.discard)

        self.page.on("response", _on_response)
        try:
            yield collected
        finally:
            self.page.remove_listener("response", _on_response)
            if pending:
                await asyncio.gather(*list(pending), return_exceptions=True)

    async def close(self) -> None:
        try:
            await self.page.close()
        finally:
            await self._context.close()


class BrowserLauncher:
    """
    Lazily started Chromium shared by the run; sessions are per tier.

    Nothing is launched until the first session is requested.
    """

    def __init__(self, headless: bool = True, proxy: Optional[ProxyConfiguration] = None) -> None:
        self.headless = headless
        self.proxy = proxy
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    async def _get_browser(self) -> Browser:
        async with self._lock:
            if self._browser is None:
                self._playwright = await async_playwright().start()
                self._browser = await self._playwright.chromium.launch(headless=self.headless)
                logger.info("browser_launched", headless=self.headless)
            return self._browser

    @asynccontextmanager
    async def session(self) -> AsyncIterator[BrowserSession]:
        browser = await self._get_browser()
        proxy_url = self.proxy.new_url() if self.proxy else None
        context = await create_browser_context(browser, proxy_url)
        page = await context.new_page()
        session = BrowserSession(context, page)
        try:
            yield session
        finally:
            await session.close()

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
