"""
HTTP fetch client (httpx) and proxy configuration.

The fetcher is the transport boundary: httpx transport failures are raised as
TransportError; any HTTP response, whatever its status, is returned as a
FetchResponse. Retry and proxy rotation live in `review_scraper.retry`.
"""

from __future__ import annotations

import itertools
import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence
from urllib.parse import unquote, urlsplit

import httpx

from shared.logging import get_logger
from review_scraper.errors import MalformedPayload, TransportError
from review_scraper.models import JsonValue

logger = get_logger(__name__)

SESSION_PLACEHOLDER = "{session}"


@dataclass(frozen=True)
class FetchResponse:
    """Status, decoded body and headers of one HTTP exchange."""

    status_code: int
    body: str
    headers: dict[str, str] = field(default_factory=dict)
    url: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> JsonValue:
        try:
            return json.loads(self.body)
        except (json.JSONDecodeError, TypeError) as e:
            raise MalformedPayload("Malformed payload") from e


class ProxyConfiguration:
    """
    Rotating proxy descriptor; read-only once built.

    Each call to new_url() advances to the next proxy URL and, where the URL
    carries a `{session}` placeholder, fills it with a fresh session token so the
    upstream pool assigns a new exit IP.
    """

    def __init__(self, proxy_urls: Sequence[str]) -> None:
        urls = [u.strip() for u in proxy_urls if u and u.strip()]
        if not urls:
            raise ValueError("ProxyConfiguration requires at least one proxy URL")
        self.proxy_urls: tuple[str, ...] = tuple(urls)
        self._cycle = itertools.cycle(self.proxy_urls)

    @classmethod
    def from_input(cls, descriptor: Optional[dict]) -> Optional["ProxyConfiguration"]:
        """Build from the run input's proxyConfiguration object; None when unset or empty."""
        if not descriptor:
            return None
        urls = descriptor.get("proxyUrls") or []
        if isinstance(urls, str):
            urls = [urls]
        urls = [u for u in urls if isinstance(u, str) and u.strip()]
        if not urls:
            if descriptor.get("useApifyProxy"):
                logger.warning("proxy.platform_proxy_unsupported")
            return None
        return cls(urls)

    def new_url(self) -> str:
        url = next(self._cycle)
        if SESSION_PLACEHOLDER in url:
            url = url.replace(SESSION_PLACEHOLDER, uuid.uuid4().hex[:12])
        return url


def playwright_proxy_settings(proxy_url: str) -> dict[str, str]:
    """Playwright proxy dict (server, username, password) from a proxy URL."""
    parts = urlsplit(proxy_url)
    server = f"{parts.scheme or 'http'}://{parts.hostname}"
    if parts.port:
        server = f"{server}:{parts.port}"
    settings = {"server": server}
    if parts.username:
        settings["username"] = unquote(parts.username)
    if parts.password:
        settings["password"] = unquote(parts.password)
    return settings


class HttpFetcher:
    """
    Async HTTP client with one pooled direct client and per-request proxied clients.

    A proxied request gets its own short-lived client so that every attempt runs
    in a fresh proxy session.
    """

    def __init__(self, timeout_seconds: float = 30.0) -> None:
        self._timeout = httpx.Timeout(timeout_seconds)
        self._direct = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)

    async def __aenter__(self) -> "HttpFetcher":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._direct.aclose()

    async def fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[dict[str, str]] = None,
        body: Any = None,
        proxy_url: Optional[str] = None,
    ) -> FetchResponse:
        """
        Issue one request. Dict bodies are sent as JSON, strings as raw content.

        Raises TransportError when no response was received.
        """
        kwargs: dict[str, Any] = {"headers": headers or {}}
        if isinstance(body, (dict, list)):
            kwargs["json"] = body
        elif body is not None:
            kwargs["content"] = body

        try:
            if proxy_url:
                async with httpx.AsyncClient(
                    proxy=proxy_url,
                    timeout=self._timeout,
                    follow_redirects=True,
                ) as client:
                    response = await client.request(method, url, **kwargs)
            else:
                response = await self._direct.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise TransportError(f"{type(e).__name__}: {e}") from e

        return FetchResponse(
            status_code=response.status_code,
            body=response.text,
            headers=dict(response.headers),
            url=str(response.url),
        )
