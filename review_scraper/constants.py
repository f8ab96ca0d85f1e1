"""
Pipeline constants: quotas, batch size, timeouts, retry bounds, request headers.
"""

from __future__ import annotations

# Run input defaults
DEFAULT_RESULTS_WANTED = 20
DEFAULT_MAX_PAGES = 20
MAX_PAGES_CEILING = 200

# Accumulator flush threshold (records per sink append)
BATCH_SIZE = 25

# Consecutive zero-yield pages that end a tier
MAX_CONSECUTIVE_EMPTY_PAGES = 2

# Proxy-aware retry policy
MAX_PROXY_ATTEMPTS = 4
RETRYABLE_STATUSES = frozenset({403, 429, 503})
BLOCKING_STATUSES = frozenset({403, 429, 503})
# Lowercase substrings of transport errors that justify a new proxy session
PROXY_FAILURE_SIGNATURES = (
    "connection reset",
    "econnreset",
    "connection refused",
    "econnrefused",
    "timeout",
    "timed out",
    "proxy",
)

# Contract replay: pages fetched concurrently per window
REPLAY_CONCURRENCY = 2

# Browser timing (milliseconds)
NAV_TIMEOUT_MS = 45_000
SETTLE_TIMEOUT_MS = 10_000
MINIMUM_WAIT_AFTER_LOAD = 500
# Extra dwell after navigation so late XHRs are observed during discovery
DISCOVERY_DWELL_MS = 2_500

DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

# Headers for server-rendered page fetches (HTML tier)
HTML_REQUEST_HEADERS = {
    "User-Agent": DESKTOP_USER_AGENT,
    "Accept": (
        "text/html,application/xhtml+xml,application/xml;q=0.9,"
        "image/avif,image/webp,image/apng,*/*;q=0.8"
    ),
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate, br",
    "Sec-Ch-Ua": '"Not_A Brand";v="8", "Chromium";v="120", "Google Chrome";v="120"',
    "Sec-Ch-Ua-Mobile": "?0",
    "Sec-Ch-Ua-Platform": '"Windows"',
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Upgrade-Insecure-Requests": "1",
}

# Internal reviews API (direct paging tier)
DIRECT_API_PATH = "/api/3/product/reviews"
DIRECT_API_PARAMS = {
    "sortOrder": "MOST_RECENT",
    "ratings": "ALL",
    "reviewerType": "ALL",
}
DIRECT_API_HEADERS = {
    "User-Agent": DESKTOP_USER_AGENT,
    "Accept": "application/json",
    "Accept-Language": "en-US,en;q=0.9",
    "X-User-Agent": f"{DESKTOP_USER_AGENT} FKUA/website/42/website/Desktop",
}
