"""
Error taxonomy and user-safe failure summaries.

Transport and payload failures are raised as exceptions at the fetch and
parse boundaries and caught at tier and target boundaries. ZeroYield, quota
and deadline are control-flow outcomes, not exceptions.

Failure reasons recorded on targets and in the run summary must come from
USER_SAFE_FAILURE_REASONS; detailed errors stay in logs only.
"""

from __future__ import annotations

from typing import Optional


class ScrapeError(Exception):
    """Base class for pipeline errors."""


class TransportError(ScrapeError):
    """Connection, proxy or timeout failure; no HTTP response was received."""


class BlockedResponse(ScrapeError):
    """Blocking status code or anti-bot page signature."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class MalformedPayload(ScrapeError):
    """Unparseable body or missing embedded state."""


USER_SAFE_FAILURE_REASONS = frozenset(
    {
        "Blocked (403/429/503)",
        "Bot-block",
        "Embedded state missing",
        "Malformed payload",
        "No records on first page",
        "Navigation failed",
        "Navigation timeout",
        "Target failed",
        "Transport error",
    }
)


def get_user_safe_failure_reason(
    exc: BaseException,
    fallback: str = "Target failed",
) -> str:
    """
    Map an exception to a user-safe failure reason.

    No raw exception messages. A ScrapeError message is used only when it
    matches the allowlist.
    """
    if isinstance(exc, ScrapeError):
        msg = str(exc).strip()
        if msg in USER_SAFE_FAILURE_REASONS:
            return msg
        if isinstance(exc, TransportError):
            return "Transport error"
        if isinstance(exc, BlockedResponse):
            return "Bot-block" if exc.status is None else "Blocked (403/429/503)"
        if isinstance(exc, MalformedPayload):
            return "Malformed payload"
    return fallback
