"""
Structured logging setup for the review scraper.

All runtime logging should go through structlog. This module provides a
minimal baseline shared by the entrypoint and every pipeline tier.

Key principles:
- Logs are structured (JSON by default) and include contextual fields.
- Context can be bound per target / per tier (e.g. target_url, tier).
- Configuration is deterministic and avoids ad-hoc logging configuration
  scattered across the codebase.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Mapping, Optional

import structlog


def _build_shared_processors() -> list[structlog.types.Processor]:
    """Processors applied to every log event."""

    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)

    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        timestamper,
        structlog.processors.EventRenamer("message"),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ]


def configure_logging(
    level: int = logging.INFO,
    log_file: Optional[str] = None,
    log_stdout: bool = True,
) -> None:
    """
    Configure structlog and the standard logging module.

    Call once at process startup. Later calls replace the handlers.

    - When log_stdout is True (default), a StreamHandler(sys.stdout) is added.
    - When log_file is set, a FileHandler is added (parent dir created if needed).
    - If both are disabled, stdout is used so the process never has zero handlers.
    """

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    if log_stdout:
        stdout_handler = logging.StreamHandler(sys.stdout)
        stdout_handler.setLevel(level)
        stdout_handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(stdout_handler)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(file_handler)

    if not root.handlers:
        fallback = logging.StreamHandler(sys.stdout)
        fallback.setLevel(level)
        fallback.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(fallback)

    # httpx logs every request at INFO; keep it to warnings.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))

    structlog.configure(
        processors=_build_shared_processors(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """
    Obtain a structured logger.

    Usage:
        from shared.logging import get_logger, bind_request_context

        logger = get_logger(__name__)
        bind_request_context(target_url="...", tier="html_page_paging")
        logger.info("tier.started")
    """

    if not structlog.is_configured():
        configure_logging()

    return structlog.get_logger(name) if name else structlog.get_logger()


def bind_request_context(
    *,
    target_url: Optional[str] = None,
    tier: Optional[str] = None,
    product_id: Optional[str] = None,
    **extra: Any,
) -> Mapping[str, Any]:
    """
    Bind common context fields for per-target logging.

    Logs emitted while a target is processed should include:
    - target_url (canonical review-listing URL)
    - tier (current escalation tier)
    - product_id (when known)

    Additional keyword arguments are also bound into the logging context.
    """

    context: dict[str, Any] = {
        "target_url": target_url,
        "tier": tier,
        "product_id": product_id,
        **extra,
    }

    filtered_context = {k: v for k, v in context.items() if v is not None}

    structlog.contextvars.bind_contextvars(**filtered_context)
    return filtered_context


def clear_request_context() -> None:
    """Drop all bound context (between targets)."""
    structlog.contextvars.clear_contextvars()
