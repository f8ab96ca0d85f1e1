"""
Shared utilities for the review scraper.

This package is intentionally small and focused. It currently provides:

- `shared.config` for environment-based configuration
- `shared.logging` for structlog-based structured logging

The scraping pipeline (`review_scraper`) treats `shared/` as read-only
infrastructure code.
"""
