"""
Environment-based configuration for the review scraper.

This module exposes a small, typed configuration surface shared by the
entrypoint and the scraping pipeline. All values are sourced from
environment variables with sensible, non-secret defaults.

Proxy credentials are never hard-coded here; they arrive through the run
input (see `review_scraper.inputs`) or the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal, Optional

Environment = Literal["local", "dev", "staging", "prod"]


@dataclass(frozen=True)
class AppConfig:
    """
    Top-level process configuration.

    Run-specific parameters (start URLs, wanted count, proxy descriptor) live
    in `RunInput`; this config covers cross-cutting concerns only.
    """

    environment: Environment
    log_level: str

    # Optional file path for structured JSON logs; when set, logs are written
    # to file (and stdout if log_stdout).
    log_file: Optional[str]
    # When True, logs go to stdout. When False, only file (if LOG_FILE set). Default True.
    log_stdout: bool

    # Dataset output and debug artifacts (local disk).
    output_dir: str
    debug_dir: str
    input_path: str

    # Global run deadline and the margin before it in which no new work starts.
    run_timeout_seconds: int
    deadline_safety_margin_seconds: int

    # Per-request HTTP timeout.
    http_timeout_seconds: float

    browser_headless: bool

    @classmethod
    def from_env(cls) -> "AppConfig":
        """
        Construct configuration from environment variables.

        All fields have defaults suitable for local runs.
        """

        environment = os.getenv("APP_ENV", "local")

        if environment not in {"local", "dev", "staging", "prod"}:
            raise ValueError(f"Unsupported APP_ENV value: {environment!r}")

        def _bool_env(name: str, default: bool) -> bool:
            raw = (os.getenv(name) or str(default)).strip().lower()
            return raw in ("true", "1", "yes")

        def _int_env(name: str, default: int, minimum: int = 0) -> int:
            raw = (os.getenv(name) or "").strip()
            try:
                value = int(raw) if raw else default
            except ValueError:
                return default
            return max(minimum, value)

        def _float_env(name: str, default: float) -> float:
            raw = (os.getenv(name) or "").strip()
            try:
                value = float(raw) if raw else default
            except ValueError:
                return default
            return value if value > 0 else default

        return cls(
            environment=environment,  # type: ignore[arg-type]
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_file=os.getenv("LOG_FILE") or None,
            log_stdout=_bool_env("LOG_STDOUT", True),
            output_dir=os.getenv("OUTPUT_DIR", "./storage/dataset"),
            debug_dir=os.getenv("DEBUG_DIR", "./storage/debug"),
            input_path=os.getenv("INPUT_PATH", "./INPUT.json"),
            run_timeout_seconds=_int_env("RUN_TIMEOUT_SECONDS", 3600, minimum=1),
            deadline_safety_margin_seconds=_int_env("DEADLINE_SAFETY_MARGIN_SECONDS", 30),
            http_timeout_seconds=_float_env("HTTP_TIMEOUT_SECONDS", 30.0),
            browser_headless=_bool_env("BROWSER_HEADLESS", True),
        )


def get_config() -> AppConfig:
    """
    Helper to obtain the current configuration.

    The entrypoint builds one instance at startup and passes the relevant
    values explicitly; library code should not call this repeatedly.
    """

    return AppConfig.from_env()
