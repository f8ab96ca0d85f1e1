"""
Global run deadline with a safety margin.

Checked before every page fetch and browser navigation; once inside the margin
no new operation starts and the run proceeds to its final flush.
"""

from __future__ import annotations

import time
from typing import Callable, Optional


class Deadline:
    def __init__(
        self,
        timeout_seconds: float,
        safety_margin_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self.expires_at = clock() + timeout_seconds
        self.safety_margin_seconds = safety_margin_seconds

    @classmethod
    def unbounded(cls) -> "Deadline":
        return cls(float("inf"))

    def remaining(self) -> float:
        return self.expires_at - self._clock()

    def near(self, margin: Optional[float] = None) -> bool:
        """True once within the safety margin of expiry."""
        margin = self.safety_margin_seconds if margin is None else margin
        return self.remaining() <= margin
