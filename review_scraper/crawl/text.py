"""
Text normalization for extracted review fields (whitespace collapse, trim).
"""

from __future__ import annotations

import re
from typing import Optional

TITLE_MAX_CHARS = 100


def normalize_whitespace(text: str) -> str:
    """Normalize whitespace: collapse multiples, trim."""
    text = re.sub(r"\s+", " ", text)
    text = text.strip()
    return text


def first_sentence_title(text: Optional[str]) -> Optional[str]:
    """First sentence of a review body when short enough to stand in as its title."""
    if not text:
        return None
    sentence = normalize_whitespace(text.split(".")[0])
    if sentence and len(sentence) < TITLE_MAX_CHARS:
        return sentence
    return None
