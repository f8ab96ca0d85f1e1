"""
Depth-first traversal over parsed JSON (dict/list/scalars from json.loads).

JSON has no back-references, so no cycle tracking is needed.
"""

from __future__ import annotations

from typing import Iterator

from review_scraper.models import JsonValue


def iter_objects(value: JsonValue) -> Iterator[dict]:
    """Yield every dict in the tree, parents before children, in document order."""
    stack: list[JsonValue] = [value]
    while stack:
        node = stack.pop()
        if isinstance(node, dict):
            yield node
            stack.extend(reversed(list(node.values())))
        elif isinstance(node, list):
            stack.extend(reversed(node))


def iter_strings(value: JsonValue) -> Iterator[str]:
    """Yield every string scalar in the tree (dict keys excluded)."""
    stack: list[JsonValue] = [value]
    while stack:
        node = stack.pop()
        if isinstance(node, str):
            yield node
        elif isinstance(node, dict):
            stack.extend(reversed(list(node.values())))
        elif isinstance(node, list):
            stack.extend(reversed(node))


def get_path(obj: JsonValue, dotted: str) -> JsonValue:
    """Value at a dotted key path, or None when any step is missing."""
    node = obj
    for key in dotted.split("."):
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    return node


def set_path(obj: dict, dotted: str, value: JsonValue) -> None:
    """Set a value at a dotted key path, creating intermediate dicts."""
    keys = dotted.split(".")
    node = obj
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[keys[-1]] = value
