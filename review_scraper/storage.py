"""
Local disk storage: JSON Lines dataset sink and the debug blob store.

Dataset layout: {output_dir}/{dataset_name}.jsonl, one review object per line,
appended batch by batch in discovery order.
Debug layout: {debug_dir}/{key}.html.gz for HTML bodies, {key}.json for JSON bodies.
Debug artifacts are diagnostic only; the pipeline never reads them back.
"""

from __future__ import annotations

import gzip
import hashlib
import json
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union
from urllib.parse import urlsplit

from shared.logging import get_logger

logger = get_logger(__name__)

DEFAULT_DATASET_NAME = "reviews"
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def ensure_artifact_dir(path: Path) -> None:
    """Ensure the directory for an artifact path exists."""
    path.parent.mkdir(parents=True, exist_ok=True)


def _json_default(obj: Any) -> Any:
    """JSON serializer for datetime."""
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def append_jsonl(path: Path, rows: list[dict]) -> int:
    """
    Append dicts as JSONL (one object per line, UTF-8).

    Returns bytes written. May raise OSError on write failure.
    """
    ensure_artifact_dir(path)
    content = "".join(
        json.dumps(row, default=_json_default, ensure_ascii=False) + "\n" for row in rows
    ).encode("utf-8")
    with path.open("ab") as fh:
        fh.write(content)
    return len(content)


def write_json(path: Path, data: Any) -> tuple[int, str]:
    """
    Write JSON data to disk (UTF-8, pretty-printed).

    Returns (size_bytes, checksum). May raise OSError on write failure.
    """
    ensure_artifact_dir(path)
    json_bytes = json.dumps(data, indent=2, ensure_ascii=False, default=_json_default).encode(
        "utf-8"
    )
    path.write_bytes(json_bytes)
    return len(json_bytes), hashlib.md5(json_bytes).hexdigest()


def write_html_gz(path: Path, html: str) -> tuple[int, str]:
    """
    Write HTML content as gzip-compressed file.

    Returns (size_bytes, checksum). May raise OSError on write failure.
    """
    ensure_artifact_dir(path)
    compressed = gzip.compress(html.encode("utf-8"))
    path.write_bytes(compressed)
    return len(compressed), hashlib.md5(compressed).hexdigest()


def build_debug_key(reason: str, url: str, page: int) -> str:
    """Descriptive, filesystem-safe key: {reason}__{host}__{url-hash}__p{page}."""
    host = (urlsplit(url).netloc or "unknown-host").lower()
    if host.startswith("www."):
        host = host[4:]
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:10]
    return f"{reason}__{host}__{digest}__p{page}"


def normalize_key(key: str) -> str:
    value = _UNSAFE_KEY_CHARS.sub("-", (key or "").strip()).strip("-.")
    return value or "artifact"


class JsonlDatasetSink:
    """Durable output sink; every append() adds one batch to the dataset file."""

    def __init__(self, output_dir: Union[str, Path], dataset_name: str = DEFAULT_DATASET_NAME) -> None:
        self.path = Path(output_dir) / f"{normalize_key(dataset_name)}.jsonl"

    def append(self, records: list[dict]) -> None:
        if not records:
            return
        size = append_jsonl(self.path, records)
        logger.info("dataset_append", path=str(self.path), records=len(records), size_bytes=size)


class LocalDebugStore:
    """Stores raw bodies under descriptive keys; write failures are logged, not raised."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    def put(self, key: str, blob: Union[str, dict, list]) -> Optional[Path]:
        name = normalize_key(key)
        try:
            if isinstance(blob, (dict, list)):
                path = self.root / f"{name}.json"
                size, checksum = write_json(path, blob)
            else:
                path = self.root / f"{name}.html.gz"
                size, checksum = write_html_gz(path, blob or "")
        except OSError as e:
            logger.error(
                "debug_artifact_write_failed",
                key=name,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None
        logger.info("debug_artifact_saved", key=name, path=str(path), size_bytes=size, checksum=checksum)
        return path
