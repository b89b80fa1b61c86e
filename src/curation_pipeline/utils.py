from __future__ import annotations

import hashlib
import re
import uuid
from datetime import UTC, datetime
from typing import Iterable


SUPPORTED_CHECKSUM_ALGORITHMS = frozenset({"md5", "sha1", "sha256"})


def utc_now() -> datetime:
    """Default time source for timestamps stamped by the pipeline."""
    return datetime.now(UTC)


def new_id(prefix: str | None = None) -> str:
    token = uuid.uuid4().hex
    return f"{prefix}-{token}" if prefix else token


def checksum_hexdigest(data: bytes, algorithm: str = "sha256") -> str:
    """Return the hex digest of *data* using one of the supported algorithms.

    Raises:
        ValueError: If *algorithm* is not supported.
    """
    normalized = algorithm.strip().lower()
    if normalized not in SUPPORTED_CHECKSUM_ALGORITHMS:
        raise ValueError(
            f"unsupported checksum algorithm {algorithm!r}; expected one of {sorted(SUPPORTED_CHECKSUM_ALGORITHMS)}"
        )
    return hashlib.new(normalized, data).hexdigest()


def safe_path_component(value: str, *, max_length: int = 128) -> str:
    """Make an identifier usable as a single filesystem path component.

    Raises:
        ValueError: If the value is empty or contains no safe characters.
    """
    stripped = value.strip()
    if not stripped:
        raise ValueError("identifier must be non-empty")
    safe = re.sub(r"[^A-Za-z0-9._-]+", "-", stripped).strip("-")
    if not safe:
        raise ValueError(f"identifier {value!r} contains no filesystem-safe characters")
    return safe[:max_length]


def merge_unique(existing: Iterable[str], additions: Iterable[str]) -> list[str]:
    """Append *additions* to *existing* preserving order and skipping duplicates."""
    merged = list(existing)
    seen = set(merged)
    for item in additions:
        if item not in seen:
            merged.append(item)
            seen.add(item)
    return merged
