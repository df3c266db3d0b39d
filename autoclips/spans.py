from __future__ import annotations

import logging
import re
from typing import Iterable, List, Tuple, TypeVar

log = logging.getLogger(__name__)

_TIMESTAMP_RE = re.compile(r"^\s*(\d+):(\d{1,2}):(\d{1,2})(?:[,.](\d{1,3}))?\s*$")


class TimestampError(ValueError):
    pass


def parse_timestamp(value: str) -> float:
    """
    Convert an ``HH:MM:SS,mmm`` subtitle timestamp to seconds.

    The millisecond part is optional and may use ``.`` instead of ``,``.
    """
    match = _TIMESTAMP_RE.match(value or "")
    if not match:
        raise TimestampError(f"Invalid timestamp: {value!r}")
    hours, minutes, seconds, millis = match.groups()
    if int(minutes) >= 60 or int(seconds) >= 60:
        raise TimestampError(f"Invalid timestamp: {value!r}")
    # "5" after the comma means 500 ms, not 5 ms
    ms = int((millis or "0").ljust(3, "0"))
    return int(hours) * 3600 + int(minutes) * 60 + int(seconds) + ms / 1000


def format_seconds(seconds: float) -> str:
    """Render seconds compactly: 3.0 -> "3", 2.5 -> "2.5", 1.2345 -> "1.234"."""
    text = f"{seconds:.3f}".rstrip("0").rstrip(".")
    return text or "0"


def span_seconds(start: str, end: str) -> Tuple[float, float]:
    return parse_timestamp(start), parse_timestamp(end)


DedupKey = Tuple[str, str, str]


def dedup_key(source_file: str, start: str, end: str) -> DedupKey:
    # exact string equality, no time tolerance
    return (source_file, start, end)


T = TypeVar("T")


def remove_duplicate_requests(requests: Iterable[T]) -> Tuple[List[T], int]:
    """
    Drop repeats of the same (source file, start, end) within one batch.

    Keeps the first occurrence and input order. Returns the unique list and
    the number of dropped items.
    """
    seen: set[DedupKey] = set()
    unique: List[T] = []
    total = 0
    for req in requests:
        total += 1
        key = req.dedup_key  # type: ignore[attr-defined]
        if key in seen:
            log.info("Skipping duplicate request: %s (%s ~ %s)", key[0], key[1], key[2])
            continue
        seen.add(key)
        unique.append(req)
    return unique, total - len(unique)
