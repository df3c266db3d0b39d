from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List

log = logging.getLogger(__name__)

_MB = 1024 * 1024
_GB = 1024 * _MB


def load_blacklist(path: Path) -> List[str]:
    """One filename fragment per line; blank lines and ``#`` comments are ignored."""
    entries: List[str] = []
    with Path(path).open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            entries.append(line)
    return entries


@dataclass
class ValidationResult:
    exists: bool
    is_file: bool
    size_bytes: int
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.exists and self.is_file and self.error is None

    @property
    def size_mb(self) -> float:
        return self.size_bytes / _MB


class MediaValidator:
    """
    Pre-flight checks on source media. Nothing here raises; every problem is
    reported through the returned value.

    The blacklist is a list of filename substrings for inputs known to make
    the encoder time out repeatedly.
    """

    def __init__(
        self,
        blacklist: Iterable[str] = (),
        hard_max_mb: float = 3000.0,
        max_file_size_gb: float = 10.0,
    ):
        self.blacklist: List[str] = [b for b in blacklist if b]
        self.hard_max_mb = hard_max_mb
        self.max_file_size_gb = max_file_size_gb

    @classmethod
    def from_config(cls, cfg) -> "MediaValidator":
        return cls(
            blacklist=cfg.blacklisted_files,
            hard_max_mb=cfg.limits.hard_max_file_size_mb,
            max_file_size_gb=cfg.limits.max_file_size_gb,
        )

    def validate(self, path: Path | str) -> ValidationResult:
        path = Path(path)
        try:
            st = path.stat()
        except OSError as exc:
            return ValidationResult(exists=False, is_file=False, size_bytes=0, error=f"file not found: {exc}")
        if not path.is_file():
            return ValidationResult(exists=True, is_file=False, size_bytes=0, error="path is not a regular file")
        size_mb = st.st_size / _MB
        if size_mb > self.hard_max_mb:
            return ValidationResult(
                exists=True,
                is_file=True,
                size_bytes=st.st_size,
                error=f"file too large ({round(size_mb)}MB > {self.hard_max_mb:g}MB)",
            )
        return ValidationResult(exists=True, is_file=True, size_bytes=st.st_size)

    def is_blacklisted(self, path: Path | str) -> bool:
        name = Path(path).name
        hit = any(entry in name for entry in self.blacklist)
        if hit:
            log.warning("Blacklisted file, skipping: %s", name)
        return hit

    def within_size_limit(self, path: Path | str) -> bool:
        try:
            size_gb = Path(path).stat().st_size / _GB
        except OSError as exc:
            log.warning("Could not stat %s: %s", path, exc)
            return False
        if size_gb > self.max_file_size_gb:
            log.warning("File too large: %.2fGB > %gGB (%s)", size_gb, self.max_file_size_gb, path)
            return False
        log.debug("File size %.2fGB within limit (%s)", size_gb, path)
        return True
