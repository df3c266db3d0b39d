"""
Per-clip JSON records, one ``<id>.json`` per clip in the clips directory.

The record is the only source of truth for a clip's pipeline stage. There is
no locking: writes are safe only while each record has a single writer, which
holds as long as one batch runs at a time (dedup gives one record per
source/start/end and only the stage that currently owns a record mutates it).
Running overlapping batches concurrently would need per-id locks.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import re
from collections.abc import Set as AbstractSet
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, List

from .records import AUTO_GENERATED, STAGE_JSON, ClipMetadata, ClipRequest
from .spans import DedupKey, format_seconds, parse_timestamp

log = logging.getLogger(__name__)

DURATION_SUFFIX = "초"

# "Batman The Animated Series (1992) - S01E01 - On Leather Wings" -> "Batman The Animated Series (1992)"
_SERIES_RE = re.compile(r"^([^(]+?(?:\s*\([^)]+\))?)\s*-?\s*S\d+E\d+")
# "Some Movie (1999) 1080p" -> "Some Movie (1999)"
_MOVIE_RE = re.compile(r"^([^(]+(?:\([^)]+\))?)")


def extract_title(source_file: str) -> str:
    stem = Path(source_file).stem
    for pattern in (_SERIES_RE, _MOVIE_RE):
        match = pattern.match(stem)
        if match and match.group(1).strip():
            return match.group(1).strip()
    return stem


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ClipMetadataStore:
    def __init__(
        self,
        clips_dir: Path,
        thumbnails_dir: Path | None = None,
        clip_ext: str = "mp4",
        thumbnail_format: str = "jpg",
        clips_prefix: str = "/clips",
        thumbnails_prefix: str = "/thumbnails",
    ):
        self.clips_dir = Path(clips_dir)
        self.thumbnails_dir = Path(thumbnails_dir) if thumbnails_dir else self.clips_dir.parent / "thumbnails"
        self.clip_ext = clip_ext
        self.thumbnail_format = thumbnail_format
        self.clips_prefix = clips_prefix.rstrip("/")
        self.thumbnails_prefix = thumbnails_prefix.rstrip("/")

    @classmethod
    def from_config(cls, cfg) -> "ClipMetadataStore":
        return cls(
            clips_dir=cfg.clips_dir,
            thumbnails_dir=cfg.thumbnails_dir,
            clip_ext=cfg.ffmpeg.clip_ext,
            thumbnail_format=cfg.ffmpeg.thumbnail_format,
            clips_prefix=cfg.web.clips_prefix,
            thumbnails_prefix=cfg.web.thumbnails_prefix,
        )

    # paths

    def record_path(self, clip_id: str) -> Path:
        return self.clips_dir / f"{clip_id}.json"

    def clip_file(self, clip_id: str) -> Path:
        return self.clips_dir / f"{clip_id}.{self.clip_ext}"

    def thumbnail_file(self, clip_id: str) -> Path:
        return self.thumbnails_dir / f"{clip_id}.{self.thumbnail_format}"

    def clip_web_path(self, clip_id: str) -> str:
        return f"{self.clips_prefix}/{clip_id}.{self.clip_ext}"

    def thumbnail_web_path(self, clip_id: str) -> str:
        return f"{self.thumbnails_prefix}/{clip_id}.{self.thumbnail_format}"

    # reads

    def load_all(self) -> List[ClipMetadata]:
        if not self.clips_dir.is_dir():
            return []
        records: List[ClipMetadata] = []
        for path in sorted(self.clips_dir.glob("*.json")):
            meta = self._read(path)
            if meta is not None:
                records.append(meta)
        return records

    def get(self, clip_id: str) -> ClipMetadata | None:
        path = self.record_path(clip_id)
        if not path.exists():
            return None
        return self._read(path)

    def filter_by_tag(self, tag: str) -> List[ClipMetadata]:
        return [m for m in self.load_all() if tag in m.tags]

    @staticmethod
    def is_duplicate(
        request: ClipRequest,
        existing: Iterable[ClipMetadata] | AbstractSet[DedupKey],
    ) -> bool:
        key = request.dedup_key
        if isinstance(existing, AbstractSet):
            return key in existing
        return any(m.dedup_key == key for m in existing)

    def _read(self, path: Path) -> ClipMetadata | None:
        # unreadable records (crashed writer, hand edits) are skipped, not fatal
        try:
            with path.open("r", encoding="utf-8") as f:
                payload = json.load(f)
            return ClipMetadata.from_dict(payload)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            log.debug("Skipping unreadable clip record %s: %s", path, exc)
            return None

    # writes

    def create(self, request: ClipRequest, clip_id: str) -> ClipMetadata:
        """Build the Stage 1 record for `request`. Raises TimestampError on a malformed span."""
        title = extract_title(request.source_file)
        start = parse_timestamp(request.start_time)
        end = parse_timestamp(request.end_time)
        first_word = title.split(" ")[0] if title else ""
        tags = ([first_word] if first_word else []) + [AUTO_GENERATED, STAGE_JSON]
        return ClipMetadata(
            id=clip_id,
            title=title,
            sentence=request.sentence or "",
            source_subtitle=request.subtitle_text or "",
            translated_subtitle=None,
            start_time=request.start_time,
            end_time=request.end_time,
            source_file=request.source_file,
            clip_path=self.clip_web_path(clip_id),
            thumbnail_path=None,
            created_at=_utc_now_iso(),
            duration=f"{format_seconds(end - start)}{DURATION_SUFFIX}",
            tags=tags,
        )

    def save(self, meta: ClipMetadata) -> bool:
        try:
            self._write(meta.id, meta.to_dict())
            return True
        except OSError as exc:
            log.warning("Failed to write clip record %s: %s", meta.id, exc)
            return False

    def update(self, meta: ClipMetadata, **fields: Any) -> bool:
        """
        Rewrite the record with `fields` applied. On success the same fields are
        applied to `meta`, so the caller's copy stays current for later stages.
        """
        try:
            updated = dataclasses.replace(meta, **fields)
        except TypeError as exc:
            log.warning("Invalid update for clip record %s: %s", meta.id, exc)
            return False
        try:
            self._write(meta.id, updated.to_dict())
        except OSError as exc:
            log.warning("Failed to update clip record %s: %s", meta.id, exc)
            return False
        for name, value in fields.items():
            setattr(meta, name, value)
        return True

    def delete(self, clip_id: str, remove_media: bool = False) -> bool:
        try:
            self.record_path(clip_id).unlink()
        except OSError as exc:
            log.warning("Failed to delete clip record %s: %s", clip_id, exc)
            return False
        if remove_media:
            for path in (self.clip_file(clip_id), self.thumbnail_file(clip_id)):
                try:
                    path.unlink(missing_ok=True)
                except OSError as exc:
                    log.warning("Failed to remove %s: %s", path, exc)
        return True

    def _write(self, clip_id: str, payload: dict) -> None:
        self.clips_dir.mkdir(parents=True, exist_ok=True)
        path = self.record_path(clip_id)
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2)
            os.replace(tmp, path)
        except OSError:
            tmp.unlink(missing_ok=True)
            raise
