from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from .spans import DedupKey, dedup_key

STAGE_JSON = "stage-1-json"
STAGE_THUMBNAIL = "stage-2-thumbnail"
COMPLETED = "completed"
AUTO_GENERATED = "auto-generated"

_STAGE_RANK = {STAGE_JSON: 1, STAGE_THUMBNAIL: 2, COMPLETED: 3}

# stored in koreanSubtitle when no translation exists
MISSING_TRANSLATION = "X"


def current_stage(tags: List[str]) -> str | None:
    known = [t for t in tags if t in _STAGE_RANK]
    if not known:
        return None
    return max(known, key=_STAGE_RANK.__getitem__)


def advance_tags(tags: List[str], new_tag: str) -> List[str]:
    """
    Replace the stage tag with `new_tag`, keeping the other tags in order.

    Moving backwards (or sideways) is refused and returns the tags unchanged,
    so a `completed` record is never re-tagged.
    """
    if new_tag not in _STAGE_RANK:
        raise ValueError(f"Unknown stage tag: {new_tag}")
    stage = current_stage(tags)
    if stage is not None and _STAGE_RANK[stage] >= _STAGE_RANK[new_tag]:
        return list(tags)
    kept = [t for t in tags if not t.startswith("stage-") and t != COMPLETED]
    return kept + [new_tag]


@dataclass
class ClipRequest:
    """
    One search hit to turn into a clip.

    `source_path` is the resolved absolute media path; intake fills it from
    `media_file` and `directory`.
    """

    media_file: str
    start_time: str
    end_time: str
    subtitle_text: str = ""
    directory: str | None = None
    sentence: str = ""
    confidence: float | None = None
    language: str | None = None
    source_path: Path | None = None

    def __post_init__(self) -> None:
        if self.source_path is not None:
            self.source_path = Path(self.source_path)

    @property
    def source_file(self) -> str:
        return str(self.source_path) if self.source_path is not None else self.media_file

    @property
    def dedup_key(self) -> DedupKey:
        return dedup_key(self.source_file, self.start_time, self.end_time)


# python attribute -> JSON field; the JSON names are read by the UI and the mirror step
_WIRE_FIELDS = {
    "id": "id",
    "title": "title",
    "sentence": "sentence",
    "source_subtitle": "englishSubtitle",
    "translated_subtitle": "koreanSubtitle",
    "start_time": "startTime",
    "end_time": "endTime",
    "source_file": "sourceFile",
    "clip_path": "clipPath",
    "thumbnail_path": "thumbnailPath",
    "created_at": "createdAt",
    "duration": "duration",
    "tags": "tags",
}
_REQUIRED = ("id", "startTime", "endTime", "sourceFile")


@dataclass
class ClipMetadata:
    id: str
    title: str
    sentence: str
    source_subtitle: str
    start_time: str
    end_time: str
    source_file: str
    clip_path: str
    translated_subtitle: str | None = None
    thumbnail_path: str | None = None
    created_at: str = ""
    duration: str = ""
    tags: List[str] = field(default_factory=list)
    # keys found on disk that this version does not know about; kept on rewrite
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def stage(self) -> str | None:
        return current_stage(self.tags)

    @property
    def dedup_key(self) -> DedupKey:
        return dedup_key(self.source_file, self.start_time, self.end_time)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = dict(self.extra)
        for attr, key in _WIRE_FIELDS.items():
            value = getattr(self, attr)
            if attr == "translated_subtitle" and value is None:
                value = MISSING_TRANSLATION
            if attr == "thumbnail_path" and value is None:
                continue
            payload[key] = list(value) if attr == "tags" else value
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ClipMetadata":
        if not isinstance(payload, dict):
            raise TypeError(f"Clip record must be an object, got {type(payload).__name__}")
        missing = [k for k in _REQUIRED if k not in payload]
        if missing:
            raise KeyError(f"Clip record missing fields: {', '.join(missing)}")
        translated = payload.get("koreanSubtitle")
        if translated == MISSING_TRANSLATION:
            translated = None
        tags = payload.get("tags") or []
        if not isinstance(tags, list):
            raise TypeError("Clip record tags must be a list")
        return cls(
            id=str(payload["id"]),
            title=str(payload.get("title", "")),
            sentence=str(payload.get("sentence", "")),
            source_subtitle=str(payload.get("englishSubtitle", "")),
            translated_subtitle=translated,
            start_time=str(payload["startTime"]),
            end_time=str(payload["endTime"]),
            source_file=str(payload["sourceFile"]),
            clip_path=str(payload.get("clipPath", "")),
            thumbnail_path=payload.get("thumbnailPath"),
            created_at=str(payload.get("createdAt", "")),
            duration=str(payload.get("duration", "")),
            tags=[str(t) for t in tags],
            extra={k: v for k, v in payload.items() if k not in _WIRE_FIELDS.values()},
        )


@dataclass
class StageResult:
    name: str
    success: int = 0
    failed: int = 0
    skipped: int = 0
    seconds: float = 0.0
    skip_reasons: Dict[str, int] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return self.success + self.failed + self.skipped

    def skip(self, reason: str, count: int = 1) -> None:
        self.skipped += count
        self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + count

    def merge(self, other: "StageResult") -> None:
        self.success += other.success
        self.failed += other.failed
        self.skipped += other.skipped
        for reason, count in other.skip_reasons.items():
            self.skip_reasons[reason] = self.skip_reasons.get(reason, 0) + count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "failed": self.failed,
            "skipped": self.skipped,
            "skip_reasons": dict(self.skip_reasons),
            "time_seconds": round(self.seconds, 3),
        }


@dataclass
class BatchSummary:
    total_requested: int = 0
    duplicates_removed: int = 0
    stage1: StageResult = field(default_factory=lambda: StageResult("stage1_json"))
    stage2: StageResult = field(default_factory=lambda: StageResult("stage2_thumbnail"))
    stage3: StageResult = field(default_factory=lambda: StageResult("stage3_clip"))
    records: List[ClipMetadata] = field(default_factory=list)
    total_seconds: float = 0.0

    @property
    def skip_reasons(self) -> Dict[str, int]:
        return dict(self.stage1.skip_reasons)

    @property
    def json_created(self) -> int:
        return self.stage1.success

    @property
    def thumbnails_created(self) -> int:
        return self.stage2.success

    @property
    def clips_created(self) -> int:
        return self.stage3.success

    @property
    def timings(self) -> Dict[str, float]:
        return {
            "json": self.stage1.seconds,
            "thumbnails": self.stage2.seconds,
            "clips": self.stage3.seconds,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_requested": self.total_requested,
            "duplicates_removed": self.duplicates_removed,
            "json_created": self.json_created,
            "thumbnails_created": self.thumbnails_created,
            "clips_created": self.clips_created,
            "skip_reasons": dict(self.skip_reasons),
            "stage_results": {s.name: s.to_dict() for s in (self.stage1, self.stage2, self.stage3)},
            "total_time_seconds": round(self.total_seconds, 3),
            "created_clips": [r.id for r in self.records],
        }
