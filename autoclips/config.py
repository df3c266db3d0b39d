import argparse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import yaml

from .validator import load_blacklist


class ConfigError(ValueError):
    pass


@dataclass
class LimitsConfig:
    max_file_size_gb: float = 10.0  # soft ceiling, checked right before the clip encode
    hard_max_file_size_mb: float = 3000.0  # hard ceiling, checked by validate()
    max_clip_duration: float = 300.0


@dataclass
class BlacklistConfig:
    files: List[str] = field(default_factory=list)
    file: str | None = None


@dataclass
class BatchConfig:
    thumbnail_batch_size: int = 1
    clip_batch_size: int = 1
    thumbnail_timeout: float = 15.0
    clip_timeout: float = 180.0
    thumbnail_stall_threshold: float = 10.0
    thumbnail_check_interval: float = 5.0
    clip_stall_threshold: float = 15.0
    clip_check_interval: float = 10.0
    stderr_tail_chars: int = 500


@dataclass
class FFmpegConfig:
    binary: str = "ffmpeg"
    video_codec: str = "libx264"
    audio_codec: str = "aac"
    preset: str = "ultrafast"
    crf: int = 28
    threads: int = 0
    clip_ext: str = "mp4"
    thumbnail_format: str = "jpg"
    thumbnail_width: int = 320
    thumbnail_height: int = 180
    thumbnail_quality: int = 2
    enhance_thumbnail: bool = True
    brightness: float = 0.15
    contrast: float = 1.3
    saturation: float = 1.2


@dataclass
class WebConfig:
    clips_prefix: str = "/clips"
    thumbnails_prefix: str = "/thumbnails"


@dataclass
class Config:
    workdir: Path
    media_base_path: Path = Path("/mnt/media")
    output_root: Path | None = None
    limits: LimitsConfig = field(default_factory=LimitsConfig)
    blacklist: BlacklistConfig = field(default_factory=BlacklistConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    ffmpeg: FFmpegConfig = field(default_factory=FFmpegConfig)
    web: WebConfig = field(default_factory=WebConfig)
    # resolved blacklist (config list + blacklist file), filled by load_config
    blacklisted_files: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.workdir = Path(self.workdir)
        self.media_base_path = Path(self.media_base_path)
        if self.output_root is not None:
            self.output_root = Path(self.output_root)
        if not self.blacklisted_files:
            self.blacklisted_files = [f for f in self.blacklist.files if f]

    @property
    def output_dir(self) -> Path:
        return self.output_root if self.output_root is not None else self.workdir / "public"

    @property
    def clips_dir(self) -> Path:
        return self.output_dir / "clips"

    @property
    def thumbnails_dir(self) -> Path:
        return self.output_dir / "thumbnails"

    @property
    def summaries_dir(self) -> Path:
        return self.workdir / "summaries"


# (min, max) inclusive; None means unbounded on that side
_LIMITS: Dict[str, tuple[float | None, float | None]] = {
    "ffmpeg.thumbnail_quality": (1, 31),
    "ffmpeg.brightness": (-1.0, 1.0),
    "ffmpeg.contrast": (0.0, 4.0),
    "ffmpeg.saturation": (0.0, 3.0),
    "ffmpeg.crf": (0, 51),
    "ffmpeg.thumbnail_width": (16, 3840),
    "ffmpeg.thumbnail_height": (16, 2160),
    "batch.thumbnail_batch_size": (1, 16),
    "batch.clip_batch_size": (1, 16),
    "batch.stderr_tail_chars": (0, None),
    "limits.max_clip_duration": (1, 3600),
}

_POSITIVE = (
    "batch.thumbnail_timeout",
    "batch.clip_timeout",
    "batch.thumbnail_stall_threshold",
    "batch.thumbnail_check_interval",
    "batch.clip_stall_threshold",
    "batch.clip_check_interval",
    "limits.max_file_size_gb",
    "limits.hard_max_file_size_mb",
)


def _lookup(cfg: Config, dotted: str) -> Any:
    section, name = dotted.split(".", 1)
    return getattr(getattr(cfg, section), name)


def validate_config(cfg: Config) -> None:
    for dotted, (lo, hi) in _LIMITS.items():
        value = _lookup(cfg, dotted)
        if lo is not None and value < lo:
            raise ConfigError(f"{dotted}={value} is below the allowed minimum {lo}")
        if hi is not None and value > hi:
            raise ConfigError(f"{dotted}={value} is above the allowed maximum {hi}")
    for dotted in _POSITIVE:
        value = _lookup(cfg, dotted)
        if value <= 0:
            raise ConfigError(f"{dotted} must be positive, got {value}")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate clips and thumbnails from search hits")
    parser.add_argument("--config", required=True, help="Path to config.yaml")
    parser.add_argument(
        "--requests",
        required=True,
        help="Search results to turn into clips (.json with sentence_results, .jsonl or .csv)",
    )
    parser.add_argument("--output-dir", type=str, default=None, help="Override output directory")
    parser.add_argument("--thumbnail-batch-size", type=int, default=None, help="Concurrent thumbnail encodes")
    parser.add_argument("--clip-batch-size", type=int, default=None, help="Concurrent clip encodes")
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Process only the first N requests after loading",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args()


def _load_yaml(path: Path) -> Dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_config(
    path: Path,
    output_dir: str | None = None,
    thumbnail_batch_size: int | None = None,
    clip_batch_size: int | None = None,
) -> Config:
    raw = _load_yaml(path)
    base_dir = path.parent

    if "workdir" not in raw:
        raise ConfigError(f"workdir missing in {path}")

    blacklist = BlacklistConfig(**raw.get("blacklist", {}))
    entries = [str(f) for f in blacklist.files if f]
    if blacklist.file:
        bl_path = Path(blacklist.file).expanduser()
        if not bl_path.is_absolute():
            bl_path = base_dir / bl_path
        if not bl_path.exists():
            raise ConfigError(f"blacklist file not found: {bl_path}")
        entries.extend(load_blacklist(bl_path))

    output_root = output_dir or raw.get("output_dir")

    cfg = Config(
        workdir=Path(raw["workdir"]).expanduser(),
        media_base_path=Path(raw.get("media_base_path", "/mnt/media")).expanduser(),
        output_root=Path(output_root).expanduser() if output_root else None,
        limits=LimitsConfig(**raw.get("limits", {})),
        blacklist=blacklist,
        batch=BatchConfig(**raw.get("batch", {})),
        ffmpeg=FFmpegConfig(**raw.get("ffmpeg", {})),
        web=WebConfig(**raw.get("web", {})),
        blacklisted_files=list(dict.fromkeys(entries)),
    )

    if thumbnail_batch_size is not None:
        cfg.batch.thumbnail_batch_size = thumbnail_batch_size
    if clip_batch_size is not None:
        cfg.batch.clip_batch_size = clip_batch_size

    validate_config(cfg)
    return cfg
