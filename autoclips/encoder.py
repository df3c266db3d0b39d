from __future__ import annotations

import logging
from pathlib import Path
from typing import List

from .config import FFmpegConfig
from .spans import format_seconds

log = logging.getLogger(__name__)

MIN_THUMBNAIL_BYTES = 1024


def thumbnail_filter(cfg: FFmpegConfig) -> str:
    w, h = cfg.thumbnail_width, cfg.thumbnail_height
    vf = f"scale={w}:{h}:force_original_aspect_ratio=decrease,pad={w}:{h}:(ow-iw)/2:(oh-ih)/2"
    if cfg.enhance_thumbnail:
        vf += f",eq=brightness={cfg.brightness:g}:contrast={cfg.contrast:g}:saturation={cfg.saturation:g}"
    return vf


def build_thumbnail_command(src: Path, at_seconds: float, out_path: Path, cfg: FFmpegConfig) -> List[str]:
    # -ss before -i: keyframe seek instead of decoding up to the timestamp
    return [
        cfg.binary,
        "-hide_banner",
        "-ss",
        format_seconds(at_seconds),
        "-i",
        str(src),
        "-vframes",
        "1",
        "-vf",
        thumbnail_filter(cfg),
        "-q:v",
        str(cfg.thumbnail_quality),
        "-y",
        str(out_path),
    ]


def build_clip_command(
    src: Path,
    start_seconds: float,
    duration: float,
    out_path: Path,
    cfg: FFmpegConfig,
) -> List[str]:
    return [
        cfg.binary,
        "-hide_banner",
        "-ss",
        format_seconds(start_seconds),
        "-i",
        str(src),
        "-t",
        format_seconds(duration),
        "-c:v",
        cfg.video_codec,
        "-c:a",
        cfg.audio_codec,
        "-preset",
        cfg.preset,
        "-crf",
        str(cfg.crf),
        # moov atom up front so browsers can start playback before the download ends
        "-movflags",
        "+faststart",
        "-threads",
        str(cfg.threads),
        "-avoid_negative_ts",
        "make_zero",
        "-y",
        str(out_path),
    ]


def check_thumbnail(path: Path) -> str | None:
    """Return a problem description for a suspicious thumbnail, or None if it looks fine."""
    try:
        size = path.stat().st_size
    except OSError as exc:
        return f"thumbnail missing: {exc}"
    if size == 0:
        return "thumbnail is empty"
    if size < MIN_THUMBNAIL_BYTES:
        return f"thumbnail is too small ({size} bytes)"
    return None
