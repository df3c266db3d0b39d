from __future__ import annotations

import argparse
import json
import logging
import time
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Tuple

import pandas as pd

from .config import load_config
from .records import COMPLETED, ClipMetadata
from .store import ClipMetadataStore

log = logging.getLogger(__name__)

UNTAGGED = "untagged"


def format_age(seconds: float) -> str:
    if seconds < 60:
        return f"{int(seconds)}s"
    if seconds < 3600:
        return f"{seconds/60:.1f}m"
    if seconds < 86400:
        return f"{seconds/3600:.1f}h"
    return f"{seconds/86400:.1f}d"


def _created_ts(meta: ClipMetadata) -> float | None:
    if not meta.created_at:
        return None
    try:
        return datetime.fromisoformat(meta.created_at.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def stage_counts(records: Iterable[ClipMetadata]) -> Counter:
    return Counter(meta.stage or UNTAGGED for meta in records)


def stuck_records(records: Iterable[ClipMetadata], now: float | None = None) -> List[Tuple[ClipMetadata, float | None]]:
    """Records below `completed`, oldest first, with their age in seconds (None if unknown)."""
    now = time.time() if now is None else now
    stuck: List[Tuple[ClipMetadata, float | None]] = []
    for meta in records:
        if meta.stage == COMPLETED:
            continue
        created = _created_ts(meta)
        stuck.append((meta, now - created if created is not None else None))
    stuck.sort(key=lambda item: -(item[1] if item[1] is not None else -1.0))
    return stuck


def records_frame(records: Iterable[ClipMetadata]) -> pd.DataFrame:
    rows = []
    for meta in records:
        row = meta.to_dict()
        row["stage"] = meta.stage or UNTAGGED
        rows.append(row)
    return pd.DataFrame(rows)


def export_records(records: Iterable[ClipMetadata], out_path: Path) -> int:
    df = records_frame(records)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    suffix = out_path.suffix.lower()
    if suffix == ".csv":
        if "tags" in df.columns:
            df["tags"] = df["tags"].map(lambda tags: ",".join(tags) if isinstance(tags, list) else tags)
        df.to_csv(out_path, index=False)
    elif suffix == ".jsonl":
        df.to_json(out_path, orient="records", lines=True, force_ascii=False)
    elif suffix == ".parquet":
        df.to_parquet(out_path, index=False)
    else:
        raise ValueError(f"Unsupported export format: {out_path.suffix}. Use .csv, .jsonl or .parquet")
    return len(df)


def _cmd_list(store: ClipMetadataStore, args: argparse.Namespace) -> int:
    records = store.filter_by_tag(args.tag) if args.tag else store.load_all()
    for meta in records:
        print(f"{meta.id}  {meta.stage or UNTAGGED:<18} {meta.start_time} ~ {meta.end_time}  {meta.title}")
    print(f"{len(records)} record(s)")
    return 0


def _cmd_show(store: ClipMetadataStore, args: argparse.Namespace) -> int:
    meta = store.get(args.clip_id)
    if meta is None:
        log.error("Clip %s not found in %s", args.clip_id, store.clips_dir)
        return 1
    print(json.dumps(meta.to_dict(), ensure_ascii=False, indent=2))
    return 0


def _cmd_delete(store: ClipMetadataStore, args: argparse.Namespace) -> int:
    if store.get(args.clip_id) is None:
        log.error("Clip %s not found in %s", args.clip_id, store.clips_dir)
        return 1
    if not store.delete(args.clip_id, remove_media=args.remove_media):
        return 1
    log.info("Deleted clip %s%s", args.clip_id, " with media" if args.remove_media else "")
    return 0


def _cmd_status(store: ClipMetadataStore, args: argparse.Namespace) -> int:
    records = store.load_all()
    counts = stage_counts(records)
    print(f"clips dir: {store.clips_dir}")
    print(f"total records: {len(records)}")
    if counts:
        print("stages: " + ", ".join(f"{k}={v}" for k, v in counts.most_common()))
    stuck = stuck_records(records)
    if not stuck:
        print("no stuck records.")
        return 0
    print(f"not completed ({len(stuck)}), oldest first:")
    for meta, age in stuck[: args.limit]:
        age_str = format_age(age) if age is not None else "?"
        print(f"- {meta.id}: {meta.stage or UNTAGGED}, created {age_str} ago | {meta.source_file}")
    return 0


def _cmd_export(store: ClipMetadataStore, args: argparse.Namespace) -> int:
    records = store.filter_by_tag(args.tag) if args.tag else store.load_all()
    out_path = Path(args.out).expanduser()
    count = export_records(records, out_path)
    log.info("Exported %d record(s) to %s", count, out_path)
    return 0


_COMMANDS = {
    "list": _cmd_list,
    "show": _cmd_show,
    "delete": _cmd_delete,
    "status": _cmd_status,
    "export": _cmd_export,
}


def parse_args(argv: List[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect and manage generated clip records")
    parser.add_argument("--config", required=True, help="Path to config.yaml")
    parser.add_argument("--output-dir", type=str, default=None, help="Override output directory")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_list = subparsers.add_parser("list", help="List clip records")
    p_list.add_argument("--tag", type=str, default=None, help="Only records carrying this tag")

    p_show = subparsers.add_parser("show", help="Print one record as JSON")
    p_show.add_argument("clip_id")

    p_delete = subparsers.add_parser("delete", help="Delete a record")
    p_delete.add_argument("clip_id")
    p_delete.add_argument("--remove-media", action="store_true", help="Also remove the clip and thumbnail files")

    p_status = subparsers.add_parser("status", help="Counts per stage and records stuck below completed")
    p_status.add_argument("--limit", type=int, default=20, help="Show at most N stuck records")

    p_export = subparsers.add_parser("export", help="Write records to .csv, .jsonl or .parquet")
    p_export.add_argument("out", help="Output file")
    p_export.add_argument("--tag", type=str, default=None, help="Only records carrying this tag")

    return parser.parse_args(argv)


def main(argv: List[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(message)s",
    )
    cfg = load_config(Path(args.config), output_dir=args.output_dir)
    store = ClipMetadataStore.from_config(cfg)
    return _COMMANDS[args.command](store, args)


if __name__ == "__main__":
    raise SystemExit(main())
