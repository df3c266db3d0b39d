from __future__ import annotations

import argparse
import json
import os
import time
from pathlib import Path
from typing import Dict, List, Tuple

from autoclips.config import load_config
from autoclips.manage import UNTAGGED, format_age, stage_counts, stuck_records
from autoclips.records import COMPLETED
from autoclips.store import ClipMetadataStore


def get_load_avg() -> Tuple[float, float, float] | None:
    try:
        return os.getloadavg()
    except OSError:
        return None


def latest_summary(summaries_dir: Path) -> Tuple[Path, Dict] | None:
    paths = sorted(summaries_dir.glob("batch-*.json"))
    for path in reversed(paths):
        try:
            with path.open("r", encoding="utf-8") as f:
                return path, json.load(f)
        except (OSError, ValueError):
            continue
    return None


def render(store: ClipMetadataStore, summaries_dir: Path, interval: float, max_stuck: int) -> None:
    prev_completed = None
    prev_ts = None

    while True:
        now = time.time()
        records = store.load_all()
        counts = stage_counts(records)
        completed = counts.get(COMPLETED, 0)

        rate = None
        if prev_ts is not None and prev_completed is not None and now > prev_ts:
            rate = (completed - prev_completed) * 60.0 / (now - prev_ts)
        prev_completed = completed
        prev_ts = now

        os.system("clear")
        print("=== Clip Monitor (refresh {:.1f}s) ===".format(interval))
        print(f"clips dir: {store.clips_dir}")
        print(f"total records: {len(records)}")
        load_avg = get_load_avg()
        if load_avg:
            print("cpu load avg (1/5/15m): {:.1f} / {:.1f} / {:.1f}".format(*load_avg))
        if counts:
            print("stages: " + ", ".join(f"{k}={v}" for k, v in counts.most_common()))
        if rate is not None:
            print(f"rate (completed/min): {rate:.2f}")

        last = latest_summary(summaries_dir)
        if last:
            path, summary = last
            print(
                "last batch {}: {} json, {} thumbnail(s), {} clip(s) in {:.1f} min".format(
                    path.stem,
                    summary.get("json_created", 0),
                    summary.get("thumbnails_created", 0),
                    summary.get("clips_created", 0),
                    float(summary.get("total_time_seconds", 0.0)) / 60,
                )
            )

        stuck = stuck_records(records, now=now)
        if stuck:
            print(f"oldest not completed (up to {max_stuck}):")
            for meta, age in stuck[:max_stuck]:
                age_str = format_age(age) if age is not None else "?"
                print(f"- {meta.id}: {meta.stage or UNTAGGED}, created {age_str} ago | {Path(meta.source_file).name}")
        else:
            print("no stuck records.")

        print("==============================")
        time.sleep(interval)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Lightweight clip monitor using the per-clip JSON records")
    parser.add_argument("--config", default="config.yaml", help="Path to config.yaml (default: config.yaml)")
    parser.add_argument("--interval", type=float, default=2.0, help="Refresh interval in seconds (default: 2)")
    parser.add_argument("--max-stuck", type=int, default=5, help="Stuck records to list (default: 5)")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    cfg = load_config(Path(args.config))
    store = ClipMetadataStore.from_config(cfg)
    if not store.clips_dir.exists():
        raise FileNotFoundError(f"clips dir not found: {store.clips_dir}")
    render(store, cfg.summaries_dir, args.interval, args.max_stuck)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\nmonitor stopped by user")
