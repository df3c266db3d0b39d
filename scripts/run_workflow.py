#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import subprocess
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]


def _build_run_env() -> dict[str, str]:
    env = os.environ.copy()
    repo_root = str(REPO_ROOT)
    current_pythonpath = env.get("PYTHONPATH", "")
    if not current_pythonpath:
        env["PYTHONPATH"] = repo_root
        return env

    paths = current_pythonpath.split(os.pathsep)
    if repo_root not in paths:
        env["PYTHONPATH"] = repo_root + os.pathsep + current_pythonpath
    return env


def _run(cmd: list[str]) -> None:
    print("[run]", " ".join(cmd))
    subprocess.run(cmd, check=True, cwd=REPO_ROOT, env=_build_run_env())


def _build_doctor_cmd(args: argparse.Namespace) -> list[str]:
    return [sys.executable, str(REPO_ROOT / "scripts" / "doctor.py"), "--config", str(Path(args.config).expanduser())]


def _build_generate_cmd(args: argparse.Namespace) -> list[str]:
    cmd = [
        sys.executable,
        "-m",
        "autoclips.pipeline",
        "--config",
        str(Path(args.config).expanduser()),
        "--requests",
        str(Path(args.requests).expanduser()),
    ]
    if args.output_dir:
        cmd.extend(["--output-dir", args.output_dir])
    if args.thumbnail_batch_size is not None:
        cmd.extend(["--thumbnail-batch-size", str(args.thumbnail_batch_size)])
    if args.clip_batch_size is not None:
        cmd.extend(["--clip-batch-size", str(args.clip_batch_size)])
    if args.limit is not None:
        cmd.extend(["--limit", str(args.limit)])
    if args.verbose:
        cmd.append("--verbose")
    return cmd


def _build_manage_cmd(args: argparse.Namespace) -> list[str]:
    cmd = [sys.executable, "-m", "autoclips.manage", "--config", str(Path(args.config).expanduser())]
    if args.output_dir:
        cmd.extend(["--output-dir", args.output_dir])
    cmd.extend(args.manage_args)
    return cmd


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Unified workflow runner")
    subparsers = parser.add_subparsers(dest="mode", required=True)

    p_generate = subparsers.add_parser("generate", help="Run the clip generation pipeline")
    p_generate.add_argument("--config", required=True, help="Path to config.yaml")
    p_generate.add_argument("--requests", required=True, help="Search results file (.json, .jsonl or .csv)")
    p_generate.add_argument("--output-dir", type=str, default=None, help="Override output directory")
    p_generate.add_argument("--thumbnail-batch-size", type=int, default=None, help="Concurrent thumbnail encodes")
    p_generate.add_argument("--clip-batch-size", type=int, default=None, help="Concurrent clip encodes")
    p_generate.add_argument("--limit", type=int, default=None, help="Only process first N requests")
    p_generate.add_argument("--verbose", action="store_true", help="Enable debug logging")
    p_generate.add_argument("--doctor", action="store_true", help="Run the environment doctor first")

    p_manage = subparsers.add_parser("manage", help="Inspect or manage clip records")
    p_manage.add_argument("--config", required=True, help="Path to config.yaml")
    p_manage.add_argument("--output-dir", type=str, default=None, help="Override output directory")
    p_manage.add_argument("manage_args", nargs=argparse.REMAINDER, help="list/show/delete/status/export ...")

    return parser.parse_args()


def main() -> None:
    args = parse_args()
    if args.mode == "generate":
        if args.doctor:
            _run(_build_doctor_cmd(args))
        _run(_build_generate_cmd(args))
        return
    if args.mode == "manage":
        if not args.manage_args:
            raise SystemExit("manage needs a command: list, show, delete, status or export")
        _run(_build_manage_cmd(args))
        return
    raise SystemExit(f"Unsupported mode: {args.mode}")


if __name__ == "__main__":
    main()
