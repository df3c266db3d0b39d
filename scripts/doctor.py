#!/usr/bin/env python3

import argparse
import importlib.util
import json
import os
import shutil
import subprocess
import sys
from dataclasses import asdict, dataclass
from pathlib import Path

import yaml

REQUIRED_MODULES = ["yaml", "tqdm", "pandas", "pyarrow"]


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _check_command(cmd: str) -> CheckResult:
    path = shutil.which(cmd)
    return CheckResult(name=f"command:{cmd}", ok=path is not None, detail=path or "not found")


def _check_encoder_version(binary: str) -> CheckResult:
    path = shutil.which(binary)
    if path is None:
        return CheckResult(name="encoder_version", ok=False, detail=f"{binary} not found")
    try:
        out = subprocess.run([path, "-version"], check=True, capture_output=True, text=True, timeout=10).stdout
    except (OSError, subprocess.SubprocessError) as exc:
        return CheckResult(name="encoder_version", ok=False, detail=f"{binary} -version failed: {exc}")
    first = out.splitlines()[0] if out else ""
    return CheckResult(name="encoder_version", ok=bool(first), detail=first or "no output")


def _check_import(module: str) -> CheckResult:
    exists = importlib.util.find_spec(module) is not None
    return CheckResult(name=f"python:{module}", ok=exists, detail="available" if exists else "missing")


def _check_writable(path: Path, name: str) -> CheckResult:
    probe = path
    while not probe.exists() and probe != probe.parent:
        probe = probe.parent
    ok = probe.is_dir() and os.access(probe, os.W_OK)
    detail = str(path) if path.exists() else f"{path} (will be created under {probe})"
    return CheckResult(name=name, ok=ok, detail=detail)


def _check_readable_dir(path: Path, name: str) -> CheckResult:
    ok = path.is_dir() and os.access(path, os.R_OK)
    return CheckResult(name=name, ok=ok, detail=str(path))


def _run_checks(config_path: Path | None) -> list[CheckResult]:
    raw: dict = {}
    if config_path is not None:
        with config_path.open("r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}

    binary = (raw.get("ffmpeg") or {}).get("binary", "ffmpeg")
    checks = [_check_command(binary), _check_encoder_version(binary)]
    checks.extend(_check_import(m) for m in REQUIRED_MODULES)

    if raw:
        workdir = Path(raw.get("workdir", ".")).expanduser()
        output_dir = Path(raw["output_dir"]).expanduser() if raw.get("output_dir") else workdir / "public"
        checks.append(_check_readable_dir(Path(raw.get("media_base_path", "/mnt/media")).expanduser(), "media_base_path"))
        checks.append(_check_writable(output_dir / "clips", "clips_dir"))
        checks.append(_check_writable(output_dir / "thumbnails", "thumbnails_dir"))
        checks.append(_check_writable(workdir / "summaries", "summaries_dir"))
    return checks


def _print_human(checks: list[CheckResult]) -> None:
    print("[doctor] clip generation environment")
    for c in checks:
        status = "OK" if c.ok else "FAIL"
        print(f"- {status:4} {c.name}: {c.detail}")
    passed = sum(1 for c in checks if c.ok)
    print(f"[doctor] summary: {passed}/{len(checks)} checks passed")


def main() -> None:
    parser = argparse.ArgumentParser(description="Environment doctor for clip generation")
    parser.add_argument("--config", type=str, default=None, help="config.yaml to check directories against")
    parser.add_argument("--json", action="store_true", help="Print JSON payload only")
    args = parser.parse_args()

    config_path = Path(args.config).expanduser().resolve() if args.config else None
    checks = _run_checks(config_path)

    payload = {
        "ok": all(c.ok for c in checks),
        "checks": [asdict(c) for c in checks],
    }

    if args.json:
        print(json.dumps(payload, ensure_ascii=False, indent=2))
    else:
        _print_human(checks)

    if not payload["ok"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
