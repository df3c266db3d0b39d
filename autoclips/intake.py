from __future__ import annotations

import csv
import dataclasses
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List

from .records import ClipRequest

log = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("media_file", "start_time", "end_time")


class IntakeError(ValueError):
    pass


def resolve_media_path(media_file: str, directory: str | None, media_base_path: Path) -> Path:
    """
    Absolute `media_file` wins; otherwise it sits under `directory`, which is
    itself taken as-is when absolute or placed under `media_base_path`.
    """
    media = Path(media_file)
    if media.is_absolute():
        return media
    if directory:
        dir_path = Path(directory)
        if not dir_path.is_absolute():
            dir_path = media_base_path / dir_path
        return dir_path / media
    return media_base_path / media


def resolve_requests(requests: Iterable[ClipRequest], media_base_path: Path) -> List[ClipRequest]:
    """Return copies with `source_path` filled in; the given requests are left as they are."""
    out: List[ClipRequest] = []
    for req in requests:
        if req.source_path is None:
            req = dataclasses.replace(
                req,
                source_path=resolve_media_path(req.media_file, req.directory, media_base_path),
            )
        out.append(req)
    return out


def _coerce_confidence(value: Any) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def request_from_result(result: Dict[str, Any], sentence: str | None = None, where: str = "") -> ClipRequest:
    missing = [k for k in _REQUIRED_FIELDS if not result.get(k)]
    if missing:
        raise IntakeError(f"Search result missing {', '.join(missing)}{where}")
    return ClipRequest(
        media_file=str(result["media_file"]),
        start_time=str(result["start_time"]).strip(),
        end_time=str(result["end_time"]).strip(),
        subtitle_text=str(result.get("subtitle_text") or ""),
        directory=result.get("directory") or None,
        sentence=str(sentence if sentence is not None else result.get("sentence") or ""),
        confidence=_coerce_confidence(result.get("confidence")),
        language=result.get("language") or None,
    )


def collect_search_results(sentence_results: Iterable[Dict[str, Any]]) -> List[ClipRequest]:
    """Flatten the search API's per-sentence groups; each hit inherits its group's sentence."""
    requests: List[ClipRequest] = []
    for idx, group in enumerate(sentence_results, start=1):
        if not isinstance(group, dict):
            raise IntakeError(f"sentence_results[{idx}] must be an object")
        sentence = group.get("search_sentence") or ""
        results = group.get("results") or []
        if not isinstance(results, list):
            raise IntakeError(f"sentence_results[{idx}].results must be a list")
        log.debug("Sentence %d: %r (%d hit(s))", idx, sentence, len(results))
        for jdx, result in enumerate(results, start=1):
            requests.append(request_from_result(result, sentence=sentence, where=f" at sentence {idx}, result {jdx}"))
    return requests


def load_requests(path: Path) -> List[ClipRequest]:
    """
    Read clip requests from:

    - ``.json``: ``{"sentence_results": [...]}`` or a bare list of sentence results
    - ``.jsonl``: one search result per line
    - ``.csv``: one search result per row
    """
    suffix = path.suffix.lower()

    if suffix == ".json":
        with path.open("r", encoding="utf-8") as f:
            payload = json.load(f)
        if isinstance(payload, dict):
            if "sentence_results" not in payload or not isinstance(payload["sentence_results"], list):
                raise IntakeError(f"{path}: sentence_results is required")
            payload = payload["sentence_results"]
        if not isinstance(payload, list):
            raise IntakeError(f"{path}: expected a list of sentence results")
        return collect_search_results(payload)

    if suffix == ".jsonl":
        requests: List[ClipRequest] = []
        with path.open("r", encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    result = json.loads(line)
                except json.JSONDecodeError as exc:
                    raise IntakeError(f"{path}: invalid JSON at line {line_no}: {exc}") from exc
                requests.append(request_from_result(result, where=f" at line {line_no}"))
        return requests

    if suffix == ".csv":
        requests = []
        with path.open("r", encoding="utf-8", newline="") as f:
            reader = csv.DictReader(f)
            for row_no, row in enumerate(reader, start=2):
                requests.append(request_from_result(row, where=f" at csv line {row_no}"))
        return requests

    raise IntakeError(f"Unsupported request format: {path.suffix}. Use .json, .jsonl or .csv")
