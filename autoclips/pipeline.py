from __future__ import annotations

import json
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, List, Sequence, Tuple

from tqdm import tqdm

from .config import Config, load_config, parse_args
from .encoder import build_clip_command, build_thumbnail_command, check_thumbnail
from .intake import load_requests, resolve_requests
from .records import COMPLETED, STAGE_THUMBNAIL, BatchSummary, ClipMetadata, ClipRequest, StageResult, advance_tags
from .spans import TimestampError, format_seconds, parse_timestamp, remove_duplicate_requests, span_seconds
from .store import ClipMetadataStore
from .supervisor import ProcessSupervisor
from .validator import MediaValidator

log = logging.getLogger(__name__)

SUCCESS = "success"
FAILED = "failed"
SKIPPED = "skipped"


def _new_clip_id() -> str:
    return str(uuid.uuid4())


class ClipGenerationPipeline:
    """
    Three stage barriers per batch: JSON records, then thumbnails, then clips.

    Stage 1 is sequential. Stages 2 and 3 fan out one chunk at a time; the
    chunk size is the number of encoders running at once. No per-item error
    escapes a stage, failures only show up in the returned counts and in the
    record's stage tag.
    """

    def __init__(
        self,
        cfg: Config,
        store: ClipMetadataStore | None = None,
        validator: MediaValidator | None = None,
        thumbnail_supervisor: ProcessSupervisor | None = None,
        clip_supervisor: ProcessSupervisor | None = None,
        id_factory: Callable[[], str] = _new_clip_id,
    ):
        self.cfg = cfg
        self.store = store or ClipMetadataStore.from_config(cfg)
        self.validator = validator or MediaValidator.from_config(cfg)
        self.thumbnail_supervisor = thumbnail_supervisor or ProcessSupervisor(
            stall_threshold=cfg.batch.thumbnail_stall_threshold,
            check_interval=cfg.batch.thumbnail_check_interval,
            tail_chars=cfg.batch.stderr_tail_chars,
        )
        self.clip_supervisor = clip_supervisor or ProcessSupervisor(
            stall_threshold=cfg.batch.clip_stall_threshold,
            check_interval=cfg.batch.clip_check_interval,
            tail_chars=cfg.batch.stderr_tail_chars,
        )
        self.id_factory = id_factory

    def run_batch(self, requests: Sequence[ClipRequest]) -> BatchSummary:
        t0 = time.perf_counter()
        summary = BatchSummary(total_requested=len(requests))

        resolved = resolve_requests(requests, self.cfg.media_base_path)
        unique, dropped = remove_duplicate_requests(resolved)
        summary.duplicates_removed = dropped

        log.info("Stage 1/3: creating JSON records for %d request(s)", len(unique))
        created, stage1 = self.create_metadata_batch(unique)
        if dropped:
            stage1.skip("duplicate", dropped)
        summary.stage1 = stage1
        summary.records = created
        log.info(
            "Stage 1 done: %d created, %d skipped, %d failed (%.1fs)",
            stage1.success,
            stage1.skipped,
            stage1.failed,
            stage1.seconds,
        )

        if not created:
            log.info("No new clips to encode")
            summary.total_seconds = time.perf_counter() - t0
            return summary

        log.info("Stage 2/3: thumbnails for %d clip(s)", len(created))
        summary.stage2 = self.create_thumbnail_batch(created)
        log.info("Stage 2 done: %d ok, %d failed (%.1fs)", summary.stage2.success, summary.stage2.failed, summary.stage2.seconds)

        # same Stage 1 list: a clip is still attempted when its thumbnail failed
        log.info("Stage 3/3: clips for %d clip(s)", len(created))
        summary.stage3 = self.create_clip_batch(created)
        log.info(
            "Stage 3 done: %d ok, %d failed, %d skipped (%.1fs)",
            summary.stage3.success,
            summary.stage3.failed,
            summary.stage3.skipped,
            summary.stage3.seconds,
        )

        summary.total_seconds = time.perf_counter() - t0
        log.info(
            "Batch finished in %.1fs: %d json, %d thumbnail(s), %d clip(s)",
            summary.total_seconds,
            summary.json_created,
            summary.thumbnails_created,
            summary.clips_created,
        )
        return summary

    # Stage 1

    def create_metadata_batch(self, requests: Iterable[ClipRequest]) -> Tuple[List[ClipMetadata], StageResult]:
        t0 = time.perf_counter()
        result = StageResult("stage1_json")
        # loaded once: only records persisted before this batch count as duplicates here
        existing = {meta.dedup_key for meta in self.store.load_all()}
        created: List[ClipMetadata] = []

        for req in tqdm(list(requests), desc="Stage 1 records", unit="req"):
            source = req.source_file
            if self.validator.is_blacklisted(source):
                result.skip("blacklisted")
                continue
            if self.store.is_duplicate(req, existing):
                log.info("Clip already exists, skipping: %s (%s ~ %s)", source, req.start_time, req.end_time)
                result.skip("duplicate")
                continue
            check = self.validator.validate(source)
            if not check.ok:
                log.warning("Invalid media %s: %s", source, check.error)
                result.skip("invalid_media")
                continue
            clip_id = self.id_factory()
            try:
                meta = self.store.create(req, clip_id)
            except TimestampError as exc:
                log.warning("Rejected request for %s: %s", source, exc)
                result.skip("invalid_timestamp")
                continue
            if not self.store.save(meta):
                result.failed += 1
                continue
            log.info("Created record %s: %s (%s ~ %s)", clip_id, meta.title, meta.start_time, meta.end_time)
            created.append(meta)
            result.success += 1

        result.seconds = time.perf_counter() - t0
        return created, result

    # Stages 2 and 3

    def create_thumbnail_batch(self, records: Sequence[ClipMetadata]) -> StageResult:
        self.store.thumbnails_dir.mkdir(parents=True, exist_ok=True)
        return self._run_chunks(
            records,
            self._make_thumbnail,
            self.cfg.batch.thumbnail_batch_size,
            StageResult("stage2_thumbnail"),
            desc="Stage 2 thumbnails",
        )

    def create_clip_batch(self, records: Sequence[ClipMetadata]) -> StageResult:
        self.store.clips_dir.mkdir(parents=True, exist_ok=True)
        return self._run_chunks(
            records,
            self._make_clip,
            self.cfg.batch.clip_batch_size,
            StageResult("stage3_clip"),
            desc="Stage 3 clips",
        )

    def _run_chunks(
        self,
        records: Sequence[ClipMetadata],
        worker: Callable[[ClipMetadata], str],
        chunk_size: int,
        result: StageResult,
        desc: str,
    ) -> StageResult:
        t0 = time.perf_counter()
        chunk_size = max(1, chunk_size)
        total_chunks = (len(records) + chunk_size - 1) // chunk_size

        for chunk_idx, start in enumerate(tqdm(range(0, len(records), chunk_size), desc=desc, unit="chunk"), start=1):
            chunk = records[start : start + chunk_size]
            chunk_result = StageResult(result.name)
            # the with-block joins every item before the next chunk starts
            with ThreadPoolExecutor(max_workers=len(chunk)) as executor:
                futures = {executor.submit(worker, meta): meta for meta in chunk}
                for fut in as_completed(futures):
                    meta = futures[fut]
                    try:
                        outcome = fut.result()
                    except Exception as exc:  # noqa: BLE001
                        log.exception("%s: clip %s failed: %s", desc, meta.id, exc)
                        outcome = FAILED
                    if outcome == SUCCESS:
                        chunk_result.success += 1
                    elif outcome == SKIPPED:
                        chunk_result.skipped += 1
                    else:
                        chunk_result.failed += 1
            result.merge(chunk_result)
            log.info(
                "%s chunk %d/%d: %d ok, %d failed, %d skipped",
                desc,
                chunk_idx,
                total_chunks,
                chunk_result.success,
                chunk_result.failed,
                chunk_result.skipped,
            )

        result.seconds = time.perf_counter() - t0
        return result

    def _make_thumbnail(self, meta: ClipMetadata) -> str:
        start = parse_timestamp(meta.start_time)
        out_path = self.store.thumbnail_file(meta.id)
        cmd = build_thumbnail_command(Path(meta.source_file), start, out_path, self.cfg.ffmpeg)
        ok = self.thumbnail_supervisor.run(
            cmd,
            timeout=self.cfg.batch.thumbnail_timeout,
            label=f"thumbnail {meta.id}",
            capture_stdout=True,
        )
        if not ok:
            return FAILED
        problem = check_thumbnail(out_path)
        if problem:
            log.warning("Thumbnail for %s looks wrong: %s", meta.id, problem)
        updated = self.store.update(
            meta,
            thumbnail_path=self.store.thumbnail_web_path(meta.id),
            tags=advance_tags(meta.tags, STAGE_THUMBNAIL),
        )
        return SUCCESS if updated else FAILED

    def _make_clip(self, meta: ClipMetadata) -> str:
        source = Path(meta.source_file)
        if self.validator.is_blacklisted(source):
            return SKIPPED
        if not self.validator.within_size_limit(source):
            return SKIPPED
        try:
            start, end = span_seconds(meta.start_time, meta.end_time)
        except TimestampError as exc:
            log.warning("Clip %s has an unreadable span: %s", meta.id, exc)
            return SKIPPED
        duration = end - start
        if duration <= 0:
            log.warning("Clip %s: start %s is not before end %s", meta.id, meta.start_time, meta.end_time)
            return SKIPPED
        if duration > self.cfg.limits.max_clip_duration:
            log.warning(
                "Clip %s: %ss exceeds the %gs limit",
                meta.id,
                format_seconds(duration),
                self.cfg.limits.max_clip_duration,
            )
            return SKIPPED

        out_path = self.store.clip_file(meta.id)
        cmd = build_clip_command(source, start, duration, out_path, self.cfg.ffmpeg)
        ok = self.clip_supervisor.run(
            cmd,
            timeout=self.cfg.batch.clip_timeout,
            expected_duration=duration,
            label=f"clip {meta.id}",
        )
        if not ok:
            return FAILED
        updated = self.store.update(meta, tags=advance_tags(meta.tags, COMPLETED))
        return SUCCESS if updated else FAILED


def _write_summary(path: Path, data: dict) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2)
    except OSError as exc:
        log.warning("Failed to write summary to %s: %s", path, exc)


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(message)s",
    )
    cfg = load_config(
        Path(args.config),
        output_dir=args.output_dir,
        thumbnail_batch_size=args.thumbnail_batch_size,
        clip_batch_size=args.clip_batch_size,
    )
    requests = load_requests(Path(args.requests))
    if args.limit is not None:
        requests = requests[: args.limit]
    log.info("Loaded %d request(s) from %s", len(requests), args.requests)

    summary = ClipGenerationPipeline(cfg).run_batch(requests)

    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    summary_path = cfg.summaries_dir / f"batch-{stamp}.json"
    _write_summary(summary_path, summary.to_dict())
    log.info("Summary written to %s", summary_path)


if __name__ == "__main__":
    main()
