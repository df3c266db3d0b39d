import itertools
import json
import threading
import time
from pathlib import Path

import pytest

from autoclips import pipeline as pipeline_mod
from autoclips.intake import resolve_requests
from autoclips.pipeline import ClipGenerationPipeline
from autoclips.records import COMPLETED, STAGE_JSON, STAGE_THUMBNAIL, ClipRequest

SHOW = "Show (2020) - S01E01.mp4"


class FakeSupervisor:
    """Stands in for the encoder: records each command and writes its output file."""

    def __init__(self, ok=True, size=2048, error=None, delay=0.0):
        self.ok = ok
        self.size = size
        self.error = error
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def run(self, cmd, timeout, expected_duration=None, label=None, capture_stdout=False):
        with self._lock:
            self.calls.append({"cmd": list(cmd), "timeout": timeout, "expected_duration": expected_duration})
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if self.error is not None:
                raise self.error
            if self.ok:
                out = Path(cmd[-1])
                out.parent.mkdir(parents=True, exist_ok=True)
                out.write_bytes(b"\xff" * self.size)
            return self.ok
        finally:
            with self._lock:
                self.active -= 1


def _request(media_file=SHOW, start="00:00:01,000", end="00:00:03,500", **kwargs) -> ClipRequest:
    return ClipRequest(media_file=media_file, start_time=start, end_time=end, subtitle_text="Hello there", **kwargs)


def _resolved(cfg):
    return resolve_requests([_request()], cfg.media_base_path)


def _build(cfg, thumbs=None, clips=None):
    counter = itertools.count(1)
    thumbs = thumbs or FakeSupervisor()
    clips = clips or FakeSupervisor()
    pipe = ClipGenerationPipeline(
        cfg,
        thumbnail_supervisor=thumbs,
        clip_supervisor=clips,
        id_factory=lambda: f"clip-{next(counter)}",
    )
    return pipe, thumbs, clips


def _all_commands(*supervisors):
    return [" ".join(call["cmd"]) for sup in supervisors for call in sup.calls]


def test_end_to_end_new_duplicate_and_blacklisted(cfg, make_media):
    make_media(SHOW)
    make_media("Cursed Movie (1999).mp4")
    cfg.blacklisted_files = ["Cursed Movie"]
    pipe, thumbs, clips = _build(cfg)

    summary = pipe.run_batch([_request(), _request(), _request(media_file="Cursed Movie (1999).mp4")])

    assert summary.total_requested == 3
    assert summary.duplicates_removed == 1
    assert (summary.stage1.success, summary.stage1.skipped, summary.stage1.failed) == (1, 2, 0)
    assert summary.skip_reasons == {"duplicate": 1, "blacklisted": 1}
    assert (summary.json_created, summary.thumbnails_created, summary.clips_created) == (1, 1, 1)
    assert not any("Cursed" in c for c in _all_commands(thumbs, clips))

    records = pipe.store.load_all()
    assert len(records) == 1
    meta = records[0]
    assert meta.id == "clip-1"
    assert meta.tags[-1] == COMPLETED
    assert not any(t.startswith("stage-") for t in meta.tags)
    assert meta.source_file == str(cfg.media_base_path / SHOW)
    assert meta.clip_path == "/clips/clip-1.mp4"
    assert meta.thumbnail_path == "/thumbnails/clip-1.jpg"
    assert (cfg.clips_dir / "clip-1.mp4").exists()
    assert (cfg.thumbnails_dir / "clip-1.jpg").exists()
    assert summary.records[0].tags == meta.tags


def test_encoder_receives_span(cfg, make_media):
    make_media(SHOW)
    pipe, thumbs, clips = _build(cfg)
    pipe.run_batch([_request()])

    thumb_cmd = thumbs.calls[0]["cmd"]
    assert thumb_cmd[thumb_cmd.index("-ss") + 1] == "1"
    assert thumbs.calls[0]["timeout"] == cfg.batch.thumbnail_timeout
    clip_call = clips.calls[0]
    assert clip_call["cmd"][clip_call["cmd"].index("-t") + 1] == "2.5"
    assert clip_call["expected_duration"] == pytest.approx(2.5)
    assert clip_call["timeout"] == cfg.batch.clip_timeout


def test_rerun_is_a_no_op(cfg, make_media):
    make_media(SHOW)
    pipe, thumbs, clips = _build(cfg)
    pipe.run_batch([_request()])

    again, thumbs2, clips2 = _build(cfg)
    summary = again.run_batch([_request()])
    assert summary.stage1.success == 0
    assert summary.skip_reasons == {"duplicate": 1}
    assert thumbs2.calls == [] and clips2.calls == []
    records = again.store.load_all()
    assert len(records) == 1
    assert records[0].stage == COMPLETED


def test_thumbnail_failure_still_attempts_clip(cfg, make_media):
    make_media(SHOW)
    pipe, thumbs, clips = _build(cfg, thumbs=FakeSupervisor(ok=False))
    summary = pipe.run_batch([_request()])
    assert summary.stage2.failed == 1
    assert summary.stage3.success == 1
    meta = pipe.store.get("clip-1")
    assert meta.stage == COMPLETED
    assert meta.thumbnail_path is None


def test_clip_failure_leaves_thumbnail_tag(cfg, make_media):
    make_media(SHOW)
    pipe, thumbs, clips = _build(cfg, clips=FakeSupervisor(ok=False))
    summary = pipe.run_batch([_request()])
    assert summary.stage3.failed == 1
    meta = pipe.store.get("clip-1")
    assert meta.stage == STAGE_THUMBNAIL
    assert meta.thumbnail_path == "/thumbnails/clip-1.jpg"


def test_worker_exception_is_counted_not_raised(cfg, make_media):
    make_media(SHOW)
    pipe, thumbs, clips = _build(cfg, thumbs=FakeSupervisor(error=RuntimeError("boom")))
    summary = pipe.run_batch([_request()])
    assert summary.stage2.failed == 1
    assert summary.stage3.success == 1


@pytest.mark.parametrize(
    "start, end",
    [
        ("00:00:05,000", "00:00:05,000"),
        ("00:00:06,000", "00:00:05,000"),
        ("00:00:00,000", "00:00:02,500"),
    ],
)
def test_span_is_rejected_before_encoding(cfg, make_media, start, end):
    make_media(SHOW)
    cfg.limits.max_clip_duration = 2
    pipe, thumbs, clips = _build(cfg)
    summary = pipe.run_batch([_request(start=start, end=end)])
    assert summary.stage1.success == 1
    assert summary.stage3.skipped == 1
    assert clips.calls == []
    assert pipe.store.get("clip-1").stage == STAGE_THUMBNAIL


def test_blacklist_is_checked_again_before_clip(cfg, make_media):
    make_media(SHOW)
    pipe, thumbs, clips = _build(cfg)
    created, stage1 = pipe.create_metadata_batch(_resolved(cfg))
    assert stage1.success == 1
    pipe.validator.blacklist.append("S01E01")
    result = pipe.create_clip_batch(created)
    assert result.skipped == 1
    assert clips.calls == []
    assert pipe.store.get("clip-1").stage == STAGE_JSON


def test_soft_size_limit_is_checked_before_clip(cfg, make_media):
    make_media(SHOW, size=4096)
    pipe, thumbs, clips = _build(cfg)
    created, _ = pipe.create_metadata_batch(_resolved(cfg))
    pipe.validator.max_file_size_gb = 1e-9
    result = pipe.create_clip_batch(created)
    assert result.skipped == 1
    assert clips.calls == []


def test_stage_one_rejections(cfg, make_media, media_dir):
    make_media(SHOW)
    make_media("huge.mp4", size=2 * 1024 * 1024)
    cfg.limits.hard_max_file_size_mb = 1
    pipe, thumbs, clips = _build(cfg)
    summary = pipe.run_batch(
        [
            _request(media_file="missing.mp4"),
            _request(media_file="huge.mp4"),
            _request(start="later"),
            _request(media_file=str(media_dir)),
        ]
    )
    assert summary.stage1.success == 0
    assert summary.skip_reasons == {"invalid_media": 3, "invalid_timestamp": 1}
    assert pipe.store.load_all() == []
    assert thumbs.calls == [] and clips.calls == []


def test_directory_hint_is_kept(cfg, make_media):
    make_media("tv/Show/" + SHOW)
    pipe, thumbs, clips = _build(cfg)
    summary = pipe.run_batch([_request(directory="tv/Show")])
    assert summary.clips_created == 1
    expected = str(cfg.media_base_path / "tv" / "Show" / SHOW)
    assert pipe.store.get("clip-1").source_file == expected
    assert expected in clips.calls[0]["cmd"]


def test_chunks_bound_concurrency(cfg, make_media):
    make_media(SHOW)
    cfg.batch.clip_batch_size = 2
    clips = FakeSupervisor(delay=0.05)
    pipe, thumbs, _ = _build(cfg, clips=clips)
    requests = [_request(start=f"00:00:0{i},000", end=f"00:00:0{i},900") for i in range(1, 6)]
    summary = pipe.run_batch(requests)
    assert summary.clips_created == 5
    assert clips.max_active <= 2
    assert thumbs.max_active == 1
    assert all(m.stage == COMPLETED for m in pipe.store.load_all())


def test_storage_failure_counts_as_failed(cfg, make_media, monkeypatch):
    make_media(SHOW)
    pipe, thumbs, clips = _build(cfg)
    monkeypatch.setattr(pipe.store, "save", lambda meta: False)
    summary = pipe.run_batch([_request()])
    assert summary.stage1.failed == 1
    assert summary.records == []
    assert thumbs.calls == []


def test_main_writes_summary(cfg, make_media, tmp_path, monkeypatch):
    make_media(SHOW)
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        f"workdir: {cfg.workdir}\nmedia_base_path: {cfg.media_base_path}\n",
        encoding="utf-8",
    )
    requests_path = tmp_path / "search.json"
    requests_path.write_text(
        json.dumps(
            {
                "sentence_results": [
                    {
                        "search_sentence": "hello",
                        "results": [{"media_file": SHOW, "start_time": "00:00:01,000", "end_time": "00:00:02,000"}],
                    }
                ]
            }
        ),
        encoding="utf-8",
    )
    fake = FakeSupervisor()
    monkeypatch.setattr(pipeline_mod, "ProcessSupervisor", lambda **kwargs: fake)
    monkeypatch.setattr(
        "sys.argv",
        ["autoclips.pipeline", "--config", str(config_path), "--requests", str(requests_path)],
    )
    pipeline_mod.main()

    summaries = list((cfg.workdir / "summaries").glob("batch-*.json"))
    assert len(summaries) == 1
    data = json.loads(summaries[0].read_text(encoding="utf-8"))
    assert data["json_created"] == 1
    assert data["clips_created"] == 1
    assert len(fake.calls) == 2
