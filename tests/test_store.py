import json

import pytest

from autoclips.records import AUTO_GENERATED, COMPLETED, STAGE_JSON, STAGE_THUMBNAIL, ClipRequest, advance_tags
from autoclips.spans import TimestampError
from autoclips.store import ClipMetadataStore, extract_title


@pytest.fixture
def store(tmp_path):
    return ClipMetadataStore(tmp_path / "public" / "clips", tmp_path / "public" / "thumbnails")


def _request(**overrides) -> ClipRequest:
    fields = dict(
        media_file="Show (2020) - S01E01 - Pilot.mp4",
        start_time="00:00:01,000",
        end_time="00:00:03,500",
        subtitle_text="Hello there",
        sentence="hello",
        source_path="/mnt/media/tv/Show (2020) - S01E01 - Pilot.mp4",
    )
    fields.update(overrides)
    return ClipRequest(**fields)


@pytest.mark.parametrize(
    "name, title",
    [
        ("Batman The Animated Series (1992) - S01E01 - On Leather Wings.mkv", "Batman The Animated Series (1992)"),
        ("Friends - S01E02.mkv", "Friends"),
        ("Some Movie (1999) 1080p.mp4", "Some Movie (1999)"),
        ("/mnt/media/plain_name.mp4", "plain_name"),
    ],
)
def test_extract_title(name, title):
    assert extract_title(name) == title


def test_create_builds_stage_one_record(store):
    meta = store.create(_request(), "abc")
    assert meta.id == "abc"
    assert meta.title == "Show (2020)"
    assert meta.tags == ["Show", AUTO_GENERATED, STAGE_JSON]
    assert meta.duration == "2.5초"
    assert meta.clip_path == "/clips/abc.mp4"
    assert meta.thumbnail_path is None
    assert meta.source_file == "/mnt/media/tv/Show (2020) - S01E01 - Pilot.mp4"
    assert meta.created_at.endswith("Z")
    assert meta.sentence == "hello"
    assert meta.source_subtitle == "Hello there"


def test_create_rejects_bad_timestamp(store):
    with pytest.raises(TimestampError):
        store.create(_request(start_time="soon"), "abc")


def test_save_and_get(store):
    meta = store.create(_request(), "abc")
    assert store.save(meta)
    path = store.clips_dir / "abc.json"
    assert path.exists()
    assert [p.name for p in store.clips_dir.iterdir()] == ["abc.json"]
    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk["koreanSubtitle"] == "X"
    assert on_disk["duration"] == "2.5초"
    loaded = store.get("abc")
    assert loaded == meta
    assert store.get("missing") is None


def test_load_all_skips_unreadable_records(store):
    store.save(store.create(_request(), "good"))
    (store.clips_dir / "broken.json").write_text("{not json", encoding="utf-8")
    (store.clips_dir / "partial.json").write_text('{"id": "partial"}', encoding="utf-8")
    assert [m.id for m in store.load_all()] == ["good"]


def test_load_all_without_directory(tmp_path):
    assert ClipMetadataStore(tmp_path / "nothing").load_all() == []


def test_is_duplicate(store):
    meta = store.create(_request(), "abc")
    assert store.is_duplicate(_request(), [meta])
    assert store.is_duplicate(_request(), {meta.dedup_key})
    assert not store.is_duplicate(_request(end_time="00:00:03,501"), [meta])
    assert not store.is_duplicate(_request(source_path="/mnt/media/other/x.mp4"), {meta.dedup_key})


def test_update_keeps_caller_record_current(store):
    meta = store.create(_request(), "abc")
    store.save(meta)
    assert store.update(meta, thumbnail_path="/thumbnails/abc.jpg", tags=advance_tags(meta.tags, STAGE_THUMBNAIL))
    assert meta.thumbnail_path == "/thumbnails/abc.jpg"
    assert store.update(meta, tags=advance_tags(meta.tags, COMPLETED))
    on_disk = store.get("abc")
    assert on_disk.thumbnail_path == "/thumbnails/abc.jpg"
    assert on_disk.tags == ["Show", AUTO_GENERATED, COMPLETED]


def test_update_failure_leaves_record_untouched(store, monkeypatch):
    meta = store.create(_request(), "abc")
    store.save(meta)

    def broken_write(clip_id, payload):
        raise OSError("disk full")

    monkeypatch.setattr(store, "_write", broken_write)
    assert store.update(meta, tags=advance_tags(meta.tags, STAGE_THUMBNAIL)) is False
    assert meta.stage == STAGE_JSON
    assert store.save(meta) is False
    monkeypatch.undo()
    assert store.get("abc").stage == STAGE_JSON


def test_failed_write_leaves_no_temp_file(store, monkeypatch):
    meta = store.create(_request(), "abc")
    store.save(meta)

    def broken_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr("autoclips.store.os.replace", broken_replace)
    assert store.update(meta, tags=advance_tags(meta.tags, STAGE_THUMBNAIL)) is False
    monkeypatch.undo()
    assert sorted(p.name for p in store.clips_dir.iterdir()) == ["abc.json"]
    assert store.get("abc").stage == STAGE_JSON


def test_update_unknown_field(store):
    meta = store.create(_request(), "abc")
    assert store.update(meta, colour="red") is False


def test_filter_by_tag(store):
    a = store.create(_request(), "a")
    b = store.create(_request(start_time="00:00:05,000", end_time="00:00:06,000"), "b")
    store.save(a)
    store.save(b)
    store.update(b, tags=advance_tags(b.tags, COMPLETED))
    assert [m.id for m in store.filter_by_tag(COMPLETED)] == ["b"]
    assert [m.id for m in store.filter_by_tag(STAGE_JSON)] == ["a"]
    assert {m.id for m in store.filter_by_tag("Show")} == {"a", "b"}


def test_delete(store):
    meta = store.create(_request(), "abc")
    store.save(meta)
    store.clip_file("abc").write_bytes(b"clip")
    store.thumbnails_dir.mkdir(parents=True)
    store.thumbnail_file("abc").write_bytes(b"thumb")
    assert store.delete("abc", remove_media=True)
    assert not store.record_path("abc").exists()
    assert not store.clip_file("abc").exists()
    assert not store.thumbnail_file("abc").exists()
    assert store.delete("abc") is False


def test_web_paths(tmp_path):
    store = ClipMetadataStore(tmp_path / "clips", clips_prefix="/media/clips/", thumbnails_prefix="/thumbs")
    assert store.clip_web_path("x") == "/media/clips/x.mp4"
    assert store.thumbnail_web_path("x") == "/thumbs/x.jpg"
    assert store.thumbnails_dir == tmp_path / "thumbnails"


def test_from_config(cfg):
    store = ClipMetadataStore.from_config(cfg)
    assert store.clips_dir == cfg.workdir / "public" / "clips"
    assert store.thumbnails_dir == cfg.workdir / "public" / "thumbnails"
