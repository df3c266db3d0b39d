from pathlib import Path

import pytest

from autoclips.config import Config


@pytest.fixture
def media_dir(tmp_path: Path) -> Path:
    path = tmp_path / "media"
    path.mkdir()
    return path


@pytest.fixture
def cfg(tmp_path: Path, media_dir: Path) -> Config:
    return Config(workdir=tmp_path / "work", media_base_path=media_dir)


@pytest.fixture
def make_media(media_dir: Path):
    def _make(name: str, size: int = 4096) -> Path:
        path = media_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"\0" * size)
        return path

    return _make
