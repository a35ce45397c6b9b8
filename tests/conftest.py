import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    import batchbrake.utils as utils

    monkeypatch.setenv("BATCHBRAKE_SETTINGS_DIR", str(tmp_path / "settings"))
    monkeypatch.setenv("BATCHBRAKE_CACHE_DIR", str(tmp_path / "cache"))
    monkeypatch.delenv("BATCHBRAKE_SESSION_PATH", raising=False)
    monkeypatch.delenv("BATCHBRAKE_HANDBRAKE_CLI", raising=False)
    utils.get_user_settings_dir.cache_clear()
    utils.get_user_cache_root.cache_clear()
    yield
    utils.get_user_settings_dir.cache_clear()
    utils.get_user_cache_root.cache_clear()


@pytest.fixture
def make_videos(tmp_path):
    def _make(*names):
        folder = tmp_path / "videos"
        folder.mkdir(exist_ok=True)
        paths = []
        for name in names:
            path = folder / name
            path.write_bytes(b"\x00" * 16)
            paths.append(str(path))
        return paths

    return _make
