import importlib
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from helpers import FAKE_FFMPEG, FAKE_FFPROBE, FakeTools, write_script  # noqa: E402
from videolib import FolderRegistry, ThumbnailPipeline, VideoCatalog  # noqa: E402

if sys.platform.startswith("win"):  # pragma: no cover
    collect_ignore_glob = ["test_*.py"]


@pytest.fixture()
def fake_tools(tmp_path, monkeypatch):
    bindir = tmp_path / "bin"
    tools = FakeTools(
        ffmpeg=write_script(bindir / "ffmpeg", FAKE_FFMPEG),
        ffprobe=write_script(bindir / "ffprobe", FAKE_FFPROBE),
        log=tmp_path / "tools.log",
    )
    monkeypatch.setenv("FAKE_TOOL_LOG", str(tools.log))
    for name in ("FAKE_FFMPEG_MODE", "FAKE_FFPROBE_MODE", "FAKE_FFMPEG_FAIL_MATCH", "FAKE_FFMPEG_SLEEP", "FAKE_FFMPEG_SPANS"):
        monkeypatch.delenv(name, raising=False)
    return tools


@pytest.fixture()
def media_root(tmp_path):
    root = tmp_path / "media"
    root.mkdir()
    return root


@pytest.fixture()
def thumb_dir(tmp_path):
    return tmp_path / "thumbs"


@pytest.fixture()
def pipeline(fake_tools, thumb_dir):
    return ThumbnailPipeline(
        thumb_dir,
        ffmpeg=str(fake_tools.ffmpeg),
        ffprobe=str(fake_tools.ffprobe),
        timeout=10.0,
        concurrency=2,
    )


@pytest.fixture()
def catalog(pipeline, media_root):
    cat = VideoCatalog(pipeline, media_root, workers=2)
    try:
        yield cat
    finally:
        cat.shutdown()


@pytest.fixture()
def registry(tmp_path, catalog):
    return FolderRegistry(tmp_path / "state" / "registered-folders.json", catalog)


@pytest.fixture()
def app_module(tmp_path, media_root, fake_tools, monkeypatch):
    monkeypatch.setenv("MEDIA_ROOT", str(media_root))
    monkeypatch.setenv("STATE_DIR", str(tmp_path / "state"))
    monkeypatch.delenv("THUMBNAIL_DIR", raising=False)
    monkeypatch.delenv("FOLDERS_FILE", raising=False)
    monkeypatch.setenv("FFMPEG", str(fake_tools.ffmpeg))
    monkeypatch.setenv("FFPROBE", str(fake_tools.ffprobe))
    monkeypatch.setenv("THUMBNAIL_TIMEOUT", "10")
    if "app" in sys.modules:
        module = importlib.reload(sys.modules["app"])
    else:
        module = importlib.import_module("app")
    yield module
    module.STATE["catalog"].shutdown()


@pytest.fixture()
def client(app_module):
    with TestClient(app_module.app) as test_client:
        yield test_client
