from datetime import datetime, timezone

import pytest

from helpers import pattern_bytes, write_video
from videolib import (
    BackingFileMissing,
    InvalidInput,
    NotFound,
    RangeNotSatisfiable,
    VideoRecord,
    open_stream,
    parse_range,
)
from videolib.streaming import iter_file


def _record(path, mime="video/mp4"):
    now = datetime.now(timezone.utc)
    return VideoRecord(
        id="vid",
        filename=path.name,
        original_name=path.name,
        path=str(path),
        size=0,
        mime_type=mime,
        created_at=now,
        updated_at=now,
    )


@pytest.mark.parametrize(
    "header, expected",
    [
        (None, None),
        ("", None),
        ("bytes=100-199", (100, 199)),
        ("bytes=100-", (100, 999)),
        ("bytes=0-0", (0, 0)),
        ("bytes=900-5000", (900, 999)),
        ("bytes=10-19, 30-39", (10, 19)),
        ("BYTES=5-9", (5, 9)),
    ],
)
def test_parse_range(header, expected):
    assert parse_range(header, 1000) == expected


@pytest.mark.parametrize(
    "header",
    ["items=0-10", "bytes", "bytes=-500", "bytes=abc-", "bytes=5-x", "bytes=10-5", "bytes=--1", "bytes=²-", "bytes=0-²"],
)
def test_parse_range_rejects_malformed(header):
    with pytest.raises(InvalidInput) as ei:
        parse_range(header, 1000)
    assert not isinstance(ei.value, RangeNotSatisfiable)
    assert ei.value.status_code == 400


@pytest.mark.parametrize("header", ["bytes=1000-", "bytes=1500-1600"])
def test_parse_range_unsatisfiable(header):
    with pytest.raises(RangeNotSatisfiable) as ei:
        parse_range(header, 1000)
    assert ei.value.size == 1000
    assert ei.value.status_code == 416


def test_partial_window(media_root):
    data = pattern_bytes(1000)
    video = write_video(media_root, "clip.webm", data)
    stream = open_stream(_record(video, "video/webm"), "bytes=100-199")
    assert stream.status_code == 206
    assert stream.headers == {
        "Accept-Ranges": "bytes",
        "Content-Length": "100",
        "Content-Type": "video/webm",
        "Content-Range": "bytes 100-199/1000",
    }
    assert stream.read_all() == data[100:200]


def test_full_range_matches_plain_read(media_root):
    data = pattern_bytes(4096)
    video = write_video(media_root, "clip.mp4", data)
    rec = _record(video)
    full = open_stream(rec)
    ranged = open_stream(rec, "bytes=0-4095")
    assert full.status_code == 200
    assert ranged.status_code == 206
    assert "Content-Range" not in full.headers
    assert full.headers["Content-Length"] == ranged.headers["Content-Length"] == "4096"
    assert full.read_all() == ranged.read_all() == data


def test_size_comes_from_disk_not_record(media_root):
    video = write_video(media_root, "clip.mp4", b"a" * 10)
    rec = _record(video)
    video.write_bytes(b"b" * 20)
    stream = open_stream(rec)
    assert stream.content_length == 20


def test_missing_backing_file(media_root):
    rec = _record(media_root / "gone.mp4")
    with pytest.raises(BackingFileMissing) as ei:
        open_stream(rec)
    assert isinstance(ei.value, NotFound)


def test_close_releases_file_early(media_root):
    video = write_video(media_root, "big.mp4", pattern_bytes(3 * 1024 * 1024 + 7))
    stream = open_stream(_record(video))
    body = iter(stream)
    first = next(body)
    assert len(first) == 1024 * 1024
    stream.close()
    # A closed generator has left its `with open(...)` block
    assert body.gi_frame is None
    stream.close()


def test_iter_file_chunks(media_root):
    data = pattern_bytes(50)
    video = write_video(media_root, "small.mp4", data)
    chunks = list(iter_file(video, 3, 40, chunk_size=7))
    assert all(len(c) <= 7 for c in chunks)
    assert b"".join(chunks) == data[3:41]
