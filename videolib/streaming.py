"""
Single-range byte serving for cataloged videos.

Only the first segment of a multi-range header is honoured. Suffix ranges
(`bytes=-N`) and other malformed headers are rejected as InvalidInput; a start
at or past the end of the file is RangeNotSatisfiable.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import Iterator, Optional

from .errors import BackingFileMissing, IOFailure, InvalidInput, RangeNotSatisfiable
from .logs import log, warn
from .models import VideoRecord

CHUNK_SIZE = 1024 * 1024
_DIGITS = re.compile(r"[0-9]+")


def parse_range(header: Optional[str], size: int) -> Optional[tuple[int, int]]:
    """Return the inclusive (start, end) window, or None when no range was asked for."""
    if header is None or not header.strip():
        return None
    unit, sep, spec = header.strip().partition("=")
    if not sep or unit.strip().lower() != "bytes":
        raise InvalidInput("Invalid Range", data={"range": header})
    first = spec.split(",", 1)[0].strip()
    start_s, dash, end_s = first.partition("-")
    start_s, end_s = start_s.strip(), end_s.strip()
    if not dash or not start_s:
        raise InvalidInput("Invalid Range: a start offset is required", data={"range": header})
    if not _DIGITS.fullmatch(start_s) or (end_s and not _DIGITS.fullmatch(end_s)):
        raise InvalidInput("Invalid Range", data={"range": header})
    start = int(start_s)
    if start >= size:
        raise RangeNotSatisfiable(
            f"Range start {start} is beyond the end of the file",
            size=size,
            data={"range": header, "size": size},
        )
    end = int(end_s) if end_s else size - 1
    if end < start:
        raise InvalidInput("Invalid Range: end precedes start", data={"range": header})
    return start, min(end, size - 1)


def iter_file(path: Path, start: int, end: int, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    with open(path, "rb") as f:
        f.seek(start)
        remaining = end - start + 1
        while remaining > 0:
            data = f.read(min(chunk_size, remaining))
            if not data:
                break
            remaining -= len(data)
            yield data


class VideoStream:
    """
    A resolved response for one video: status, headers and a lazily-read body.
    The body owns its file handle; close() releases it early (client gone).
    """

    def __init__(self, path: Path, *, size: int, mime_type: str, window: Optional[tuple[int, int]]) -> None:
        self.path = path
        self.size = size
        self.mime_type = mime_type
        self.partial = window is not None
        self.start, self.end = window if window is not None else (0, size - 1)
        self._body: Optional[Iterator[bytes]] = None

    @property
    def status_code(self) -> int:
        return 206 if self.partial else 200

    @property
    def content_length(self) -> int:
        return self.end - self.start + 1

    @property
    def headers(self) -> dict[str, str]:
        headers = {
            "Accept-Ranges": "bytes",
            "Content-Length": str(self.content_length),
            "Content-Type": self.mime_type,
        }
        if self.partial:
            headers["Content-Range"] = f"bytes {self.start}-{self.end}/{self.size}"
        return headers

    def __iter__(self) -> Iterator[bytes]:
        if self._body is None:
            self._body = iter_file(self.path, self.start, self.end)
        return self._body

    def read_all(self) -> bytes:
        try:
            return b"".join(self)
        finally:
            self.close()

    def close(self) -> None:
        body, self._body = self._body, None
        if body is None:
            return
        try:
            body.close()  # type: ignore[attr-defined]
        except ValueError:
            # Still running on a worker thread; it closes the file when it returns
            warn("stream", f"stream close deferred path={self.path}")


def open_stream(record: VideoRecord, range_header: Optional[str] = None) -> VideoStream:
    path = Path(record.path)
    try:
        st = path.stat()
    except FileNotFoundError as e:
        raise BackingFileMissing(
            "Video file is missing on disk",
            data={"id": record.id, "path": record.path},
        ) from e
    except OSError as e:
        raise IOFailure(f"Cannot stat video file: {e}", data={"id": record.id}) from e
    if not path.is_file():
        raise BackingFileMissing("Video file is missing on disk", data={"id": record.id, "path": record.path})
    size = st.st_size
    window = parse_range(range_header, size)
    stream = VideoStream(path, size=size, mime_type=record.mime_type, window=window)
    if window is None:
        log("stream", f"stream 200 id={record.id} size={size} ct={record.mime_type}")
    else:
        log("stream", f"stream 206 id={record.id} {stream.start}-{stream.end}/{size} ct={record.mime_type}")
    return stream


__all__ = ["CHUNK_SIZE", "parse_range", "iter_file", "VideoStream", "open_stream"]
