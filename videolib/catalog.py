"""
In-memory video catalog.

The filesystem is the source of truth: the catalog is rebuilt by scanning the
active directory and never persisted. Mutations are serialized by one lock and
reads hand out copies, so a record is never observed half-built. Thumbnail
backfill runs on a bounded pool and reports back through the same lock.
"""
from __future__ import annotations

import concurrent.futures
import hashlib
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .errors import IOFailure, InvalidInput, MediaShelfError, NotFound
from .logs import error, log, warn
from .models import ThumbnailProgress, UploadedFile, VideoRecord
from .thumbnails import ThumbnailPipeline

VIDEO_EXTENSIONS = frozenset({".mp4", ".avi", ".mkv", ".mov", ".wmv", ".flv", ".webm"})
DEFAULT_MIME_TYPE = "video/mp4"
MIME_TYPES = {
    ".mp4": "video/mp4",
    ".avi": "video/x-msvideo",
    ".mkv": "video/x-matroska",
    ".mov": "video/quicktime",
    ".wmv": "video/x-ms-wmv",
    ".flv": "video/x-flv",
    ".webm": "video/webm",
}


def is_video_file(name: str) -> bool:
    return Path(name).suffix.lower() in VIDEO_EXTENSIONS


def mime_type_for(name: str) -> str:
    return MIME_TYPES.get(Path(name).suffix.lower(), DEFAULT_MIME_TYPE)


def video_id_for(path: Path | str) -> str:
    """Stable id: md5 of the resolved absolute path."""
    return hashlib.md5(str(Path(path).resolve()).encode("utf-8")).hexdigest()


def _ts(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class VideoCatalog:
    def __init__(self, pipeline: ThumbnailPipeline, directory: Path | str, *, workers: int = 2) -> None:
        self._pipeline = pipeline
        self._dir = Path(directory).expanduser().resolve()
        self._videos: dict[str, VideoRecord] = {}
        self._lock = threading.Lock()
        # Serializes whole-directory swaps so two scans never interleave
        self._swap_lock = threading.Lock()
        self._exec = concurrent.futures.ThreadPoolExecutor(
            max_workers=max(1, int(workers)),
            thread_name_prefix="thumb-backfill",
        )
        self._pending: dict[concurrent.futures.Future, int] = {}
        self._generation = 0
        self._failed = 0

    @property
    def active_directory(self) -> Path:
        return self._dir

    @property
    def pipeline(self) -> ThumbnailPipeline:
        return self._pipeline

    # -----------------------------
    # Queries (copy-on-read)
    # -----------------------------
    def get_all(self) -> list[VideoRecord]:
        with self._lock:
            return [r.model_copy() for r in self._videos.values()]

    def get_by_id(self, video_id: str) -> Optional[VideoRecord]:
        with self._lock:
            rec = self._videos.get(video_id)
            return rec.model_copy() if rec is not None else None

    def require(self, video_id: str) -> VideoRecord:
        rec = self.get_by_id(video_id)
        if rec is None:
            raise NotFound("Video not found", data={"id": video_id})
        return rec

    def __len__(self) -> int:
        with self._lock:
            return len(self._videos)

    # -----------------------------
    # Scanning
    # -----------------------------
    def _build_record(self, path: Path) -> VideoRecord:
        st = path.stat()
        vid = video_id_for(path)
        existing = self._pipeline.existing_thumbnail(vid)
        return VideoRecord(
            id=vid,
            filename=path.name,
            original_name=path.name,
            path=str(path),
            size=st.st_size,
            mime_type=mime_type_for(path.name),
            created_at=_ts(getattr(st, "st_birthtime", st.st_mtime)),
            updated_at=_ts(st.st_mtime),
            thumbnail_path=str(existing) if existing else None,
        )

    def _list_directory(self, directory: Path) -> list[VideoRecord]:
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as e:
            raise IOFailure(f"Failed to list directory: {e}", data={"path": str(directory)}) from e
        records: list[VideoRecord] = []
        for entry in entries:
            if not is_video_file(entry.name):
                continue
            try:
                if not entry.is_file():
                    continue
                records.append(self._build_record(Path(entry.path).resolve()))
            except OSError as e:
                # Vanished or unreadable mid-scan; the rest of the directory still counts
                warn("catalog", f"scan skip path={entry.path} error={e}")
        return records

    def scan_directory(self, path: Path | str) -> list[VideoRecord]:
        """
        Index the supported video files directly inside `path`, replacing the
        catalog contents, and queue thumbnail backfill for files without one.
        Returns snapshots of the new records in insertion order.
        """
        directory = Path(path).expanduser().resolve()
        records = self._list_directory(directory)
        with self._lock:
            self._generation += 1
            generation = self._generation
            self._failed = 0
            self._dir = directory
            self._videos = {r.id: r for r in records}
        missing = [r for r in records if not r.thumbnail_path]
        log("catalog", f"scan end dir={directory} videos={len(records)} thumbnails_missing={len(missing)}")
        for rec in missing:
            self._schedule_backfill(rec, generation)
        return [r.model_copy() for r in records]

    def rescan(self) -> list[VideoRecord]:
        with self._swap_lock:
            return self.scan_directory(self._dir)

    def change_active_directory(self, path: Path | str) -> list[VideoRecord]:
        p = Path(path).expanduser()
        if not p.exists():
            raise NotFound(f"Directory does not exist: {p}", data={"path": str(p)})
        if not p.is_dir():
            raise InvalidInput(f"Path is not a directory: {p}", data={"path": str(p)})
        with self._swap_lock:
            log("catalog", f"directory change from={self._dir} to={p.resolve()}")
            # scan_directory swaps contents only once the listing succeeded
            return self.scan_directory(p)

    # -----------------------------
    # Mutations
    # -----------------------------
    def add(self, upload: Optional[UploadedFile]) -> VideoRecord:
        if upload is None:
            raise InvalidInput("No file provided")
        path = Path(upload.absolute_path).expanduser().resolve()
        if not path.is_file():
            raise NotFound(f"Uploaded file not found on disk: {path}", data={"path": str(path)})
        now = datetime.now(timezone.utc)
        vid = video_id_for(path)
        existing = self._pipeline.existing_thumbnail(vid)
        rec = VideoRecord(
            id=vid,
            filename=upload.stored_filename,
            original_name=upload.original_name,
            path=str(path),
            size=int(upload.size),
            mime_type=mime_type_for(upload.stored_filename),
            created_at=now,
            updated_at=now,
            thumbnail_path=str(existing) if existing else None,
        )
        with self._lock:
            self._videos[vid] = rec
            generation = self._generation
        log("catalog", f"add id={vid} name={upload.original_name!r} size={rec.size}")
        if not existing:
            self._schedule_backfill(rec, generation)
        return rec.model_copy()

    def remove(self, video_id: str) -> bool:
        """
        Drop the entry and delete its files. File deletion is best-effort: a
        failure is logged and the entry is removed anyway.
        """
        with self._lock:
            rec = self._videos.pop(video_id, None)
        if rec is None:
            log("catalog", f"remove miss id={video_id}")
            return False
        thumb = rec.thumbnail_path or str(self._pipeline.thumbnail_path(rec.id))
        for kind, target in (("video", rec.path), ("thumbnail", thumb)):
            try:
                Path(target).unlink()
                log("catalog", f"remove deleted {kind}={target}")
            except FileNotFoundError:
                if kind == "video":
                    warn("catalog", f"remove video file already gone path={target}")
            except OSError as e:
                warn("catalog", f"remove failed to delete {kind}={target} error={e}")
        return True

    # -----------------------------
    # Thumbnails
    # -----------------------------
    def _schedule_backfill(self, rec: VideoRecord, generation: int) -> None:
        try:
            fut = self._exec.submit(self._backfill, rec.id, rec.path, generation)
        except RuntimeError:
            warn("catalog", f"backfill not scheduled id={rec.id}: executor is shut down")
            return
        with self._lock:
            self._pending[fut] = generation
        # Runs immediately when the task already finished
        fut.add_done_callback(self._forget)

    def _forget(self, fut: concurrent.futures.Future) -> None:
        with self._lock:
            self._pending.pop(fut, None)

    def _apply_thumbnail(self, video_id: str, video_path: str, thumb: Path) -> Optional[VideoRecord]:
        with self._lock:
            rec = self._videos.get(video_id)
            # The catalog may have been swapped or the entry deleted meanwhile
            if rec is None or rec.path != video_path:
                return None
            rec = rec.model_copy(update={"thumbnail_path": str(thumb)})
            self._videos[video_id] = rec
            return rec.model_copy()

    def _backfill(self, video_id: str, video_path: str, generation: int) -> None:
        try:
            thumb = self._pipeline.ensure_thumbnail(video_path, video_id)
        except MediaShelfError as e:
            warn("thumbnail", f"backfill failed id={video_id} path={video_path} kind={type(e).__name__}: {e.message}")
            self._count_failure(generation)
            return
        except Exception:
            error("thumbnail", f"backfill crashed id={video_id} path={video_path}", exc_info=True)
            self._count_failure(generation)
            return
        if self._apply_thumbnail(video_id, video_path, thumb) is None:
            with self._lock:
                gone = video_id not in self._videos
            if gone and not Path(video_path).exists():
                # Removed while ffmpeg was running; remove() could not see this file yet
                self._pipeline.delete_thumbnail(video_id)
                log("catalog", f"backfill dropped orphan thumbnail id={video_id}")

    def _count_failure(self, generation: int) -> None:
        with self._lock:
            if generation == self._generation:
                self._failed += 1

    def request_thumbnail(self, video_id: str) -> VideoRecord:
        """Explicit single-video request: pipeline failures propagate to the caller."""
        rec = self.require(video_id)
        thumb = self._pipeline.ensure_thumbnail(rec.path, rec.id)
        updated = self._apply_thumbnail(rec.id, rec.path, thumb)
        return updated if updated is not None else rec.model_copy(update={"thumbnail_path": str(thumb)})

    def thumbnail_progress(self) -> ThumbnailProgress:
        with self._lock:
            pending = sum(1 for g in self._pending.values() if g == self._generation)
            total = len(self._videos)
            completed = sum(1 for r in self._videos.values() if r.thumbnail_path)
            failed = self._failed
        return ThumbnailProgress(
            active=pending > 0,
            total=total,
            completed=completed,
            failed=failed,
            pending=pending,
        )

    def wait_for_thumbnails(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued backfill task has finished. False on timeout."""
        with self._lock:
            futs = list(self._pending)
        if not futs:
            return True
        _done, not_done = concurrent.futures.wait(futs, timeout=timeout)
        return not not_done

    def shutdown(self, *, wait: bool = True) -> None:
        self._exec.shutdown(wait=wait, cancel_futures=True)


__all__ = [
    "VideoCatalog",
    "VIDEO_EXTENSIONS",
    "MIME_TYPES",
    "DEFAULT_MIME_TYPE",
    "is_video_file",
    "mime_type_for",
    "video_id_for",
]
