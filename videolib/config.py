"""Environment-driven settings. Read once at startup; tests build their own."""
from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Optional

from pydantic import BaseModel


# -----------------------------
# Size/quality env tunables
# -----------------------------
def _env_int(name: str, default: int) -> int:
    try:
        v = os.environ.get(name)
        return int(v) if v is not None and str(v).strip() != "" else int(default)
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    try:
        v = os.environ.get(name)
        return float(v) if v is not None and str(v).strip() != "" else float(default)
    except Exception:
        return float(default)


def _env_path(name: str, default: Path) -> Path:
    v = os.environ.get(name)
    if v and v.strip():
        return Path(v).expanduser().resolve()
    return default


def _default_workers() -> int:
    cpu = os.cpu_count() or 2
    return min(4, max(2, cpu // 2))


class Settings(BaseModel):  # type: ignore
    media_root: Path
    state_dir: Path
    thumbnail_dir: Path
    folders_file: Path
    ffmpeg: str = "ffmpeg"
    ffprobe: str = "ffprobe"
    thumbnail_timeout: float = 30.0
    thumbnail_offset: str = "25%"
    thumbnail_width: int = 320
    thumbnail_quality: int = 8
    ffmpeg_concurrency: int = 4
    thumbnail_workers: int = 2
    ffmpeg_hwaccel: Optional[str] = None
    ffmpeg_threads: Optional[str] = None
    max_upload_bytes: int = 500 * 1024 * 1024

    @classmethod
    def from_env(cls) -> "Settings":
        root = Path(os.environ.get("MEDIA_ROOT", ".")).expanduser().resolve()
        state_dir = _env_path("STATE_DIR", root / ".media-shelf")
        return cls(
            media_root=root,
            state_dir=state_dir,
            thumbnail_dir=_env_path("THUMBNAIL_DIR", state_dir / "thumbnails"),
            folders_file=_env_path("FOLDERS_FILE", state_dir / "registered-folders.json"),
            ffmpeg=os.environ.get("FFMPEG") or shutil.which("ffmpeg") or "ffmpeg",
            ffprobe=os.environ.get("FFPROBE") or shutil.which("ffprobe") or "ffprobe",
            thumbnail_timeout=max(0.1, _env_float("THUMBNAIL_TIMEOUT", 30.0)),
            thumbnail_offset=(os.environ.get("THUMBNAIL_OFFSET") or "25%").strip(),
            thumbnail_width=max(16, _env_int("THUMBNAIL_WIDTH", 320)),
            # JPEG/MJPEG scale: 2(best)..31(worst)
            thumbnail_quality=max(2, min(31, _env_int("THUMBNAIL_QUALITY", 8))),
            ffmpeg_concurrency=max(1, min(16, _env_int("FFMPEG_CONCURRENCY", 4))),
            thumbnail_workers=max(1, _env_int("THUMBNAIL_WORKERS", _default_workers())),
            ffmpeg_hwaccel=os.environ.get("FFMPEG_HWACCEL") or None,
            ffmpeg_threads=os.environ.get("FFMPEG_THREADS") or None,
            max_upload_bytes=max(1, _env_int("MAX_UPLOAD_BYTES", 500 * 1024 * 1024)),
        )

    def ffmpeg_hwaccel_flags(self) -> list[str]:
        """
        Optional decoder hwaccel hint before -i (e.g., 'auto', 'videotoolbox', 'vaapi').
        Only used when set to avoid compatibility issues on devices without support.
        """
        if self.ffmpeg_hwaccel:
            return ["-hwaccel", str(self.ffmpeg_hwaccel)]
        return []

    def ffmpeg_threads_flags(self) -> list[str]:
        """
        - FFMPEG_THREADS=auto -> ["-threads", "0"] (ffmpeg auto threads)
        - FFMPEG_THREADS=<int> -> ["-threads", str(int)]
        """
        v = self.ffmpeg_threads
        if not v:
            return []
        if str(v).strip().lower() == "auto":
            return ["-threads", "0"]
        try:
            n = int(str(v).strip())
        except ValueError:
            return []
        return ["-threads", str(n)] if n >= 0 else []


__all__ = ["Settings"]
