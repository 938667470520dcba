"""
Thumbnail pipeline: one still frame per video, extracted with ffmpeg.

Output lives at <thumbnail_dir>/<video_id>.jpg. Generation is idempotent (an
existing file is returned as-is), bounded by a hard timeout, and gated by a
global semaphore so bulk scans cannot oversubscribe the machine.
"""
from __future__ import annotations

import functools
import io
import json
import os
import re
import shutil
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from PIL import Image

from .config import Settings
from .errors import ExternalToolFailure, InvalidInput, NotFound, Timeout
from .logs import log, warn
from .models import VideoProbe

THUMBNAIL_EXT = ".jpg"
_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")
_DIAG_MAX = 1200


def parse_time_spec(spec: str | float | int | None, duration: Optional[float]) -> float:
    """Resolve 'start', 'middle', 'NN%' or plain seconds to an offset in seconds."""
    if spec is None:
        return 0.0
    try:
        if isinstance(spec, (int, float)):
            t = max(0.0, float(spec))
        else:
            s = str(spec).strip().lower()
            if s == "start":
                return 0.0
            if s == "middle":
                return max(0.0, float(duration) / 2.0) if duration else 0.0
            if s.endswith("%"):
                if not duration:
                    return 0.0
                return max(0.0, float(duration) * float(s[:-1]) / 100.0)
            t = max(0.0, float(s))
    except ValueError:
        return 0.0
    if duration:
        # Seeking past the end yields no frame at all
        t = min(t, max(0.0, float(duration) - 0.1))
    return t


def _trim(text: str) -> str:
    text = (text or "").strip()
    if len(text) > _DIAG_MAX:
        return text[:_DIAG_MAX] + "..."
    return text


def _parse_rate(v: Any) -> Optional[float]:
    try:
        s = str(v)
        if "/" in s:
            num, den = s.split("/", 1)
            d = float(den)
            return round(float(num) / d, 3) if d else None
        return float(s)
    except (TypeError, ValueError):
        return None


def _to_int(v: Any) -> Optional[int]:
    try:
        return int(v)
    except (TypeError, ValueError):
        return None


def _to_float(v: Any) -> Optional[float]:
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def summarize_probe(payload: dict) -> VideoProbe:
    fmt = payload.get("format") or {}
    streams = payload.get("streams") or []
    video = next((s for s in streams if isinstance(s, dict) and s.get("codec_type") == "video"), {})
    rate = video.get("avg_frame_rate")
    if rate in (None, "", "0/0"):
        rate = video.get("r_frame_rate")
    return VideoProbe(
        duration=_to_float(fmt.get("duration")) or _to_float(video.get("duration")),
        width=_to_int(video.get("width")),
        height=_to_int(video.get("height")),
        frame_rate=_parse_rate(rate),
        format_name=fmt.get("format_name"),
        codec=video.get("codec_name"),
        bit_rate=_to_int(fmt.get("bit_rate")),
    )


@functools.lru_cache(maxsize=1)
def placeholder_jpeg() -> bytes:
    """Dark 16:9 frame served while a thumbnail is missing."""
    img = Image.new("RGB", (320, 180), color=(17, 17, 17))
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=70)
    return buf.getvalue()


class _ToolResult:
    __slots__ = ("returncode", "stdout", "stderr", "elapsed")

    def __init__(self, returncode: int, stdout: str, stderr: str, elapsed: float) -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.elapsed = elapsed


class _ProgressEvents:
    """Collapse ffmpeg's `-progress pipe:1` key=value blocks into progress/end events."""

    def __init__(self, label: str) -> None:
        self.label = label
        self.block: dict[str, str] = {}
        self.ended = False

    def feed(self, line: str) -> None:
        line = line.strip()
        if "=" not in line:
            return
        key, _, value = line.partition("=")
        self.block[key] = value
        if key != "progress":
            return
        if value == "end":
            self.ended = True
            log("ffmpeg", f"{self.label} event=end frame={self.block.get('frame', 'na')}")
        else:
            log("ffmpeg", f"{self.label} event=progress out_time={self.block.get('out_time', 'na')}")
        self.block = {}


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (AttributeError, ProcessLookupError, PermissionError):
        try:
            proc.kill()
        except ProcessLookupError:
            pass


class _IdLock:
    """Per-video-id mutex shared by concurrent callers, dropped when the last one leaves."""

    def __init__(self, pipeline: "ThumbnailPipeline", video_id: str) -> None:
        self.pipeline = pipeline
        self.video_id = video_id
        self._entry: Optional[list] = None

    def __enter__(self):
        p = self.pipeline
        with p._locks_mtx:
            entry = p._locks.get(self.video_id)
            if entry is None:
                entry = [threading.Lock(), 0]
                p._locks[self.video_id] = entry
            entry[1] += 1
        self._entry = entry
        entry[0].acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        p = self.pipeline
        entry = self._entry
        if entry is None:
            return
        entry[0].release()
        with p._locks_mtx:
            entry[1] -= 1
            if entry[1] == 0 and p._locks.get(self.video_id) is entry:
                del p._locks[self.video_id]
        self._entry = None


class ThumbnailPipeline:
    def __init__(
        self,
        thumbnail_dir: Path | str,
        *,
        ffmpeg: str = "ffmpeg",
        ffprobe: str = "ffprobe",
        timeout: float = 30.0,
        offset: str | float = "25%",
        width: int = 320,
        quality: int = 8,
        concurrency: int = 4,
        hwaccel_flags: Sequence[str] = (),
        threads_flags: Sequence[str] = (),
    ) -> None:
        self.thumbnail_dir = Path(thumbnail_dir)
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.timeout = float(timeout)
        self.offset = offset
        self.width = int(width)
        self.quality = max(2, min(31, int(quality)))
        self.concurrency = max(1, int(concurrency))
        self._hw = list(hwaccel_flags)
        self._threads = list(threads_flags)
        self._sem = threading.BoundedSemaphore(self.concurrency)
        # video id -> [lock, holders]; entries go away with their last holder
        self._locks: dict[str, list] = {}
        self._locks_mtx = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ThumbnailPipeline":
        return cls(
            settings.thumbnail_dir,
            ffmpeg=settings.ffmpeg,
            ffprobe=settings.ffprobe,
            timeout=settings.thumbnail_timeout,
            offset=settings.thumbnail_offset,
            width=settings.thumbnail_width,
            quality=settings.thumbnail_quality,
            concurrency=settings.ffmpeg_concurrency,
            hwaccel_flags=settings.ffmpeg_hwaccel_flags(),
            threads_flags=settings.ffmpeg_threads_flags(),
        )

    # -----------------------------
    # Paths
    # -----------------------------
    def thumbnail_path(self, video_id: str) -> Path:
        if not video_id or not _ID_RE.match(video_id):
            raise InvalidInput("Invalid video id", data={"id": video_id})
        return self.thumbnail_dir / f"{video_id}{THUMBNAIL_EXT}"

    def existing_thumbnail(self, video_id: str) -> Optional[Path]:
        p = self.thumbnail_path(video_id)
        return p if p.is_file() else None

    def delete_thumbnail(self, video_id: str) -> bool:
        p = self.thumbnail_path(video_id)
        try:
            p.unlink()
            return True
        except FileNotFoundError:
            return False

    def ffmpeg_available(self) -> bool:
        return bool(shutil.which(self.ffmpeg)) or Path(self.ffmpeg).is_file()

    def ffprobe_available(self) -> bool:
        return bool(shutil.which(self.ffprobe)) or Path(self.ffprobe).is_file()

    # -----------------------------
    # Subprocess
    # -----------------------------
    def _run_tool(
        self,
        cmd: list[str],
        *,
        label: str,
        on_line: Optional[Callable[[str], None]] = None,
        timeout: Optional[float] = None,
    ) -> _ToolResult:
        """
        Run cmd in its own process group, racing it against a timer. When the timer
        wins the whole group is killed and Timeout is raised. stderr is drained on a
        helper thread so a chatty tool cannot block on a full pipe.
        """
        limit = self.timeout if timeout is None else timeout
        if limit <= 0:
            raise Timeout(f"{label} not started: time budget exhausted", data={"timeout": self.timeout})
        log("ffmpeg", f"{label} event=start timelimit={limit:g}s cmd={' '.join(cmd)}")
        t0 = time.time()
        try:
            # ffprobe echoes container tags verbatim; they are not always UTF-8
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                encoding="utf-8",
                errors="replace",
                start_new_session=True,
            )
        except OSError as e:
            raise ExternalToolFailure(f"{label} could not be started: {e}", diagnostic=str(e)) from e
        expired = threading.Event()

        def _expire() -> None:
            expired.set()
            _kill_group(proc)

        timer = threading.Timer(limit, _expire)
        timer.daemon = True
        err_parts: list[str] = []
        with proc:
            drain = threading.Thread(target=lambda: err_parts.append(proc.stderr.read()), daemon=True)  # type: ignore[union-attr]
            drain.start()
            timer.start()
            out_lines: list[str] = []
            try:
                for line in proc.stdout:  # type: ignore[union-attr]
                    out_lines.append(line)
                    if on_line is not None:
                        on_line(line)
                proc.wait()
            finally:
                timer.cancel()
                if proc.poll() is None:
                    _kill_group(proc)
                    proc.wait()
                drain.join(timeout=5)
        elapsed = time.time() - t0
        stderr = "".join(err_parts)
        if expired.is_set():
            log("ffmpeg", f"{label} event=error reason=timeout elapsed={elapsed:.3f}s")
            raise Timeout(
                f"{label} timed out after {limit:g}s",
                data={"timeout": self.timeout, "cmd": cmd[:4]},
            )
        if proc.returncode != 0:
            log("ffmpeg", f"{label} event=error code={proc.returncode} elapsed={elapsed:.3f}s stderr={_trim(stderr)!r}")
        return _ToolResult(proc.returncode, "".join(out_lines), stderr, elapsed)

    # -----------------------------
    # Public operations
    # -----------------------------
    def ensure_thumbnail(self, video_path: Path | str, video_id: str) -> Path:
        video = Path(video_path)
        if not video.is_file():
            raise NotFound(f"Video file not found: {video}", data={"path": str(video)})
        out = self.thumbnail_path(video_id)
        if out.is_file():
            log("thumbnail", f"thumbnail skip id={video_id} reason=exists out={out}")
            return out
        with _IdLock(self, video_id):
            # A concurrent caller may have produced it while we waited
            if out.is_file():
                return out
            return self._generate(video, video_id, out)

    def _generate(self, video: Path, video_id: str, out: Path) -> Path:
        out.parent.mkdir(parents=True, exist_ok=True)
        duration: Optional[float] = None
        # Probe and extraction share one budget of self.timeout
        t0 = time.monotonic()
        try:
            duration = self.probe_metadata(video).duration
        except (ExternalToolFailure, Timeout) as e:
            warn("thumbnail", f"thumbnail probe failed id={video_id} falling back to start: {e.message}")
        t = parse_time_spec(self.offset, duration)
        part = out.with_name(f"{video_id}.part{THUMBNAIL_EXT}")
        cmd = [
            self.ffmpeg, "-y",
            "-v", "error",
            "-nostats",
            "-progress", "pipe:1",
            *self._hw,
            "-noaccurate_seek",
            "-ss", f"{t:.3f}",
            "-i", str(video),
            "-frames:v", "1",
            # Scale by width keeping aspect ratio; -2 keeps the height even
            "-vf", f"scale='min({self.width},iw)':'-2'",
            "-q:v", str(self.quality),
            *self._threads,
            str(part),
        ]
        log("thumbnail", f"thumbnail start id={video_id} path={video} dur={duration if duration is not None else 'na'} time={t:.3f}s")
        events = _ProgressEvents(f"thumbnail id={video_id}")
        local_sem = self._sem
        local_sem.acquire()
        try:
            remaining = self.timeout - (time.monotonic() - t0)
            result = self._run_tool(cmd, label="ffmpeg", on_line=events.feed, timeout=remaining)
        except BaseException:
            part.unlink(missing_ok=True)
            raise
        finally:
            local_sem.release()
        if result.returncode != 0:
            part.unlink(missing_ok=True)
            diag = _trim(result.stderr)
            raise ExternalToolFailure(
                diag or f"ffmpeg exited with code {result.returncode}",
                diagnostic=diag,
                data={"id": video_id, "code": result.returncode},
            )
        if not part.is_file() or part.stat().st_size == 0:
            part.unlink(missing_ok=True)
            raise ExternalToolFailure(
                f"ffmpeg reported success but wrote no thumbnail for {video_id}",
                data={"id": video_id},
            )
        os.replace(part, out)
        log("thumbnail", f"thumbnail end id={video_id} size={out.stat().st_size} elapsed={result.elapsed:.3f}s out={out}")
        return out

    def probe_metadata(self, video_path: Path | str) -> VideoProbe:
        video = Path(video_path)
        if not video.is_file():
            raise NotFound(f"Video file not found: {video}", data={"path": str(video)})
        cmd = [
            self.ffprobe, "-v", "error",
            "-print_format", "json",
            "-show_format", "-show_streams",
            str(video),
        ]
        result = self._run_tool(cmd, label="ffprobe")
        if result.returncode != 0:
            diag = (result.stderr or "").strip()
            raise ExternalToolFailure(
                diag or f"ffprobe exited with code {result.returncode}",
                diagnostic=diag,
                data={"path": str(video), "code": result.returncode},
            )
        try:
            payload = json.loads(result.stdout or "{}")
        except ValueError as e:
            raise ExternalToolFailure("ffprobe returned invalid JSON", diagnostic=_trim(result.stdout)) from e
        if not isinstance(payload, dict) or not payload:
            raise ExternalToolFailure("ffprobe returned no metadata", diagnostic=_trim(result.stdout))
        return summarize_probe(payload)

    def self_test(self) -> bool:
        """Decode one synthetic frame to the null muxer. Health checks only."""
        cmd = [
            self.ffmpeg, "-v", "error",
            "-f", "lavfi",
            "-i", "testsrc=duration=1:size=64x64:rate=1",
            "-frames:v", "1",
            "-f", "null", "-",
        ]
        try:
            result = self._run_tool(cmd, label="ffmpeg-selftest")
        except (ExternalToolFailure, Timeout) as e:
            warn("ffmpeg", f"self test failed: {e.message}")
            return False
        return result.returncode == 0


__all__ = [
    "ThumbnailPipeline",
    "parse_time_spec",
    "summarize_probe",
    "placeholder_jpeg",
    "THUMBNAIL_EXT",
]
