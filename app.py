from __future__ import annotations
import os
import sys
import time
import uuid
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional

from pydantic import BaseModel
from fastapi import FastAPI, APIRouter, File, Request, UploadFile
from fastapi.responses import JSONResponse, FileResponse
from starlette.concurrency import iterate_in_threadpool, run_in_threadpool
from starlette.responses import Response, StreamingResponse

from videolib import (
    FolderRegistry,
    InvalidInput,
    MediaShelfError,
    RangeNotSatisfiable,
    Settings,
    ThumbnailPipeline,
    UploadedFile,
    VideoCatalog,
    VideoRecord,
    VideoStream,
    open_stream,
    placeholder_jpeg,
)
from videolib.catalog import is_video_file
from videolib.logs import log

# Global server state
STATE: Dict[str, Any] = {}

UPLOAD_CHUNK = 1024 * 1024
THUMBNAIL_CACHE = "public, max-age=86400"


def _build_state(settings: Optional[Settings] = None) -> None:
    """(Re)create the pipeline, catalog and registry from settings (env by default)."""
    old = STATE.get("catalog")
    if isinstance(old, VideoCatalog):
        old.shutdown(wait=False)
    settings = settings or Settings.from_env()
    pipeline = ThumbnailPipeline.from_settings(settings)
    catalog = VideoCatalog(pipeline, settings.media_root, workers=settings.thumbnail_workers)
    STATE["settings"] = settings
    STATE["pipeline"] = pipeline
    STATE["catalog"] = catalog
    STATE["folders"] = FolderRegistry(settings.folders_file, catalog)


_build_state()


def _catalog() -> VideoCatalog:
    return STATE["catalog"]


def _pipeline() -> ThumbnailPipeline:
    return STATE["pipeline"]


def _folders() -> FolderRegistry:
    return STATE["folders"]


def api_success(data=None, message: str = "OK", status_code: int = 200):
    return JSONResponse({"status": "success", "message": message, "data": data}, status_code=status_code)


def api_error(message: str, status_code: int = 400, data=None):
    return JSONResponse({"status": "error", "message": message, "data": data}, status_code=status_code)


def _video_payload(rec: VideoRecord) -> dict:
    d = rec.to_api()
    d["streamUrl"] = f"/api/videos/{rec.id}/stream"
    d["thumbnailUrl"] = f"/api/videos/{rec.id}/thumbnail" if rec.thumbnail_path else None
    return d


@asynccontextmanager
async def lifespan(app_obj: FastAPI):  # type: ignore[override]
    settings: Settings = STATE["settings"]
    logging.info("[startup] MEDIA_ROOT=%s THUMBNAIL_DIR=%s", settings.media_root, settings.thumbnail_dir)
    try:
        settings.thumbnail_dir.mkdir(parents=True, exist_ok=True)
        await run_in_threadpool(_catalog().rescan)
    except (MediaShelfError, OSError) as e:
        # Serve an empty catalog rather than refusing to start
        logging.warning("[startup] initial scan failed: %s", e)
    try:
        yield
    finally:
        _catalog().shutdown(wait=False)


app = FastAPI(title="Media Shelf", version="1.0", lifespan=lifespan)
api = APIRouter(prefix="/api")


@app.exception_handler(MediaShelfError)
async def media_error_handler(request: Request, exc: MediaShelfError):
    resp = api_error(exc.message, status_code=exc.status_code, data=exc.data)
    if isinstance(exc, RangeNotSatisfiable):
        resp.headers["Content-Range"] = f"bytes */{exc.size}"
    return resp


class DirectoryUpdate(BaseModel):  # type: ignore
    path: str


class FolderCreate(BaseModel):  # type: ignore
    path: str = ""
    name: Optional[str] = None


# --- Videos ---
@api.get("/videos")
def videos_list():
    videos = _catalog().get_all()
    return api_success({
        "directory": str(_catalog().active_directory),
        "total": len(videos),
        "videos": [_video_payload(v) for v in videos],
    })


@api.post("/videos/rescan")
def videos_rescan():
    videos = _catalog().rescan()
    return api_success({"directory": str(_catalog().active_directory), "total": len(videos)})


def _store_upload(file: UploadFile) -> UploadedFile:
    """Copy the upload into the active directory and describe what landed on disk."""
    original = Path(file.filename or "").name
    if not is_video_file(original):
        raise InvalidInput("Invalid file type. Only video files are allowed.", data={"filename": original})
    limit = STATE["settings"].max_upload_bytes
    target_dir = _catalog().active_directory
    stored = f"video-{int(time.time() * 1000)}-{uuid.uuid4().hex[:9]}{Path(original).suffix.lower()}"
    target = target_dir / stored
    written = 0
    try:
        with open(target, "wb") as out:
            while True:
                chunk = file.file.read(UPLOAD_CHUNK)
                if not chunk:
                    break
                written += len(chunk)
                if written > limit:
                    raise InvalidInput("File too large", data={"limit": limit})
                out.write(chunk)
    except BaseException:
        target.unlink(missing_ok=True)
        raise
    log("catalog", f"upload stored name={original!r} as={target} size={written}")
    return UploadedFile(
        original_name=original,
        stored_filename=stored,
        absolute_path=str(target),
        size=written,
        mime_type=file.content_type,
    )


@api.post("/videos/upload")
def video_upload(file: Optional[UploadFile] = File(default=None)):
    descriptor = _store_upload(file) if file is not None and file.filename else None
    rec = _catalog().add(descriptor)
    return api_success(_video_payload(rec), message="Video uploaded successfully", status_code=201)


@api.get("/videos/{video_id}")
def video_get(video_id: str):
    rec = _catalog().get_by_id(video_id)
    if rec is None:
        return api_error("Video not found", status_code=404, data={"id": video_id})
    return api_success(_video_payload(rec))


@api.delete("/videos/{video_id}")
def video_delete(video_id: str):
    if not _catalog().remove(video_id):
        return api_error("Video not found", status_code=404, data={"id": video_id})
    return api_success({"id": video_id}, message="Video deleted successfully")


async def _stream_body(stream: VideoStream) -> AsyncIterator[bytes]:
    try:
        async for chunk in iterate_in_threadpool(iter(stream)):
            yield chunk
    finally:
        # Runs on normal end and when the client disconnects mid-transfer
        stream.close()


@api.get("/videos/{video_id}/stream")
def video_stream(video_id: str, request: Request):
    rec = _catalog().require(video_id)
    stream = open_stream(rec, request.headers.get("range"))
    return StreamingResponse(_stream_body(stream), status_code=stream.status_code, headers=stream.headers)


# --- Thumbnail ---
@api.get("/videos/{video_id}/thumbnail")
def thumbnail_get(video_id: str):
    rec = _catalog().require(video_id)
    thumb = Path(rec.thumbnail_path) if rec.thumbnail_path else _pipeline().existing_thumbnail(rec.id)
    if thumb is None or not thumb.is_file():
        # Placeholder rather than 404; uncached so a later generation shows up
        return Response(
            content=placeholder_jpeg(),
            media_type="image/jpeg",
            headers={"Cache-Control": "no-store, max-age=0", "X-Thumbnail-Exists": "0"},
        )
    resp = FileResponse(str(thumb), media_type="image/jpeg")
    resp.headers["Cache-Control"] = THUMBNAIL_CACHE
    resp.headers["X-Thumbnail-Exists"] = "1"
    return resp


@api.post("/videos/{video_id}/thumbnail")
def thumbnail_create(video_id: str):
    rec = _catalog().request_thumbnail(video_id)
    return api_success(_video_payload(rec))


@api.get("/videos/{video_id}/metadata")
def video_metadata(video_id: str):
    rec = _catalog().require(video_id)
    return api_success(_pipeline().probe_metadata(rec.path).to_api())


@api.get("/thumbnails/progress")
def thumbnails_progress():
    return api_success(_catalog().thumbnail_progress().to_api())


# --- Active directory / registered folders ---
@api.post("/directory")
def directory_set(body: DirectoryUpdate):
    videos = _catalog().change_active_directory(body.path)
    return api_success({"directory": str(_catalog().active_directory), "total": len(videos)})


@api.get("/folders")
def folders_list():
    return api_success([f.to_api() for f in _folders().list()])


@api.post("/folders")
def folders_add(body: FolderCreate):
    folder = _folders().add(body.path, body.name)
    return api_success(folder.to_api(), message="Folder registered", status_code=201)


@api.delete("/folders/{folder_id}")
def folders_remove(folder_id: str):
    _folders().remove(folder_id)
    return api_success({"id": folder_id}, message="Folder removed")


@api.post("/folders/{folder_id}/activate")
def folders_activate(folder_id: str):
    folder = _folders().set_active(folder_id)
    return api_success({"folder": folder.to_api(), "total": len(_catalog())})


@api.get("/health")
def health():
    pipeline = _pipeline()
    ffmpeg_ok = pipeline.ffmpeg_available()
    return api_success({
        "ffmpeg": ffmpeg_ok,
        "ffprobe": pipeline.ffprobe_available(),
        "selfTest": pipeline.self_test() if ffmpeg_ok else False,
        "directory": str(_catalog().active_directory),
        "videos": len(_catalog()),
    })


app.include_router(api)


if __name__ == "__main__":  # pragma: no cover
    try:
        import uvicorn  # type: ignore
    except ImportError:  # pragma: no cover
        sys.stderr.write("[app] Missing dependency: uvicorn. Install with: pip install uvicorn\n")
        sys.exit(1)
    # Require an explicit opt-in to start the server when running this file directly
    run_flag = os.environ.get("RUN_SERVER") or os.environ.get("RUN_STANDALONE")
    if str(run_flag).strip().lower() not in {"1", "true", "yes", "y"}:
        sys.stderr.write(
            "[app] Not starting server. To run directly, set RUN_SERVER=1 (or RUN_STANDALONE=1).\n"
        )
        sys.exit(0)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    host = os.environ.get("HOST", "127.0.0.1")
    try:
        port = int(os.environ.get("PORT", "9999") or 9999)
    except ValueError:
        port = 9999
    uvicorn.run("app:app", host=host, port=port)
