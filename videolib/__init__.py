"""Core of the media-shelf backend: catalog, streaming, thumbnails and folders."""
from __future__ import annotations

from .catalog import VideoCatalog, mime_type_for, video_id_for
from .config import Settings
from .errors import (
    BackingFileMissing,
    Conflict,
    ExternalToolFailure,
    InvalidInput,
    IOFailure,
    MediaShelfError,
    NotFound,
    RangeNotSatisfiable,
    Timeout,
)
from .folders import FolderRegistry
from .models import RegisteredFolder, ThumbnailProgress, UploadedFile, VideoProbe, VideoRecord
from .streaming import VideoStream, open_stream, parse_range
from .thumbnails import ThumbnailPipeline, placeholder_jpeg

__all__ = [
    "VideoCatalog",
    "mime_type_for",
    "video_id_for",
    "Settings",
    "MediaShelfError",
    "NotFound",
    "BackingFileMissing",
    "InvalidInput",
    "RangeNotSatisfiable",
    "Conflict",
    "Timeout",
    "ExternalToolFailure",
    "IOFailure",
    "FolderRegistry",
    "RegisteredFolder",
    "ThumbnailProgress",
    "UploadedFile",
    "VideoProbe",
    "VideoRecord",
    "VideoStream",
    "open_stream",
    "parse_range",
    "ThumbnailPipeline",
    "placeholder_jpeg",
]
