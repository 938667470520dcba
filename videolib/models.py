from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _Camel(BaseModel):  # type: ignore
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_api(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class VideoRecord(_Camel):
    id: str
    filename: str
    original_name: str
    path: str
    size: int
    mime_type: str
    created_at: datetime
    updated_at: datetime
    thumbnail_path: Optional[str] = None


class UploadedFile(_Camel):
    """Descriptor for bytes the upload layer already placed on disk."""
    original_name: str
    stored_filename: str
    absolute_path: str
    size: int
    mime_type: Optional[str] = None


class RegisteredFolder(_Camel):
    id: str
    path: str
    name: str
    created_at: datetime


class VideoProbe(_Camel):
    duration: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    frame_rate: Optional[float] = None
    format_name: Optional[str] = None
    codec: Optional[str] = None
    bit_rate: Optional[int] = None


class ThumbnailProgress(_Camel):
    active: bool = False
    total: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0


__all__ = [
    "VideoRecord",
    "UploadedFile",
    "RegisteredFolder",
    "VideoProbe",
    "ThumbnailProgress",
]
