"""Typed failures raised by the catalog, streaming and thumbnail layers.

Each error carries an HTTP status so the API layer can render it through a
single handler without re-classifying it.
"""
from __future__ import annotations

from typing import Any, Optional


class MediaShelfError(Exception):
    status_code = 500

    def __init__(self, message: str, *, data: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.data = data


class NotFound(MediaShelfError):
    status_code = 404


class BackingFileMissing(NotFound):
    """Catalog entry exists but the file behind it is gone."""


class InvalidInput(MediaShelfError):
    status_code = 400


class RangeNotSatisfiable(InvalidInput):
    status_code = 416

    def __init__(self, message: str, *, size: int, data: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, data=data)
        self.size = size


class Conflict(MediaShelfError):
    status_code = 409


class Timeout(MediaShelfError):
    status_code = 504


class ExternalToolFailure(MediaShelfError):
    status_code = 502

    def __init__(self, message: str, *, diagnostic: str = "", data: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, data=data)
        self.diagnostic = diagnostic


class IOFailure(MediaShelfError):
    status_code = 500


__all__ = [
    "MediaShelfError",
    "NotFound",
    "BackingFileMissing",
    "InvalidInput",
    "RangeNotSatisfiable",
    "Conflict",
    "Timeout",
    "ExternalToolFailure",
    "IOFailure",
]
