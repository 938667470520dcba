"""
Logging categories (coarse grained, opt-in / opt-out)
  Set LOG_ALL=0 to disable all unless explicitly enabled.
  Set LOG_ALL=1 to enable all unless explicitly disabled.
  Per-category env vars override: LOG_CATALOG, LOG_THUMBNAIL, LOG_STREAM, LOG_FOLDERS, LOG_FFMPEG
  Values: 1 enable, 0 disable. Default: follow LOG_ALL (which defaults to 1).
Warnings and errors are never gated.
"""
from __future__ import annotations

import logging
import os

_PREFIX = "media_shelf"


def log_enabled(cat: str) -> bool:
    base = os.environ.get("LOG_ALL", "1")
    base_on = str(base).lower() not in ("0", "false", "no")
    specific = os.environ.get(f"LOG_{cat.upper()}")
    if specific is not None:
        return str(specific).lower() in ("1", "true", "yes")
    return base_on


def log(cat: str, msg: str) -> None:
    if not log_enabled(cat):
        return
    logging.getLogger(f"{_PREFIX}.{cat}").info("%s", msg)


def warn(cat: str, msg: str) -> None:
    logging.getLogger(f"{_PREFIX}.{cat}").warning("%s", msg)


def error(cat: str, msg: str, *, exc_info: bool = False) -> None:
    logging.getLogger(f"{_PREFIX}.{cat}").error("%s", msg, exc_info=exc_info)


__all__ = ["log_enabled", "log", "warn", "error"]
