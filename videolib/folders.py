"""Registered source folders, persisted as a small JSON array."""
from __future__ import annotations

import hashlib
import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from .catalog import VideoCatalog
from .errors import Conflict, IOFailure, InvalidInput, NotFound
from .logs import log, warn
from .models import RegisteredFolder


def folder_id_for(path: Path | str) -> str:
    return hashlib.md5(str(Path(path).resolve()).encode("utf-8")).hexdigest()


class FolderRegistry:
    def __init__(self, registry_file: Path | str, catalog: VideoCatalog) -> None:
        self.registry_file = Path(registry_file)
        self._catalog = catalog
        self._lock = threading.Lock()

    def _load(self) -> list[RegisteredFolder]:
        if not self.registry_file.exists():
            return []
        try:
            data = json.loads(self.registry_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            warn("folders", f"registry unreadable, treating as empty path={self.registry_file} error={e}")
            return []
        if not isinstance(data, list):
            warn("folders", f"registry is not a list, treating as empty path={self.registry_file}")
            return []
        folders: list[RegisteredFolder] = []
        for item in data:
            try:
                folders.append(RegisteredFolder.model_validate(item))
            except ValidationError as e:
                warn("folders", f"registry entry skipped: {e.errors()[0].get('msg') if e.errors() else e}")
        return folders

    def _save(self, folders: list[RegisteredFolder]) -> None:
        payload = json.dumps([f.to_api() for f in folders], indent=2)
        try:
            self.registry_file.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".folders-", suffix=".json", dir=self.registry_file.parent)
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            os.replace(tmp, self.registry_file)
        except OSError as e:
            raise IOFailure(f"Failed to write folder registry: {e}", data={"path": str(self.registry_file)}) from e

    def list(self) -> list[RegisteredFolder]:
        with self._lock:
            return self._load()

    def get(self, folder_id: str) -> Optional[RegisteredFolder]:
        return next((f for f in self.list() if f.id == folder_id), None)

    def add(self, path: str, name: Optional[str] = None) -> RegisteredFolder:
        if not path or not str(path).strip():
            raise InvalidInput("Folder path is required")
        resolved = Path(path).expanduser().resolve()
        if not resolved.exists():
            raise NotFound(f"Folder does not exist: {resolved}", data={"path": str(resolved)})
        if not resolved.is_dir():
            raise InvalidInput(f"Path is not a directory: {resolved}", data={"path": str(resolved)})
        folder = RegisteredFolder(
            id=folder_id_for(resolved),
            path=str(resolved),
            name=(name or "").strip() or resolved.name or str(resolved),
            created_at=datetime.now(timezone.utc),
        )
        with self._lock:
            folders = self._load()
            if any(f.id == folder.id for f in folders):
                raise Conflict("Folder is already registered", data={"id": folder.id, "path": folder.path})
            folders.append(folder)
            self._save(folders)
        log("folders", f"folder add id={folder.id} path={folder.path} name={folder.name!r}")
        return folder

    def remove(self, folder_id: str) -> None:
        if not folder_id:
            raise InvalidInput("Folder id is required")
        with self._lock:
            folders = self._load()
            kept = [f for f in folders if f.id != folder_id]
            if len(kept) == len(folders):
                raise NotFound("Registered folder not found", data={"id": folder_id})
            self._save(kept)
        log("folders", f"folder remove id={folder_id}")

    def set_active(self, folder_id: str) -> RegisteredFolder:
        folder = self.get(folder_id) if folder_id else None
        if folder is None:
            raise NotFound("Registered folder not found", data={"id": folder_id})
        if not Path(folder.path).is_dir():
            raise NotFound(
                f"Registered folder no longer exists: {folder.path}",
                data={"id": folder.id, "path": folder.path},
            )
        log("folders", f"folder activate id={folder.id} path={folder.path}")
        self._catalog.change_active_directory(folder.path)
        return folder


__all__ = ["FolderRegistry", "folder_id_for"]
