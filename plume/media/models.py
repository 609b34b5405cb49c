"""Value types passed between the media services and their callers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from plume.lib.exceptions import MediaError
from plume.lib.rollback import RollbackAction


class Backend(str, Enum):
    LOCAL = "local"
    OBJECT_STORE = "object-store"


@dataclass
class StoredAsset:
    """A file committed to formal storage."""

    relative_path: str
    absolute_path: Path
    scene: str
    size_bytes: int
    mime_type: str
    backend: Backend
    web_path: str
    thumbnail: str | None = None
    rollback: list[RollbackAction] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.web_path,
            "relativePath": self.relative_path,
            "scene": self.scene,
            "size": self.size_bytes,
            "mimeType": self.mime_type,
            "backend": self.backend.value,
            "thumbnail": self.thumbnail,
        }


@dataclass
class UploadItem:
    """In-memory file handed to the remote uploader."""

    data: bytes
    original_name: str
    source_path: Path | None = None


@dataclass
class UploadedAsset:
    """An object written to the publication backend."""

    url: str
    key: str
    rollback: RollbackAction
    size: int
    content_type: str
    source_path: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "url": self.url,
            "key": self.key,
            "size": self.size,
            "contentType": self.content_type,
        }


@dataclass
class UploadOutcome:
    """Per-item result of a lenient upload batch."""

    index: int
    name: str
    asset: UploadedAsset | None = None
    error: MediaError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        if self.asset is not None:
            return {"index": self.index, "name": self.name, "success": True, **self.asset.to_dict()}
        return {
            "index": self.index,
            "name": self.name,
            "success": False,
            "error": self.error.to_dict() if self.error else None,
        }
