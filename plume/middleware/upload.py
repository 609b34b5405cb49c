"""Multipart ingress: files land in the temp store after a fixed set of checks.

Stages run in this order for every request:

1. bind the scene and record the :class:`UploadTarget` on the request state
2. parse the multipart form into :class:`IncomingFile` parts
3. reject wrong counts, fields and types before anything is written, then
   enforce the size limit while streaming
4. compress images per scene policy
5. normalise every failure to an :class:`UploadError`

Files written earlier in a failing request are removed before the error
propagates.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable

from litestar.datastructures import UploadFile
from litestar.exceptions import HTTPException

from plume.lib.exceptions import (
    BadPath,
    CompressionFailed,
    FileCountExceeded,
    FileSizeExceeded,
    FileTypeNotAllowed,
    MediaError,
    UnexpectedField,
    UploadError,
)
from plume.lib.filenames import generate_filename, sanitize_filename, split_name
from plume.lib.imaging import ImageProcessingError, detect_image_content_type, recompress
from plume.lib.paths import PathResolver, resolve_absolute
from plume.lib.scenes import Scene, SceneDefinition, SceneRegistry

if TYPE_CHECKING:
    from litestar import Request

    from plume.config import CompressionConfig, UploadConfig

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


def _format_size(size: int) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:g}{unit}"
        size /= 1024
    return f"{size:.1f}GB"


@dataclass(frozen=True)
class UploadTarget:
    """Where a request's files go and which rules apply."""

    scene: str
    definition: SceneDefinition
    temp_dir: str
    compress: bool


@dataclass
class IncomingFile:
    """One file part of a multipart request."""

    field: str
    filename: str
    content_type: str
    read: Callable[[int], Awaitable[bytes]]

    @classmethod
    def from_upload(cls, field: str, upload: UploadFile) -> IncomingFile:
        return cls(
            field=field,
            filename=upload.filename or "untitled",
            content_type=upload.content_type or "application/octet-stream",
            read=upload.read,
        )

    @classmethod
    def from_bytes(cls, field: str, filename: str, content_type: str, data: bytes) -> IncomingFile:
        offset = 0

        async def read(size: int = -1) -> bytes:
            nonlocal offset
            end = len(data) if size < 0 else offset + size
            chunk = data[offset:end]
            offset += len(chunk)
            return chunk

        return cls(field=field, filename=filename, content_type=content_type, read=read)


@dataclass
class IngestedFile:
    """A file accepted into the temp store."""

    field: str
    original_name: str
    web_path: str
    relative_path: str
    size: int
    content_type: str
    compressed: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "originalName": self.original_name,
            "path": self.web_path,
            "relativePath": self.relative_path,
            "size": self.size,
            "contentType": self.content_type,
            "compressed": self.compressed,
        }


def normalize_upload_error(exc: Exception, field: str | None = None, filename: str | None = None) -> UploadError:
    """Map any ingress failure to an ``UploadError`` carrying the field."""
    if isinstance(exc, UploadError):
        if exc.field is None:
            exc.field = field
        if exc.filename is None:
            exc.filename = filename
        return exc
    if isinstance(exc, MediaError):
        error = UploadError(exc.message, field=field, filename=filename, data=exc.data)
        error.status_code = exc.status_code
        return error
    if isinstance(exc, HTTPException):
        error = UploadError(exc.detail, field=field, filename=filename)
        error.status_code = exc.status_code
        return error
    error = UploadError(f"Upload failed: {exc}", field=field, filename=filename)
    if isinstance(exc, OSError):
        error.status_code = 500
    return error


class UploadIngressPipeline:
    """Accept multipart uploads for a scene into ``{root}/{temp}/{scene dir}``."""

    def __init__(
        self,
        resolver: PathResolver,
        registry: SceneRegistry,
        upload: UploadConfig,
        compression: CompressionConfig,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self._resolver = resolver
        self._registry = registry
        self._upload = upload
        self._compression = compression
        self._chunk_size = chunk_size

    def bind(self, scene: Scene | str, *, compress: bool = True) -> UploadTarget:
        """Resolve the scene's destination. Unknown scenes raise ``BadRequest``."""
        definition = self._registry.get(scene)
        temp_dir = f"{self._upload.temp_subdir.strip('/')}/{definition.base_dir}"
        return UploadTarget(
            scene=definition.name,
            definition=definition,
            temp_dir=temp_dir,
            compress=compress and definition.compress and self._compression.enabled,
        )

    async def handle(
        self,
        request: Request,
        scene: Scene | str,
        *,
        compress: bool = True,
        fields: Iterable[str] | None = None,
    ) -> list[IngestedFile]:
        """Run every stage for one Litestar request."""
        target = self.bind(scene, compress=compress)
        request.state.upload_target = target

        try:
            form = await request.form()
        except Exception as exc:
            raise normalize_upload_error(exc) from exc

        files: list[IncomingFile] = []
        uploads: list[UploadFile] = []
        for field, value in form.multi_items():
            if isinstance(value, UploadFile):
                uploads.append(value)
                files.append(IncomingFile.from_upload(field, value))

        try:
            return await self.ingest(target, files, fields=fields)
        finally:
            for upload in uploads:
                await upload.close()

    def check(self, target: UploadTarget, files: list[IncomingFile], fields: Iterable[str] | None = None) -> None:
        """Count, field and type checks that run before any write."""
        definition = target.definition
        if not files:
            raise UploadError("No files were uploaded")
        if len(files) > definition.max_file_count:
            raise FileCountExceeded(
                f"Too many files (at most {definition.max_file_count})",
                field=files[definition.max_file_count].field,
                data={"maxFileCount": definition.max_file_count, "received": len(files)},
            )

        allowed_fields = set(fields) if fields is not None else None
        for incoming in files:
            if allowed_fields is not None and incoming.field not in allowed_fields:
                raise UnexpectedField(
                    f"Unexpected file field: {incoming.field}",
                    field=incoming.field,
                    filename=incoming.filename,
                    data={"allowedFields": sorted(allowed_fields)},
                )
            _, extension = split_name(sanitize_filename(incoming.filename))
            mime_type = incoming.content_type.split(";", 1)[0].strip().lower()
            if (
                definition.allowed_mime_types and mime_type not in definition.allowed_mime_types
            ) or (
                definition.allowed_extensions and extension not in definition.allowed_extensions
            ):
                raise FileTypeNotAllowed(
                    f"File type not allowed: {incoming.filename} ({mime_type})",
                    field=incoming.field,
                    filename=incoming.filename,
                    data={"mimeType": mime_type, "extension": extension},
                )

    async def ingest(
        self,
        target: UploadTarget,
        files: Iterable[IncomingFile],
        *,
        fields: Iterable[str] | None = None,
    ) -> list[IngestedFile]:
        """Check, write and compress ``files``; all or nothing per request."""
        files = list(files)
        self.check(target, files, fields)

        written: list[Path] = []
        results: list[IngestedFile] = []
        current: IncomingFile | None = None
        try:
            for current in files:
                results.append(await self._store(target, current, written))
        except Exception as exc:
            await self._cleanup(written)
            field = current.field if current else None
            filename = current.filename if current else None
            raise normalize_upload_error(exc, field, filename) from exc

        logger.info("Ingested %d file(s) for scene %s", len(results), target.scene)
        return results

    def _limit_error(self, target: UploadTarget, incoming: IncomingFile) -> FileSizeExceeded:
        limit = target.definition.max_file_size
        return FileSizeExceeded(
            f"File too large: {incoming.filename} (max {_format_size(limit)})",
            field=incoming.field,
            filename=incoming.filename,
            data={"maxFileSize": limit},
        )

    async def _buffer(self, target: UploadTarget, incoming: IncomingFile) -> bytes:
        limit = target.definition.max_file_size
        chunks: list[bytes] = []
        total = 0
        while chunk := await incoming.read(self._chunk_size):
            total += len(chunk)
            if total > limit:
                raise self._limit_error(target, incoming)
            chunks.append(chunk)
        return b"".join(chunks)

    def _destination(self, target: UploadTarget, incoming: IncomingFile, extension: str | None) -> tuple[str, Path]:
        name = generate_filename(
            incoming.filename,
            self._upload.filename_strategy,
            use_hash=self._upload.use_hash,
            extension=extension,
        )
        relative = f"{target.temp_dir}/{name}"
        try:
            return relative, resolve_absolute(self._resolver.root, relative)
        except BadPath as exc:
            raise UploadError(exc.message, field=incoming.field, filename=incoming.filename) from exc

    async def _store(self, target: UploadTarget, incoming: IncomingFile, written: list[Path]) -> IngestedFile:
        mime_type = incoming.content_type.split(";", 1)[0].strip().lower()
        if target.compress and mime_type.startswith("image/"):
            data = await self._buffer(target, incoming)
            definition = target.definition
            try:
                result = await asyncio.to_thread(
                    recompress,
                    data,
                    format=definition.compression_format or self._compression.format,
                    quality=definition.compression_quality or self._compression.quality,
                    effort=self._compression.effort,
                    lossless=self._compression.lossless,
                )
            except (ImageProcessingError, ValueError) as exc:
                raise CompressionFailed(
                    f"Image compression failed: {incoming.filename}",
                    field=incoming.field,
                    filename=incoming.filename,
                    data={"reason": str(exc)},
                ) from exc

            if result is None and detect_image_content_type(data) is None:
                raise CompressionFailed(
                    f"Not a decodable image: {incoming.filename}",
                    field=incoming.field,
                    filename=incoming.filename,
                )

            compressed = result is not None and result.compressed
            if compressed:
                data, extension, mime_type = result.data, result.extension, result.content_type
            else:
                extension = None

            relative, path = self._destination(target, incoming, extension)
            written.append(path)
            await asyncio.to_thread(_write_bytes, path, data)
            size = len(data)
        else:
            relative, path = self._destination(target, incoming, None)
            written.append(path)
            size = await self._stream_to_disk(target, incoming, path)
            compressed = False

        return IngestedFile(
            field=incoming.field,
            original_name=incoming.filename,
            web_path=self._resolver.web_path(relative),
            relative_path=relative,
            size=size,
            content_type=mime_type,
            compressed=compressed,
        )

    async def _stream_to_disk(self, target: UploadTarget, incoming: IncomingFile, path: Path) -> int:
        limit = target.definition.max_file_size
        await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        handle = await asyncio.to_thread(path.open, "wb")
        total = 0
        try:
            while chunk := await incoming.read(self._chunk_size):
                total += len(chunk)
                if total > limit:
                    raise self._limit_error(target, incoming)
                await asyncio.to_thread(handle.write, chunk)
        finally:
            await asyncio.to_thread(handle.close)
        return total

    async def _cleanup(self, written: list[Path]) -> None:
        for path in written:
            try:
                await asyncio.to_thread(path.unlink, missing_ok=True)
            except OSError as exc:
                logger.warning("Could not remove partial upload %s: %s", path, exc)


def _write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)
