"""Publish files to the configured object store with compensating rollback."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Sequence, Union

from plume.lib import observability
from plume.lib.concurrency import DEFAULT_CONCURRENCY, CancelContext, run_bounded
from plume.lib.exceptions import (
    Internal,
    MediaError,
    NotFound,
    OperationCancelled,
    as_media_error,
    batch_failure,
)
from plume.lib.filenames import remote_key_name
from plume.lib.imaging import ImageProcessingError, recompress
from plume.lib.paths import PathResolver
from plume.lib.rollback import RollbackAction, Undoer
from plume.lib.scenes import Scene, SceneRegistry
from plume.media.models import UploadedAsset, UploadItem, UploadOutcome

if TYPE_CHECKING:
    from plume.config import CompressionConfig
    from plume.lib.storage.base import StorageBackend

logger = logging.getLogger(__name__)

BatchEntry = Union[UploadItem, str]


class RemoteUploadService:
    """Upload scene files to a :class:`StorageBackend`.

    Keys are ``{scene dir}/{YYYY}/{MM}/{uuid}_{stem}.{ext}``; every upload
    returns a ``delete-remote`` rollback action the caller can hand back to
    :meth:`undo` if its own transaction fails.
    """

    def __init__(
        self,
        backend: StorageBackend,
        registry: SceneRegistry,
        resolver: PathResolver,
        undoer: Undoer,
        compression: CompressionConfig | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        self._backend = backend
        self._registry = registry
        self._resolver = resolver
        self._undoer = undoer
        self._compression = compression
        self._concurrency = concurrency

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    async def _transcode(self, data: bytes, original_name: str, scene: str) -> tuple[bytes, str | None, str]:
        """Return (data, new extension or None, content type)."""
        definition = self._registry.get(scene)
        guessed = mimetypes.guess_type(original_name)[0] or "application/octet-stream"
        if self._compression is None or not self._compression.enabled or not definition.compress:
            return data, None, guessed

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
            raise Internal(f"Cannot transcode {original_name}: {exc}", {"name": original_name}) from exc
        if result is None:
            return data, None, guessed
        if not result.compressed:
            return data, None, result.content_type
        return result.data, result.extension, result.content_type

    async def upload_one(
        self,
        data: bytes,
        original_name: str,
        scene: Scene | str,
        *,
        at: datetime | None = None,
        source_path: Path | None = None,
    ) -> UploadedAsset:
        """Transcode per scene policy and PUT one object.

        Raises:
            BadRequest: unknown scene.
            Internal: transcoding or backend failure.
        """
        definition = self._registry.get(scene)
        payload, extension, content_type = await self._transcode(data, original_name, definition.name)
        key = f"{self._registry.target_dir(definition.name, at)}/{remote_key_name(original_name, extension)}"
        rollback = RollbackAction.delete_remote(key)

        try:
            stored = await self._backend.put(key, payload, content_type)
        except asyncio.CancelledError:
            # The object may already exist remotely
            await asyncio.shield(self._undoer.undo_all([rollback]))
            raise
        except MediaError:
            raise
        except Exception as exc:
            logger.warning("Upload of %s to %s failed: %s", original_name, key, exc)
            raise Internal(
                f"Upload of {original_name} failed: {exc}",
                {"key": key, "backend": getattr(self._backend, "name", "unknown")},
            ) from exc

        logger.debug("Uploaded %s as %s", original_name, key)
        return UploadedAsset(
            url=stored.url,
            key=key,
            rollback=rollback,
            size=stored.size,
            content_type=content_type,
            source_path=source_path,
        )

    async def upload_local(
        self,
        path: str,
        scene: Scene | str,
        *,
        at: datetime | None = None,
    ) -> UploadedAsset:
        """Upload a file from local storage, addressed by web or relative path."""
        absolute = self._resolver.resolve(path)
        try:
            data = await asyncio.to_thread(absolute.read_bytes)
        except (FileNotFoundError, IsADirectoryError):
            raise NotFound(f"File does not exist: {path}", {"path": path}) from None
        except OSError as exc:
            raise Internal(f"Cannot read {path}: {exc}", {"path": path}) from exc
        return await self.upload_one(data, absolute.name, scene, at=at, source_path=absolute)

    async def upload_batch(
        self,
        items: Sequence[BatchEntry],
        scene: Scene | str,
        *,
        strict: bool,
        concurrency: int | None = None,
        delete_sources: bool = False,
        context: CancelContext | None = None,
    ) -> list[UploadOutcome]:
        """Upload many files to one scene.

        Items are in-memory :class:`UploadItem` values or local paths. In
        strict mode any failure deletes every object already uploaded and
        raises one aggregated error; in lenient mode each item reports its
        own outcome and nothing is rolled back. With ``delete_sources`` the
        local sources are removed only when every item succeeded. If the
        calling task is cancelled, every uploaded object is deleted in either
        mode before ``CancelledError`` propagates.
        """
        definition = self._registry.get(scene)
        items = list(items)
        if not items:
            return []
        at = datetime.now()

        published: list[RollbackAction] = []

        async def _upload(item: BatchEntry) -> UploadedAsset:
            if isinstance(item, str):
                asset = await self.upload_local(item, definition.name, at=at)
            else:
                asset = await self.upload_one(
                    item.data, item.original_name, definition.name, at=at, source_path=item.source_path
                )
            published.append(asset.rollback)
            return asset

        try:
            with observability.batch_span("upload_batch", size=len(items), scene=definition.name, strict=strict):
                outcomes = await run_bounded(
                    items, _upload, concurrency or self._concurrency, context=context
                )
        except asyncio.CancelledError:
            # The caller never receives these keys, so nobody else could undo them
            report = await asyncio.shield(self._undoer.undo_all(published))
            logger.warning(
                "Upload batch of %d abandoned by its caller; %d objects rolled back",
                len(items), report.undone_count,
            )
            raise

        results = [
            UploadOutcome(
                index=outcome.index,
                name=_item_name(item),
                asset=outcome.value if outcome.ok else None,
                error=None if outcome.ok else as_media_error(outcome.error),
            )
            for item, outcome in zip(items, outcomes)
        ]
        failed = [result for result in results if not result.ok]

        if failed and strict:
            await self._fail_strict(results, failed)

        if failed:
            logger.info("Lenient upload batch: %d of %d failed", len(failed), len(results))
        elif delete_sources:
            await self._delete_sources(results)
        return results

    async def _fail_strict(self, results: list[UploadOutcome], failed: list[UploadOutcome]) -> None:
        succeeded = [result for result in results if result.ok]
        report = await self._undoer.undo_all(result.asset.rollback for result in succeeded)
        first = next(
            (result.error for result in failed if not isinstance(result.error, OperationCancelled)),
            failed[0].error,
        )
        logger.warning(
            "Strict upload batch of %d failed; %d failed, %d objects rolled back",
            len(results), len(failed), report.undone_count,
        )
        raise batch_failure(
            first,
            total=len(results),
            succeeded=len(succeeded),
            rolled_back=report.undone_count,
            failures=[
                {"index": result.index, "name": result.name, **result.error.to_dict()}
                for result in failed
            ],
        )

    async def _delete_sources(self, results: list[UploadOutcome]) -> None:
        actions = [
            RollbackAction.delete_local(self._resolver.relative_of(result.asset.source_path))
            for result in results
            if result.asset is not None and result.asset.source_path is not None
        ]
        if actions:
            await self._undoer.undo_all(actions)

    async def undo(self, action: RollbackAction) -> None:
        """Execute a rollback returned by an earlier upload. Idempotent."""
        await self._undoer.undo(action)


def _item_name(item: BatchEntry) -> str:
    return item if isinstance(item, str) else item.original_name
