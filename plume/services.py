"""Startup wiring: build every media service once from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from plume.lib.imaging import ThumbnailSpec
from plume.lib.paths import PathResolver
from plume.lib.rollback import Undoer
from plume.lib.scenes import SceneRegistry, build_scene_registry
from plume.lib.storage import create_storage_backend
from plume.media.promotion import LocalPromotionService
from plume.media.remote import RemoteUploadService
from plume.media.thumbnails import ThumbnailGenerator
from plume.media.validator import AssetValidator
from plume.middleware.upload import UploadIngressPipeline

if TYPE_CHECKING:
    from plume.config import Settings
    from plume.lib.storage.base import StorageBackend

logger = logging.getLogger(__name__)


@dataclass
class MediaServices:
    """The process-wide media services, shared by HTTP handlers and the CLI."""

    settings: Settings
    resolver: PathResolver
    registry: SceneRegistry
    backend: StorageBackend
    undoer: Undoer
    validator: AssetValidator
    thumbnails: ThumbnailGenerator
    promotion: LocalPromotionService
    remote: RemoteUploadService
    ingress: UploadIngressPipeline

    @classmethod
    def from_settings(cls, settings: Settings, backend: StorageBackend | None = None) -> MediaServices:
        concurrency = settings.upload.concurrency
        resolver = PathResolver(
            root=Path(settings.upload.root_path).resolve(),
            public_prefix=settings.upload.public_prefix,
        )
        registry = build_scene_registry(settings)
        backend = backend or create_storage_backend(settings.storage)
        undoer = Undoer(resolver.root, remote=backend, concurrency=concurrency)
        thumbnails = ThumbnailGenerator(resolver, registry, ThumbnailSpec.from_config(settings.thumbnail))

        services = cls(
            settings=settings,
            resolver=resolver,
            registry=registry,
            backend=backend,
            undoer=undoer,
            validator=AssetValidator(resolver, concurrency),
            thumbnails=thumbnails,
            promotion=LocalPromotionService(resolver, registry, thumbnails, undoer, concurrency),
            remote=RemoteUploadService(
                backend,
                registry,
                resolver,
                undoer,
                compression=settings.compression,
                concurrency=concurrency,
            ),
            ingress=UploadIngressPipeline(resolver, registry, settings.upload, settings.compression),
        )
        logger.info(
            "Media services ready: root=%s, %d scenes, backend=%s",
            resolver.root, len(registry), getattr(backend, "name", type(backend).__name__),
        )
        return services

    def ensure_directories(self) -> None:
        """Create the storage root and temp area."""
        self.resolver.root.mkdir(parents=True, exist_ok=True)
        (self.resolver.root / self.settings.upload.temp_subdir).mkdir(parents=True, exist_ok=True)
        if self.settings.storage.backend == "local":
            Path(self.settings.storage.local_path).mkdir(parents=True, exist_ok=True)

    async def close(self) -> None:
        close = getattr(self.backend, "close", None)
        if close is not None:
            await close()
