"""Derived thumbnails for published images."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Callable

from plume.lib.concurrency import to_thread_shielded
from plume.lib.exceptions import BadPath, BadRequest, Internal, MediaError, NotFound
from plume.lib.imaging import ImageProcessingError, ThumbnailSpec, make_thumbnail
from plume.lib.paths import PathResolver, resolve_absolute
from plume.lib.rollback import RollbackAction
from plume.lib.scenes import Scene, SceneRegistry

logger = logging.getLogger(__name__)

THUMB_SUFFIX = "_thumb"


def thumbnail_name(primary_name: str, spec: ThumbnailSpec) -> str:
    """``cover.jpg`` → ``cover_thumb.webp``."""
    return f"{PurePosixPath(primary_name).stem}{THUMB_SUFFIX}.{spec.extension}"


class ThumbnailGenerator:
    """Render ``<stem>_thumb.<ext>`` next to a primary or into a thumbnail scene."""

    def __init__(
        self,
        resolver: PathResolver,
        registry: SceneRegistry,
        default_spec: ThumbnailSpec | None = None,
    ) -> None:
        self._resolver = resolver
        self._registry = registry
        self._default_spec = default_spec or ThumbnailSpec()

    @property
    def default_spec(self) -> ThumbnailSpec:
        return self._default_spec

    def spec_for(self, scene: Scene | str | None) -> ThumbnailSpec:
        """Spec declared by ``scene`` or its thumbnail scene, else the default."""
        if scene is None:
            return self._default_spec
        definition = self._registry.get(scene)
        if definition.thumbnail is not None:
            return definition.thumbnail
        thumb_scene = self._registry.thumbnail_for(scene)
        if thumb_scene is not None and thumb_scene.thumbnail is not None:
            return thumb_scene.thumbnail
        return self._default_spec

    def plan(
        self,
        primary_relative: str,
        spec: ThumbnailSpec,
        scene: Scene | str | None = None,
        at: datetime | None = None,
    ) -> str:
        """Relative path the thumbnail of ``primary_relative`` will be written to."""
        name = thumbnail_name(PurePosixPath(primary_relative).name, spec)
        thumb_scene = self._registry.thumbnail_for(scene) if scene is not None else None
        if thumb_scene is not None:
            return f"{self._registry.target_dir(thumb_scene.name, at)}/{name}"
        parent = PurePosixPath(primary_relative).parent.as_posix()
        return name if parent == "." else f"{parent}/{name}"

    async def generate(
        self,
        primary: str | Path,
        spec: ThumbnailSpec | None = None,
        scene: Scene | str | None = None,
        *,
        strict: bool = False,
        at: datetime | None = None,
        journal: list[RollbackAction] | None = None,
    ) -> str | None:
        """Create a thumbnail for ``primary`` and return its web path.

        ``primary`` is a web path, a root-relative path or an absolute path
        under the storage root. Path and scene errors are always raised.
        Otherwise lenient mode logs and returns ``None``; strict mode raises
        ``NotFound`` for a missing primary and ``Internal`` for decoding or
        write failures. When the thumbnail file is new, its ``delete-local``
        action is appended to ``journal``.
        """
        if isinstance(primary, Path):
            relative = self._resolver.relative_of(primary)
        else:
            relative = self._resolver.normalize(primary)
        spec = spec or self.spec_for(scene)
        target_relative = self.plan(relative, spec, scene, at)

        def _created() -> None:
            if journal is not None:
                journal.append(RollbackAction.delete_local(target_relative))

        try:
            source = resolve_absolute(self._resolver.root, relative)
            target = resolve_absolute(self._resolver.root, target_relative)
            await to_thread_shielded(self._render, source, target, spec, _created)
        except (BadPath, BadRequest):
            raise
        except MediaError as exc:
            if strict:
                raise
            logger.warning("Thumbnail for %s skipped: %s", relative, exc.message)
            return None

        logger.debug("Thumbnail %s written for %s", target_relative, relative)
        return self._resolver.web_path(target_relative)

    @staticmethod
    def _render(source: Path, target: Path, spec: ThumbnailSpec, on_created: Callable[[], None]) -> None:
        try:
            data = source.read_bytes()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            raise NotFound(f"Primary image does not exist: {source.name}", {"path": str(source)}) from None
        except OSError as exc:
            raise Internal(f"Cannot read {source.name}: {exc}", {"path": str(source)}) from exc

        try:
            rendered = make_thumbnail(data, spec)
        except (ImageProcessingError, ValueError) as exc:
            raise Internal(f"Cannot render thumbnail of {source.name}: {exc}", {"path": str(source)}) from exc

        partial = target.with_name(f".{target.name}.{uuid.uuid4().hex}.part")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            existed = target.exists()
            partial.write_bytes(rendered)
            os.replace(partial, target)
        except OSError as exc:
            partial.unlink(missing_ok=True)
            raise Internal(f"Cannot write thumbnail {target.name}: {exc}", {"path": str(target)}) from exc
        if not existed:
            on_created()

    def _candidates(self, relative: str) -> list[str]:
        path = PurePosixPath(relative)
        name = thumbnail_name(path.name, self._default_spec)
        parts = list(path.parent.parts)
        candidates = []
        if "main" in parts:
            index = len(parts) - 1 - parts[::-1].index("main")
            parts[index] = "thumb"
            candidates.append("/".join([*parts, name]))
        parent = path.parent.as_posix()
        candidates.append(name if parent == "." else f"{parent}/{name}")
        return candidates

    async def thumbnail_url_for(self, path: str) -> str:
        """Web path of an existing thumbnail for ``path``, else ``path`` itself.

        A ``.../main/...`` cover maps to the sibling ``.../thumb/...``
        directory; other images look for ``<stem>_thumb`` beside them.
        """
        relative = self._resolver.normalize(path)
        for candidate in self._candidates(relative):
            try:
                absolute = resolve_absolute(self._resolver.root, candidate)
            except BadPath:
                continue
            if await asyncio.to_thread(absolute.is_file):
                return self._resolver.web_path(candidate)
        return path
