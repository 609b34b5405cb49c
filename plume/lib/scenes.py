"""Scenes: the semantic upload purposes and where their files live.

The registry is built once at startup from configuration and is read-only
afterwards; nothing mutates it at request time.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Iterator, Mapping

from plume.config import DEFAULT_IMAGE_EXTENSIONS, DEFAULT_IMAGE_MIME_TYPES, MB
from plume.lib.exceptions import BadRequest
from plume.lib.imaging import ThumbnailSpec

if TYPE_CHECKING:
    from plume.config import SceneConfig, Settings


class Scene(str, Enum):
    ARTICLE_IMAGE = "article_image"
    ARTICLE_COVER = "article_cover"
    ARTICLE_COVER_THUMB = "article_cover_thumb"
    USER_AVATAR = "user_avatar"
    ALBUM_COVER = "album_cover"
    ALBUM_COVER_THUMB = "album_cover_thumb"
    PHOTO_IMAGE = "photo_image"


@dataclass(frozen=True)
class SceneDefinition:
    """Directory template and ingress rules for one scene."""

    name: str
    base_dir: str
    date_partitioned: bool = True
    allowed_mime_types: tuple[str, ...] = tuple(DEFAULT_IMAGE_MIME_TYPES)
    allowed_extensions: tuple[str, ...] = tuple(DEFAULT_IMAGE_EXTENSIONS)
    max_file_size: int = 5 * MB
    max_file_count: int = 10
    compress: bool = True
    compression_format: str | None = None
    compression_quality: int | None = None
    thumbnail_scene: str | None = None
    thumbnail: ThumbnailSpec | None = field(default=None)

    def directory(self, at: datetime) -> str:
        if not self.date_partitioned:
            return self.base_dir
        return f"{self.base_dir}/{at.year:04d}/{at.month:02d}"

    @property
    def needs_thumbnail(self) -> bool:
        return self.thumbnail_scene is not None or self.thumbnail is not None


DEFAULT_SCENES: dict[str, SceneDefinition] = {
    Scene.ARTICLE_IMAGE.value: SceneDefinition(
        name=Scene.ARTICLE_IMAGE.value,
        base_dir="articles/images",
        max_file_size=10 * MB,
        max_file_count=20,
    ),
    Scene.ARTICLE_COVER.value: SceneDefinition(
        name=Scene.ARTICLE_COVER.value,
        base_dir="articles/covers/main",
        max_file_size=10 * MB,
        max_file_count=1,
        thumbnail_scene=Scene.ARTICLE_COVER_THUMB.value,
    ),
    Scene.ARTICLE_COVER_THUMB.value: SceneDefinition(
        name=Scene.ARTICLE_COVER_THUMB.value,
        base_dir="articles/covers/thumb",
        max_file_count=1,
    ),
    Scene.USER_AVATAR.value: SceneDefinition(
        name=Scene.USER_AVATAR.value,
        base_dir="users/avatars",
        max_file_size=2 * MB,
        max_file_count=1,
        compression_format="webp",
        compression_quality=80,
    ),
    Scene.ALBUM_COVER.value: SceneDefinition(
        name=Scene.ALBUM_COVER.value,
        base_dir="albums/covers/main",
        max_file_size=10 * MB,
        max_file_count=1,
        thumbnail_scene=Scene.ALBUM_COVER_THUMB.value,
    ),
    Scene.ALBUM_COVER_THUMB.value: SceneDefinition(
        name=Scene.ALBUM_COVER_THUMB.value,
        base_dir="albums/covers/thumb",
        max_file_count=1,
    ),
    Scene.PHOTO_IMAGE.value: SceneDefinition(
        name=Scene.PHOTO_IMAGE.value,
        base_dir="albums/photos",
        max_file_size=20 * MB,
        max_file_count=20,
    ),
}


def _scene_name(scene: Scene | str) -> str:
    return scene.value if isinstance(scene, Scene) else str(scene)


class SceneRegistry:
    """Immutable scene → definition mapping."""

    def __init__(self, definitions: Mapping[str, SceneDefinition]) -> None:
        for definition in definitions.values():
            if ".." in definition.base_dir.split("/") or definition.base_dir.startswith("/"):
                raise ValueError(f"Scene {definition.name!r} has an unsafe base_dir {definition.base_dir!r}")
            if definition.thumbnail_scene and definition.thumbnail_scene not in definitions:
                raise ValueError(
                    f"Scene {definition.name!r} references unknown thumbnail scene "
                    f"{definition.thumbnail_scene!r}"
                )
        self._definitions = MappingProxyType(dict(definitions))

    def __contains__(self, scene: object) -> bool:
        if isinstance(scene, (Scene, str)):
            return _scene_name(scene) in self._definitions
        return False

    def __iter__(self) -> Iterator[str]:
        return iter(self._definitions)

    def __len__(self) -> int:
        return len(self._definitions)

    @property
    def definitions(self) -> Mapping[str, SceneDefinition]:
        return self._definitions

    def get(self, scene: Scene | str) -> SceneDefinition:
        """Return a scene's definition; unknown scenes are a ``BadRequest``."""
        name = _scene_name(scene)
        try:
            return self._definitions[name]
        except KeyError:
            raise BadRequest(f"Unknown scene: {name}", {"scene": name}) from None

    def target_dir(self, scene: Scene | str, at: datetime | None = None) -> str:
        """Relative directory for files of ``scene`` published at ``at``."""
        return self.get(scene).directory(at or datetime.now())

    def thumbnail_for(self, scene: Scene | str) -> SceneDefinition | None:
        """Definition of the dedicated thumbnail scene, if one is configured."""
        definition = self.get(scene)
        if definition.thumbnail_scene is None:
            return None
        return self.get(definition.thumbnail_scene)


def _apply_override(base: SceneDefinition | None, name: str, override: SceneConfig) -> SceneDefinition:
    if base is None:
        if not override.base_dir:
            raise ValueError(f"Scene {name!r} is not built in and has no base_dir")
        base = SceneDefinition(name=name, base_dir=override.base_dir)

    changes: dict = {}
    for attr in (
        "base_dir",
        "date_partitioned",
        "max_file_size",
        "max_file_count",
        "compress",
        "compression_format",
        "compression_quality",
        "thumbnail_scene",
    ):
        value = getattr(override, attr)
        if value is not None:
            changes[attr] = value
    if override.allowed_mime_types is not None:
        changes["allowed_mime_types"] = tuple(override.allowed_mime_types)
    if override.allowed_extensions is not None:
        changes["allowed_extensions"] = tuple(e.lower().lstrip(".") for e in override.allowed_extensions)
    if override.thumbnail is not None:
        changes["thumbnail"] = ThumbnailSpec.from_config(override.thumbnail)
    return replace(base, **changes)


def build_scene_registry(settings: Settings | None = None) -> SceneRegistry:
    """Build the process-wide registry from defaults plus ``settings.scenes``."""
    definitions = dict(DEFAULT_SCENES)
    if settings is not None:
        for name, override in settings.scenes.items():
            definitions[name] = _apply_override(definitions.get(name), name, override)
    return SceneRegistry(definitions)
