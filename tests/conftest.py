"""Shared pytest fixtures."""

import asyncio
import hashlib
import io
from datetime import datetime
from pathlib import Path

import pytest
import yaml
from PIL import Image

from plume.config import clear_settings_cache
from plume.lib.imaging import ThumbnailSpec
from plume.lib.paths import PathResolver
from plume.lib.rollback import Undoer
from plume.lib.scenes import build_scene_registry
from plume.lib.storage.base import StoredFile
from plume.media.promotion import LocalPromotionService
from plume.media.thumbnails import ThumbnailGenerator

FIXED_AT = datetime(2025, 1, 15, 12, 0)


def make_image(fmt: str = "PNG", size=(640, 480), color=(200, 40, 40)) -> bytes:
    """Encode a solid-colour test image."""
    mode = "RGBA" if fmt == "PNG" else "RGB"
    img = Image.new(mode, size, color)
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


def make_noisy_jpeg(size=(320, 240), quality: int = 100) -> bytes:
    """A noisy JPEG; at high quality re-encoding shrinks it, at low quality it grows."""
    img = Image.effect_noise(size, 64).convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


class MemoryBackend:
    """In-memory publication backend that can fail or stall on chosen keys."""

    name = "memory"

    def __init__(self, fail_on=(), delay: float = 0.0):
        self.objects: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.fail_on = set(fail_on)
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0

    async def put(self, key, data, content_type):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if any(token in key for token in self.fail_on):
                raise ConnectionError(f"connection reset while storing {key}")
            self.objects[key] = data
        finally:
            self.in_flight -= 1
        return StoredFile(
            key=key,
            url=f"https://cdn.example.test/{key}",
            content_type=content_type,
            size=len(data),
            content_hash=hashlib.sha256(data).hexdigest(),
        )

    async def get(self, key):
        return self.objects[key]

    async def delete(self, key):
        self.deleted.append(key)
        self.objects.pop(key, None)

    async def exists(self, key):
        return key in self.objects

    async def get_url(self, key):
        return f"https://cdn.example.test/{key}"


@pytest.fixture
def upload_root(tmp_path) -> Path:
    root = tmp_path / "uploads"
    root.mkdir()
    return root.resolve()


@pytest.fixture
def resolver(upload_root) -> PathResolver:
    return PathResolver(root=upload_root, public_prefix="/uploads")


@pytest.fixture
def registry():
    return build_scene_registry()


@pytest.fixture
def memory_backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def undoer(upload_root, memory_backend) -> Undoer:
    return Undoer(upload_root, remote=memory_backend)


@pytest.fixture
def thumbnails(resolver, registry) -> ThumbnailGenerator:
    return ThumbnailGenerator(resolver, registry, ThumbnailSpec(width=64, height=64))


@pytest.fixture
def promotion(resolver, registry, thumbnails, undoer) -> LocalPromotionService:
    return LocalPromotionService(resolver, registry, thumbnails, undoer, concurrency=2)


@pytest.fixture
def write_temp(upload_root):
    """Write a file under ``temp/`` and return its web path."""

    def _write(name: str, data: bytes | None = None) -> str:
        path = upload_root / "temp" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(make_image() if data is None else data)
        return f"/uploads/temp/{name}"

    return _write


@pytest.fixture
def temp_app_yaml(tmp_path, monkeypatch):
    """Write an app.yaml, point PLUME_CONFIG at it and reset cached settings."""
    config_path = tmp_path / "app.yaml"

    def _create_config(config: dict):
        with open(config_path, "w") as f:
            yaml.safe_dump(config, f)
        monkeypatch.setenv("PLUME_CONFIG", str(config_path))
        clear_settings_cache()
        return config_path

    yield _create_config
    clear_settings_cache()


@pytest.fixture
def fixed_at() -> datetime:
    return FIXED_AT


@pytest.fixture(name="make_image")
def make_image_fixture():
    return make_image


@pytest.fixture(name="make_noisy_jpeg")
def make_noisy_jpeg_fixture():
    return make_noisy_jpeg


@pytest.fixture
def backend_factory():
    return MemoryBackend
