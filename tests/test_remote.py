"""Tests for remote publication with rollback."""

import asyncio
import re
from unittest.mock import AsyncMock

import pytest

from plume.config import CompressionConfig
from plume.lib.concurrency import CancelContext
from plume.lib.exceptions import BadRequest, Internal, NotFound, OperationCancelled
from plume.lib.rollback import RollbackKind, Undoer
from plume.lib.scenes import Scene
from plume.media.models import UploadItem
from plume.media.remote import RemoteUploadService

KEY_RE = re.compile(r"^articles/images/\d{4}/\d{2}/[0-9a-f]{32}_photo\.png$")


@pytest.fixture
def make_service(resolver, registry, upload_root):
    def _make(backend, compression=None, concurrency=5):
        undoer = Undoer(upload_root, remote=backend)
        return RemoteUploadService(
            backend, registry, resolver, undoer, compression=compression, concurrency=concurrency
        )

    return _make


@pytest.fixture
def service(make_service, memory_backend):
    return make_service(memory_backend)


class TestUploadOne:
    """Test the upload_one method."""

    @pytest.mark.asyncio
    async def test_key_layout_and_rollback(self, service, memory_backend, make_image):
        asset = await service.upload_one(make_image(), "photo.png", Scene.ARTICLE_IMAGE)

        assert KEY_RE.match(asset.key)
        assert asset.url == f"https://cdn.example.test/{asset.key}"
        assert asset.content_type == "image/png"
        assert asset.rollback.kind is RollbackKind.DELETE_REMOTE
        assert asset.rollback.target == asset.key
        assert asset.key in memory_backend.objects

    @pytest.mark.asyncio
    async def test_keys_do_not_collide(self, service, make_image):
        data = make_image()
        first = await service.upload_one(data, "photo.png", Scene.ARTICLE_IMAGE)
        second = await service.upload_one(data, "photo.png", Scene.ARTICLE_IMAGE)
        assert first.key != second.key

    @pytest.mark.asyncio
    async def test_upload_then_rollback_leaves_nothing(self, service, memory_backend, make_image):
        asset = await service.upload_one(make_image(), "photo.png", Scene.ARTICLE_IMAGE)
        await service.undo(asset.rollback)
        assert memory_backend.objects == {}

    @pytest.mark.asyncio
    async def test_undo_is_idempotent(self, service, memory_backend, make_image):
        asset = await service.upload_one(make_image(), "photo.png", Scene.ARTICLE_IMAGE)
        await service.undo(asset.rollback)
        await service.undo(asset.rollback)
        assert memory_backend.deleted == [asset.key, asset.key]

    @pytest.mark.asyncio
    async def test_backend_failure_is_internal(self, make_service, backend_factory, make_image):
        service = make_service(backend_factory(fail_on={"photo"}))
        with pytest.raises(Internal, match="connection reset"):
            await service.upload_one(make_image(), "photo.png", Scene.ARTICLE_IMAGE)

    @pytest.mark.asyncio
    async def test_unknown_scene(self, service, memory_backend):
        with pytest.raises(BadRequest):
            await service.upload_one(b"data", "photo.png", "banner")
        assert memory_backend.objects == {}

    @pytest.mark.asyncio
    async def test_transcodes_per_scene_policy(self, make_service, memory_backend, make_image):
        service = make_service(memory_backend, compression=CompressionConfig())
        asset = await service.upload_one(make_image("JPEG"), "me.jpg", Scene.USER_AVATAR)
        assert asset.key.endswith("_me.webp")
        assert asset.content_type == "image/webp"
        assert memory_backend.objects[asset.key][8:12] == b"WEBP"

    @pytest.mark.asyncio
    async def test_non_image_uploaded_as_is(self, make_service, memory_backend):
        service = make_service(memory_backend, compression=CompressionConfig())
        asset = await service.upload_one(b"%PDF-1.4", "doc.pdf", Scene.ARTICLE_IMAGE)
        assert asset.key.endswith("_doc.pdf")
        assert memory_backend.objects[asset.key] == b"%PDF-1.4"


class TestUploadLocal:
    """Test the upload_local method."""

    @pytest.mark.asyncio
    async def test_reads_through_resolver(self, service, write_temp, upload_root, memory_backend):
        asset = await service.upload_local(write_temp("photo.png"), Scene.ARTICLE_IMAGE)
        assert memory_backend.objects[asset.key] == (upload_root / "temp/photo.png").read_bytes()
        assert asset.source_path == upload_root / "temp/photo.png"

    @pytest.mark.asyncio
    async def test_missing_file(self, service):
        with pytest.raises(NotFound):
            await service.upload_local("/uploads/temp/none.png", Scene.ARTICLE_IMAGE)


class TestUploadBatch:
    """Test the upload_batch method."""

    def _items(self, make_image, n=5):
        return [UploadItem(data=make_image(), original_name=f"img{i}.png") for i in range(n)]

    @pytest.mark.asyncio
    async def test_strict_success(self, service, memory_backend, make_image):
        results = await service.upload_batch(self._items(make_image), Scene.PHOTO_IMAGE, strict=True)
        assert all(r.ok for r in results)
        assert [r.name for r in results] == [f"img{i}.png" for i in range(5)]
        assert len(memory_backend.objects) == 5

    @pytest.mark.asyncio
    async def test_strict_failure_rolls_back(self, make_service, backend_factory, make_image):
        backend = backend_factory(fail_on={"img3"})
        service = make_service(backend)
        with pytest.raises(Internal) as excinfo:
            await service.upload_batch(self._items(make_image), Scene.PHOTO_IMAGE, strict=True)

        error = excinfo.value
        assert backend.objects == {}
        assert error.data["total"] == 5
        assert error.data["succeededCount"] == 4
        assert error.data["rolledBackCount"] == 4
        assert error.data["failedCount"] == 1
        assert error.data["failed"][0]["name"] == "img3.png"
        assert "Batch of 5 failed" in error.message

    @pytest.mark.asyncio
    async def test_lenient_reports_each_item(self, make_service, backend_factory, make_image):
        backend = backend_factory(fail_on={"img1", "img4"})
        service = make_service(backend)
        results = await service.upload_batch(self._items(make_image), Scene.PHOTO_IMAGE, strict=False)

        assert [r.ok for r in results] == [True, False, True, True, False]
        assert len(backend.objects) == 3
        assert backend.deleted == []
        assert results[1].error.code == "INTERNAL"
        assert results[1].to_dict()["success"] is False

        kept = results[0].asset
        await service.undo(kept.rollback)
        assert kept.key not in backend.objects
        assert len(backend.objects) == 2

    @pytest.mark.asyncio
    async def test_strict_is_required(self, service):
        with pytest.raises(TypeError):
            await service.upload_batch([], Scene.PHOTO_IMAGE)

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, make_service, backend_factory, make_image):
        backend = backend_factory(delay=0.01)
        service = make_service(backend)
        await service.upload_batch(self._items(make_image, 12), Scene.PHOTO_IMAGE, strict=True, concurrency=3)
        assert backend.max_in_flight == 3

    @pytest.mark.asyncio
    async def test_unknown_scene_before_upload(self, service, memory_backend, make_image):
        with pytest.raises(BadRequest):
            await service.upload_batch(self._items(make_image), "banner", strict=False)
        assert memory_backend.objects == {}

    @pytest.mark.asyncio
    async def test_delete_sources_after_full_success(self, service, write_temp, upload_root):
        paths = [write_temp("a.png"), write_temp("b.png")]
        await service.upload_batch(paths, Scene.PHOTO_IMAGE, strict=True, delete_sources=True)
        assert not (upload_root / "temp/a.png").exists()
        assert not (upload_root / "temp/b.png").exists()

    @pytest.mark.asyncio
    async def test_sources_kept_on_partial_failure(self, service, write_temp, upload_root):
        paths = [write_temp("a.png"), "/uploads/temp/missing.png"]
        results = await service.upload_batch(paths, Scene.PHOTO_IMAGE, strict=False, delete_sources=True)
        assert [r.ok for r in results] == [True, False]
        assert isinstance(results[1].error, NotFound)
        assert (upload_root / "temp/a.png").exists()

    @pytest.mark.asyncio
    async def test_cancelled_strict_batch(self, make_service, backend_factory, make_image):
        backend = backend_factory(delay=0.05)
        service = make_service(backend, concurrency=2)
        context = CancelContext(timeout=0.01)
        with pytest.raises(OperationCancelled):
            await service.upload_batch(self._items(make_image, 4), Scene.PHOTO_IMAGE, strict=True, context=context)
        assert backend.objects == {}

    @pytest.mark.parametrize("strict", [True, False])
    @pytest.mark.asyncio
    async def test_cancelled_caller_task_deletes_uploads(self, make_service, backend_factory, make_image, strict):
        backend = backend_factory(delay=0.05)
        service = make_service(backend, concurrency=2)
        task = asyncio.create_task(
            service.upload_batch(self._items(make_image, 4), Scene.PHOTO_IMAGE, strict=strict)
        )
        await asyncio.sleep(0.08)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert backend.in_flight == 0
        assert backend.objects == {}
        assert len(backend.deleted) >= 2

    @pytest.mark.asyncio
    async def test_rollback_failures_are_swallowed(self, make_service, backend_factory, make_image):
        backend = backend_factory(fail_on={"img2"})
        backend.delete = AsyncMock(side_effect=ConnectionError("still down"))
        service = make_service(backend)
        with pytest.raises(Internal) as excinfo:
            await service.upload_batch(self._items(make_image, 3), Scene.PHOTO_IMAGE, strict=True)
        assert excinfo.value.data["rolledBackCount"] == 0
