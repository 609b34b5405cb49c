"""Tests for publication storage backends."""

import hashlib
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from plume.config import S3Config, StorageConfig
from plume.lib.exceptions import BadPath
from plume.lib.storage import LocalStorageBackend, StorageBackend, create_storage_backend


class TestLocalStorageBackend:
    """Test the LocalStorageBackend class."""

    @pytest.fixture
    def backend(self, tmp_path):
        return LocalStorageBackend(tmp_path / "remote", url_prefix="/uploads/remote")

    @pytest.mark.asyncio
    async def test_put_get_delete(self, backend, tmp_path):
        stored = await backend.put("articles/images/a.webp", b"data", "image/webp")

        assert stored.url == "/uploads/remote/articles/images/a.webp"
        assert stored.size == 4
        assert stored.content_hash == hashlib.sha256(b"data").hexdigest()
        assert (tmp_path / "remote" / "articles" / "images" / "a.webp").read_bytes() == b"data"
        assert await backend.exists("articles/images/a.webp")
        assert await backend.get("articles/images/a.webp") == b"data"

        await backend.delete("articles/images/a.webp")
        assert not await backend.exists("articles/images/a.webp")

    @pytest.mark.asyncio
    async def test_delete_missing_is_idempotent(self, backend):
        await backend.delete("never/was.png")

    @pytest.mark.asyncio
    async def test_traversal_rejected(self, backend):
        with pytest.raises(BadPath):
            await backend.put("../escape.png", b"x", "image/png")

    @pytest.mark.asyncio
    async def test_overwrite_is_atomic(self, backend, tmp_path):
        await backend.put("a/b.png", b"first", "image/png")
        await backend.put("a/b.png", b"second", "image/png")
        assert sorted(p.name for p in (tmp_path / "remote/a").iterdir()) == ["b.png"]
        assert await backend.get("a/b.png") == b"second"

    @pytest.mark.asyncio
    async def test_failed_write_leaves_no_partial_file(self, backend, tmp_path):
        with patch("plume.lib.storage.local.os.replace", side_effect=OSError(28, "No space left")):
            with pytest.raises(OSError):
                await backend.put("a/b.png", b"data", "image/png")
        assert list((tmp_path / "remote/a").iterdir()) == []

    def test_satisfies_protocol(self, backend):
        assert isinstance(backend, StorageBackend)


def _mock_session(client):
    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=client)
    context.__aexit__ = AsyncMock(return_value=False)
    session = MagicMock()
    session.client.return_value = context
    return session


class TestS3StorageBackend:
    """Test the S3StorageBackend class against a mocked aioboto3 client."""

    @pytest.fixture
    def client(self):
        client = MagicMock()
        client.put_object = AsyncMock()
        client.delete_object = AsyncMock()
        client.generate_presigned_url = AsyncMock(return_value="https://signed.example/key")
        return client

    @pytest.fixture
    def make_backend(self, client):
        from plume.lib.storage.s3 import S3StorageBackend

        def _make(**overrides):
            config = S3Config(bucket="blog-media", region="eu-west-1", **overrides)
            with patch("plume.lib.storage.s3.aioboto3.Session", return_value=_mock_session(client)):
                return S3StorageBackend(config)

        return _make

    def test_requires_bucket(self):
        from plume.lib.storage.s3 import S3StorageBackend

        with pytest.raises(ValueError, match="bucket"):
            S3StorageBackend(S3Config())

    @pytest.mark.asyncio
    async def test_put_with_prefix_and_public_url(self, make_backend, client):
        backend = make_backend(prefix="media/", public_url="https://cdn.example.test", acl="public-read")
        stored = await backend.put("articles/a.webp", b"img", "image/webp")

        client.put_object.assert_awaited_once_with(
            Bucket="blog-media",
            Key="media/articles/a.webp",
            Body=b"img",
            ContentType="image/webp",
            ACL="public-read",
        )
        assert stored.key == "articles/a.webp"
        assert stored.url == "https://cdn.example.test/media/articles/a.webp"

    @pytest.mark.asyncio
    async def test_public_read_url_without_cdn(self, make_backend):
        backend = make_backend(acl="public-read")
        assert await backend.get_url("a.png") == "https://blog-media.s3.eu-west-1.amazonaws.com/a.png"

    @pytest.mark.asyncio
    async def test_private_objects_are_presigned(self, make_backend, client):
        backend = make_backend(presign_ttl=60)
        assert await backend.get_url("a.png") == "https://signed.example/key"
        client.generate_presigned_url.assert_awaited_once_with(
            "get_object", Params={"Bucket": "blog-media", "Key": "a.png"}, ExpiresIn=60
        )

    @pytest.mark.asyncio
    async def test_delete(self, make_backend, client):
        await make_backend().delete("a.png")
        client.delete_object.assert_awaited_once_with(Bucket="blog-media", Key="a.png")


class TestFactory:
    """Test the create_storage_backend function."""

    def test_local(self, tmp_path):
        backend = create_storage_backend(StorageConfig(local_path=str(tmp_path)))
        assert isinstance(backend, LocalStorageBackend)

    def test_s3(self):
        with patch("plume.lib.storage.s3.aioboto3.Session"):
            backend = create_storage_backend(StorageConfig(backend="s3", s3=S3Config(bucket="b")))
        assert backend.name == "object-store"

    def test_custom_class(self):
        backend = create_storage_backend(StorageConfig(backend="unittest.mock:MagicMock"))
        assert isinstance(backend, MagicMock)

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown storage backend"):
            create_storage_backend(StorageConfig(backend="ftp"))

    def test_bad_spec(self):
        with pytest.raises(ValueError, match="exactly one colon"):
            create_storage_backend(StorageConfig(backend="a:b:c"))
