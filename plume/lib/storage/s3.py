"""S3-compatible publication backend (requires ``pip install plume[s3]``)."""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING

try:
    import aioboto3
except ImportError as exc:
    raise ImportError(
        "S3 storage backend requires aioboto3. Install it with: pip install plume[s3]"
    ) from exc

from plume.lib.storage.base import StoredFile

if TYPE_CHECKING:
    from plume.config import S3Config


class S3StorageBackend:
    """Store objects in an S3-compatible bucket.

    One aioboto3 session is kept for the process; its connection pool belongs
    to the client, not to the pipeline.
    """

    name = "object-store"

    def __init__(self, config: S3Config) -> None:
        if not config.bucket:
            raise ValueError("S3 storage requires a bucket name")
        self._config = config
        self._session = aioboto3.Session()

    def _client(self):
        kwargs: dict = {"region_name": self._config.region}
        if self._config.endpoint_url:
            kwargs["endpoint_url"] = self._config.endpoint_url
        if self._config.access_key_id:
            kwargs["aws_access_key_id"] = self._config.access_key_id
        if self._config.secret_access_key:
            kwargs["aws_secret_access_key"] = self._config.secret_access_key
        return self._session.client("s3", **kwargs)

    def _full_key(self, key: str) -> str:
        if self._config.prefix:
            return f"{self._config.prefix.rstrip('/')}/{key}"
        return key

    async def put(self, key: str, data: bytes, content_type: str) -> StoredFile:
        put_kwargs: dict = {
            "Bucket": self._config.bucket,
            "Key": self._full_key(key),
            "Body": data,
            "ContentType": content_type,
        }
        if self._config.acl:
            put_kwargs["ACL"] = self._config.acl

        async with self._client() as s3:
            await s3.put_object(**put_kwargs)

        return StoredFile(
            key=key,
            url=await self.get_url(key),
            content_type=content_type,
            size=len(data),
            content_hash=hashlib.sha256(data).hexdigest(),
        )

    async def get(self, key: str) -> bytes:
        async with self._client() as s3:
            response = await s3.get_object(Bucket=self._config.bucket, Key=self._full_key(key))
            return await response["Body"].read()

    async def delete(self, key: str) -> None:
        # DeleteObject succeeds for keys that do not exist
        async with self._client() as s3:
            await s3.delete_object(Bucket=self._config.bucket, Key=self._full_key(key))

    async def exists(self, key: str) -> bool:
        async with self._client() as s3:
            try:
                await s3.head_object(Bucket=self._config.bucket, Key=self._full_key(key))
                return True
            except s3.exceptions.ClientError:
                return False

    async def get_url(self, key: str) -> str:
        full_key = self._full_key(key)

        if self._config.public_url:
            return f"{self._config.public_url.rstrip('/')}/{full_key}"

        if self._config.acl == "public-read":
            if self._config.endpoint_url:
                return f"{self._config.endpoint_url.rstrip('/')}/{self._config.bucket}/{full_key}"
            return f"https://{self._config.bucket}.s3.{self._config.region}.amazonaws.com/{full_key}"

        async with self._client() as s3:
            return await s3.generate_presigned_url(
                "get_object",
                Params={"Bucket": self._config.bucket, "Key": full_key},
                ExpiresIn=self._config.presign_ttl,
            )

    async def close(self) -> None:
        """Clients are opened per call; nothing to release."""
