"""Publication backends for remote uploads (local directory or S3)."""

from plume.lib.storage.base import StorageBackend, StoredFile
from plume.lib.storage.factory import create_storage_backend
from plume.lib.storage.local import LocalStorageBackend

__all__ = ["LocalStorageBackend", "StorageBackend", "StoredFile", "create_storage_backend"]
