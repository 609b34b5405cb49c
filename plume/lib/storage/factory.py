"""Build the configured publication backend at startup."""

from __future__ import annotations

import importlib
from pathlib import Path
from typing import TYPE_CHECKING

from plume.lib.storage.local import LocalStorageBackend

if TYPE_CHECKING:
    from plume.config import StorageConfig
    from plume.lib.storage.base import StorageBackend


def create_storage_backend(config: StorageConfig) -> StorageBackend:
    """Instantiate a storage backend from configuration.

    ``backend`` is ``local``, ``s3`` or a ``module:ClassName`` spec whose
    class takes the ``StorageConfig``.
    """
    backend_type = config.backend

    if backend_type == "local":
        return LocalStorageBackend(
            base_path=Path(config.local_path),
            url_prefix=config.local_url_prefix,
        )

    if backend_type == "s3":
        from plume.lib.storage.s3 import S3StorageBackend

        return S3StorageBackend(config.s3)

    if ":" in backend_type:
        parts = backend_type.split(":")
        if len(parts) != 2:
            raise ValueError(
                f"Invalid backend spec '{backend_type}': must contain exactly one colon"
            )
        module_path, class_name = parts
        module = importlib.import_module(module_path)
        cls = getattr(module, class_name)
        return cls(config)

    raise ValueError(
        f"Unknown storage backend '{backend_type}'. "
        "Use 'local', 's3', or 'module:ClassName'."
    )
