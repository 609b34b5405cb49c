"""Existence checks for temp assets referenced by a caller."""

from __future__ import annotations

import asyncio
import errno
import logging
import os
import stat
from typing import Iterable

from plume.lib import observability
from plume.lib.concurrency import DEFAULT_CONCURRENCY, CancelContext, run_bounded
from plume.lib.exceptions import Internal, MediaError, NotFound, as_media_error
from plume.lib.paths import PathResolver

logger = logging.getLogger(__name__)

# How many missing paths are spelled out in the error message
MISSING_DISPLAY_LIMIT = 5


class AssetValidator:
    """Checks that referenced assets are non-empty regular files under the root."""

    def __init__(self, resolver: PathResolver, concurrency: int = DEFAULT_CONCURRENCY) -> None:
        self._resolver = resolver
        self._concurrency = concurrency

    async def validate_exists(self, path: str) -> None:
        """Raise unless ``path`` names a non-empty regular file.

        Raises:
            BadPath: the path escapes the storage root.
            NotFound: missing, not a regular file, or empty.
            Internal: permission or other OS errors.
        """
        absolute = self._resolver.resolve(path)
        try:
            info = await asyncio.to_thread(os.stat, absolute)
        except FileNotFoundError:
            raise NotFound(f"File does not exist: {path}", {"path": path}) from None
        except PermissionError as exc:
            raise Internal(f"Permission denied reading {path}", {"path": path}) from exc
        except OSError as exc:
            if exc.errno == errno.ENOTDIR:
                raise NotFound(f"File does not exist: {path}", {"path": path}) from None
            raise Internal(f"Cannot stat {path}: {exc.strerror}", {"path": path}) from exc

        if not stat.S_ISREG(info.st_mode):
            raise NotFound(f"Path exists but is not a file: {path}", {"path": path})
        if info.st_size == 0:
            raise NotFound(f"File is empty: {path}", {"path": path})

    async def validate_exists_batch(
        self,
        paths: Iterable[str],
        *,
        context: CancelContext | None = None,
    ) -> None:
        """Validate every path, reporting all missing files at once.

        Any error other than ``NotFound`` (a bad path, a permission problem)
        is raised as soon as it is seen instead of being merged into the
        missing-file report.
        """
        cleaned = list(dict.fromkeys(p.strip() for p in paths if isinstance(p, str) and p.strip()))
        if not cleaned:
            return

        with observability.batch_span("validate_exists_batch", size=len(cleaned)):
            outcomes = await run_bounded(
                cleaned, self.validate_exists, self._concurrency, context=context
            )

        missing: list[str] = []
        for path, outcome in zip(cleaned, outcomes):
            if outcome.ok:
                continue
            error = outcome.error
            if isinstance(error, NotFound):
                missing.append(path)
                continue
            critical: MediaError = as_media_error(error)
            if critical is not error:
                critical.__cause__ = error
            raise critical.add_context(
                batchOperation="validate_exists_batch",
                failedPath=path,
                totalPaths=len(cleaned),
            )

        if missing:
            displayed = ", ".join(missing[:MISSING_DISPLAY_LIMIT])
            suffix = f" and {len(missing) - MISSING_DISPLAY_LIMIT} more" if len(missing) > MISSING_DISPLAY_LIMIT else ""
            logger.info("Batch validation found %d missing of %d", len(missing), len(cleaned))
            raise NotFound(
                f"Files do not exist: {displayed}{suffix}",
                {"missingPaths": missing, "totalMissing": len(missing)},
            )
