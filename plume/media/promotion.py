"""Copy temp uploads into formal scene storage, all-or-nothing per batch."""

from __future__ import annotations

import asyncio
import filecmp
import logging
import mimetypes
import os
import shutil
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Callable, Iterable, Sequence

from plume.lib import observability
from plume.lib.concurrency import DEFAULT_CONCURRENCY, CancelContext, run_bounded, to_thread_shielded
from plume.lib.exceptions import (
    BadRequest,
    Internal,
    MediaError,
    OperationCancelled,
    as_media_error,
    batch_failure,
)
from plume.lib.paths import PathResolver, resolve_absolute
from plume.lib.rollback import RollbackAction, RollbackReport, Undoer
from plume.lib.scenes import Scene, SceneRegistry
from plume.media.models import Backend, StoredAsset
from plume.media.thumbnails import ThumbnailGenerator

logger = logging.getLogger(__name__)

PromotionItem = tuple[str, "Scene | str"]


@dataclass(frozen=True)
class PlannedPromotion:
    """Where one temp file will land, computed before anything is written."""

    source: str
    target: str
    scene: str
    thumbnail: str | None = None


def _copy(source: Path, target: Path, on_created: Callable[[], None]) -> int:
    """Copy ``source`` to ``target`` through a hidden sibling and an atomic rename.

    ``on_created`` runs once the target exists and was not there before. An
    identical file already at ``target`` (a retried promotion) is kept as is;
    a different one is never overwritten.
    """
    if not source.is_file():
        raise Internal(f"Source file does not exist: {source.name}", {"path": str(source)})
    if target.exists():
        if target.is_file() and filecmp.cmp(source, target, shallow=False):
            return target.stat().st_size
        raise BadRequest(
            f"A different file is already published as {target.name}", {"path": str(target)}
        )

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise Internal(f"Cannot create directory {target.parent.name}: {exc}") from exc

    partial = target.with_name(f".{target.name}.{uuid.uuid4().hex}.part")
    try:
        shutil.copyfile(source, partial)
        os.replace(partial, target)
    except OSError as exc:
        partial.unlink(missing_ok=True)
        if not source.is_file():
            raise Internal(f"Source file does not exist: {source.name}", {"path": str(source)}) from exc
        raise Internal(f"Cannot copy {source.name}: {exc}", {"path": str(target)}) from exc
    on_created()
    return target.stat().st_size


def _check_collisions(plans: Sequence[PlannedPromotion]) -> None:
    """Reject batches where different sources would land on the same file."""
    claimed: dict[str, tuple[int, str]] = {}
    for index, planned in enumerate(plans):
        for destination in (planned.target, planned.thumbnail):
            if destination is None:
                continue
            owner = claimed.setdefault(destination, (index, planned.source))
            if owner[1] != planned.source:
                raise BadRequest(
                    f"Items {owner[0]} and {index} would both be published as {destination}",
                    {"target": destination, "indexes": [owner[0], index]},
                )


class LocalPromotionService:
    """Promote temp files into ``{root}/{scene dir}/{YYYY}/{MM}/{basename}``.

    Sources are copied, never moved; the caller deletes temp files with
    :meth:`delete_assets` once its own transaction has committed. Each item
    keeps a journal of the files it created, and only those are ever rolled
    back, so retrying an already published item cannot delete it.
    """

    def __init__(
        self,
        resolver: PathResolver,
        registry: SceneRegistry,
        thumbnails: ThumbnailGenerator,
        undoer: Undoer,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        self._resolver = resolver
        self._registry = registry
        self._thumbnails = thumbnails
        self._undoer = undoer
        self._concurrency = concurrency

    def plan(self, temp_path: str, scene: Scene | str, at: datetime) -> PlannedPromotion:
        """Compute source and destinations. Raises for unknown scenes and bad paths."""
        definition = self._registry.get(scene)
        source = self._resolver.normalize(temp_path)
        target = f"{self._registry.target_dir(definition.name, at)}/{PurePosixPath(source).name}"
        thumbnail = None
        if definition.needs_thumbnail:
            spec = self._thumbnails.spec_for(definition.name)
            thumbnail = self._thumbnails.plan(target, spec, definition.name, at)
        return PlannedPromotion(source=source, target=target, scene=definition.name, thumbnail=thumbnail)

    async def promote_one(
        self,
        temp_path: str,
        scene: Scene | str,
        *,
        at: datetime | None = None,
    ) -> StoredAsset:
        """Copy one temp file into its scene directory.

        Raises:
            BadRequest: unknown scene (checked before touching the disk), or
                a different file already published at the target.
            BadPath: ``temp_path`` escapes the storage root.
            Internal: missing source or a failed copy.
        """
        at = at or datetime.now()
        planned = self.plan(temp_path, scene, at)
        journal: list[RollbackAction] = []
        try:
            return await self._execute(planned, at, journal)
        except BaseException:
            await asyncio.shield(self._undoer.undo_all(journal))
            raise

    async def _execute(
        self,
        planned: PlannedPromotion,
        at: datetime | None,
        journal: list[RollbackAction],
    ) -> StoredAsset:
        root = self._resolver.root
        source = resolve_absolute(root, planned.source)
        target = resolve_absolute(root, planned.target)

        def _created() -> None:
            journal.append(RollbackAction.delete_local(planned.target))

        size = await to_thread_shielded(_copy, source, target, _created)

        thumbnail = None
        if planned.thumbnail is not None:
            thumbnail = await self._thumbnails.generate(
                planned.target, scene=planned.scene, strict=True, at=at, journal=journal
            )

        mime_type, _ = mimetypes.guess_type(target.name)
        logger.debug("Promoted %s to %s", planned.source, planned.target)
        return StoredAsset(
            relative_path=planned.target,
            absolute_path=target,
            scene=planned.scene,
            size_bytes=size,
            mime_type=mime_type or "application/octet-stream",
            backend=Backend.LOCAL,
            web_path=self._resolver.web_path(planned.target),
            thumbnail=thumbnail,
            rollback=list(journal),
        )

    async def promote_batch(
        self,
        items: Sequence[PromotionItem],
        *,
        context: CancelContext | None = None,
        at: datetime | None = None,
    ) -> list[StoredAsset]:
        """Promote every item or none.

        Destinations are planned up front, so a bad scene, a bad path or two
        sources sharing a destination fail the batch before any copy. If any
        item fails, the batch is cancelled or the calling task itself is
        cancelled, every file the batch created is deleted before the error
        propagates.
        """
        items = list(items)
        if not items:
            return []
        at = at or datetime.now()

        plans = [self.plan(temp_path, scene, at) for temp_path, scene in items]
        _check_collisions(plans)
        journals: list[list[RollbackAction]] = [[] for _ in plans]

        async def _promote(index: int) -> StoredAsset:
            return await self._execute(plans[index], at, journals[index])

        try:
            with observability.batch_span("promote_batch", size=len(plans)):
                outcomes = await run_bounded(range(len(plans)), _promote, self._concurrency, context=context)
        except asyncio.CancelledError:
            report = await asyncio.shield(self._undoer.undo_all(_flatten(journals)))
            logger.warning(
                "Promotion batch of %d abandoned by its caller; %d artifacts rolled back",
                len(plans), report.undone_count,
            )
            raise

        if all(outcome.ok for outcome in outcomes):
            return [outcome.value for outcome in outcomes]

        failures: list[dict] = []
        first: MediaError | None = None
        for planned, outcome in zip(plans, outcomes):
            if outcome.ok:
                continue
            error = as_media_error(outcome.error)
            if first is None or (isinstance(first, OperationCancelled) and not isinstance(error, OperationCancelled)):
                first = error
            failures.append({"index": outcome.index, "path": planned.source, **error.to_dict()})

        report = await self._undoer.undo_all(_flatten(journals))
        succeeded = sum(1 for outcome in outcomes if outcome.ok)
        logger.warning(
            "Promotion batch of %d failed; %d failed, %d artifacts rolled back",
            len(plans), len(failures), report.undone_count,
        )
        raise batch_failure(
            first,
            total=len(plans),
            succeeded=succeeded,
            rolled_back=report.undone_count,
            failures=failures,
        )

    async def delete_assets(self, paths: Iterable[str]) -> RollbackReport:
        """Remove formal or temp files. Missing files are ignored.

        Every path is normalized before anything is deleted, so one bad path
        fails the call without side effects.
        """
        relatives = list(dict.fromkeys(self._resolver.normalize(p) for p in paths))
        return await self._undoer.undo_all(RollbackAction.delete_local(r) for r in relatives)


def _flatten(journals: Iterable[list[RollbackAction]]) -> list[RollbackAction]:
    return [action for journal in journals for action in journal]
