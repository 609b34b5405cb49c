"""Compensating actions for committed media artifacts.

A :class:`RollbackAction` is a plain value describing how to undo one commit
(delete a formal file, delete a remote key). :class:`Undoer` is the single
interpreter that executes them. Every action is idempotent: undoing twice,
or undoing something already gone, is not an error.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

from plume.lib.concurrency import DEFAULT_CONCURRENCY, run_bounded
from plume.lib.exceptions import BadRequest
from plume.lib.paths import resolve_absolute

if TYPE_CHECKING:
    from plume.lib.storage.base import StorageBackend

logger = logging.getLogger(__name__)


class RollbackKind(str, Enum):
    DELETE_LOCAL = "delete-local"
    DELETE_REMOTE = "delete-remote"


@dataclass(frozen=True)
class RollbackAction:
    kind: RollbackKind
    target: str

    @classmethod
    def delete_local(cls, relative_path: str) -> RollbackAction:
        return cls(RollbackKind.DELETE_LOCAL, relative_path)

    @classmethod
    def delete_remote(cls, key: str) -> RollbackAction:
        return cls(RollbackKind.DELETE_REMOTE, key)

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind.value, "target": self.target}

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.target}"


@dataclass
class RollbackReport:
    """What a best-effort rollback managed to undo."""

    undone: list[RollbackAction]
    failed: list[tuple[RollbackAction, str]]

    @property
    def undone_count(self) -> int:
        return len(self.undone)


class Undoer:
    """Interpreter for :class:`RollbackAction` values."""

    def __init__(
        self,
        local_root: Path,
        remote: StorageBackend | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        self._local_root = local_root
        self._remote = remote
        self._concurrency = concurrency

    async def undo(self, action: RollbackAction) -> None:
        """Execute one action. Raises on I/O failure; missing targets are fine."""
        if action.kind is RollbackKind.DELETE_LOCAL:
            path = resolve_absolute(self._local_root, action.target)
            await asyncio.to_thread(path.unlink, missing_ok=True)
        elif action.kind is RollbackKind.DELETE_REMOTE:
            if self._remote is None:
                raise BadRequest(f"No remote backend configured to undo {action}")
            await self._remote.delete(action.target)
        else:
            raise BadRequest(f"Unknown rollback kind: {action.kind}")
        logger.debug("Rolled back %s", action)

    async def undo_all(self, actions: Iterable[RollbackAction]) -> RollbackReport:
        """Best-effort: undo every action, log failures, never raise."""
        actions = list(actions)
        outcomes = await run_bounded(actions, self.undo, self._concurrency)
        report = RollbackReport(undone=[], failed=[])
        for action, outcome in zip(actions, outcomes):
            if outcome.ok:
                report.undone.append(action)
            else:
                logger.warning("Rollback of %s failed: %s", action, outcome.error)
                report.failed.append((action, str(outcome.error)))
        if actions:
            logger.info(
                "Rollback finished: %d undone, %d failed", report.undone_count, len(report.failed)
            )
        return report
