"""Checkpoint collaborators notified before mutating invocations."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from loguru import logger

DEFAULT_MAX_CHECKPOINTS = 50


class Checkpointer(Protocol):
    def before_mutating_op(self, resource_id: str) -> None: ...


class NullCheckpointer:
    """Checkpointer that records nothing."""

    def before_mutating_op(self, resource_id: str) -> None:
        return None


@dataclass(frozen=True)
class FileSnapshot:
    path: Path
    content: str
    existed: bool
    taken_at: float


class FileSnapshotCheckpointer:
    """Keeps in-memory snapshots of files about to be mutated.

    Restoring is left to callers; the orchestration loop only notifies.
    """

    def __init__(self, workspace: Path, *, max_checkpoints: int = DEFAULT_MAX_CHECKPOINTS) -> None:
        self._workspace = workspace
        self._snapshots: deque[FileSnapshot] = deque(maxlen=max_checkpoints)

    @property
    def snapshots(self) -> list[FileSnapshot]:
        return list(self._snapshots)

    def before_mutating_op(self, resource_id: str) -> None:
        path = Path(resource_id)
        if not path.is_absolute():
            path = self._workspace / path
        if not path.exists():
            self._snapshots.append(FileSnapshot(path=path, content="", existed=False, taken_at=time.time()))
            return
        if not path.is_file():
            return
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeError):
            logger.warning("checkpoint.skip path={}", path)
            return
        self._snapshots.append(FileSnapshot(path=path, content=content, existed=True, taken_at=time.time()))
        logger.debug("checkpoint.snapshot path={} size={}", path, len(content))
