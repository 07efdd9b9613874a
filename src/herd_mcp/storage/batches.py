"""Batch persistence under ``<state>/batches``."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

from pydantic import ValidationError

from .files import atomic_write_text, file_lock
from .models import Batch, BatchOptions, BatchStatus, BatchWorker, BatchWorkerStatus

logger = logging.getLogger(__name__)

_BATCH_ID = re.compile(r"^batch-(\d+)$")
_BATCH_FILE = re.compile(r"^batch-(\d+)\.json$")


@dataclass(slots=True)
class BatchSummary:
    total: int = 0
    running: int = 0
    complete: int = 0
    failed: int = 0
    queued: int = 0
    waiting: int = 0
    cancelled: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(slots=True)
class BatchCompletion:
    complete: bool
    summary: BatchSummary


def summarize(batch: Batch) -> BatchSummary:
    summary = BatchSummary(total=len(batch.workers))
    for worker in batch.workers.values():
        status = worker.status
        if status.is_active:
            summary.running += 1
        elif status is BatchWorkerStatus.COMPLETE:
            summary.complete += 1
        elif status is BatchWorkerStatus.FAILED:
            summary.failed += 1
        elif status is BatchWorkerStatus.QUEUED:
            summary.queued += 1
        elif status is BatchWorkerStatus.WAITING:
            summary.waiting += 1
        elif status is BatchWorkerStatus.CANCELLED:
            summary.cancelled += 1
    return summary


class BatchStore:
    """One JSON file per batch, with ids allocated from a persisted counter.

    Read-modify-write goes through :meth:`update`, which holds an exclusive
    ``flock`` on ``<batch>.lock`` and replaces the file atomically.
    """

    def __init__(self, state_dir: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._dir = Path(state_dir) / "batches"
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._async_locks: dict[str, asyncio.Lock] = {}

    @property
    def batches_dir(self) -> Path:
        return self._dir

    @property
    def clock(self) -> Callable[[], datetime]:
        return self._clock

    def _path(self, batch_id: str) -> Path:
        return self._dir / f"{batch_id}.json"

    def _lock_path(self, batch_id: str) -> Path:
        return self._dir / f"{batch_id}.lock"

    @property
    def _counter_path(self) -> Path:
        return self._dir / ".counter"

    def async_lock(self, batch_id: str) -> asyncio.Lock:
        """Return the in-process lock serialising queue processing for ``batch_id``."""

        lock = self._async_locks.get(batch_id)
        if lock is None:
            lock = self._async_locks[batch_id] = asyncio.Lock()
        return lock

    def _read_counter(self) -> int:
        if self._counter_path.exists():
            try:
                return int(self._counter_path.read_text(encoding="utf-8").strip())
            except (OSError, ValueError):
                logger.warning("Batch counter unreadable; rescanning", extra={"path": str(self._counter_path)})
        highest = 0
        if self._dir.exists():
            for path in self._dir.iterdir():
                match = _BATCH_FILE.match(path.name)
                if match:
                    highest = max(highest, int(match.group(1)))
        return highest

    def _next_id(self) -> str:
        with file_lock(self._dir / ".counter.lock"):
            number = self._read_counter() + 1
            atomic_write_text(self._counter_path, str(number))
        return f"batch-{number:03d}"

    def create(self, items: Iterable[str], options: BatchOptions | dict[str, Any] | None = None) -> Batch:
        item_ids = list(dict.fromkeys(items))
        batch = Batch(
            id=self._next_id(),
            created_at=self._clock(),
            items=item_ids,
            workers={item_id: BatchWorker() for item_id in item_ids},
            options=BatchOptions.model_validate(options or {}),
        )
        self.save(batch)
        logger.info("Created batch", extra={"batch_id": batch.id, "items": len(item_ids)})
        return batch

    def get(self, batch_id: str) -> Batch | None:
        if not _BATCH_ID.match(batch_id):
            return None
        path = self._path(batch_id)
        if not path.exists():
            return None
        try:
            return Batch.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.warning("Unreadable batch file", extra={"batch_id": batch_id, "error": str(exc)})
            return None

    def list(self) -> list[Batch]:
        if not self._dir.exists():
            return []
        batches: list[Batch] = []
        for path in sorted(self._dir.iterdir(), key=lambda item: item.name):
            match = _BATCH_FILE.match(path.name)
            if match is None:
                continue
            batch = self.get(path.stem)
            if batch is not None:
                batches.append(batch)
        return batches

    def save(self, batch: Batch) -> None:
        atomic_write_text(self._path(batch.id), json.dumps(batch.model_dump(mode="json"), indent=2) + "\n")

    def update(self, batch_id: str, mutator: Callable[[Batch], Batch | None]) -> Batch | None:
        """Re-read, mutate and persist ``batch_id`` under its file lock.

        ``mutator`` may change the batch in place or return a replacement.
        Returns ``None`` when the batch does not exist.
        """

        if not _BATCH_ID.match(batch_id):
            return None
        with file_lock(self._lock_path(batch_id)):
            batch = self.get(batch_id)
            if batch is None:
                return None
            result = mutator(batch)
            updated = result if result is not None else batch
            self.save(updated)
            return updated

    def delete(self, batch_id: str) -> bool:
        if not _BATCH_ID.match(batch_id):
            return False
        path = self._path(batch_id)
        if not path.exists():
            return False
        path.unlink()
        self._lock_path(batch_id).unlink(missing_ok=True)
        self._async_locks.pop(batch_id, None)
        return True

    def check_completion(self, batch_id: str) -> BatchCompletion:
        """Summarise ``batch_id``; an active batch whose workers are all terminal becomes ``complete``."""

        batch = self.get(batch_id)
        if batch is None:
            return BatchCompletion(complete=False, summary=BatchSummary())

        summary = summarize(batch)
        finished = all(worker.status.is_terminal for worker in batch.workers.values())
        if finished and batch.status is BatchStatus.ACTIVE:

            def mark_complete(current: Batch) -> None:
                if current.status is BatchStatus.ACTIVE:
                    current.status = BatchStatus.COMPLETE

            self.update(batch_id, mark_complete)
            logger.info("Batch complete", extra={"batch_id": batch_id, **summary.to_dict()})
        return BatchCompletion(complete=finished, summary=summary)


__all__ = ["BatchCompletion", "BatchStore", "BatchSummary", "summarize"]
