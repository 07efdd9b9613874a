"""Admission control for batches: spawn queued items under a concurrency ceiling."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

from .storage.batches import BatchStore
from .storage.models import Batch, BatchStatus, BatchWorkerStatus

logger = logging.getLogger(__name__)

SpawnFn = Callable[[str], Awaitable[str | None]]

_INDICATORS = {
    BatchWorkerStatus.QUEUED: "○ Queued",
    BatchWorkerStatus.SPAWNING: "● Running",
    BatchWorkerStatus.RUNNING: "● Running",
    BatchWorkerStatus.WAITING: "⏳ Waiting",
    BatchWorkerStatus.COMPLETE: "✓ Complete",
    BatchWorkerStatus.FAILED: "✖ Failed",
    BatchWorkerStatus.CANCELLED: "─ Cancelled",
}

# Order in which non-zero counts appear after "N/M complete".
_PROGRESS_ORDER = (
    BatchWorkerStatus.RUNNING,
    BatchWorkerStatus.SPAWNING,
    BatchWorkerStatus.WAITING,
    BatchWorkerStatus.QUEUED,
    BatchWorkerStatus.FAILED,
    BatchWorkerStatus.CANCELLED,
)


@dataclass(slots=True)
class ProcessQueueResult:
    spawned: int = 0
    failed: int = 0


def get_items_to_spawn(batch: Batch) -> list[str]:
    """Return queued items, in submission order, that fit under ``max_concurrent``."""

    queued = [
        item_id
        for item_id in batch.items
        if item_id in batch.workers and batch.workers[item_id].status is BatchWorkerStatus.QUEUED
    ]
    limit = batch.options.max_concurrent
    if limit is None:
        return queued
    active = batch.count(BatchWorkerStatus.SPAWNING, BatchWorkerStatus.RUNNING)
    return queued[: max(0, limit - active)]


def _set_status(
    store: BatchStore,
    batch_id: str,
    item_id: str,
    status: BatchWorkerStatus,
    *,
    pane_id: str | None = None,
    only_from: Iterable[BatchWorkerStatus] | None = None,
) -> Batch | None:
    allowed = frozenset(only_from) if only_from is not None else None

    def change(batch: Batch) -> None:
        worker = batch.workers.get(item_id)
        if worker is None:
            return
        if allowed is not None and worker.status not in allowed:
            return
        if allowed is None and worker.status.is_terminal:
            return
        worker.status = status
        now = store.clock()
        if status is BatchWorkerStatus.SPAWNING:
            worker.started_at = now
        if status.is_terminal:
            worker.completed_at = now
        if pane_id is not None:
            worker.pane_id = pane_id

    return store.update(batch_id, change)


async def process_queue(store: BatchStore, batch_id: str, spawn_fn: SpawnFn) -> ProcessQueueResult:
    """Spawn every item :func:`get_items_to_spawn` admits for ``batch_id``.

    Each item moves ``queued -> spawning`` before ``spawn_fn`` is awaited and
    ``spawning -> running`` after it returns; the batch is re-read under its
    file lock around every step. A raising ``spawn_fn`` marks only that item
    ``failed``. Calls for the same batch are serialised in-process.
    """

    result = ProcessQueueResult()
    async with store.async_lock(batch_id):
        batch = store.get(batch_id)
        if batch is None or batch.status is not BatchStatus.ACTIVE:
            return result

        for item_id in get_items_to_spawn(batch):
            claimed = _set_status(
                store,
                batch_id,
                item_id,
                BatchWorkerStatus.SPAWNING,
                only_from=(BatchWorkerStatus.QUEUED,),
            )
            if claimed is None:
                break
            if claimed.workers[item_id].status is not BatchWorkerStatus.SPAWNING:
                continue

            try:
                pane_id = await spawn_fn(item_id)
            except Exception as exc:  # spawners may raise anything
                logger.warning(
                    "Batch item failed to spawn",
                    extra={"batch_id": batch_id, "item_id": item_id, "error": str(exc)},
                )
                if _set_status(store, batch_id, item_id, BatchWorkerStatus.FAILED) is None:
                    break
                result.failed += 1
                continue

            updated = _set_status(
                store,
                batch_id,
                item_id,
                BatchWorkerStatus.RUNNING,
                pane_id=pane_id or None,
                only_from=(BatchWorkerStatus.SPAWNING,),
            )
            if updated is None:
                break
            result.spawned += 1
            logger.info("Spawned batch item", extra={"batch_id": batch_id, "item_id": item_id, "pane_id": pane_id})
    return result


def cancel_batch(store: BatchStore, batch_id: str) -> Batch | None:
    """Cancel every non-terminal worker and the batch itself. Returns ``None`` if unknown."""

    def change(batch: Batch) -> None:
        now = store.clock()
        for worker in batch.workers.values():
            if not worker.status.is_terminal:
                worker.status = BatchWorkerStatus.CANCELLED
                worker.completed_at = now
        batch.status = BatchStatus.CANCELLED

    batch = store.update(batch_id, change)
    if batch is not None:
        logger.info("Cancelled batch", extra={"batch_id": batch_id})
    return batch


def mark_worker(
    store: BatchStore,
    batch_id: str,
    item_id: str,
    status: BatchWorkerStatus | str,
    pane_id: str | None = None,
) -> Batch | None:
    """Record an externally observed status for ``item_id``; terminal items are left as they are."""

    return _set_status(store, batch_id, item_id, BatchWorkerStatus(status), pane_id=pane_id)


def summarize_progress(batch: Batch) -> str:
    total = len(batch.workers)
    parts = [f"{batch.count(BatchWorkerStatus.COMPLETE)}/{total} complete"]
    for status in _PROGRESS_ORDER:
        count = batch.count(status)
        if count:
            parts.append(f"{count} {status.value}")
    return ", ".join(parts)


def render_batch_status(batch: Batch) -> str:
    lines = [f"Batch {batch.id}: {len(batch.workers)} workers"]
    for item_id in batch.items:
        worker = batch.workers.get(item_id)
        if worker is None:
            continue
        lines.append(f"  {_INDICATORS[worker.status]}  {worker.pane_id or '-'}  {item_id}")
    lines.append("")
    lines.append(f"Progress: {summarize_progress(batch)}")
    return "\n".join(lines)


def render_batch_list(batches: list[Batch]) -> str:
    lines = ["BATCHES", "─" * 64]
    if not batches:
        lines.append("No batches found")
    for batch in batches:
        workers = f"{len(batch.workers)} workers"
        lines.append(f"  {batch.id:<12}{batch.status.value:<10}  {workers:<12}{summarize_progress(batch)}")
    return "\n".join(lines)


__all__ = [
    "ProcessQueueResult",
    "SpawnFn",
    "cancel_batch",
    "get_items_to_spawn",
    "mark_worker",
    "process_queue",
    "render_batch_list",
    "render_batch_status",
    "summarize_progress",
]
