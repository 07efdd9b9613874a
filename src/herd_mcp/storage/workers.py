"""Worker registry persisted through a pluggable store."""

from __future__ import annotations

import json
import logging
from contextlib import AbstractContextManager, nullcontext
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Protocol

from pydantic import ValidationError

from ..tmux.utils import normalize_pane_id, normalize_window_id
from .files import atomic_write_text, file_lock
from .models import Worker, WorkerState

logger = logging.getLogger(__name__)

TERMINAL_STATES = frozenset({WorkerState.ERROR, WorkerState.DONE})

TRANSITIONS: dict[WorkerState, frozenset[WorkerState]] = {
    WorkerState.SPAWNING: frozenset({WorkerState.WORKING}),
    WorkerState.WORKING: frozenset(
        {
            WorkerState.IDLE,
            WorkerState.PERMISSION,
            WorkerState.QUESTION,
            WorkerState.ERROR,
            WorkerState.DONE,
        }
    ),
    WorkerState.IDLE: frozenset({WorkerState.WORKING}),
    WorkerState.PERMISSION: frozenset({WorkerState.WORKING}),
    WorkerState.QUESTION: frozenset({WorkerState.WORKING}),
}


class InvalidTransitionError(RuntimeError):
    """Raised when a worker would leave a terminal state without ``force``."""


class WorkerStore(Protocol):
    """Persistence backend for :class:`WorkerRegistry`."""

    def load(self) -> dict[str, Worker]:
        ...

    def save(self, workers: dict[str, Worker]) -> None:
        ...

    def lock(self) -> AbstractContextManager[Any]:
        ...


class InMemoryWorkerStore:
    """Volatile store, used when no state directory is available and in tests."""

    def __init__(self, workers: dict[str, Worker] | None = None) -> None:
        self._workers = {key: value.model_copy(deep=True) for key, value in (workers or {}).items()}

    def load(self) -> dict[str, Worker]:
        return {key: value.model_copy(deep=True) for key, value in self._workers.items()}

    def save(self, workers: dict[str, Worker]) -> None:
        self._workers = {key: value.model_copy(deep=True) for key, value in workers.items()}

    def lock(self) -> AbstractContextManager[Any]:
        return nullcontext()


class JsonWorkerStore:
    """Persist workers to ``workers.json`` with atomic, lock-guarded writes."""

    def __init__(self, path: Path, *, clock: Callable[[], datetime] | None = None) -> None:
        self._path = Path(path)
        self._lock_path = self._path.with_name(self._path.name + ".lock")
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def path(self) -> Path:
        return self._path

    def lock(self) -> AbstractContextManager[Any]:
        return file_lock(self._lock_path)

    def load(self) -> dict[str, Worker]:
        if not self._path.exists():
            return {}
        try:
            document = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Worker registry unreadable; starting empty", extra={"path": str(self._path), "error": str(exc)})
            return {}

        workers: dict[str, Worker] = {}
        for worker_id, payload in (document.get("workers") or {}).items():
            try:
                workers[worker_id] = Worker.model_validate(payload)
            except ValidationError as exc:
                logger.warning("Skipping invalid worker record", extra={"worker_id": worker_id, "error": str(exc)})
        return workers

    def save(self, workers: dict[str, Worker]) -> None:
        document = {
            "workers": {worker_id: worker.model_dump(mode="json") for worker_id, worker in workers.items()},
            "last_updated": self._clock().isoformat(),
        }
        atomic_write_text(self._path, json.dumps(document, indent=2) + "\n")


class WorkerRegistry:
    """CRUD and lifecycle state machine over persisted :class:`Worker` records.

    Unknown worker ids are neutral: lookups return ``None`` and mutations are
    no-ops. Only leaving a terminal state (``error`` or ``done``) without
    ``force`` raises.
    """

    def __init__(self, store: WorkerStore, *, clock: Callable[[], datetime] | None = None) -> None:
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def store(self) -> WorkerStore:
        return self._store

    def _mutate(self, worker_id: str, change: Callable[[Worker], Worker | None]) -> Worker | None:
        with self._store.lock():
            workers = self._store.load()
            worker = workers.get(worker_id)
            if worker is None:
                return None
            updated = change(worker)
            if updated is None:
                return worker
            workers[worker_id] = updated
            self._store.save(workers)
            return updated

    def register(self, worker: Worker) -> Worker:
        with self._store.lock():
            workers = self._store.load()
            workers[worker.id] = worker
            self._store.save(workers)
        logger.info(
            "Registered worker",
            extra={"worker_id": worker.id, "pane_id": worker.pane_id, "task_id": worker.task_id},
        )
        return worker

    def unregister(self, worker_id: str) -> bool:
        with self._store.lock():
            workers = self._store.load()
            if workers.pop(worker_id, None) is None:
                return False
            self._store.save(workers)
        logger.info("Unregistered worker", extra={"worker_id": worker_id})
        return True

    def update(self, worker_id: str, **fields: Any) -> Worker | None:
        def change(worker: Worker) -> Worker:
            payload = worker.model_dump()
            payload.update(fields)
            if "state" in fields and "last_state_change" not in fields:
                payload["last_state_change"] = self._clock()
            return Worker.model_validate(payload)

        return self._mutate(worker_id, change)

    def update_state(self, worker_id: str, state: WorkerState | str, *, force: bool = False) -> Worker | None:
        target = WorkerState(state)

        def change(worker: Worker) -> Worker | None:
            current = worker.state
            if current is target:
                return None
            if current in TERMINAL_STATES and not force:
                raise InvalidTransitionError(
                    f"Worker {worker_id} is {current.value}; pass force=True to move it to {target.value}"
                )
            if target not in TRANSITIONS.get(current, frozenset()):
                logger.debug(
                    "Worker transition outside the canonical table",
                    extra={"worker_id": worker_id, "from": current.value, "to": target.value},
                )
            return worker.model_copy(update={"state": target, "last_state_change": self._clock()})

        return self._mutate(worker_id, change)

    def get(self, worker_id: str) -> Worker | None:
        return self._store.load().get(worker_id)

    def list(self) -> list[Worker]:
        return list(self._store.load().values())

    def __iter__(self) -> Iterator[Worker]:
        return iter(self.list())

    def find_by_pane(self, pane_id: str) -> Worker | None:
        target = normalize_pane_id(pane_id)
        return next((worker for worker in self.list() if worker.pane_id == target), None)

    def find_by_window(self, window_id: str) -> Worker | None:
        target = normalize_window_id(window_id)
        return next((worker for worker in self.list() if worker.window_id == target), None)

    def find_by_task(self, task_id: str) -> Worker | None:
        return next((worker for worker in self.list() if worker.task_id == task_id), None)

    def find_all_by_task(self, task_id: str) -> list[Worker]:
        return [worker for worker in self.list() if worker.task_id == task_id]

    def find_by_session_id(self, resume_handle: str) -> Worker | None:
        return next((worker for worker in self.list() if worker.resume_handle == resume_handle), None)

    def get_by_state(self, state: WorkerState | str) -> list[Worker]:
        target = WorkerState(state)
        return [worker for worker in self.list() if worker.state is target]

    def count_by_task(self, task_id: str) -> int:
        return len(self.find_all_by_task(task_id))

    def generate_worker_id(self, task_id: str, custom_name: str | None = None, role: str | None = None) -> str:
        """Return an unused worker id for ``task_id``.

        The first worker gets the task id itself (or ``custom_name``). Later
        ones get ``<task>-<role>`` when a role is given, otherwise a numeric
        suffix starting at the number of existing workers plus one.
        """

        workers = self._store.load()
        existing = sum(1 for worker in workers.values() if worker.task_id == task_id)

        if custom_name and custom_name not in workers:
            return custom_name
        base = custom_name or task_id
        if base not in workers and existing == 0:
            return base
        if role:
            candidate = f"{base}-{role}"
            if candidate not in workers:
                return candidate
            base = candidate

        suffix = max(existing, 1) + 1
        while f"{base}-{suffix}" in workers:
            suffix += 1
        return f"{base}-{suffix}"

    def add_sub_pane(self, worker_id: str, pane_id: str) -> Worker | None:
        pane = normalize_pane_id(pane_id)

        def change(worker: Worker) -> Worker | None:
            if pane in worker.sub_panes:
                return None
            return worker.model_copy(update={"sub_panes": [*worker.sub_panes, pane]})

        return self._mutate(worker_id, change)

    def remove_sub_pane(self, worker_id: str, pane_id: str) -> Worker | None:
        pane = normalize_pane_id(pane_id)

        def change(worker: Worker) -> Worker | None:
            if pane not in worker.sub_panes:
                return None
            return worker.model_copy(update={"sub_panes": [item for item in worker.sub_panes if item != pane]})

        return self._mutate(worker_id, change)

    def get_pane(self, worker_id: str, index: int) -> str | None:
        """Return pane ``index`` of a worker: 0 is the primary, N is ``sub_panes[N-1]``."""

        worker = self.get(worker_id)
        if worker is None or index < 0:
            return None
        if index == 0:
            return worker.pane_id
        if index > len(worker.sub_panes):
            return None
        return worker.sub_panes[index - 1]


def get_elapsed_time(worker: Worker, now: datetime | None = None) -> tuple[int, str]:
    """Return milliseconds since ``worker.started_at`` and a short label."""

    current = now or datetime.now(timezone.utc)
    elapsed_ms = max(0, int((current - worker.started_at).total_seconds() * 1000))
    minutes = elapsed_ms // 60_000
    hours = minutes // 60
    if hours > 0:
        label = f"{hours}h {minutes % 60}m"
    elif minutes > 0:
        label = f"{minutes}m"
    else:
        label = "<1m"
    return elapsed_ms, label


__all__ = [
    "InMemoryWorkerStore",
    "InvalidTransitionError",
    "JsonWorkerStore",
    "TERMINAL_STATES",
    "TRANSITIONS",
    "WorkerRegistry",
    "WorkerStore",
    "get_elapsed_time",
]
