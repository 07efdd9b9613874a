"""Data models for persisted worker and batch records."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from ..tmux.utils import normalize_pane_id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkerState(str, Enum):
    SPAWNING = "spawning"
    WORKING = "working"
    IDLE = "idle"
    PERMISSION = "permission"
    QUESTION = "question"
    ERROR = "error"
    DONE = "done"


class Worker(BaseModel):
    """One agent process bound to a task and a tmux pane."""

    id: str = Field(..., description="Unique worker id, usually derived from the task id.")
    pane_id: str = Field(..., description="Primary tmux pane, e.g. %17.")
    session: str = Field(..., description="tmux session hosting the pane.")
    window_id: str | None = Field(default=None, description="tmux window id, e.g. @4.")
    window_name: str | None = None
    sub_panes: list[str] = Field(
        default_factory=list,
        description="Secondary panes split from the primary; index 1 is sub_panes[0].",
    )
    task_id: str | None = None
    task_title: str | None = None
    role: str | None = None
    custom_name: str | None = None
    worktree: str | None = Field(default=None, description="Git worktree path, if any.")
    state: WorkerState = WorkerState.SPAWNING
    started_at: datetime = Field(default_factory=_utcnow)
    last_state_change: datetime = Field(default_factory=_utcnow)
    repo_path: str = Field(..., description="Repository the worker operates in.")
    resume_handle: str | None = Field(default=None, description="Agent session id used to resume.")

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Worker id must not be empty")
        return normalized

    @field_validator("pane_id")
    @classmethod
    def _normalize_pane(cls, value: str) -> str:
        return normalize_pane_id(value)

    @field_validator("sub_panes", mode="before")
    @classmethod
    def _ensure_sub_panes(cls, value):  # type: ignore[override]
        if value is None:
            return []
        return [normalize_pane_id(str(pane)) for pane in value]


class BatchStatus(str, Enum):
    ACTIVE = "active"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


class BatchWorkerStatus(str, Enum):
    QUEUED = "queued"
    SPAWNING = "spawning"
    RUNNING = "running"
    WAITING = "waiting"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_BATCH_STATUSES

    @property
    def is_active(self) -> bool:
        return self in (BatchWorkerStatus.SPAWNING, BatchWorkerStatus.RUNNING)


TERMINAL_BATCH_STATUSES = frozenset(
    {BatchWorkerStatus.COMPLETE, BatchWorkerStatus.FAILED, BatchWorkerStatus.CANCELLED}
)


class BatchWorker(BaseModel):
    status: BatchWorkerStatus = BatchWorkerStatus.QUEUED
    pane_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class BatchOptions(BaseModel):
    max_concurrent: int | None = Field(
        default=None,
        description="Ceiling on workers spawning or running at once; unlimited when unset.",
    )
    auto_approve: bool = True
    skill: str | None = None

    @field_validator("max_concurrent")
    @classmethod
    def _validate_max_concurrent(cls, value: int | None) -> int | None:
        if value is not None and value < 1:
            raise ValueError("max_concurrent must be >= 1")
        return value


class Batch(BaseModel):
    """A set of work items admitted under a concurrency ceiling."""

    id: str = Field(..., description="Batch id, e.g. batch-001.")
    created_at: datetime = Field(default_factory=_utcnow)
    status: BatchStatus = BatchStatus.ACTIVE
    items: list[str] = Field(default_factory=list, description="Work item ids in submission order.")
    workers: dict[str, BatchWorker] = Field(default_factory=dict)
    options: BatchOptions = Field(default_factory=BatchOptions)

    def count(self, *statuses: BatchWorkerStatus) -> int:
        return sum(1 for worker in self.workers.values() if worker.status in statuses)


__all__ = [
    "Batch",
    "BatchOptions",
    "BatchStatus",
    "BatchWorker",
    "BatchWorkerStatus",
    "TERMINAL_BATCH_STATUSES",
    "Worker",
    "WorkerState",
]
