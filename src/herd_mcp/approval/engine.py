"""Auto-approve engine: evaluates permission prompts and records every decision."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable

from pydantic import ValidationError

from ..orchestrator.event_monitor import EventMonitor, MonitorEvent, MonitorEventType
from ..tmux.driver import TmuxDriverProtocol
from ..tmux.utils import is_valid_pane_id
from .models import AuditLogEntry, AutoApproveConfig, Decision, DecisionAction, PermissionRequest
from .policy import evaluate_request
from .queue import PermissionRequestQueue

logger = logging.getLogger(__name__)

SendKeystroke = Callable[[str], Awaitable[None]]


class AuditLog:
    """Append-only JSONL record of auto-approve decisions."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def append(self, entry: AuditLogEntry) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as handle:
            handle.write(entry.model_dump_json() + "\n")

    def read(self) -> list[AuditLogEntry]:
        """Return every well-formed entry; malformed lines are skipped."""

        if not self._path.exists():
            return []
        entries: list[AuditLogEntry] = []
        for line in self._path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                entries.append(AuditLogEntry.model_validate(json.loads(line)))
            except (json.JSONDecodeError, ValidationError):
                logger.debug("Skipping malformed audit line", extra={"path": str(self._path)})
        return entries


@dataclass(slots=True)
class EngineStats:
    approved: int = 0
    denied: int = 0
    escalated: int = 0
    total: int = 0

    def record(self, action: DecisionAction) -> None:
        self.total += 1
        if action is DecisionAction.APPROVE:
            self.approved += 1
        elif action is DecisionAction.DENY:
            self.denied += 1
        else:
            self.escalated += 1

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def send_approval_via_tmux(driver: TmuxDriverProtocol) -> SendKeystroke:
    """Return a callable that confirms the highlighted menu option in a pane."""

    async def send(pane_id: str) -> None:
        await driver.send_key(pane_id, "Enter")

    return send


def send_denial_via_tmux(driver: TmuxDriverProtocol) -> SendKeystroke:
    """Return a callable that dismisses a permission prompt in a pane."""

    async def send(pane_id: str) -> None:
        await driver.send_key(pane_id, "Escape")

    return send


def request_from_event(
    event: MonitorEvent,
    *,
    task_id: str | None = None,
    session_id: str = "",
    cwd: str = "",
) -> PermissionRequest | None:
    """Build a :class:`PermissionRequest` from a monitor ``permission`` event."""

    state = event.state
    if state is None or state.permission is None:
        return None
    details = state.permission
    tool_input: dict[str, str] = {}
    if details.command:
        tool_input["command"] = details.command
    if details.file:
        tool_input["file_path"] = details.file
    return PermissionRequest(
        tool_name=details.tool_name,
        tool_input=tool_input or None,
        pane_id=event.pane_id,
        task_id=task_id,
        session_id=session_id,
        cwd=cwd,
        timestamp=event.timestamp,
    )


class AutoApproveEngine:
    """Apply an :class:`AutoApproveConfig` to permission prompts seen by monitors."""

    def __init__(
        self,
        config: AutoApproveConfig,
        audit_log: AuditLog,
        send_approval: SendKeystroke,
        *,
        debounce_ms: int = 2000,
        queue: PermissionRequestQueue | None = None,
        clock: Callable[[], datetime] | None = None,
        task_lookup: Callable[[str], str | None] | None = None,
    ) -> None:
        self._config = config
        self._audit_log = audit_log
        self._send_approval = send_approval
        self._debounce_ms = debounce_ms
        self._queue = queue if queue is not None else PermissionRequestQueue()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._task_lookup = task_lookup
        self._stats = EngineStats()
        self._running = False
        self._monitors: list[EventMonitor] = []
        self._last_approval: dict[str, datetime] = {}

    @property
    def config(self) -> AutoApproveConfig:
        return self._config

    @property
    def queue(self) -> PermissionRequestQueue:
        return self._queue

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> EngineStats:
        return EngineStats(**asdict(self._stats))

    def start(self) -> None:
        if self._running:
            return
        self._stats = EngineStats()
        self._last_approval.clear()
        self._running = True
        logger.info("Auto-approve engine started")

    def stop(self) -> EngineStats:
        """Detach from every monitor and return the counters. Safe when never started."""

        for monitor in list(self._monitors):
            self.detach(monitor)
        if self._running:
            self._running = False
            logger.info("Auto-approve engine stopped", extra=self._stats.to_dict())
        return self.stats

    def attach(self, monitor: EventMonitor) -> None:
        if monitor in self._monitors:
            return
        monitor.on(MonitorEventType.PERMISSION, self._on_permission)
        self._monitors.append(monitor)

    def detach(self, monitor: EventMonitor) -> None:
        if monitor not in self._monitors:
            return
        monitor.off(MonitorEventType.PERMISSION, self._on_permission)
        self._monitors.remove(monitor)

    async def _on_permission(self, event: MonitorEvent) -> None:
        if not self._running:
            return
        last = self._last_approval.get(event.pane_id)
        if last is not None:
            elapsed_ms = (self._clock() - last).total_seconds() * 1000
            if elapsed_ms < self._debounce_ms:
                logger.debug(
                    "Ignoring permission event inside debounce window",
                    extra={"pane_id": event.pane_id, "elapsed_ms": int(elapsed_ms)},
                )
                return

        task_id = self._task_lookup(event.pane_id) if self._task_lookup else None
        request = request_from_event(event, task_id=task_id)
        if request is None:
            logger.debug("Permission event without details", extra={"pane_id": event.pane_id})
            return
        await self.process_request(request)

    def _audit(self, request: PermissionRequest, decision: Decision) -> None:
        self._audit_log.append(
            AuditLogEntry(
                timestamp=self._clock(),
                pane_id=request.pane_id,
                tool_name=request.tool_name,
                action=decision.action,
                reason=decision.reason,
                task_id=request.task_id,
                request_id=request.id,
            )
        )

    async def process_request(self, request: PermissionRequest) -> Decision:
        if not self._running:
            return Decision(
                DecisionAction.ESCALATE,
                "Auto-approve engine is not running; request requires human review",
            )

        if request.pane_id is not None and not is_valid_pane_id(request.pane_id):
            decision = Decision(
                DecisionAction.ESCALATE,
                f'Invalid pane id "{request.pane_id}"; escalating to human review',
            )
            try:
                self._audit(request, decision)
            except OSError as exc:
                logger.warning("Audit write failed", extra={"request_id": request.id, "error": str(exc)})
            self._stats.record(decision.action)
            return decision

        decision = evaluate_request(request, self._config)
        try:
            self._audit(request, decision)
        except OSError as exc:
            logger.error(
                "Audit write failed; escalating",
                extra={"request_id": request.id, "error": str(exc)},
            )
            decision = Decision(
                DecisionAction.ESCALATE,
                f"Audit log write failed ({exc}); escalating to human review to preserve audit trail",
            )
            self._stats.record(decision.action)
            self._queue.add(request)
            return decision

        self._stats.record(decision.action)
        logger.info(
            "Permission request decided",
            extra={
                "request_id": request.id,
                "pane_id": request.pane_id,
                "tool_name": request.tool_name,
                "action": decision.action.value,
            },
        )

        if decision.action is DecisionAction.APPROVE and request.pane_id:
            await self._deliver(request, request.pane_id)
        elif decision.action is DecisionAction.ESCALATE:
            self._queue.add(request)
        return decision

    async def _deliver(self, request: PermissionRequest, pane_id: str) -> None:
        try:
            await self._send_approval(pane_id)
        except Exception as exc:
            logger.warning(
                "Approval delivery failed",
                extra={"request_id": request.id, "pane_id": pane_id, "error": str(exc)},
            )
            failure = Decision(
                DecisionAction.ESCALATE,
                f"Approval delivery failed ({exc}); keystroke did not reach pane",
            )
            try:
                self._audit(request, failure)
            except OSError:
                logger.warning("Audit write failed", extra={"request_id": request.id})
            self._queue.add(request)
            return
        self._last_approval[pane_id] = self._clock()


__all__ = [
    "AuditLog",
    "AutoApproveEngine",
    "EngineStats",
    "SendKeystroke",
    "request_from_event",
    "send_approval_via_tmux",
    "send_denial_via_tmux",
]
