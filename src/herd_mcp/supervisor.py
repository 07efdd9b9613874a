"""Wire pane monitors to the worker registry, event log and auto-approve engine."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Callable

from .approval.engine import AutoApproveEngine, EngineStats
from .orchestrator.event_monitor import EventMonitor, MonitorEvent, MonitorEventType, MonitorStartError
from .orchestrator.state_detector import AgentStateType
from .storage.events import EventLog
from .storage.models import WorkerState
from .storage.workers import TERMINAL_STATES, InvalidTransitionError, WorkerRegistry
from .tmux.driver import TmuxDriverProtocol, TmuxError
from .tmux.utils import normalize_pane_id

logger = logging.getLogger(__name__)

STATE_MAP: dict[AgentStateType, WorkerState] = {
    AgentStateType.WORKING: WorkerState.WORKING,
    AgentStateType.TOOL_USE: WorkerState.WORKING,
    AgentStateType.IDLE: WorkerState.IDLE,
    AgentStateType.PERMISSION: WorkerState.PERMISSION,
    AgentStateType.QUESTION: WorkerState.QUESTION,
    AgentStateType.ERROR: WorkerState.ERROR,
    AgentStateType.COMPLETE: WorkerState.DONE,
}

# Below this, a terminal reading is held until the pane goes quiet on it.
TERMINAL_CONFIDENCE = 0.9


class Supervisor:
    """Own one :class:`EventMonitor` per worker for the lifetime of the process.

    Classified states are written back to the registry. A low-confidence
    ``complete`` or ``error`` reading only lands once the pane stays quiet on
    it for a poll, so a stray checkmark cannot finish a running worker. A pane
    that can no longer be captured unregisters its worker and drops the
    pane's event log.
    """

    def __init__(
        self,
        driver: TmuxDriverProtocol,
        registry: WorkerRegistry,
        *,
        engine: AutoApproveEngine | None = None,
        event_log: EventLog | None = None,
        poll_interval_ms: int = 500,
        capture_lines: int = 30,
    ) -> None:
        self._driver = driver
        self._registry = registry
        self._engine = engine
        self._event_log = event_log
        self._poll_interval_ms = poll_interval_ms
        self._capture_lines = capture_lines
        self._monitors: dict[str, EventMonitor] = {}
        self._pending_terminal: dict[str, WorkerState] = {}
        self._stopped = False

    @property
    def engine(self) -> AutoApproveEngine | None:
        return self._engine

    @property
    def monitors(self) -> dict[str, EventMonitor]:
        return dict(self._monitors)

    def task_for_pane(self, pane_id: str) -> str | None:
        worker = self._registry.find_by_pane(pane_id)
        return worker.task_id if worker else None

    async def watch(self, worker_id: str, pane_id: str, session: str | None = None) -> EventMonitor | None:
        """Start monitoring ``pane_id`` on behalf of ``worker_id``.

        Returns ``None`` when the pane cannot be found, or when it vanished
        during the first poll (the worker is unregistered in that case).
        """

        existing = self._monitors.get(worker_id)
        if existing is not None and existing.is_running:
            return existing

        monitor = EventMonitor(
            self._driver,
            session=session,
            pane_id=normalize_pane_id(pane_id),
            poll_interval_ms=self._poll_interval_ms,
            capture_lines=self._capture_lines,
        )

        async def on_state_change(event: MonitorEvent) -> None:
            self._sync_state(worker_id, event)

        async def on_silence(event: MonitorEvent) -> None:
            self._confirm_terminal(worker_id, monitor)

        async def on_poll_error(event: MonitorEvent) -> None:
            self._on_pane_gone(worker_id, monitor, event)

        monitor.on(MonitorEventType.STATE_CHANGE, on_state_change)
        monitor.on(MonitorEventType.SILENCE, on_silence)
        monitor.on(MonitorEventType.POLL_ERROR, on_poll_error)
        if self._event_log is not None:
            monitor.on("event", self._event_log.listener)
        if self._engine is not None:
            self._engine.attach(monitor)
        self._monitors[worker_id] = monitor

        try:
            await monitor.start()
        except (MonitorStartError, TmuxError) as exc:
            logger.warning("Could not start monitor", extra={"worker_id": worker_id, "pane_id": pane_id, "error": str(exc)})
            self.unwatch(worker_id)
            return None
        return monitor if monitor.is_running else None

    async def watch_all(self) -> int:
        """Resume monitoring every registered worker that has not finished."""

        started = 0
        for worker in self._registry.list():
            if worker.state in TERMINAL_STATES:
                continue
            if await self.watch(worker.id, worker.pane_id, worker.session) is not None:
                started += 1
        return started

    def unwatch(self, worker_id: str) -> bool:
        monitor = self._monitors.pop(worker_id, None)
        self._pending_terminal.pop(worker_id, None)
        if monitor is None:
            return False
        monitor.stop()
        if self._engine is not None:
            self._engine.detach(monitor)
        return True

    def _sync_state(self, worker_id: str, event: MonitorEvent) -> None:
        if event.state is None:
            return
        target = STATE_MAP.get(event.state.type)
        if target is None:
            return
        if target in TERMINAL_STATES and event.state.confidence < TERMINAL_CONFIDENCE:
            logger.debug(
                "Holding terminal state until the pane is quiet",
                extra={"worker_id": worker_id, "state": target.value, "confidence": event.state.confidence},
            )
            self._pending_terminal[worker_id] = target
            return
        self._pending_terminal.pop(worker_id, None)
        self._apply_state(worker_id, target)

    def _confirm_terminal(self, worker_id: str, monitor: EventMonitor) -> None:
        target = self._pending_terminal.get(worker_id)
        current = monitor.current_state
        if target is None or current is None or STATE_MAP.get(current.type) is not target:
            return
        del self._pending_terminal[worker_id]
        self._apply_state(worker_id, target)

    def _apply_state(self, worker_id: str, target: WorkerState) -> None:
        try:
            self._registry.update_state(worker_id, target)
        except InvalidTransitionError as exc:
            logger.debug("Ignoring state change for finished worker", extra={"worker_id": worker_id, "error": str(exc)})
        except OSError as exc:
            logger.warning("Failed to persist worker state", extra={"worker_id": worker_id, "error": str(exc)})

    def _on_pane_gone(self, worker_id: str, monitor: EventMonitor, event: MonitorEvent) -> None:
        logger.info("Pane gone; unregistering worker", extra={"worker_id": worker_id, "pane_id": event.pane_id, "error": event.error})
        try:
            self._registry.unregister(worker_id)
        except OSError as exc:
            logger.warning("Failed to unregister worker", extra={"worker_id": worker_id, "error": str(exc)})
        if self._event_log is not None:
            # Catch-all listeners run after this one and would recreate the file.
            monitor.off("event", self._event_log.listener)
            try:
                self._event_log.remove(event.pane_id)
            except OSError as exc:
                logger.warning("Failed to remove event log", extra={"pane_id": event.pane_id, "error": str(exc)})
        if self._monitors.get(worker_id) is monitor:
            self.unwatch(worker_id)
        else:
            monitor.stop()

    def shutdown(self) -> EngineStats | None:
        """Stop every monitor and the engine. Persisted records are left as last written."""

        for worker_id in list(self._monitors):
            self.unwatch(worker_id)
        stats = self._engine.stop() if self._engine is not None else None
        if not self._stopped:
            self._stopped = True
            logger.info("Supervisor shut down", extra=stats.to_dict() if stats else {})
        return stats


def install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    supervisor: Supervisor,
    on_shutdown: Callable[[], None] | None = None,
) -> None:
    """Run :meth:`Supervisor.shutdown` on SIGINT and SIGTERM."""

    def handle(signum: signal.Signals) -> None:
        logger.info("Received signal; shutting down", extra={"signal": signum.name})
        supervisor.shutdown()
        if on_shutdown is not None:
            on_shutdown()

    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, handle, signum)
        except NotImplementedError:  # pragma: no cover - platforms without loop signal support
            logger.debug("Signal handlers unsupported on this loop", extra={"signal": signum.name})


__all__ = ["STATE_MAP", "TERMINAL_CONFIDENCE", "Supervisor", "install_signal_handlers"]
