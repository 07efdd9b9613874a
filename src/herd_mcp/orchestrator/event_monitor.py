"""Polling monitor that turns pane snapshots into a typed event stream."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from ..tmux.driver import TmuxDriverProtocol, TmuxError
from ..tmux.utils import normalize_pane_id
from .state_detector import AgentState, AgentStateType, classify, detect_completion

logger = logging.getLogger(__name__)


class MonitorEventType(str, Enum):
    OUTPUT = "output"
    STATE_CHANGE = "state_change"
    SILENCE = "silence"
    ACTIVITY = "activity"
    PERMISSION = "permission"
    QUESTION = "question"
    ERROR = "error"
    COMPLETE = "complete"
    POLL_ERROR = "poll_error"


class MonitorStartError(RuntimeError):
    """Raised when the monitor cannot locate the pane it should watch."""


@dataclass(slots=True)
class MonitorEvent:
    """One event emitted by :class:`EventMonitor`."""

    type: MonitorEventType
    timestamp: datetime
    pane_id: str
    state: AgentState | None = None
    output: str | None = None
    silence_ms: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "pane_id": self.pane_id,
        }
        if self.state is not None:
            payload["state"] = self.state.to_dict()
        if self.output is not None:
            payload["output"] = self.output
        if self.silence_ms is not None:
            payload["silence_ms"] = self.silence_ms
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class WaitResult:
    state: AgentState
    reason: str


EventHandler = Callable[[MonitorEvent], "Awaitable[None] | None"]

_TYPED_EVENTS = {
    AgentStateType.PERMISSION: MonitorEventType.PERMISSION,
    AgentStateType.QUESTION: MonitorEventType.QUESTION,
    AgentStateType.ERROR: MonitorEventType.ERROR,
}


def _new_content(previous: str, current: str) -> str | None:
    if previous == current:
        return None
    if not previous:
        return current
    old_lines = previous.split("\n")
    new_lines = current.split("\n")
    last_old = old_lines[-1]
    # Anchor on the last line of the previous snapshot when it is still visible.
    for index in range(len(new_lines) - 2, -1, -1):
        if new_lines[index] == last_old:
            return "\n".join(new_lines[index + 1 :])
    seen = set(old_lines)
    fresh = [line for line in new_lines if line not in seen]
    return "\n".join(fresh) if fresh else None


def _current_task() -> asyncio.Task[Any] | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class EventMonitor:
    """Poll one tmux pane and emit :class:`MonitorEvent` objects to listeners."""

    def __init__(
        self,
        driver: TmuxDriverProtocol,
        *,
        session: str | None = None,
        pane_id: str | None = None,
        poll_interval_ms: int = 500,
        capture_lines: int = 30,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if session is None and pane_id is None:
            raise ValueError("EventMonitor requires a session or a pane_id")
        self._driver = driver
        self._session = session
        self._explicit_pane_id = pane_id
        self._poll_interval = poll_interval_ms / 1000
        self._capture_lines = capture_lines
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._handlers: dict[str, list[EventHandler]] = {}
        self._pane_id: str | None = None
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self._last_output = ""
        self._last_change: datetime | None = None
        self._last_state: AgentState | None = None

    @property
    def pane_id(self) -> str | None:
        return self._pane_id

    @property
    def session(self) -> str | None:
        return self._session

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def current_state(self) -> AgentState | None:
        return self._last_state

    @property
    def silence_ms(self) -> int:
        if self._last_change is None:
            return 0
        return int((self._clock() - self._last_change).total_seconds() * 1000)

    def on(self, event_type: MonitorEventType | str, handler: EventHandler) -> None:
        key = event_type.value if isinstance(event_type, MonitorEventType) else event_type
        self._handlers.setdefault(key, []).append(handler)

    def off(self, event_type: MonitorEventType | str, handler: EventHandler) -> None:
        key = event_type.value if isinstance(event_type, MonitorEventType) else event_type
        handlers = self._handlers.get(key, [])
        if handler in handlers:
            handlers.remove(handler)

    async def start(self) -> None:
        if self._running:
            return
        self._pane_id = await self._resolve_pane()
        self._running = True
        self._last_change = self._clock()
        logger.info("Monitoring pane", extra={"pane_id": self._pane_id, "session": self._session})

        await self.poll_once()
        if self._running:
            self._task = asyncio.create_task(self._run(), name=f"herd-monitor-{self._pane_id}")

    def stop(self) -> None:
        """Stop polling. Safe to call repeatedly or before :meth:`start`."""

        was_running = self._running
        self._running = False
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()
        if was_running:
            logger.info("Stopped monitoring pane", extra={"pane_id": self._pane_id})

    async def poll_once(self) -> None:
        if not self._running or self._pane_id is None:
            return
        pane_id = self._pane_id
        try:
            output = await self._driver.capture_pane_content(pane_id, self._capture_lines)
        except (TmuxError, OSError) as exc:
            logger.warning("Pane capture failed", extra={"pane_id": pane_id, "error": str(exc)})
            await self._emit(
                MonitorEvent(
                    type=MonitorEventType.POLL_ERROR,
                    timestamp=self._clock(),
                    pane_id=pane_id,
                    error=str(exc),
                )
            )
            self.stop()
            return

        now = self._clock()
        if output == self._last_output and self._last_state is not None:
            elapsed = now - (self._last_change or now)
            await self._emit(
                MonitorEvent(
                    type=MonitorEventType.SILENCE,
                    timestamp=now,
                    pane_id=pane_id,
                    silence_ms=int(elapsed.total_seconds() * 1000),
                )
            )
            return

        fresh = _new_content(self._last_output, output)
        if output != self._last_output:
            self._last_change = now
            if fresh:
                await self._emit(
                    MonitorEvent(type=MonitorEventType.OUTPUT, timestamp=now, pane_id=pane_id, output=fresh)
                )
            await self._emit(MonitorEvent(type=MonitorEventType.ACTIVITY, timestamp=now, pane_id=pane_id))

        state = classify(output)
        previous = self._last_state
        self._last_state = state
        self._last_output = output

        if previous is not None and previous.type is state.type:
            # A fresh prompt replacing an answered one keeps the type but changes the request.
            if state.type is AgentStateType.PERMISSION and state.permission != previous.permission:
                await self._emit(
                    MonitorEvent(type=MonitorEventType.PERMISSION, timestamp=now, pane_id=pane_id, state=state)
                )
            return

        await self._emit(
            MonitorEvent(type=MonitorEventType.STATE_CHANGE, timestamp=now, pane_id=pane_id, state=state)
        )
        typed = _TYPED_EVENTS.get(state.type)
        if typed is not None:
            await self._emit(MonitorEvent(type=typed, timestamp=now, pane_id=pane_id, state=state))
        completion = detect_completion(state, previous)
        if state.type is AgentStateType.COMPLETE or (completion.complete and completion.confidence > 0.6):
            await self._emit(
                MonitorEvent(type=MonitorEventType.COMPLETE, timestamp=now, pane_id=pane_id, state=state)
            )

    async def _run(self) -> None:
        while self._running:
            await asyncio.sleep(self._poll_interval)
            await self.poll_once()

    async def _resolve_pane(self) -> str:
        if self._explicit_pane_id:
            return normalize_pane_id(self._explicit_pane_id)
        session = await self._driver.find_session_by_name(self._session or "")
        if session is None:
            raise MonitorStartError(f'Session "{self._session}" not found')
        windows = await self._driver.list_windows(session.id)
        if not windows:
            raise MonitorStartError(f'No windows found in session "{self._session}"')
        panes = await self._driver.list_panes(windows[0].id)
        if not panes:
            raise MonitorStartError(f'No panes found in session "{self._session}"')
        return panes[0].id

    async def _emit(self, event: MonitorEvent) -> None:
        for key in (event.type.value, "event"):
            for handler in list(self._handlers.get(key, [])):
                try:
                    result = handler(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception:  # pragma: no cover - listener failures must not stop polling
                    logger.exception(
                        "Monitor listener failed",
                        extra={"pane_id": event.pane_id, "event_type": event.type.value},
                    )


async def wait_for_state(
    monitor: EventMonitor,
    predicate: Callable[[AgentState], bool],
    timeout_ms: int = 60_000,
) -> AgentState:
    """Return the first state satisfying ``predicate``; raise ``asyncio.TimeoutError`` on deadline."""

    current = monitor.current_state
    if current is not None and predicate(current):
        return current

    future: asyncio.Future[AgentState] = asyncio.get_running_loop().create_future()

    def handler(event: MonitorEvent) -> None:
        if event.state is not None and predicate(event.state) and not future.done():
            future.set_result(event.state)

    monitor.on(MonitorEventType.STATE_CHANGE, handler)
    try:
        return await asyncio.wait_for(future, timeout_ms / 1000)
    finally:
        monitor.off(MonitorEventType.STATE_CHANGE, handler)


async def wait_for_silence(monitor: EventMonitor, silence_ms: int, timeout_ms: int = 120_000) -> int:
    """Wait until the pane has been unchanged for ``silence_ms``; return the observed silence."""

    future: asyncio.Future[int] = asyncio.get_running_loop().create_future()

    def handler(event: MonitorEvent) -> None:
        if event.silence_ms is not None and event.silence_ms >= silence_ms and not future.done():
            future.set_result(event.silence_ms)

    monitor.on(MonitorEventType.SILENCE, handler)
    try:
        return await asyncio.wait_for(future, timeout_ms / 1000)
    finally:
        monitor.off(MonitorEventType.SILENCE, handler)


async def wait_for_completion(
    monitor: EventMonitor,
    silence_ms: int = 3000,
    timeout_ms: int = 120_000,
    require_idle: bool = True,
) -> WaitResult:
    """Wait for the agent's turn to end.

    Resolves on a ``complete`` event, an ``idle`` state change (when
    ``require_idle``), an ``error`` state change, or on sustained silence while
    the last state is idle, complete or error. With ``require_idle=False``
    silence alone is enough.
    """

    future: asyncio.Future[WaitResult] = asyncio.get_running_loop().create_future()

    def resolve(state: AgentState, reason: str) -> None:
        if not future.done():
            future.set_result(WaitResult(state=state, reason=reason))

    def on_complete(event: MonitorEvent) -> None:
        if event.state is not None:
            resolve(event.state, "complete event")

    def on_state(event: MonitorEvent) -> None:
        state = event.state
        if state is None or state.type in (AgentStateType.PERMISSION, AgentStateType.QUESTION):
            return
        if require_idle and state.type is AgentStateType.IDLE:
            resolve(state, "idle state")
        elif state.type is AgentStateType.ERROR:
            resolve(state, "error")

    def on_silence(event: MonitorEvent) -> None:
        if event.silence_ms is None or event.silence_ms < silence_ms:
            return
        current = monitor.current_state
        finished = (AgentStateType.IDLE, AgentStateType.COMPLETE, AgentStateType.ERROR)
        if current is not None and current.type in finished:
            resolve(current, f"silence ({event.silence_ms}ms)")
        elif not require_idle:
            fallback = current or AgentState(type=AgentStateType.UNKNOWN, confidence=0.0)
            resolve(fallback, f"silence ({event.silence_ms}ms) - non-idle")

    subscriptions = (
        (MonitorEventType.COMPLETE, on_complete),
        (MonitorEventType.STATE_CHANGE, on_state),
        (MonitorEventType.SILENCE, on_silence),
    )
    for event_type, handler in subscriptions:
        monitor.on(event_type, handler)
    try:
        return await asyncio.wait_for(future, timeout_ms / 1000)
    finally:
        for event_type, handler in subscriptions:
            monitor.off(event_type, handler)


__all__ = [
    "EventHandler",
    "EventMonitor",
    "MonitorEvent",
    "MonitorEventType",
    "MonitorStartError",
    "WaitResult",
    "wait_for_completion",
    "wait_for_silence",
    "wait_for_state",
]
