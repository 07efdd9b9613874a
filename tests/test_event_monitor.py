from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from herd_mcp.orchestrator.event_monitor import (
    EventMonitor,
    MonitorEvent,
    MonitorEventType,
    MonitorStartError,
    wait_for_completion,
    wait_for_silence,
    wait_for_state,
)
from herd_mcp.orchestrator.state_detector import AgentStateType
from herd_mcp.tmux import FakeTmuxDriver


WORKING = "⠋ Thinking… (esc to interrupt)"
IDLE = "Thinking about it\n✓ Done\n\n>\n? for shortcuts"


def _prompt(command: str) -> str:
    return "\n".join(["Bash command", f"  {command}", "Do you want to proceed?", "❯ 1. Yes", "  2. No"])


class ManualClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += timedelta(milliseconds=ms)


def _monitor(driver: FakeTmuxDriver, clock: ManualClock, **kwargs) -> EventMonitor:
    kwargs.setdefault("pane_id", "%1")
    # Long interval: tests drive polling through poll_once.
    return EventMonitor(driver, poll_interval_ms=60_000, clock=clock, **kwargs)


def _driver(*snapshots: str) -> FakeTmuxDriver:
    driver = FakeTmuxDriver()
    driver.add_session("genie", {"main": ["%1"]})
    driver.set_output("%1", *snapshots)
    return driver


def test_monitor_emits_lifecycle_events() -> None:
    driver = _driver(WORKING, IDLE)
    clock = ManualClock()
    monitor = _monitor(driver, clock)
    events: list[MonitorEvent] = []
    monitor.on("event", events.append)

    async def scenario() -> None:
        await monitor.start()
        clock.advance(500)
        await monitor.poll_once()
        clock.advance(500)
        await monitor.poll_once()
        monitor.stop()

    asyncio.run(scenario())

    assert [event.type for event in events] == [
        MonitorEventType.OUTPUT,
        MonitorEventType.ACTIVITY,
        MonitorEventType.STATE_CHANGE,
        MonitorEventType.OUTPUT,
        MonitorEventType.ACTIVITY,
        MonitorEventType.STATE_CHANGE,
        MonitorEventType.COMPLETE,
        MonitorEventType.SILENCE,
    ]
    assert events[2].state is not None and events[2].state.type is AgentStateType.WORKING
    assert events[5].state is not None and events[5].state.type is AgentStateType.IDLE
    assert events[-1].silence_ms == 500
    assert monitor.current_state is not None and monitor.current_state.type is AgentStateType.IDLE


def test_permission_prompt_emits_typed_event() -> None:
    driver = _driver(_prompt("npm test"), _prompt("npm run build"))
    monitor = _monitor(driver, ManualClock())
    permissions: list[MonitorEvent] = []
    changes: list[MonitorEvent] = []
    monitor.on(MonitorEventType.PERMISSION, permissions.append)
    monitor.on(MonitorEventType.STATE_CHANGE, changes.append)

    async def scenario() -> None:
        await monitor.start()
        await monitor.poll_once()
        monitor.stop()

    asyncio.run(scenario())

    assert len(changes) == 1
    assert [event.state.permission.command for event in permissions if event.state and event.state.permission] == [
        "npm test",
        "npm run build",
    ]


def test_capture_failure_emits_poll_error_and_stops() -> None:
    driver = _driver(WORKING)
    monitor = _monitor(driver, ManualClock())
    errors: list[MonitorEvent] = []
    monitor.on(MonitorEventType.POLL_ERROR, errors.append)

    async def scenario() -> None:
        await monitor.start()
        driver.remove_pane("%1")
        await monitor.poll_once()

    asyncio.run(scenario())

    assert len(errors) == 1
    assert errors[0].pane_id == "%1"
    assert "can't find pane" in (errors[0].error or "")
    assert monitor.is_running is False


class ExhaustedDriver(FakeTmuxDriver):
    def __init__(self) -> None:
        super().__init__()
        self.captures = 0

    async def capture_pane_content(self, pane_id: str, lines: int = 30) -> str:
        self.captures += 1
        if self.captures > 1:
            raise OSError(24, "Too many open files")
        return await super().capture_pane_content(pane_id, lines)


def test_os_error_in_poll_loop_emits_poll_error_and_stops() -> None:
    driver = ExhaustedDriver()
    driver.add_session("genie", {"main": ["%1"]})
    driver.set_output("%1", WORKING)
    monitor = EventMonitor(driver, pane_id="%1", poll_interval_ms=5, clock=ManualClock())
    errors: list[MonitorEvent] = []
    monitor.on(MonitorEventType.POLL_ERROR, errors.append)

    async def scenario() -> None:
        await monitor.start()
        for _ in range(200):
            if not monitor.is_running:
                break
            await asyncio.sleep(0.01)
        monitor.stop()

    asyncio.run(scenario())

    assert driver.captures == 2
    assert len(errors) == 1
    assert "Too many open files" in (errors[0].error or "")
    assert monitor.is_running is False


def test_stop_is_idempotent_and_safe_before_start() -> None:
    monitor = _monitor(_driver(WORKING), ManualClock())

    monitor.stop()
    monitor.stop()

    assert monitor.is_running is False

    async def scenario() -> None:
        await monitor.start()
        monitor.stop()
        monitor.stop()

    asyncio.run(scenario())
    assert monitor.is_running is False


def test_monitor_resolves_pane_from_session() -> None:
    driver = FakeTmuxDriver()
    driver.add_session("genie", {"main": ["%5", "%6"]})
    monitor = EventMonitor(driver, session="genie", poll_interval_ms=60_000)

    async def scenario() -> None:
        await monitor.start()
        monitor.stop()

    asyncio.run(scenario())

    assert monitor.pane_id == "%5"


def test_missing_session_fails_to_start() -> None:
    monitor = EventMonitor(FakeTmuxDriver(), session="nope")

    with pytest.raises(MonitorStartError):
        asyncio.run(monitor.start())


def test_monitor_requires_a_target() -> None:
    with pytest.raises(ValueError):
        EventMonitor(FakeTmuxDriver())


def test_failing_listener_does_not_stop_polling() -> None:
    driver = _driver(WORKING)
    monitor = _monitor(driver, ManualClock())
    seen: list[MonitorEventType] = []

    def broken(event: MonitorEvent) -> None:
        raise RuntimeError("listener bug")

    monitor.on(MonitorEventType.OUTPUT, broken)
    monitor.on("event", lambda event: seen.append(event.type))

    async def scenario() -> None:
        await monitor.start()
        monitor.stop()

    asyncio.run(scenario())

    assert MonitorEventType.STATE_CHANGE in seen


def test_wait_for_completion_resolves_on_idle() -> None:
    driver = _driver(WORKING, IDLE)
    monitor = _monitor(driver, ManualClock())

    async def scenario():
        await monitor.start()
        waiter = asyncio.create_task(wait_for_completion(monitor, silence_ms=1000, timeout_ms=1000))
        await asyncio.sleep(0)
        await monitor.poll_once()
        result = await waiter
        monitor.stop()
        return result

    result = asyncio.run(scenario())

    assert result.reason == "idle state"
    assert result.state.type is AgentStateType.IDLE


def test_wait_for_silence_reports_duration() -> None:
    driver = _driver("")
    clock = ManualClock()
    monitor = _monitor(driver, clock)

    async def scenario():
        await monitor.start()
        waiter = asyncio.create_task(wait_for_silence(monitor, 1000, timeout_ms=1000))
        await asyncio.sleep(0)
        clock.advance(1500)
        await monitor.poll_once()
        silence = await waiter
        monitor.stop()
        return silence

    assert asyncio.run(scenario()) == 1500


def test_wait_for_state_times_out() -> None:
    driver = _driver(WORKING)
    monitor = _monitor(driver, ManualClock())

    async def scenario() -> None:
        await monitor.start()
        try:
            await wait_for_state(monitor, lambda state: state.type is AgentStateType.IDLE, timeout_ms=10)
        finally:
            monitor.stop()

    with pytest.raises(asyncio.TimeoutError):
        asyncio.run(scenario())


def test_wait_for_state_returns_current_match() -> None:
    driver = _driver(WORKING)
    monitor = _monitor(driver, ManualClock())

    async def scenario():
        await monitor.start()
        state = await wait_for_state(monitor, lambda state: state.type is AgentStateType.WORKING, timeout_ms=10)
        monitor.stop()
        return state

    assert asyncio.run(scenario()).type is AgentStateType.WORKING
