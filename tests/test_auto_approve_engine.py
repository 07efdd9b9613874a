from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

from herd_mcp.approval import (
    AuditLog,
    AutoApproveConfig,
    AutoApproveEngine,
    DecisionAction,
    PermissionRequest,
    PermissionRequestQueue,
    PolicyDefaults,
    send_approval_via_tmux,
)
from herd_mcp.orchestrator.event_monitor import EventMonitor
from herd_mcp.tmux import FakeTmuxDriver


class ManualClock:
    def __init__(self) -> None:
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += timedelta(milliseconds=ms)


class RecordingSender:
    def __init__(self) -> None:
        self.panes: list[str] = []

    async def __call__(self, pane_id: str) -> None:
        self.panes.append(pane_id)


def _prompt(command: str) -> str:
    return "\n".join(["Bash command", f"  {command}", "Do you want to proceed?", "❯ 1. Yes", "  2. No"])


def _config(**defaults) -> AutoApproveConfig:
    defaults.setdefault("allow", ["Read", "Bash"])
    return AutoApproveConfig(defaults=PolicyDefaults(**defaults))


def _engine(tmp_path: Path, sender=None, **kwargs) -> AutoApproveEngine:
    config = kwargs.pop("config", None) or _config(bash_allow_patterns=["^npm "], bash_deny_patterns=["rm -rf"])
    return AutoApproveEngine(
        config,
        AuditLog(tmp_path / "audit.jsonl"),
        sender or RecordingSender(),
        **kwargs,
    )


def _bash(command: str, pane_id: str | None = "%4") -> PermissionRequest:
    return PermissionRequest(tool_name="Bash", tool_input={"command": command}, pane_id=pane_id)


def test_approved_request_is_delivered_and_audited(tmp_path: Path) -> None:
    sender = RecordingSender()
    engine = _engine(tmp_path, sender)
    engine.start()

    decision = asyncio.run(engine.process_request(_bash("npm test")))

    assert decision.action is DecisionAction.APPROVE
    assert sender.panes == ["%4"]
    entries = AuditLog(tmp_path / "audit.jsonl").read()
    assert [entry.action for entry in entries] == [DecisionAction.APPROVE]
    assert entries[0].pane_id == "%4"
    assert engine.stats.approved == 1


def test_denied_request_sends_nothing(tmp_path: Path) -> None:
    sender = RecordingSender()
    engine = _engine(tmp_path, sender)
    engine.start()

    decision = asyncio.run(engine.process_request(_bash("rm -rf build")))

    assert decision.action is DecisionAction.DENY
    assert sender.panes == []
    assert len(engine.queue) == 0
    assert engine.stats.denied == 1


def test_escalated_request_is_queued(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.start()
    request = _bash("make deploy")

    decision = asyncio.run(engine.process_request(request))

    assert decision.action is DecisionAction.ESCALATE
    assert request.id in engine.queue
    assert engine.stats.to_dict() == {"approved": 0, "denied": 0, "escalated": 1, "total": 1}


def test_invalid_pane_id_escalates_without_queueing(tmp_path: Path) -> None:
    sender = RecordingSender()
    engine = _engine(tmp_path, sender)
    engine.start()

    decision = asyncio.run(engine.process_request(_bash("npm test", pane_id="%4; rm -rf /")))

    assert decision.action is DecisionAction.ESCALATE
    assert "Invalid pane id" in decision.reason
    assert sender.panes == []
    assert len(engine.queue) == 0
    assert len(AuditLog(tmp_path / "audit.jsonl").read()) == 1


def test_stopped_engine_escalates_without_side_effects(tmp_path: Path) -> None:
    engine = _engine(tmp_path)

    decision = asyncio.run(engine.process_request(_bash("npm test")))

    assert decision.action is DecisionAction.ESCALATE
    assert AuditLog(tmp_path / "audit.jsonl").read() == []
    assert engine.stop().total == 0


def test_audit_failure_escalates_and_queues(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("", encoding="utf-8")
    sender = RecordingSender()
    engine = AutoApproveEngine(
        _config(bash_allow_patterns=["^npm "]),
        AuditLog(blocker / "audit.jsonl"),
        sender,
    )
    engine.start()
    request = _bash("npm test")

    decision = asyncio.run(engine.process_request(request))

    assert decision.action is DecisionAction.ESCALATE
    assert "Audit log write failed" in decision.reason
    assert sender.panes == []
    assert request.id in engine.queue


class FlakySender(RecordingSender):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures

    async def __call__(self, pane_id: str) -> None:
        if self.failures:
            self.failures -= 1
            raise RuntimeError("send-keys failed")
        await super().__call__(pane_id)


def test_delivery_failure_is_audited_queued_and_not_debounced(tmp_path: Path) -> None:
    driver = FakeTmuxDriver()
    driver.add_session("genie", {"main": ["%1"]})
    driver.set_output("%1", _prompt("npm test"), _prompt("npm run lint"))
    clock = ManualClock()
    monitor = EventMonitor(driver, pane_id="%1", poll_interval_ms=60_000, clock=clock)
    sender = FlakySender(failures=1)
    engine = _engine(tmp_path, sender, clock=clock, debounce_ms=2000)
    engine.start()
    engine.attach(monitor)

    async def scenario() -> None:
        await monitor.start()
        clock.advance(500)
        await monitor.poll_once()
        monitor.stop()

    asyncio.run(scenario())

    entries = AuditLog(tmp_path / "audit.jsonl").read()
    assert [entry.action for entry in entries] == [
        DecisionAction.APPROVE,
        DecisionAction.ESCALATE,
        DecisionAction.APPROVE,
    ]
    assert "send-keys failed" in entries[1].reason
    assert entries[1].request_id == entries[0].request_id
    pending = engine.queue.get_all()
    assert [request.id for request in pending] == [entries[0].request_id]
    # The follow-up prompt inside the window still goes out.
    assert sender.panes == ["%1"]


def test_stats_are_a_snapshot(tmp_path: Path) -> None:
    engine = _engine(tmp_path)
    engine.start()
    snapshot = engine.stats

    asyncio.run(engine.process_request(_bash("npm test")))

    assert snapshot.total == 0
    assert engine.stats.total == 1


def test_monitor_prompts_are_approved_with_debounce(tmp_path: Path) -> None:
    driver = FakeTmuxDriver()
    driver.add_session("genie", {"main": ["%1"]})
    driver.set_output("%1", _prompt("npm test"), _prompt("npm run lint"), _prompt("npm run build"))
    clock = ManualClock()
    monitor = EventMonitor(driver, pane_id="%1", poll_interval_ms=60_000, clock=clock)
    engine = _engine(tmp_path, send_approval_via_tmux(driver), clock=clock, debounce_ms=2000)
    engine.start()
    engine.attach(monitor)

    async def scenario() -> None:
        await monitor.start()
        clock.advance(500)
        await monitor.poll_once()
        clock.advance(3000)
        await monitor.poll_once()
        monitor.stop()

    asyncio.run(scenario())

    # The second prompt lands inside the debounce window and is ignored.
    assert driver.sent_keys == [("%1", "Enter"), ("%1", "Enter")]
    assert len(AuditLog(tmp_path / "audit.jsonl").read()) == 2

    stats = engine.stop()
    assert stats.approved == 2
    assert engine.is_running is False


def test_detached_monitor_is_ignored(tmp_path: Path) -> None:
    driver = FakeTmuxDriver()
    driver.add_session("genie", {"main": ["%1"]})
    driver.set_output("%1", _prompt("npm test"))
    monitor = EventMonitor(driver, pane_id="%1", poll_interval_ms=60_000)
    engine = _engine(tmp_path, send_approval_via_tmux(driver))
    engine.start()
    engine.attach(monitor)
    engine.detach(monitor)

    async def scenario() -> None:
        await monitor.start()
        monitor.stop()

    asyncio.run(scenario())

    assert driver.sent_keys == []


def test_task_lookup_tags_requests(tmp_path: Path) -> None:
    driver = FakeTmuxDriver()
    driver.add_session("genie", {"main": ["%1"]})
    driver.set_output("%1", _prompt("make deploy"))
    monitor = EventMonitor(driver, pane_id="%1", poll_interval_ms=60_000)
    queue = PermissionRequestQueue()
    engine = _engine(tmp_path, queue=queue, task_lookup=lambda pane: "bd-7" if pane == "%1" else None)
    engine.start()
    engine.attach(monitor)

    async def scenario() -> None:
        await monitor.start()
        monitor.stop()

    asyncio.run(scenario())

    pending = queue.get_by_pane("%1")
    assert len(pending) == 1
    assert pending[0].task_id == "bd-7"
    assert pending[0].bash_command == "make deploy"
