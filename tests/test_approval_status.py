from __future__ import annotations

import asyncio
from pathlib import Path

from herd_mcp.approval import (
    AuditLog,
    AuditLogEntry,
    DecisionAction,
    PermissionRequest,
    PermissionRequestQueue,
    get_status_entries,
    manual_approve,
    manual_deny,
)


class RecordingSender:
    def __init__(self) -> None:
        self.panes: list[str] = []

    async def __call__(self, pane_id: str) -> None:
        self.panes.append(pane_id)


def test_status_lists_decisions_then_pending(tmp_path: Path) -> None:
    audit = AuditLog(tmp_path / "audit.jsonl")
    audit.append(
        AuditLogEntry(pane_id="%1", tool_name="Read", action=DecisionAction.APPROVE, reason="ok", request_id="req-a")
    )
    audit.append(
        AuditLogEntry(pane_id="%2", tool_name="Bash", action=DecisionAction.DENY, reason="no", request_id="req-b")
    )
    queue = PermissionRequestQueue()
    queue.add(PermissionRequest(id="req-c", tool_name="Bash", pane_id="%3"))

    entries = get_status_entries(audit, queue)

    assert [(entry.request_id, entry.status) for entry in entries] == [
        ("req-a", "approved"),
        ("req-b", "denied"),
        ("req-c", "pending"),
    ]
    assert entries[-1].to_dict()["reason"] == ""


def test_malformed_audit_lines_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "audit.jsonl"
    audit = AuditLog(path)
    audit.append(
        AuditLogEntry(tool_name="Edit", action=DecisionAction.ESCALATE, reason="review", request_id="req-a")
    )
    with path.open("a", encoding="utf-8") as handle:
        handle.write("{not json\n\n")

    assert [entry.request_id for entry in audit.read()] == ["req-a"]


def test_manual_approve_removes_request_and_sends_key() -> None:
    queue = PermissionRequestQueue()
    queue.add(PermissionRequest(id="req-1", tool_name="Bash", pane_id="%9"))
    sender = RecordingSender()

    assert asyncio.run(manual_approve("req-1", queue, sender)) is True
    assert sender.panes == ["%9"]
    assert len(queue) == 0
    assert asyncio.run(manual_approve("req-1", queue, sender)) is False


def test_manual_deny_without_sender_only_dequeues() -> None:
    queue = PermissionRequestQueue()
    queue.add(PermissionRequest(id="req-1", tool_name="Bash", pane_id="%9"))
    queue.add(PermissionRequest(id="req-2", tool_name="Edit"))

    assert asyncio.run(manual_deny("req-1", queue)) is True
    assert [request.id for request in queue.get_all()] == ["req-2"]
    assert asyncio.run(manual_deny("missing", queue)) is False


def test_queue_pops_oldest_first() -> None:
    queue = PermissionRequestQueue()
    queue.add(PermissionRequest(id="req-1", tool_name="Bash"))
    queue.add(PermissionRequest(id="req-2", tool_name="Bash"))

    assert queue.next().id == "req-1"
    assert queue.size() == 1
    queue.clear()
    assert queue.next() is None
