"""Combined view of decided and pending permission requests, plus manual overrides."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .engine import AuditLog, SendKeystroke
from .models import DecisionAction
from .queue import PermissionRequestQueue

logger = logging.getLogger(__name__)

_STATUS_BY_ACTION = {
    DecisionAction.APPROVE: "approved",
    DecisionAction.DENY: "denied",
    DecisionAction.ESCALATE: "escalated",
}


@dataclass(slots=True)
class StatusEntry:
    request_id: str
    tool_name: str
    pane_id: str | None
    status: str
    reason: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "tool_name": self.tool_name,
            "pane_id": self.pane_id,
            "status": self.status,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }


def get_status_entries(audit_log: AuditLog, queue: PermissionRequestQueue) -> list[StatusEntry]:
    """Return audit-derived entries in log order, followed by pending queue entries."""

    entries = [
        StatusEntry(
            request_id=entry.request_id,
            tool_name=entry.tool_name,
            pane_id=entry.pane_id,
            status=_STATUS_BY_ACTION[entry.action],
            reason=entry.reason,
            timestamp=entry.timestamp,
        )
        for entry in audit_log.read()
    ]
    entries.extend(
        StatusEntry(
            request_id=request.id,
            tool_name=request.tool_name,
            pane_id=request.pane_id,
            status="pending",
            reason="",
            timestamp=request.timestamp,
        )
        for request in queue.get_all()
    )
    return entries


async def _resolve(
    request_id: str,
    queue: PermissionRequestQueue,
    send: SendKeystroke | None,
    verb: str,
) -> bool:
    request = queue.remove(request_id)
    if request is None:
        return False
    logger.info(
        "Manual permission decision",
        extra={"request_id": request_id, "pane_id": request.pane_id, "decision": verb},
    )
    if send is not None and request.pane_id:
        await send(request.pane_id)
    return True


async def manual_approve(
    request_id: str,
    queue: PermissionRequestQueue,
    send_approval: SendKeystroke | None = None,
) -> bool:
    """Remove ``request_id`` from the queue and confirm the prompt. Returns False if unknown."""

    return await _resolve(request_id, queue, send_approval, "approved")


async def manual_deny(
    request_id: str,
    queue: PermissionRequestQueue,
    send_denial: SendKeystroke | None = None,
) -> bool:
    return await _resolve(request_id, queue, send_denial, "denied")


__all__ = ["StatusEntry", "get_status_entries", "manual_approve", "manual_deny"]
