"""Tool registration for Herd MCP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..approval import (
    AuditLog,
    PermissionRequestQueue,
    get_status_entries,
    manual_approve,
    manual_deny,
    send_approval_via_tmux,
    send_denial_via_tmux,
)
from ..batching import cancel_batch, render_batch_list, render_batch_status
from ..config import HerdSettings
from ..orchestrator import CompletionMethodRegistry, CompletionMetrics, EventMonitor, MonitorStartError, classify
from ..storage import BatchStore, WorkerRegistry, WorkerState, get_elapsed_time, summarize
from ..storage.models import Worker
from ..supervisor import Supervisor
from ..targets import format_resolved_label, make_session_lookup, resolve_target
from ..tmux import TmuxDriverProtocol

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    resolve_target: Any
    list_workers: Any
    worker_status: Any
    batch_status: Any
    list_batches: Any
    cancel_batch: Any
    approval_status: Any
    approve_request: Any
    deny_request: Any
    classify_pane: Any
    await_completion: Any
    watch_workers: Any
    stop_watching: Any


def _worker_summary(worker: Worker) -> dict[str, Any]:
    elapsed_ms, elapsed = get_elapsed_time(worker)
    payload = worker.model_dump(mode="json")
    payload["elapsed_ms"] = elapsed_ms
    payload["elapsed"] = elapsed
    return payload


def register_tools(
    server: FastMCP,
    *,
    settings: HerdSettings,
    registry: WorkerRegistry,
    batch_store: BatchStore,
    audit_log: AuditLog,
    queue: PermissionRequestQueue,
    driver: TmuxDriverProtocol | None,
    supervisor: Supervisor | None = None,
) -> ToolHandles:
    """Register Herd's MCP tools on the server."""

    # Keyed by method name so figures accumulate across calls.
    completion_metrics: dict[str, CompletionMetrics] = {}

    def _require_driver() -> TmuxDriverProtocol:
        if driver is None:
            raise RuntimeError("tmux is unavailable; install tmux or set TMUX_PATH before using this tool")
        return driver

    async def _cleanup_dead_pane(worker_id: str, pane_id: str) -> None:
        registry.remove_sub_pane(worker_id, pane_id)

    async def _resolve(target: str, check_liveness: bool) -> Any:
        workers = {worker.id: worker for worker in registry.list()}
        return await resolve_target(
            target,
            workers=workers,
            session_lookup=make_session_lookup(driver) if driver is not None else None,
            check_liveness=check_liveness and driver is not None,
            is_pane_live=driver.is_pane_live if driver is not None else None,
            cleanup_dead_pane=_cleanup_dead_pane,
            derive_session=driver.pane_session if driver is not None else None,
        )

    async def _resolve_target(
        target: str,
        check_liveness: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        resolved = await _resolve(target, check_liveness)
        _emit_log(
            context,
            "debug",
            "Resolved target",
            extra={"target": target, "pane_id": resolved.pane_id, "resolved_via": resolved.resolved_via},
        )
        return {**resolved.to_dict(), "label": format_resolved_label(resolved, target)}

    def _list_workers(state: str | None = None, context: Context | None = None) -> list[dict[str, Any]]:
        workers = registry.get_by_state(WorkerState(state)) if state else registry.list()
        _emit_log(context, "debug", "Listing workers", extra={"count": len(workers), "state": state})
        return [_worker_summary(worker) for worker in workers]

    def _worker_status(worker_id: str, context: Context | None = None) -> dict[str, Any]:
        worker = registry.get(worker_id)
        if worker is None:
            raise ValueError(f"Worker '{worker_id}' not found")
        summary = _worker_summary(worker)
        summary["panes"] = [worker.pane_id, *worker.sub_panes]
        summary["monitored"] = supervisor is not None and worker_id in supervisor.monitors
        _emit_log(context, "debug", "Worker status", extra={"worker_id": worker_id, "state": worker.state.value})
        return summary

    def _batch_status(batch_id: str, context: Context | None = None) -> dict[str, Any]:
        completion = batch_store.check_completion(batch_id)
        batch = batch_store.get(batch_id)
        if batch is None:
            raise ValueError(f"Batch '{batch_id}' not found")
        _emit_log(context, "debug", "Batch status", extra={"batch_id": batch_id, "status": batch.status.value})
        return {
            "batch": batch.model_dump(mode="json"),
            "complete": completion.complete,
            "summary": completion.summary.to_dict(),
            "rendered": render_batch_status(batch),
        }

    def _list_batches(context: Context | None = None) -> dict[str, Any]:
        batches = batch_store.list()
        _emit_log(context, "debug", "Listing batches", extra={"count": len(batches)})
        return {
            "batches": [
                {"id": batch.id, "status": batch.status.value, "summary": summarize(batch).to_dict()}
                for batch in batches
            ],
            "rendered": render_batch_list(batches),
        }

    def _cancel_batch(batch_id: str, context: Context | None = None) -> dict[str, Any]:
        batch = cancel_batch(batch_store, batch_id)
        if batch is None:
            raise ValueError(f"Batch '{batch_id}' not found")
        _emit_log(context, "info", "Batch cancelled", extra={"batch_id": batch_id})
        return {"batch": batch.model_dump(mode="json"), "rendered": render_batch_status(batch)}

    def _approval_status(context: Context | None = None) -> list[dict[str, Any]]:
        entries = get_status_entries(audit_log, queue)
        _emit_log(context, "debug", "Approval status", extra={"count": len(entries), "pending": len(queue)})
        return [entry.to_dict() for entry in entries]

    async def _approve_request(request_id: str, context: Context | None = None) -> dict[str, Any]:
        sender = send_approval_via_tmux(driver) if driver is not None else None
        approved = await manual_approve(request_id, queue, sender)
        _emit_log(context, "info", "Manual approval", extra={"request_id": request_id, "found": approved})
        return {"request_id": request_id, "approved": approved}

    async def _deny_request(request_id: str, context: Context | None = None) -> dict[str, Any]:
        sender = send_denial_via_tmux(driver) if driver is not None else None
        denied = await manual_deny(request_id, queue, sender)
        _emit_log(context, "info", "Manual denial", extra={"request_id": request_id, "found": denied})
        return {"request_id": request_id, "denied": denied}

    async def _classify_pane(
        target: str,
        lines: int | None = None,
        include_raw: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        tmux = _require_driver()
        count = lines or settings.capture_lines
        resolved = await _resolve(target, False)
        text = await tmux.capture_pane_content(resolved.pane_id, count)
        state = classify(text, lines_to_analyze=count)
        _emit_log(
            context,
            "debug",
            "Classified pane",
            extra={"pane_id": resolved.pane_id, "state": state.type.value, "confidence": state.confidence},
        )
        return {"target": format_resolved_label(resolved, target), "state": state.to_dict(include_raw=include_raw)}

    async def _await_completion(
        target: str,
        method: str | None = None,
        timeout_ms: int = 120_000,
        context: Context | None = None,
    ) -> dict[str, Any]:
        tmux = _require_driver()
        resolved = await _resolve(target, True)
        detector = CompletionMethodRegistry(tmux).resolve(method or settings.completion_method)
        detector.metrics = completion_metrics.setdefault(detector.name, detector.metrics)
        monitor = EventMonitor(
            tmux,
            pane_id=resolved.pane_id,
            poll_interval_ms=settings.poll_interval_ms,
            capture_lines=settings.capture_lines,
        )
        try:
            await monitor.start()
        except MonitorStartError as exc:
            raise ValueError(str(exc)) from exc
        try:
            result = await detector.detect(monitor, timeout_ms)
        finally:
            monitor.stop()
        # A timeout is counted as a missed completion.
        detector.record_result(result.latency_ms, correct=result.complete, false_positive=False)
        _emit_log(
            context,
            "info",
            "Completion wait finished",
            extra={"pane_id": resolved.pane_id, "method": result.method, "complete": result.complete},
        )
        return {
            "target": format_resolved_label(resolved, target),
            **result.to_dict(),
            "metrics": detector.metrics.to_dict(),
        }

    async def _watch_workers(context: Context | None = None) -> dict[str, Any]:
        if supervisor is None:
            raise RuntimeError("Worker supervision is unavailable; tmux could not be located")
        if supervisor.engine is not None:
            supervisor.engine.start()
        started = await supervisor.watch_all()
        _emit_log(context, "info", "Watching workers", extra={"started": started})
        return {
            "started": started,
            "monitored": sorted(supervisor.monitors),
            "auto_approve": supervisor.engine is not None,
        }

    def _stop_watching(context: Context | None = None) -> dict[str, Any]:
        if supervisor is None:
            raise RuntimeError("Worker supervision is unavailable; tmux could not be located")
        stats = supervisor.shutdown()
        _emit_log(context, "info", "Stopped watching workers")
        return {"stats": stats.to_dict() if stats else None}

    tool_resolve = server.tool(
        name="resolve_target",
        description=(
            "Resolve a pane id (%N), window id (@N), worker id, worker:index, "
            "session:window or session name to a tmux pane."
        ),
    )(_resolve_target)

    tool_list_workers = server.tool(
        name="list_workers",
        description="List registered workers, optionally filtered by lifecycle state.",
    )(_list_workers)

    tool_worker_status = server.tool(
        name="worker_status",
        description="Fetch one worker's record, panes and elapsed time.",
    )(_worker_status)

    tool_batch_status = server.tool(
        name="batch_status",
        description="Show a batch's per-item status and progress summary.",
    )(_batch_status)

    tool_list_batches = server.tool(
        name="list_batches",
        description="List batches with their progress summaries.",
    )(_list_batches)

    tool_cancel_batch = server.tool(
        name="cancel_batch",
        description="Cancel a batch; items that already finished are left unchanged.",
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Cancellation is recorded immediately and is not reversible",
            }
        },
    )(_cancel_batch)

    tool_approval_status = server.tool(
        name="approval_status",
        description="List auto-approve decisions from the audit log followed by pending requests.",
    )(_approval_status)

    tool_approve = server.tool(
        name="approve_request",
        description="Approve a pending permission request and confirm the prompt in its pane.",
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Approving lets the agent run the requested tool",
            }
        },
    )(_approve_request)

    tool_deny = server.tool(
        name="deny_request",
        description="Deny a pending permission request and dismiss the prompt in its pane.",
    )(_deny_request)

    tool_classify = server.tool(
        name="classify_pane",
        description="Capture a pane and classify the agent's current state.",
    )(_classify_pane)

    tool_await = server.tool(
        name="await_completion",
        description=(
            "Watch a pane until the agent finishes its turn, using a named completion method "
            "(hybrid, state-detection, silence-<N>s, wait-for-<channel>, ...)."
        ),
    )(_await_completion)

    tool_watch = server.tool(
        name="watch_workers",
        description="Start monitoring every unfinished worker and, when configured, auto-approving its prompts.",
    )(_watch_workers)

    tool_stop = server.tool(
        name="stop_watching",
        description="Stop all worker monitors and the auto-approve engine, returning decision counters.",
    )(_stop_watching)

    return ToolHandles(
        resolve_target=tool_resolve,
        list_workers=tool_list_workers,
        worker_status=tool_worker_status,
        batch_status=tool_batch_status,
        list_batches=tool_list_batches,
        cancel_batch=tool_cancel_batch,
        approval_status=tool_approval_status,
        approve_request=tool_approve,
        deny_request=tool_deny,
        classify_pane=tool_classify,
        await_completion=tool_await,
        watch_workers=tool_watch,
        stop_watching=tool_stop,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["ToolHandles", "register_tools"]
