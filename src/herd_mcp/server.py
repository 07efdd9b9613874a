"""FastMCP server bootstrap for Herd."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .approval import (
    AuditLog,
    AutoApproveEngine,
    PermissionRequestQueue,
    PolicyConfigError,
    load_auto_approve_config,
    send_approval_via_tmux,
)
from .config import HerdSettings, get_settings
from .storage import BatchStore, EventLog, JsonWorkerStore, WorkerRegistry, WorkerState, summarize
from .supervisor import Supervisor, install_signal_handlers
from .tmux import TmuxDriver, TmuxDriverProtocol, TmuxNotFoundError
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the Herd server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


@dataclass(slots=True)
class HerdRuntime:
    """Collaborators shared by the MCP tools and the standalone supervisor."""

    settings: HerdSettings
    registry: WorkerRegistry
    batch_store: BatchStore
    audit_log: AuditLog
    queue: PermissionRequestQueue
    event_log: EventLog
    driver: TmuxDriverProtocol | None
    engine: AutoApproveEngine | None
    supervisor: Supervisor | None
    tmux_metadata: dict[str, Any]
    policy_metadata: dict[str, Any]


def build_runtime(
    settings: Optional[HerdSettings] = None,
    driver: TmuxDriverProtocol | None = None,
) -> HerdRuntime:
    """Assemble stores, tmux driver, auto-approve engine and supervisor.

    A missing tmux binary or an invalid auto-approve policy degrades the
    runtime (no supervision, or no auto-approval) instead of failing.
    """

    settings = settings or get_settings()
    log = logging.getLogger(__name__)

    tmux_metadata: dict[str, Any] = {"available": False, "version": None, "error": None}
    if driver is None:
        try:
            tmux = TmuxDriver(Path(settings.tmux_path) if settings.tmux_path else None)
            driver = tmux
            tmux_metadata["available"] = True
            version_result = _run_sync(tmux.version())
            if version_result.ok:
                tmux_metadata["version"] = version_result.stdout.strip()
            else:
                tmux_metadata["error"] = version_result.stderr.strip() or "tmux -V failed"
        except TmuxNotFoundError as exc:
            tmux_metadata["error"] = str(exc)
            driver = None
    else:
        tmux_metadata["available"] = True

    registry = WorkerRegistry(JsonWorkerStore(settings.workers_path))
    batch_store = BatchStore(settings.state_dir)
    audit_log = AuditLog(settings.audit_log_path)
    queue = PermissionRequestQueue()
    event_log = EventLog(settings.events_dir)

    policy_metadata: dict[str, Any] = {"enabled": False, "error": None}
    engine: AutoApproveEngine | None = None
    if settings.auto_approve and driver is not None:
        try:
            config = load_auto_approve_config(settings.repo_path, settings.global_config_dir)
        except PolicyConfigError as exc:
            log.warning("Auto-approve disabled; policy is invalid", extra={"error": str(exc)})
            policy_metadata["error"] = str(exc)
        else:
            engine = AutoApproveEngine(
                config,
                audit_log,
                send_approval_via_tmux(driver),
                debounce_ms=settings.approval_debounce_ms,
                queue=queue,
                task_lookup=lambda pane_id: (
                    worker.task_id if (worker := registry.find_by_pane(pane_id)) else None
                ),
            )
            policy_metadata["enabled"] = True

    supervisor = None
    if driver is not None:
        supervisor = Supervisor(
            driver,
            registry,
            engine=engine,
            event_log=event_log,
            poll_interval_ms=settings.poll_interval_ms,
            capture_lines=settings.capture_lines,
        )

    return HerdRuntime(
        settings=settings,
        registry=registry,
        batch_store=batch_store,
        audit_log=audit_log,
        queue=queue,
        event_log=event_log,
        driver=driver,
        engine=engine,
        supervisor=supervisor,
        tmux_metadata=tmux_metadata,
        policy_metadata=policy_metadata,
    )


def build_status(runtime: HerdRuntime, request_id: str | None = None) -> dict[str, Any]:
    """Summarise workers, batches and approvals for the status resource."""

    workers = runtime.registry.list()
    state_counts: dict[str, int] = {state.value: 0 for state in WorkerState}
    for worker in workers:
        state_counts[worker.state.value] += 1

    batches = runtime.batch_store.list()
    stats = runtime.engine.stats.to_dict() if runtime.engine is not None else None

    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "server_version": __version__,
        "log_level": runtime.settings.log_level,
        "state_dir": str(runtime.settings.state_dir),
        "tmux": {"path": runtime.settings.tmux_path, **runtime.tmux_metadata},
        "workers": {
            "count": len(workers),
            "by_state": state_counts,
            "monitored": sorted(runtime.supervisor.monitors) if runtime.supervisor else [],
        },
        "batches": [
            {"id": batch.id, "status": batch.status.value, "summary": summarize(batch).to_dict()}
            for batch in batches[-5:]
        ],
        "auto_approve": {
            **runtime.policy_metadata,
            "running": runtime.engine.is_running if runtime.engine is not None else False,
            "stats": stats,
            "pending": len(runtime.queue),
        },
        "request_id": request_id,
    }


def create_server(
    settings: Optional[HerdSettings] = None,
    driver: TmuxDriverProtocol | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with Herd tools and the status resource."""

    runtime = build_runtime(settings, driver)

    server = FastMCP(
        name="Herd MCP",
        version=__version__,
        instructions=(
            "Herd supervises coding agents running in tmux panes. Use the tools to "
            "resolve targets, inspect worker and batch state, classify panes, and "
            "review or decide permission requests."
        ),
    )

    handles = register_tools(
        server,
        settings=runtime.settings,
        registry=runtime.registry,
        batch_store=runtime.batch_store,
        audit_log=runtime.audit_log,
        queue=runtime.queue,
        driver=runtime.driver,
        supervisor=runtime.supervisor,
    )

    @server.resource(
        "resource://herd/status",
        name="herd_status",
        title="Herd MCP Status",
        description="Provides the current runtime status for the Herd MCP server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing workers, batches and approvals."""

        return json.dumps(build_status(runtime, getattr(context, "request_id", None)))

    setattr(server, "herd_runtime", runtime)
    setattr(server, "tool_handles", handles)
    return server


async def run_supervisor(runtime: HerdRuntime) -> None:
    """Monitor every unfinished worker until SIGINT or SIGTERM."""

    if runtime.supervisor is None:
        raise TmuxNotFoundError(runtime.tmux_metadata.get("error") or "tmux executable not found")

    stop = asyncio.Event()
    install_signal_handlers(asyncio.get_running_loop(), runtime.supervisor, stop.set)
    if runtime.engine is not None:
        runtime.engine.start()
    started = await runtime.supervisor.watch_all()
    logging.getLogger(__name__).info("Supervising workers", extra={"started": started})
    try:
        await stop.wait()
    finally:
        runtime.supervisor.shutdown()


def main() -> None:
    """Entry point for running the Herd MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    runtime: HerdRuntime = getattr(server, "herd_runtime")
    logging.getLogger(__name__).info(
        "Launching Herd MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "tmux_available": runtime.tmux_metadata.get("available"),
            "auto_approve_enabled": runtime.policy_metadata.get("enabled"),
        },
    )
    server.run()


def supervise_main() -> None:
    """Entry point for headless supervision without the MCP transport."""

    settings = get_settings()
    configure_logging(settings.log_level)
    asyncio.run(run_supervisor(build_runtime(settings)))


if __name__ == "__main__":
    main()
