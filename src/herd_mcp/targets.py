"""Resolve human-typed targets (pane ids, workers, sessions) to tmux panes."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Literal, Mapping

from .storage.models import Worker
from .tmux.driver import TmuxDriverProtocol, TmuxError

logger = logging.getLogger(__name__)

ResolutionMethod = Literal["raw", "worker", "session:window", "session"]

SessionLookup = Callable[[str, "str | None"], Awaitable["SessionMatch | None"]]
PaneLiveness = Callable[[str], Awaitable[bool]]
DeadPaneCleanup = Callable[[str, str], Awaitable[None]]
SessionDerivation = Callable[[str], Awaitable["str | None"]]

_INDEX = re.compile(r"^\d+$")


class TargetNotFoundError(RuntimeError):
    """Raised when a target cannot be mapped to a live pane."""


@dataclass(slots=True)
class SessionMatch:
    pane_id: str
    session: str


@dataclass(slots=True)
class ResolvedTarget:
    pane_id: str
    resolved_via: ResolutionMethod
    session: str | None = None
    worker_id: str | None = None
    pane_index: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pane_id": self.pane_id,
            "session": self.session,
            "worker_id": self.worker_id,
            "pane_index": self.pane_index,
            "resolved_via": self.resolved_via,
        }


def make_session_lookup(driver: TmuxDriverProtocol) -> SessionLookup:
    """Build a ``session_lookup`` that picks the active pane of a session's window."""

    async def lookup(session_name: str, window_name: str | None) -> SessionMatch | None:
        try:
            session = await driver.find_session_by_name(session_name)
            if session is None:
                return None
            windows = await driver.list_windows(session.id)
            if not windows:
                return None
            if window_name is not None:
                window = next((item for item in windows if item.name == window_name), None)
                if window is None:
                    return None
            else:
                window = next((item for item in windows if item.active), windows[0])
            panes = await driver.list_panes(window.id)
            if not panes:
                return None
            pane = next((item for item in panes if item.active), panes[0])
            return SessionMatch(pane_id=pane.id, session=session.name)
        except TmuxError as exc:
            logger.debug("Session lookup failed", extra={"session": session_name, "error": str(exc)})
            return None

    return lookup


async def _check_live(is_pane_live: PaneLiveness | None, pane_id: str) -> bool:
    if is_pane_live is None:
        return True
    return await is_pane_live(pane_id)


def _pane_by_index(worker: Worker, index: int) -> str | None:
    if index == 0:
        return worker.pane_id
    if index > len(worker.sub_panes):
        return None
    return worker.sub_panes[index - 1]


async def _resolve_worker(
    worker: Worker,
    index: int | None,
    *,
    check_liveness: bool,
    is_pane_live: PaneLiveness | None,
    cleanup_dead_pane: DeadPaneCleanup | None,
) -> ResolvedTarget:
    pane_id = worker.pane_id if index is None else _pane_by_index(worker, index)
    if pane_id is None:
        available = "0 (primary)"
        if worker.sub_panes:
            available += f", 1-{len(worker.sub_panes)} (sub-panes)"
        raise TargetNotFoundError(
            f'Worker "{worker.id}" has no sub-pane index {index}. '
            f"Available: {available}. Split the worker's pane first."
        )
    if check_liveness and not await _check_live(is_pane_live, pane_id):
        if cleanup_dead_pane is not None:
            await cleanup_dead_pane(worker.id, pane_id)
        raise TargetNotFoundError(
            f"Worker {worker.id}: pane {pane_id} is dead. Kill the worker to clean up its record."
        )
    return ResolvedTarget(
        pane_id=pane_id,
        session=worker.session,
        worker_id=worker.id,
        pane_index=index,
        resolved_via="worker",
    )


async def resolve_target(
    target: str,
    *,
    workers: Mapping[str, Worker] | None = None,
    session_lookup: SessionLookup | None = None,
    check_liveness: bool = False,
    is_pane_live: PaneLiveness | None = None,
    cleanup_dead_pane: DeadPaneCleanup | None = None,
    derive_session: SessionDerivation | None = None,
) -> ResolvedTarget:
    """Resolve ``target`` using the first rule that matches.

    1. ``%N``: the raw pane id, echoed back unchanged.
    2. ``@N``: the worker that owns that window.
    3. ``<worker>`` or ``<worker>:<index>``: the worker's primary pane or a sub-pane.
    4. ``<session>:<window>``: the active pane of that window.
    5. ``<session>``: the active pane of the session's active window.

    Raises :class:`TargetNotFoundError` with a next-step hint when nothing
    matches, or when ``check_liveness`` is set and the pane is dead.
    """

    registry = workers or {}
    logger.debug("Resolving target", extra={"target": target})

    if target.startswith("%"):
        if check_liveness and not await _check_live(is_pane_live, target):
            raise TargetNotFoundError(f"Pane {target} is dead or does not exist. Check with: tmux list-panes -a")
        session = None
        if derive_session is not None:
            try:
                session = await derive_session(target)
            except TmuxError:
                session = None
        return ResolvedTarget(pane_id=target, session=session or None, resolved_via="raw")

    if target.startswith("@"):
        owner = next((worker for worker in registry.values() if worker.window_id == target), None)
        if owner is None:
            raise TargetNotFoundError(
                f'Window "{target}" not found in worker registry. '
                "List workers, or list the session's windows, to find a valid target."
            )
        return await _resolve_worker(
            owner,
            None,
            check_liveness=check_liveness,
            is_pane_live=is_pane_live,
            cleanup_dead_pane=None,
        )

    if ":" in target:
        left, right = target.split(":", 1)
        worker = registry.get(left)
        if worker is not None:
            if not _INDEX.match(right):
                raise TargetNotFoundError(
                    f'Invalid sub-pane index "{right}" for worker "{left}". '
                    "Use a non-negative integer (0 = primary, 1+ = sub-panes)."
                )
            return await _resolve_worker(
                worker,
                int(right),
                check_liveness=check_liveness,
                is_pane_live=is_pane_live,
                cleanup_dead_pane=cleanup_dead_pane,
            )

        match = await session_lookup(left, right) if session_lookup is not None else None
        if match is None:
            raise TargetNotFoundError(
                f'Target "{target}" not found. No worker "{left}" in registry and no tmux '
                f'session:window "{left}:{right}". List workers or sessions to find a valid target.'
            )
        if check_liveness and not await _check_live(is_pane_live, match.pane_id):
            raise TargetNotFoundError(f'Session "{left}" window "{right}": pane {match.pane_id} is dead.')
        return ResolvedTarget(pane_id=match.pane_id, session=match.session, resolved_via="session:window")

    worker = registry.get(target)
    if worker is not None:
        return await _resolve_worker(
            worker,
            None,
            check_liveness=check_liveness,
            is_pane_live=is_pane_live,
            cleanup_dead_pane=cleanup_dead_pane,
        )

    match = await session_lookup(target, None) if session_lookup is not None else None
    if match is None:
        raise TargetNotFoundError(
            f'Target "{target}" not found. Not a worker, tmux session, or pane id. '
            "List workers or sessions to find a valid target."
        )
    if check_liveness and not await _check_live(is_pane_live, match.pane_id):
        raise TargetNotFoundError(f'Session "{target}": pane {match.pane_id} is dead.')
    return ResolvedTarget(pane_id=match.pane_id, session=match.session, resolved_via="session")


def format_resolved_label(resolved: ResolvedTarget, original: str) -> str:
    """Render e.g. ``bd-42:1 (pane %22, session genie)``."""

    if resolved.worker_id:
        name = resolved.worker_id
        if resolved.pane_index:
            name += f":{resolved.pane_index}"
    else:
        name = original
    details = [f"pane {resolved.pane_id}"]
    if resolved.session:
        details.append(f"session {resolved.session}")
    return f"{name} ({', '.join(details)})"


__all__ = [
    "ResolvedTarget",
    "SessionMatch",
    "TargetNotFoundError",
    "format_resolved_label",
    "make_session_lookup",
    "resolve_target",
]
