from __future__ import annotations

import asyncio

import pytest

from herd_mcp.storage import Worker
from herd_mcp.targets import (
    ResolvedTarget,
    SessionMatch,
    TargetNotFoundError,
    format_resolved_label,
    make_session_lookup,
    resolve_target,
)
from herd_mcp.tmux import FakeTmuxDriver


WORKERS = {
    "bd-42": Worker(
        id="bd-42",
        pane_id="%22",
        session="genie",
        window_id="@4",
        sub_panes=["%30", "%31"],
        repo_path="/work/api",
    ),
    "solo": Worker(id="solo", pane_id="%40", session="genie", repo_path="/work/api"),
}


async def _lookup(session: str, window: str | None) -> SessionMatch | None:
    if session == "genie" and window in (None, "logs"):
        return SessionMatch(pane_id="%3" if window else "%1", session="genie")
    return None


def _resolve(target: str, **kwargs) -> ResolvedTarget:
    kwargs.setdefault("workers", WORKERS)
    kwargs.setdefault("session_lookup", _lookup)
    return asyncio.run(resolve_target(target, **kwargs))


def test_raw_pane_id_is_echoed() -> None:
    resolved = _resolve("%99")

    assert resolved == ResolvedTarget(pane_id="%99", resolved_via="raw")


def test_raw_pane_derives_session_when_possible() -> None:
    async def derive(pane_id: str) -> str | None:
        return "genie"

    assert _resolve("%99", derive_session=derive).session == "genie"


def test_raw_pane_liveness() -> None:
    async def dead(pane_id: str) -> bool:
        return False

    with pytest.raises(TargetNotFoundError, match="tmux list-panes"):
        _resolve("%99", check_liveness=True, is_pane_live=dead)

    assert _resolve("%99", check_liveness=False, is_pane_live=dead).pane_id == "%99"


def test_window_id_maps_to_owning_worker() -> None:
    resolved = _resolve("@4")

    assert resolved.worker_id == "bd-42"
    assert resolved.pane_id == "%22"
    assert resolved.resolved_via == "worker"

    with pytest.raises(TargetNotFoundError, match="not found in worker registry"):
        _resolve("@77")


def test_worker_and_sub_pane_indices() -> None:
    primary = _resolve("bd-42")
    assert (primary.pane_id, primary.pane_index, primary.session) == ("%22", None, "genie")

    assert _resolve("bd-42:0").pane_id == "%22"
    second = _resolve("bd-42:2")
    assert (second.pane_id, second.pane_index) == ("%31", 2)


def test_out_of_range_index_lists_available_panes() -> None:
    with pytest.raises(TargetNotFoundError, match=r"Available: 0 \(primary\), 1-2 \(sub-panes\)"):
        _resolve("bd-42:3")

    with pytest.raises(TargetNotFoundError, match=r"Available: 0 \(primary\)\. Split"):
        _resolve("solo:1")


@pytest.mark.parametrize("index", ["-1", "abc", "1.5", ""])
def test_non_integer_index_is_rejected(index: str) -> None:
    with pytest.raises(TargetNotFoundError, match="Invalid sub-pane index"):
        _resolve(f"bd-42:{index}")


def test_dead_worker_pane_is_cleaned_up() -> None:
    cleaned: list[tuple[str, str]] = []

    async def is_live(pane_id: str) -> bool:
        return pane_id != "%30"

    async def cleanup(worker_id: str, pane_id: str) -> None:
        cleaned.append((worker_id, pane_id))

    with pytest.raises(TargetNotFoundError, match="pane %30 is dead"):
        _resolve("bd-42:1", check_liveness=True, is_pane_live=is_live, cleanup_dead_pane=cleanup)

    assert cleaned == [("bd-42", "%30")]
    assert _resolve("bd-42:2", check_liveness=True, is_pane_live=is_live).pane_id == "%31"


def test_session_and_window_lookup() -> None:
    window = _resolve("genie:logs")
    assert (window.pane_id, window.resolved_via, window.session) == ("%3", "session:window", "genie")

    session = _resolve("genie")
    assert (session.pane_id, session.resolved_via) == ("%1", "session")


def test_unknown_targets_raise_with_hints() -> None:
    with pytest.raises(TargetNotFoundError, match='No worker "nope"'):
        _resolve("nope:main")

    with pytest.raises(TargetNotFoundError, match="Not a worker, tmux session, or pane id"):
        _resolve("nope")

    with pytest.raises(TargetNotFoundError):
        _resolve("genie", session_lookup=None)


def test_driver_backed_session_lookup() -> None:
    driver = FakeTmuxDriver()
    driver.add_session("genie", {"main": ["%5", "%6"], "logs": ["%7"]})
    lookup = make_session_lookup(driver)

    assert asyncio.run(lookup("genie", None)) == SessionMatch(pane_id="%5", session="genie")
    assert asyncio.run(lookup("genie", "logs")) == SessionMatch(pane_id="%7", session="genie")
    assert asyncio.run(lookup("genie", "missing")) is None
    assert asyncio.run(lookup("other", None)) is None


def test_resolved_labels() -> None:
    sub_pane = ResolvedTarget(pane_id="%22", resolved_via="worker", session="genie", worker_id="bd-42", pane_index=1)
    primary = ResolvedTarget(pane_id="%22", resolved_via="worker", session="genie", worker_id="bd-42", pane_index=0)
    raw = ResolvedTarget(pane_id="%9", resolved_via="raw")

    assert format_resolved_label(sub_pane, "bd-42:1") == "bd-42:1 (pane %22, session genie)"
    assert format_resolved_label(primary, "bd-42:0") == "bd-42 (pane %22, session genie)"
    assert format_resolved_label(raw, "%9") == "%9 (pane %9)"
