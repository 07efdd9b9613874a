from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from herd_mcp.tmux import FakeTmuxDriver, TmuxDriver, TmuxError, TmuxNotFoundError


FAKE_TMUX = """#!/bin/sh
case "$1" in
  -V) echo 'tmux 3.4' ;;
  list-sessions) printf '$1\\tgenie\\t1\\n$2\\twork\\t0\\n' ;;
  list-windows) printf '@1\\tmain\\t1\\n@2\\tlogs\\t0\\n' ;;
  list-panes) printf '%%3\\t0\\n%%4\\t1\\n' ;;
  display-message) echo '%3' ;;
  capture-pane) echo "$@" ;;
  *) echo "unknown command $1" >&2; exit 1 ;;
esac
"""


def _script(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "tmux"
    script.write_text(body, encoding="utf-8")
    script.chmod(0o755)
    return script


def test_tmux_driver_parses_listings(tmp_path: Path) -> None:
    driver = TmuxDriver(_script(tmp_path, FAKE_TMUX))

    version = asyncio.run(driver.version())
    sessions = asyncio.run(driver.list_sessions())
    windows = asyncio.run(driver.list_windows("$1"))
    panes = asyncio.run(driver.list_panes("@1"))

    assert version.ok and version.stdout.strip() == "tmux 3.4"
    assert [(session.id, session.name, session.attached) for session in sessions] == [
        ("$1", "genie", True),
        ("$2", "work", False),
    ]
    assert [(window.name, window.active) for window in windows] == [("main", True), ("logs", False)]
    assert [(pane.id, pane.active) for pane in panes] == [("%3", False), ("%4", True)]
    assert asyncio.run(driver.find_session_by_name("work")).id == "$2"


def test_tmux_driver_normalises_pane_targets(tmp_path: Path) -> None:
    driver = TmuxDriver(_script(tmp_path, FAKE_TMUX))

    captured = asyncio.run(driver.capture_pane_content("3", 40))

    assert captured.strip() == "capture-pane -p -e -t %3 -S -40"
    assert asyncio.run(driver.is_pane_live("%3")) is True
    assert asyncio.run(driver.is_pane_live("%9")) is False


def test_tmux_driver_raises_on_failure(tmp_path: Path) -> None:
    driver = TmuxDriver(_script(tmp_path, FAKE_TMUX))

    with pytest.raises(TmuxError, match="kill-pane failed"):
        asyncio.run(driver.kill_pane("%3"))


def test_no_server_means_no_sessions(tmp_path: Path) -> None:
    script = _script(tmp_path, "#!/bin/sh\necho 'no server running on /tmp/tmux-0/default' >&2\nexit 1\n")

    assert asyncio.run(TmuxDriver(script).list_sessions()) == []


def test_tmux_not_found(tmp_path: Path) -> None:
    with pytest.raises(TmuxNotFoundError):
        TmuxDriver(tmp_path / "missing")


def test_fake_driver_scripts_output_and_panes() -> None:
    fake = FakeTmuxDriver()
    fake.add_session("genie", {"main": ["%1"]})
    fake.set_output("%1", "first", "second")

    async def scenario() -> list[str]:
        outputs = [await fake.capture_pane_content("%1") for _ in range(3)]
        new_pane = await fake.split_pane("%1")
        await fake.send_keys(new_pane, "ls")
        return outputs + [new_pane]

    first, second, third, new_pane = asyncio.run(scenario())

    assert (first, second, third) == ("first", "second", "second")
    assert fake.sent_keys == [(new_pane, "ls"), (new_pane, "Enter")]
    assert asyncio.run(fake.pane_session(new_pane)) == "genie"

    asyncio.run(fake.kill_pane("%1"))
    with pytest.raises(TmuxError):
        asyncio.run(fake.capture_pane_content("%1"))
