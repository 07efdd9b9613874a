"""Async driver for the tmux server."""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .utils import normalize_pane_id, parse_format_lines


class TmuxError(RuntimeError):
    """Base class for tmux driver errors."""


class TmuxNotFoundError(TmuxError):
    """Raised when the tmux executable cannot be located."""


@dataclass(slots=True)
class TmuxSession:
    id: str
    name: str
    attached: bool = False


@dataclass(slots=True)
class TmuxWindow:
    id: str
    name: str
    session_id: str
    active: bool = False


@dataclass(slots=True)
class TmuxPane:
    id: str
    window_id: str
    active: bool = False


@dataclass(slots=True)
class TmuxCommandResult:
    """Holds the outcome of a tmux invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class TmuxDriverProtocol(Protocol):
    """Minimal tmux surface consumed by monitors, resolvers and the approval engine."""

    async def list_sessions(self) -> list[TmuxSession]:
        ...

    async def find_session_by_name(self, name: str) -> TmuxSession | None:
        ...

    async def list_windows(self, session_id: str) -> list[TmuxWindow]:
        ...

    async def list_panes(self, window_id: str) -> list[TmuxPane]:
        ...

    async def capture_pane_content(self, pane_id: str, lines: int = 30) -> str:
        ...

    async def send_keys(self, pane_id: str, text: str, *, enter: bool = True) -> None:
        ...

    async def send_key(self, pane_id: str, key: str) -> None:
        ...

    async def split_pane(self, pane_id: str, *, vertical: bool = False) -> str:
        ...

    async def kill_pane(self, pane_id: str) -> None:
        ...

    async def kill_window(self, window_id: str) -> None:
        ...

    async def wait_for(self, channel: str) -> None:
        ...

    async def pane_session(self, pane_id: str) -> str | None:
        ...

    async def is_pane_live(self, pane_id: str) -> bool:
        ...


class TmuxDriver:
    """Execute tmux commands asynchronously."""

    def __init__(self, executable: Path | None = None) -> None:
        self._executable_path = self._resolve_executable(executable)

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise TmuxNotFoundError(f"tmux executable not found at {candidate}")

        binary = shutil.which("tmux")
        if binary is None:
            raise TmuxNotFoundError("tmux executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def version(self) -> TmuxCommandResult:
        return await self._invoke("-V")

    async def list_sessions(self) -> list[TmuxSession]:
        result = await self._invoke(
            "list-sessions", "-F", "#{session_id}\t#{session_name}\t#{session_attached}"
        )
        if not result.ok:
            # A tmux server with no sessions reports an error rather than an empty list.
            if "no server running" in result.stderr or "no sessions" in result.stderr:
                return []
            raise TmuxError(result.stderr.strip() or "tmux list-sessions failed")
        return [
            TmuxSession(id=sid, name=name, attached=attached not in {"", "0"})
            for sid, name, attached in parse_format_lines(result.stdout, 3)
        ]

    async def find_session_by_name(self, name: str) -> TmuxSession | None:
        for session in await self.list_sessions():
            if session.name == name:
                return session
        return None

    async def list_windows(self, session_id: str) -> list[TmuxWindow]:
        output = await self._run(
            "list-windows", "-t", session_id, "-F", "#{window_id}\t#{window_name}\t#{window_active}"
        )
        return [
            TmuxWindow(id=wid, name=name, session_id=session_id, active=active == "1")
            for wid, name, active in parse_format_lines(output, 3)
        ]

    async def list_panes(self, window_id: str) -> list[TmuxPane]:
        output = await self._run("list-panes", "-t", window_id, "-F", "#{pane_id}\t#{pane_active}")
        return [
            TmuxPane(id=pid, window_id=window_id, active=active == "1")
            for pid, active in parse_format_lines(output, 2)
        ]

    async def capture_pane_content(self, pane_id: str, lines: int = 30) -> str:
        return await self._run(
            "capture-pane", "-p", "-e", "-t", normalize_pane_id(pane_id), "-S", f"-{lines}"
        )

    async def send_keys(self, pane_id: str, text: str, *, enter: bool = True) -> None:
        target = normalize_pane_id(pane_id)
        if text:
            await self._run("send-keys", "-t", target, "-l", text)
        if enter:
            await self._run("send-keys", "-t", target, "Enter")

    async def send_key(self, pane_id: str, key: str) -> None:
        await self._run("send-keys", "-t", normalize_pane_id(pane_id), key)

    async def split_pane(self, pane_id: str, *, vertical: bool = False) -> str:
        output = await self._run(
            "split-window",
            "-v" if vertical else "-h",
            "-t",
            normalize_pane_id(pane_id),
            "-P",
            "-F",
            "#{pane_id}",
        )
        return output.strip()

    async def kill_pane(self, pane_id: str) -> None:
        await self._run("kill-pane", "-t", normalize_pane_id(pane_id))

    async def kill_window(self, window_id: str) -> None:
        await self._run("kill-window", "-t", window_id)

    async def wait_for(self, channel: str) -> None:
        await self._run("wait-for", channel)

    async def pane_session(self, pane_id: str) -> str | None:
        result = await self._invoke(
            "display-message", "-p", "-t", normalize_pane_id(pane_id), "#{session_name}"
        )
        if not result.ok:
            return None
        return result.stdout.strip() or None

    async def is_pane_live(self, pane_id: str) -> bool:
        target = normalize_pane_id(pane_id)
        result = await self._invoke("display-message", "-p", "-t", target, "#{pane_id}")
        return result.ok and result.stdout.strip() == target

    async def _run(self, *args: str) -> str:
        result = await self._invoke(*args)
        if not result.ok:
            raise TmuxError(
                f"tmux {args[0]} failed with exit code {result.returncode}: {result.stderr.strip()}"
            )
        return result.stdout

    async def _invoke(self, *args: str) -> TmuxCommandResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout_bytes, stderr_bytes = await process.communicate()
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return TmuxCommandResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


@dataclass
class _FakeWindow:
    id: str
    name: str
    panes: list[str] = field(default_factory=list)


class FakeTmuxDriver:
    """Test double that simulates a tmux server in memory.

    Pane output is scripted: each capture returns the next queued snapshot and
    keeps returning the last one once the script is exhausted. Capturing a pane
    that does not exist (or was killed) raises ``TmuxError``.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, TmuxSession] = {}
        self._windows: dict[str, list[_FakeWindow]] = {}
        self._outputs: dict[str, list[str]] = {}
        self._counter = 0
        self.sent_keys: list[tuple[str, str]] = []
        self.channels: set[str] = set()

    def add_session(self, name: str, windows: dict[str, list[str]] | None = None) -> TmuxSession:
        self._counter += 1
        session = TmuxSession(id=f"${self._counter}", name=name)
        self._sessions[session.id] = session
        fake_windows: list[_FakeWindow] = []
        for window_name, panes in (windows or {"main": [f"%{self._counter}"]}).items():
            self._counter += 1
            fake_windows.append(_FakeWindow(id=f"@{self._counter}", name=window_name, panes=list(panes)))
            for pane in panes:
                self._outputs.setdefault(pane, [""])
        self._windows[session.id] = fake_windows
        return session

    def set_output(self, pane_id: str, *snapshots: str) -> None:
        self._outputs[normalize_pane_id(pane_id)] = list(snapshots) or [""]

    def remove_pane(self, pane_id: str) -> None:
        pane_id = normalize_pane_id(pane_id)
        self._outputs.pop(pane_id, None)
        for windows in self._windows.values():
            for window in windows:
                if pane_id in window.panes:
                    window.panes.remove(pane_id)

    def signal(self, channel: str) -> None:
        self.channels.add(channel)

    async def list_sessions(self) -> list[TmuxSession]:
        return list(self._sessions.values())

    async def find_session_by_name(self, name: str) -> TmuxSession | None:
        for session in self._sessions.values():
            if session.name == name:
                return session
        return None

    async def list_windows(self, session_id: str) -> list[TmuxWindow]:
        windows = self._windows.get(session_id, [])
        return [
            TmuxWindow(id=window.id, name=window.name, session_id=session_id, active=index == 0)
            for index, window in enumerate(windows)
        ]

    async def list_panes(self, window_id: str) -> list[TmuxPane]:
        for windows in self._windows.values():
            for window in windows:
                if window.id == window_id:
                    return [
                        TmuxPane(id=pane, window_id=window_id, active=index == 0)
                        for index, pane in enumerate(window.panes)
                    ]
        return []

    async def capture_pane_content(self, pane_id: str, lines: int = 30) -> str:
        pane_id = normalize_pane_id(pane_id)
        script = self._outputs.get(pane_id)
        if script is None:
            raise TmuxError(f"can't find pane: {pane_id}")
        snapshot = script.pop(0) if len(script) > 1 else script[0]
        return "\n".join(snapshot.split("\n")[-lines:])

    async def send_keys(self, pane_id: str, text: str, *, enter: bool = True) -> None:
        pane_id = normalize_pane_id(pane_id)
        if text:
            self.sent_keys.append((pane_id, text))
        if enter:
            self.sent_keys.append((pane_id, "Enter"))

    async def send_key(self, pane_id: str, key: str) -> None:
        self.sent_keys.append((normalize_pane_id(pane_id), key))

    async def split_pane(self, pane_id: str, *, vertical: bool = False) -> str:
        pane_id = normalize_pane_id(pane_id)
        self._counter += 1
        new_pane = f"%{self._counter}"
        for windows in self._windows.values():
            for window in windows:
                if pane_id in window.panes:
                    window.panes.append(new_pane)
        self._outputs[new_pane] = [""]
        return new_pane

    async def kill_pane(self, pane_id: str) -> None:
        self.remove_pane(pane_id)

    async def kill_window(self, window_id: str) -> None:
        for windows in self._windows.values():
            for window in list(windows):
                if window.id == window_id:
                    for pane in window.panes:
                        self._outputs.pop(pane, None)
                    windows.remove(window)

    async def wait_for(self, channel: str) -> None:
        while channel not in self.channels:
            await asyncio.sleep(0.005)
        self.channels.discard(channel)

    async def pane_session(self, pane_id: str) -> str | None:
        pane_id = normalize_pane_id(pane_id)
        for session_id, windows in self._windows.items():
            for window in windows:
                if pane_id in window.panes:
                    return self._sessions[session_id].name
        return None

    async def is_pane_live(self, pane_id: str) -> bool:
        return normalize_pane_id(pane_id) in self._outputs


__all__ = [
    "FakeTmuxDriver",
    "TmuxCommandResult",
    "TmuxDriver",
    "TmuxDriverProtocol",
    "TmuxError",
    "TmuxNotFoundError",
    "TmuxPane",
    "TmuxSession",
    "TmuxWindow",
]
