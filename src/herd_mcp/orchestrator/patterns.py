"""Marker tables used to recognise agent states in rendered pane text."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Iterable

ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")


@dataclass(frozen=True, slots=True)
class Marker:
    """A named regular expression that signals one state family."""

    name: str
    pattern: re.Pattern[str]


PERMISSION_PROMPTS: tuple[Marker, ...] = (
    Marker("bash_permission", re.compile(r"Allow (?:Bash|command|shell)\b.*\?", re.IGNORECASE)),
    Marker(
        "file_permission",
        re.compile(r"Allow (?:Edit|Write|Read|file|reading|writing|editing)\b.*\?", re.IGNORECASE),
    ),
    Marker("tool_permission", re.compile(r"Allow (?!once\b|always\b)(?P<tool>[\w.:-]+).*\?")),
    Marker(
        "proceed_prompt",
        re.compile(
            r"Do you want to (?P<verb>proceed|make this edit|create|write|overwrite|run|read)\b.*\?",
            re.IGNORECASE,
        ),
    ),
)

PERMISSION_SUPPORT: tuple[Marker, ...] = (
    Marker(
        "yes_no_shape",
        re.compile(r"\[[YyNn]/[YyNn]\]|^\s*(?:[❯›>]\s*)?\d+\.\s+(?:Yes|No)\b", re.MULTILINE),
    ),
    Marker("allow_scope", re.compile(r"(?:Allow|Run|Execute)\s+(?:once|always)", re.IGNORECASE)),
    Marker("dont_ask_again", re.compile(r"don'?t ask again", re.IGNORECASE)),
)

MENU_OPTION = re.compile(r"^\s*(?P<cursor>[❯›>])?\s*(?P<number>\d+)\.\s+(?P<option>.+?)\s*$", re.MULTILINE)
YES_NO_QUESTION = re.compile(r"\?\s*\[(?P<default>[YyNn])/[YyNn]\]\s*$", re.MULTILINE)
PLAN_APPROVAL = re.compile(r"Would you like to proceed\?", re.IGNORECASE)
PLAN_FILE = re.compile(r"(~/\.claude/plans/[\w-]+\.md|/[^\s]+/\.claude/plans/[\w-]+\.md)")

STREAMING_MARKERS: tuple[Marker, ...] = (
    Marker("spinner", re.compile(r"[⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏⣾⣽⣻⢿⡿⣟⣯⣷]")),
    Marker("interrupt_hint", re.compile(r"esc to interrupt", re.IGNORECASE)),
    Marker(
        "thinking",
        re.compile(r"\b(?:Thinking|Processing|Loading|Working|Propagating)(?:\.\.\.|…)", re.IGNORECASE),
    ),
    Marker("streaming_cursor", re.compile(r"▌\s*$", re.MULTILINE)),
)

TOOL_USE_MARKERS: tuple[Marker, ...] = (
    Marker("run_command", re.compile(r"(?:Run|Running|Executing)\s+(?:command|bash):\s*(?P<arg>.+)", re.IGNORECASE)),
    Marker("read_file", re.compile(r"(?:Read|Reading)\s+file:\s*(?P<arg>.+)", re.IGNORECASE)),
    Marker("write_file", re.compile(r"(?:Write|Writing|Edit|Editing)\s+(?:file|to):\s*(?P<arg>.+)", re.IGNORECASE)),
    Marker("search", re.compile(r"(?:Searching|Search|Grep|Glob):\s*(?P<arg>.+)", re.IGNORECASE)),
    Marker(
        "tool_call",
        re.compile(r"⏺\s*(?P<tool>Bash|Read|Edit|Write|MultiEdit|Glob|Grep|Task|WebFetch)\((?P<arg>[^)]*)\)"),
    ),
)

ERROR_MARKERS: tuple[Marker, ...] = (
    Marker("error", re.compile(r"^\s*(?:Error|ERROR|error):\s*(?P<message>.+)", re.MULTILINE)),
    Marker("failed", re.compile(r"^\s*(?:Failed|FAILED|failed):\s*(?P<message>.+)", re.MULTILINE)),
    Marker(
        "exception",
        re.compile(r"^\s*(?:Exception|EXCEPTION|Uncaught|Unhandled):\s*(?P<message>.+)", re.MULTILINE),
    ),
    Marker("api_error", re.compile(r"\bAPI\s+error\b:?\s*(?P<message>.*)", re.IGNORECASE)),
)

IDLE_MARKERS: tuple[Marker, ...] = (
    Marker("bare_prompt", re.compile(r"^\s*[>❯]\s*$", re.MULTILINE)),
    Marker("boxed_prompt", re.compile(r"^\s*│\s*>.*│\s*$", re.MULTILINE)),
    Marker("prompt_with_input", re.compile(r"^\s*❯\s+(?!\d+\.).+$", re.MULTILINE)),
    Marker("shortcuts_hint", re.compile(r"\?\s+for shortcuts")),
    Marker("idle_indicator", re.compile(r"\|\s*idle\s*$", re.MULTILINE | re.IGNORECASE)),
    Marker(
        "input_prompt",
        re.compile(r"^(?:Enter|Input|Type|Provide)\b.*:\s*$", re.MULTILINE | re.IGNORECASE),
    ),
)

COMPLETION_MARKERS: tuple[Marker, ...] = (
    Marker("checkmark", re.compile(r"[✓✔☑]")),
    Marker("success_message", re.compile(r"\b(?:Successfully|Completed|Done|Finished)\b", re.IGNORECASE)),
    Marker(
        "task_complete",
        re.compile(r"\b(?:task|operation|process)\s+(?:complete|completed|finished|done)\b", re.IGNORECASE),
    ),
    Marker("turn_summary", re.compile(r"✻\s+\w+\s+for\s+\d+")),
)


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences from ``text``."""

    return ANSI_ESCAPE.sub("", text)


def find_markers(text: str, markers: Iterable[Marker]) -> list[tuple[Marker, re.Match[str]]]:
    """Return the first match of every marker found in ``text``, in table order."""

    found: list[tuple[Marker, re.Match[str]]] = []
    for marker in markers:
        match = marker.pattern.search(text)
        if match is not None:
            found.append((marker, match))
    return found


def first_marker(text: str, markers: Iterable[Marker]) -> tuple[Marker, re.Match[str]] | None:
    for marker in markers:
        match = marker.pattern.search(text)
        if match is not None:
            return marker, match
    return None


def extract_plan_file(text: str, *, home: str | None = None) -> str | None:
    """Return the first ``.claude/plans/*.md`` path referenced in ``text``.

    A leading ``~`` is expanded against ``home`` (defaults to ``$HOME``).
    """

    match = PLAN_FILE.search(strip_ansi(text))
    if match is None:
        return None
    path = match.group(1)
    if path.startswith("~"):
        path = (home if home is not None else os.environ.get("HOME", "")) + path[1:]
    return path


__all__ = [
    "ANSI_ESCAPE",
    "COMPLETION_MARKERS",
    "ERROR_MARKERS",
    "IDLE_MARKERS",
    "MENU_OPTION",
    "Marker",
    "PERMISSION_PROMPTS",
    "PERMISSION_SUPPORT",
    "PLAN_APPROVAL",
    "PLAN_FILE",
    "STREAMING_MARKERS",
    "TOOL_USE_MARKERS",
    "YES_NO_QUESTION",
    "extract_plan_file",
    "find_markers",
    "first_marker",
    "strip_ansi",
]
