"""Heuristic classification of agent pane text into activity states."""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .patterns import (
    COMPLETION_MARKERS,
    ERROR_MARKERS,
    IDLE_MARKERS,
    MENU_OPTION,
    PERMISSION_PROMPTS,
    PERMISSION_SUPPORT,
    PLAN_APPROVAL,
    STREAMING_MARKERS,
    TOOL_USE_MARKERS,
    YES_NO_QUESTION,
    Marker,
    extract_plan_file,
    find_markers,
    first_marker,
    strip_ansi,
)


class AgentStateType(str, Enum):
    WORKING = "working"
    TOOL_USE = "tool_use"
    IDLE = "idle"
    PERMISSION = "permission"
    QUESTION = "question"
    ERROR = "error"
    COMPLETE = "complete"
    UNKNOWN = "unknown"


_BASE_CONFIDENCE = {
    AgentStateType.PERMISSION: 0.9,
    AgentStateType.QUESTION: 0.85,
    AgentStateType.ERROR: 0.8,
    AgentStateType.TOOL_USE: 0.75,
    AgentStateType.WORKING: 0.7,
    AgentStateType.IDLE: 0.7,
    AgentStateType.COMPLETE: 0.6,
}

_COMMAND_LINE = re.compile(r"^\s*(?:Command|command):\s*(?P<value>.+)$")
_FILE_LINE = re.compile(r"^\s*(?:File|file|Path|path):\s*(?P<value>.+)$")
_BASH_HEADER = re.compile(r"^\s*[│|]?\s*Bash command\s*[│|]?\s*$")
_FILE_HEADER = re.compile(r"^\s*[│|]?\s*(?P<verb>Edit|Create|Write|Read) file\s*[│|]?\s*$")
_PROMPT_FILE = re.compile(r"(?:edit to|create|overwrite|write to|read)\s+(?P<file>[^\s?]+)\?", re.IGNORECASE)
_FILE_VERB = re.compile(r"\b(Edit|Write|Read|Create)\b", re.IGNORECASE)
_BOX_EDGE = re.compile(r"^[\s│|]+|[\s│|]+$")


@dataclass(slots=True)
class PermissionDetails:
    """What a permission prompt is asking to do."""

    type: str
    tool_name: str
    command: str | None = None
    file: str | None = None


@dataclass(slots=True)
class AgentState:
    """Result of classifying one snapshot of pane text."""

    type: AgentStateType
    confidence: float
    detail: str | None = None
    options: list[str] = field(default_factory=list)
    permission: PermissionDetails | None = None
    plan_file: str | None = None
    markers: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    raw_output: str = ""

    def to_dict(self, *, include_raw: bool = False) -> dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.type.value
        payload["timestamp"] = self.timestamp.isoformat()
        if not include_raw:
            payload.pop("raw_output")
        return payload


@dataclass(slots=True)
class CompletionCheck:
    complete: bool
    reason: str
    confidence: float


def _confidence(state_type: AgentStateType, markers: list[str]) -> float:
    extra = max(0, len(markers) - 1)
    return round(min(0.99, _BASE_CONFIDENCE[state_type] + 0.1 * extra), 2)


def _trim_trailing_blank(lines: list[str]) -> list[str]:
    end = len(lines)
    while end and not lines[end - 1].strip():
        end -= 1
    return lines[:end]


def _unbox(line: str) -> str:
    return _BOX_EDGE.sub("", line)


def _menu_options(text: str) -> tuple[list[str], bool]:
    options: list[str] = []
    has_cursor = False
    for match in MENU_OPTION.finditer(text):
        options.append(_unbox(match.group("option")))
        if match.group("cursor"):
            has_cursor = True
    return options, has_cursor


def extract_question_options(text: str) -> list[str]:
    """Return the ordered option strings of the numbered menu in ``text``."""

    lines = _trim_trailing_blank(strip_ansi(text).split("\n"))
    options, _ = _menu_options("\n".join(_unbox(line) for line in lines[-15:]))
    return options


def extract_permission_details(text: str) -> PermissionDetails | None:
    """Pull the tool, command and file a permission prompt refers to.

    Returns ``None`` when ``text`` holds no permission prompt. Context is read
    from the lines directly above the prompt.
    """

    lines = [_unbox(line) for line in strip_ansi(text).split("\n")]
    prompt_index = -1
    prompt: tuple[Marker, re.Match[str]] | None = None
    for index in range(len(lines) - 1, -1, -1):
        hit = first_marker(lines[index], PERMISSION_PROMPTS)
        if hit is not None:
            prompt_index, prompt = index, hit
            break
    if prompt is None:
        return None

    marker, match = prompt
    context = lines[max(0, prompt_index - 8) : prompt_index]
    command: str | None = None
    file: str | None = None
    file_verb: str | None = None
    for offset, line in enumerate(context):
        following = next((item.strip() for item in context[offset + 1 :] if item.strip()), None)
        if command is None:
            command_match = _COMMAND_LINE.match(line)
            if command_match:
                command = command_match.group("value").strip()
            elif _BASH_HEADER.match(line) and following:
                command = following
        if file is None:
            file_match = _FILE_LINE.match(line)
            header = _FILE_HEADER.match(line)
            if file_match:
                file = file_match.group("value").strip()
            elif header and following:
                file = following
                file_verb = header.group("verb")

    prompt_line = lines[prompt_index]
    if file is None:
        prompt_file = _PROMPT_FILE.search(prompt_line)
        if prompt_file and marker.name != "bash_permission":
            file = prompt_file.group("file")

    if marker.name == "bash_permission" or (command is not None and marker.name != "file_permission"):
        return PermissionDetails(type="bash", tool_name="Bash", command=command, file=file)
    if marker.name == "file_permission" or file is not None:
        verb_match = _FILE_VERB.search(prompt_line)
        verb = (verb_match.group(1) if verb_match else file_verb) or "Edit"
        tool_name = "Write" if verb.lower() == "create" else verb.capitalize()
        return PermissionDetails(type="file", tool_name=tool_name, command=command, file=file)
    tool_name = match.groupdict().get("tool") or "tool"
    return PermissionDetails(type="tool", tool_name=tool_name, command=command, file=file)


def _tool_detail(marker: Marker, match: re.Match[str]) -> str:
    groups = match.groupdict()
    name = groups.get("tool") or marker.name
    return f"{name}: {(groups.get('arg') or '').strip()}"


def classify(raw_text: str, *, lines_to_analyze: int = 50) -> AgentState:
    """Classify the trailing window of ``raw_text`` into an :class:`AgentState`.

    Families are checked in order: permission, question, streaming work, error,
    idle prompt, idle tool output, completion. Nothing matching yields
    ``unknown`` with zero confidence.
    """

    raw_lines = (raw_text or "").split("\n")[-lines_to_analyze:]
    window = "\n".join(raw_lines)
    clean_lines = _trim_trailing_blank(strip_ansi(window).split("\n"))
    clean = "\n".join(clean_lines)

    def tail(count: int) -> str:
        return "\n".join(clean_lines[-count:])

    def build(state_type: AgentStateType, markers: list[str], **fields: Any) -> AgentState:
        return AgentState(
            type=state_type,
            confidence=_confidence(state_type, markers),
            markers=markers,
            raw_output=window,
            **fields,
        )

    recent = tail(15)

    prompt = first_marker(recent, PERMISSION_PROMPTS)
    if prompt is not None:
        markers = [prompt[0].name] + [marker.name for marker, _ in find_markers(recent, PERMISSION_SUPPORT)]
        details = extract_permission_details(recent)
        return build(
            AgentStateType.PERMISSION,
            markers,
            detail=details.type if details else None,
            permission=details,
        )

    options, has_cursor = _menu_options("\n".join(_unbox(line) for line in clean_lines[-15:]))
    if PLAN_APPROVAL.search(recent):
        markers = ["plan_approval"] + (["menu"] if len(options) >= 2 else [])
        return build(
            AgentStateType.QUESTION,
            markers,
            detail="plan_approval",
            options=options,
            plan_file=extract_plan_file(clean),
        )
    if len(options) >= 2 and has_cursor:
        return build(AgentStateType.QUESTION, ["menu", "cursor"], options=options)
    yes_no = YES_NO_QUESTION.search(recent)
    if yes_no is not None:
        return build(
            AgentStateType.QUESTION,
            ["yes_no_question"],
            options=["Yes", "No"],
            detail=f"default: {yes_no.group('default').lower()}",
        )

    streaming = [marker.name for marker, _ in find_markers(recent, STREAMING_MARKERS)]
    tool = first_marker(clean, TOOL_USE_MARKERS)
    if streaming:
        if tool is not None:
            return build(AgentStateType.TOOL_USE, streaming + [tool[0].name], detail=_tool_detail(*tool))
        return build(AgentStateType.WORKING, streaming)

    errors = find_markers(tail(10), ERROR_MARKERS)
    if errors:
        _, match = errors[0]
        message = (match.groupdict().get("message") or "").strip() or match.group(0).strip()
        return build(AgentStateType.ERROR, [marker.name for marker, _ in errors], detail=message)

    idle = [marker.name for marker, _ in find_markers(tail(6), IDLE_MARKERS)]
    if idle:
        return build(AgentStateType.IDLE, idle)

    if tool is not None:
        state = build(AgentStateType.TOOL_USE, [tool[0].name], detail=_tool_detail(*tool))
        state.confidence = 0.6
        return state

    completion = [marker.name for marker, _ in find_markers(recent, COMPLETION_MARKERS)]
    if completion:
        return build(AgentStateType.COMPLETE, completion)

    return AgentState(type=AgentStateType.UNKNOWN, confidence=0.0, raw_output=window)


def detect_completion(current: AgentState, previous: AgentState | None = None) -> CompletionCheck:
    """Decide whether the transition ``previous`` -> ``current`` ends a turn."""

    if current.type in (AgentStateType.PERMISSION, AgentStateType.QUESTION):
        return CompletionCheck(False, f"awaiting {current.type.value}", 0.95)
    if current.type is AgentStateType.ERROR:
        return CompletionCheck(True, "error detected", 0.8)
    if current.type is AgentStateType.IDLE:
        return CompletionCheck(True, "idle prompt detected", current.confidence)
    if current.type is AgentStateType.COMPLETE:
        return CompletionCheck(True, "completion marker detected", current.confidence)
    if (
        previous is not None
        and previous.type is AgentStateType.WORKING
        and current.type is not AgentStateType.WORKING
        and current.type is not AgentStateType.TOOL_USE
    ):
        return CompletionCheck(True, "work finished", 0.6)
    if current.type in (AgentStateType.WORKING, AgentStateType.TOOL_USE):
        return CompletionCheck(False, "still working", 0.7)
    return CompletionCheck(False, "unknown state", 0.3)


__all__ = [
    "AgentState",
    "AgentStateType",
    "CompletionCheck",
    "PermissionDetails",
    "classify",
    "detect_completion",
    "extract_permission_details",
    "extract_question_options",
]
