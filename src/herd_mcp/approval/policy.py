"""Rule matching for permission requests."""

from __future__ import annotations

import logging
import re
from functools import lru_cache

from .models import AutoApproveConfig, Decision, DecisionAction, PermissionRequest

logger = logging.getLogger(__name__)

MAX_MATCH_INPUT = 8192

_WHITESPACE = re.compile(r"\s+")
_PATH_PREFIX = re.compile(r"^/[\w./-]*/(\w)")
_SHELL_METACHARACTERS = re.compile(r"(&&|\||;|`|\$\()")


def normalize_command(command: str) -> str:
    """Collapse whitespace and strip an absolute path from the first token.

    ``/usr/bin/rm  -rf x`` becomes ``rm -rf x`` so deny patterns cannot be
    sidestepped by spelling out the binary's location.
    """

    normalized = _WHITESPACE.sub(" ", command.strip())
    if not normalized:
        return ""
    return _PATH_PREFIX.sub(r"\1", normalized, count=1)


def has_shell_metacharacters(command: str) -> bool:
    return _SHELL_METACHARACTERS.search(command) is not None


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern)
    except re.error:
        logger.warning(
            "Invalid regex in bash patterns; falling back to substring match",
            extra={"pattern": pattern},
        )
        return None


def match_bash_pattern(command: str, patterns: list[str]) -> str | None:
    """Return the first pattern found anywhere in ``command``, or ``None``."""

    bounded = command[:MAX_MATCH_INPUT]
    for pattern in patterns:
        compiled = _compile(pattern)
        if compiled is None:
            if pattern in bounded:
                return pattern
        elif compiled.search(bounded):
            return pattern
    return None


def _fully_matches(command: str, pattern: str) -> bool:
    compiled = _compile(pattern)
    if compiled is None or len(command) > MAX_MATCH_INPUT:
        return False
    return compiled.fullmatch(command) is not None


def evaluate_request(request: PermissionRequest, config: AutoApproveConfig) -> Decision:
    """Decide what to do with ``request`` under ``config``.

    Tool-level deny wins, then the tool must be allowed. Bash requests are
    further checked against the command patterns: deny patterns first, then
    compound commands must be covered entirely by one allow pattern.
    """

    rules = config.defaults
    tool = request.tool_name

    if tool in rules.deny:
        return Decision(DecisionAction.DENY, f'Tool "{tool}" is in the deny list')

    if tool not in rules.allow:
        return Decision(
            rules.default_action,
            f'Tool "{tool}" is not in the allow list; default action is {rules.default_action.value}',
        )

    if tool != "Bash":
        return Decision(DecisionAction.APPROVE, f'Tool "{tool}" is in the allow list')

    raw_command = request.bash_command
    if raw_command is None:
        return Decision(
            DecisionAction.ESCALATE,
            "Bash tool request has no command to evaluate; requires human review",
        )

    command = normalize_command(raw_command)
    deny_patterns = rules.bash_deny_patterns or []
    allow_patterns = rules.bash_allow_patterns or []

    matched_deny = match_bash_pattern(command, deny_patterns)
    if matched_deny is not None:
        return Decision(DecisionAction.DENY, f'Bash command matches deny pattern "{matched_deny}": {command}')

    if not allow_patterns and not deny_patterns:
        return Decision(DecisionAction.APPROVE, "Bash tool is allowed and no command patterns are configured")

    if has_shell_metacharacters(command):
        for pattern in allow_patterns:
            if _fully_matches(command, pattern):
                return Decision(
                    DecisionAction.APPROVE,
                    f'Bash compound command fully matches allow pattern "{pattern}": {command}',
                )
        return Decision(
            DecisionAction.ESCALATE,
            "Bash command contains shell metacharacters and does not fully match any allow "
            f"pattern; requires human review: {command}",
        )

    matched_allow = match_bash_pattern(command, allow_patterns)
    if matched_allow is not None:
        return Decision(DecisionAction.APPROVE, f'Bash command matches allow pattern "{matched_allow}": {command}')

    return Decision(
        rules.default_action,
        f"Bash command does not match any allow pattern; default action is {rules.default_action.value}: {command}",
    )


__all__ = [
    "MAX_MATCH_INPUT",
    "evaluate_request",
    "has_shell_metacharacters",
    "match_bash_pattern",
    "normalize_command",
]
