"""Models for auto-approve policy, permission requests and audit records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator


class DecisionAction(str, Enum):
    APPROVE = "approve"
    DENY = "deny"
    ESCALATE = "escalate"


@dataclass(slots=True)
class Decision:
    action: DecisionAction
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"action": self.action.value, "reason": self.reason}


def _clean_names(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        value = [value]
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    raise TypeError("Tool and pattern lists must be sequences of strings")


class PolicyDefaults(BaseModel):
    """Effective rules applied to every permission request."""

    allow: list[str] = Field(default_factory=list, description="Tools that may be auto-approved.")
    deny: list[str] = Field(default_factory=list, description="Tools that are always denied.")
    bash_allow_patterns: list[str] | None = Field(
        default=None,
        description="Regular expressions a Bash command must match to be auto-approved.",
    )
    bash_deny_patterns: list[str] | None = Field(
        default=None,
        description="Regular expressions that deny a Bash command outright.",
    )
    default_action: DecisionAction = Field(
        default=DecisionAction.ESCALATE,
        description="Action taken when no rule decides the request.",
    )

    @field_validator("allow", "deny", mode="before")
    @classmethod
    def _ensure_names(cls, value: Any):  # type: ignore[override]
        return _clean_names(value) or []

    @field_validator("bash_allow_patterns", "bash_deny_patterns", mode="before")
    @classmethod
    def _ensure_patterns(cls, value: Any):  # type: ignore[override]
        return _clean_names(value)


class RepoConfig(BaseModel):
    """One override layer. Only the keys it sets replace the layer below."""

    inherit: Literal["global", "none"] | None = Field(
        default=None,
        description="'none' resets to empty defaults before this layer applies.",
    )
    allow: list[str] | None = None
    deny: list[str] | None = None
    bash_allow_patterns: list[str] | None = None
    bash_deny_patterns: list[str] | None = None
    default_action: DecisionAction | None = None

    @field_validator("allow", "deny", "bash_allow_patterns", "bash_deny_patterns", mode="before")
    @classmethod
    def _ensure_lists(cls, value: Any):  # type: ignore[override]
        return _clean_names(value)

    def overrides(self) -> dict[str, Any]:
        """Return the rule keys this layer explicitly sets."""

        data = self.model_dump(exclude_unset=True, exclude={"inherit"})
        for key in ("allow", "deny"):
            if key in data and data[key] is None:
                data[key] = []
        if data.get("default_action") is None:
            data.pop("default_action", None)
        return data


class AutoApproveConfig(BaseModel):
    """Merged auto-approve configuration."""

    defaults: PolicyDefaults = Field(default_factory=PolicyDefaults)
    repos: dict[str, RepoConfig] = Field(
        default_factory=dict,
        description="Per-repository overrides keyed by absolute path.",
    )

    @field_validator("defaults", "repos", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any):  # type: ignore[override]
        return {} if value is None else value


def new_request_id() -> str:
    return f"req-{uuid4().hex[:12]}"


class PermissionRequest(BaseModel):
    """A paused agent asking for permission to run a tool."""

    id: str = Field(default_factory=new_request_id)
    tool_name: str = Field(..., description="Tool the agent wants to run (Bash, Edit, ...).")
    tool_input: dict[str, Any] | None = Field(default=None, description="Tool parameters, if known.")
    pane_id: str | None = None
    task_id: str | None = None
    session_id: str = ""
    cwd: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def bash_command(self) -> str | None:
        if self.tool_name != "Bash" or not self.tool_input:
            return None
        command = self.tool_input.get("command")
        return command if isinstance(command, str) else None


class AuditLogEntry(BaseModel):
    """One auto-approve decision, as written to the audit log."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    pane_id: str | None = None
    tool_name: str
    action: DecisionAction
    reason: str
    task_id: str | None = None
    request_id: str


__all__ = [
    "AuditLogEntry",
    "AutoApproveConfig",
    "Decision",
    "DecisionAction",
    "PermissionRequest",
    "PolicyDefaults",
    "RepoConfig",
    "new_request_id",
]
