"""Auto-approve policy, engine and manual override helpers."""

from .engine import AuditLog, AutoApproveEngine, EngineStats, send_approval_via_tmux, send_denial_via_tmux
from .loader import AutoApproveLoader, PolicyConfigError, load_auto_approve_config, parse_task_overrides
from .models import (
    AuditLogEntry,
    AutoApproveConfig,
    Decision,
    DecisionAction,
    PermissionRequest,
    PolicyDefaults,
    RepoConfig,
)
from .policy import evaluate_request, normalize_command
from .queue import PermissionRequestQueue
from .status import StatusEntry, get_status_entries, manual_approve, manual_deny

__all__ = [
    "AuditLog",
    "AuditLogEntry",
    "AutoApproveConfig",
    "AutoApproveEngine",
    "AutoApproveLoader",
    "Decision",
    "DecisionAction",
    "EngineStats",
    "PermissionRequest",
    "PermissionRequestQueue",
    "PolicyConfigError",
    "PolicyDefaults",
    "RepoConfig",
    "StatusEntry",
    "evaluate_request",
    "get_status_entries",
    "load_auto_approve_config",
    "manual_approve",
    "manual_deny",
    "normalize_command",
    "parse_task_overrides",
    "send_approval_via_tmux",
    "send_denial_via_tmux",
]
