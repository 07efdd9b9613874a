"""Pane observation: state classification, polling monitor and completion methods."""

from .completion import (
    CompletionMethod,
    CompletionMethodRegistry,
    CompletionMetrics,
    CompletionResult,
    HybridMethod,
    SilenceTimeoutMethod,
    StateDetectionMethod,
    WaitForChannelMethod,
)
from .event_monitor import (
    EventMonitor,
    MonitorEvent,
    MonitorEventType,
    MonitorStartError,
    wait_for_completion,
    wait_for_silence,
    wait_for_state,
)
from .state_detector import (
    AgentState,
    AgentStateType,
    PermissionDetails,
    classify,
    detect_completion,
    extract_permission_details,
    extract_question_options,
)

__all__ = [
    "AgentState",
    "AgentStateType",
    "CompletionMethod",
    "CompletionMethodRegistry",
    "CompletionMetrics",
    "CompletionResult",
    "EventMonitor",
    "HybridMethod",
    "MonitorEvent",
    "MonitorEventType",
    "MonitorStartError",
    "PermissionDetails",
    "SilenceTimeoutMethod",
    "StateDetectionMethod",
    "WaitForChannelMethod",
    "classify",
    "detect_completion",
    "extract_permission_details",
    "extract_question_options",
    "wait_for_completion",
    "wait_for_silence",
    "wait_for_state",
]
