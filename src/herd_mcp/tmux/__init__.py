"""tmux integration for Herd MCP."""

from .driver import (
    FakeTmuxDriver,
    TmuxCommandResult,
    TmuxDriver,
    TmuxDriverProtocol,
    TmuxError,
    TmuxNotFoundError,
    TmuxPane,
    TmuxSession,
    TmuxWindow,
)
from .utils import is_valid_pane_id, normalize_pane_id

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
    "is_valid_pane_id",
    "normalize_pane_id",
]
