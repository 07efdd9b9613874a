"""Utility helpers for tmux addressing."""

from __future__ import annotations

import re

_PANE_ID = re.compile(r"^%\d+$")


def normalize_pane_id(pane_id: str) -> str:
    """Return ``pane_id`` with the ``%`` prefix tmux expects."""

    pane_id = pane_id.strip()
    return pane_id if pane_id.startswith("%") else f"%{pane_id}"


def normalize_window_id(window_id: str) -> str:
    window_id = window_id.strip()
    return window_id if window_id.startswith("@") else f"@{window_id}"


def is_valid_pane_id(pane_id: str | None) -> bool:
    """Return True when ``pane_id`` has the ``%<digits>`` shape.

    Pane ids end up in tmux command lines, so anything else is rejected.
    """

    return bool(pane_id) and _PANE_ID.match(pane_id) is not None


def parse_format_lines(output: str, fields: int) -> list[list[str]]:
    """Split ``tmux -F`` output rendered with tab separators into rows."""

    rows: list[list[str]] = []
    for line in output.splitlines():
        if not line.strip():
            continue
        parts = line.split("\t")
        if len(parts) < fields:
            parts.extend([""] * (fields - len(parts)))
        rows.append(parts[:fields])
    return rows


__all__ = [
    "is_valid_pane_id",
    "normalize_pane_id",
    "normalize_window_id",
    "parse_format_lines",
]
