"""Append-only per-pane event streams under ``<state>/events``."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from ..orchestrator.event_monitor import MonitorEvent, MonitorEventType
from ..tmux.utils import normalize_pane_id

logger = logging.getLogger(__name__)

# Silence ticks fire on every unchanged poll and would swamp the stream.
_SKIPPED_TYPES = frozenset({MonitorEventType.SILENCE})


class EventLog:
    """Write monitor events as JSON lines to ``events/<paneId>.jsonl``."""

    def __init__(self, events_dir: Path) -> None:
        self._dir = Path(events_dir)

    @property
    def events_dir(self) -> Path:
        return self._dir

    def path_for(self, pane_id: str) -> Path:
        return self._dir / f"{normalize_pane_id(pane_id)}.jsonl"

    def append(self, event: MonitorEvent) -> None:
        path = self.path_for(event.pane_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(event.to_dict()) + "\n")

    def listener(self, event: MonitorEvent) -> None:
        """Monitor handler that records every event except silence ticks."""

        if event.type in _SKIPPED_TYPES:
            return
        try:
            self.append(event)
        except OSError as exc:
            logger.warning("Failed to write event log", extra={"pane_id": event.pane_id, "error": str(exc)})

    def read(self, pane_id: str) -> list[dict[str, Any]]:
        path = self.path_for(pane_id)
        if not path.exists():
            return []
        events: list[dict[str, Any]] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                events.append(json.loads(line))
            except json.JSONDecodeError:
                logger.debug("Skipping malformed event line", extra={"path": str(path)})
        return events

    def remove(self, pane_id: str) -> bool:
        path = self.path_for(pane_id)
        if not path.exists():
            return False
        path.unlink()
        return True


__all__ = ["EventLog"]
