"""In-memory queue of permission requests awaiting a human decision."""

from __future__ import annotations

from .models import PermissionRequest


class PermissionRequestQueue:
    """Pending requests keyed by id, kept in arrival order."""

    def __init__(self) -> None:
        self._requests: dict[str, PermissionRequest] = {}

    def add(self, request: PermissionRequest) -> None:
        self._requests[request.id] = request

    def next(self) -> PermissionRequest | None:
        """Pop and return the oldest request."""

        if not self._requests:
            return None
        request_id = next(iter(self._requests))
        return self._requests.pop(request_id)

    def get(self, request_id: str) -> PermissionRequest | None:
        return self._requests.get(request_id)

    def remove(self, request_id: str) -> PermissionRequest | None:
        return self._requests.pop(request_id, None)

    def get_all(self) -> list[PermissionRequest]:
        return list(self._requests.values())

    def get_by_pane(self, pane_id: str) -> list[PermissionRequest]:
        return [request for request in self._requests.values() if request.pane_id == pane_id]

    def size(self) -> int:
        return len(self._requests)

    def clear(self) -> None:
        self._requests.clear()

    def __len__(self) -> int:
        return len(self._requests)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._requests


__all__ = ["PermissionRequestQueue"]
