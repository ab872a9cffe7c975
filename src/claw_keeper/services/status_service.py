from __future__ import annotations

from typing import Any


class StatusService:
    def __init__(self, *, state: Any) -> None:
        self._state = state

    def status_payload(self) -> dict[str, Any]:
        return self._state.status_payload()


__all__ = ["StatusService"]
