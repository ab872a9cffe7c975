from __future__ import annotations

from typing import Any


class StorageService:
    def __init__(self, *, state: Any) -> None:
        self._state = state

    def trigger_manual_sync(self) -> dict[str, Any]:
        return self._state.trigger_manual_sync().to_payload()


__all__ = ["StorageService"]
