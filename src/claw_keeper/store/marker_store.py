from __future__ import annotations

import json
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


LOGGER = logging.getLogger("claw_keeper.storage")


def _parse_iso(value: str) -> datetime | None:
    text = str(value or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class SyncMarker:
    """Completion record of the last successful sync.

    ``sequence`` grows by one per successful sync and is the primary freshness
    signal; ``synced_at`` only breaks ties between markers that carry no
    sequence (plain timestamp files written by older images).
    """

    sequence: int
    synced_at: str

    def is_newer_than(self, other: "SyncMarker | None") -> bool:
        if other is None:
            return True
        if self.sequence != other.sequence:
            return self.sequence > other.sequence
        mine = _parse_iso(self.synced_at)
        theirs = _parse_iso(other.synced_at)
        if mine is None or theirs is None:
            return False
        return mine > theirs

    def to_payload(self) -> dict[str, Any]:
        return {"sequence": self.sequence, "synced_at": self.synced_at}


def parse_marker_text(raw: str) -> SyncMarker | None:
    text = str(raw or "").strip()
    if not text:
        return None
    if text.startswith("{"):
        try:
            loaded = json.loads(text)
        except json.JSONDecodeError:
            return None
        if not isinstance(loaded, dict):
            return None
        sequence = loaded.get("sequence")
        synced_at = str(loaded.get("synced_at") or "")
        if isinstance(sequence, bool) or not isinstance(sequence, int) or sequence < 0:
            return None
        return SyncMarker(sequence=sequence, synced_at=synced_at)
    if _parse_iso(text) is None:
        return None
    return SyncMarker(sequence=0, synced_at=text)


class SyncMarkerStore:
    def __init__(self, *, marker_file_name: str) -> None:
        self.marker_file_name = str(marker_file_name)

    def marker_path(self, state_dir: Path) -> Path:
        return Path(state_dir) / self.marker_file_name

    def read(self, state_dir: Path) -> SyncMarker | None:
        path = self.marker_path(state_dir)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            LOGGER.warning(
                "Unable to read sync marker %s: %s",
                path,
                exc,
                extra={"component": "marker", "operation": "read", "result": "unreadable"},
            )
            return None
        marker = parse_marker_text(raw)
        if marker is None:
            LOGGER.warning(
                "Ignoring malformed sync marker %s",
                path,
                extra={"component": "marker", "operation": "read", "result": "malformed"},
            )
        return marker

    def write(self, state_dir: Path, marker: SyncMarker) -> None:
        path = self.marker_path(state_dir)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.parent / f".{path.name}.{uuid.uuid4().hex}.tmp"
        try:
            with tmp_path.open("w", encoding="utf-8") as fp:
                json.dump(marker.to_payload(), fp, indent=2)
            os.replace(tmp_path, path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
