from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Any, Protocol

from claw_core.errors import RestoreError
from claw_keeper.storage.transfer import TransferError, TransferResult
from claw_keeper.store import SyncMarker, SyncMarkerStore


LOGGER = logging.getLogger("claw_keeper.storage")

RESTORE_ACTION_RESTORE = "restore"
RESTORE_ACTION_SKIP = "skip"

FRESHNESS_NO_REMOTE = "no_remote"
FRESHNESS_REMOTE_UNAVAILABLE = "remote_unavailable"
FRESHNESS_LOCAL_ABSENT = "local_absent"
FRESHNESS_REMOTE_UNMARKED = "remote_unmarked"
FRESHNESS_LOCAL_UNMARKED = "local_unmarked"
FRESHNESS_REMOTE_NEWER = "remote_newer"
FRESHNESS_LOCAL_CURRENT = "local_current"

RESTORE_OUTCOME_RESTORED = "restored"
RESTORE_OUTCOME_SKIPPED = "skipped"
RESTORE_OUTCOME_FAILED = "failed"


class Transfer(Protocol):
    def transfer(
        self,
        source: Path,
        destination: Path,
        *,
        excludes: Sequence[str] = (),
        delete: bool = False,
    ) -> TransferResult: ...


@dataclass(frozen=True)
class RestoreDecision:
    remote_exists: bool
    freshness: str
    action: str
    outcome: str
    remote_marker: SyncMarker | None = None
    local_marker: SyncMarker | None = None
    restored_entries: int = 0
    decided_at: float = 0.0
    error: dict[str, str] | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "remote_exists": self.remote_exists,
            "freshness": self.freshness,
            "action": self.action,
            "outcome": self.outcome,
            "remote_marker": self.remote_marker.to_payload() if self.remote_marker else None,
            "local_marker": self.local_marker.to_payload() if self.local_marker else None,
            "restored_entries": self.restored_entries,
            "decided_at": self.decided_at,
            "error": self.error,
        }


@dataclass(frozen=True)
class _Assessment:
    remote_exists: bool
    freshness: str
    action: str
    remote_marker: SyncMarker | None
    local_marker: SyncMarker | None


def _has_entries(path: Path) -> bool:
    try:
        return path.is_dir() and any(path.iterdir())
    except OSError:
        return False


@dataclass
class RestorePolicy:
    """Decides once per container lifetime whether to pull remote state down.

    Freshness comes from the sync marker written by the sync engine, never
    from filesystem timestamps. Copies only ever run remote -> local.
    """

    marker_store: SyncMarkerStore
    transfer: Transfer
    required_files: tuple[str, ...] = ()
    companions: tuple[tuple[Path, Path], ...] = ()
    excludes: tuple[str, ...] = ()
    clock: Callable[[], float] = time.time

    _lock: Lock = field(default_factory=Lock, init=False, repr=False)
    _decision: RestoreDecision | None = field(default=None, init=False, repr=False)
    _last_error: RestoreError | None = field(default=None, init=False, repr=False)

    @property
    def decision(self) -> RestoreDecision | None:
        return self._decision

    @property
    def last_error(self) -> RestoreError | None:
        return self._last_error

    def _local_present(self, local_state_path: Path) -> bool:
        if not local_state_path.is_dir():
            return False
        if self.required_files:
            return all((local_state_path / name).exists() for name in self.required_files)
        return _has_entries(local_state_path)

    def assess(self, local_state_path: Path, remote_state_path: Path) -> _Assessment:
        local_state_path = Path(local_state_path)
        remote_state_path = Path(remote_state_path)
        remote_exists = _has_entries(remote_state_path)
        if not remote_exists:
            return _Assessment(False, FRESHNESS_NO_REMOTE, RESTORE_ACTION_SKIP, None, None)

        remote_marker = self.marker_store.read(remote_state_path)
        local_marker = self.marker_store.read(local_state_path)
        if not self._local_present(local_state_path):
            freshness = FRESHNESS_LOCAL_ABSENT
        elif remote_marker is None:
            # No completion record: prefer the remote copy over possibly stale local state.
            freshness = FRESHNESS_REMOTE_UNMARKED
        elif local_marker is None:
            freshness = FRESHNESS_LOCAL_UNMARKED
        elif remote_marker.is_newer_than(local_marker):
            freshness = FRESHNESS_REMOTE_NEWER
        else:
            return _Assessment(True, FRESHNESS_LOCAL_CURRENT, RESTORE_ACTION_SKIP, remote_marker, local_marker)
        return _Assessment(True, freshness, RESTORE_ACTION_RESTORE, remote_marker, local_marker)

    def decide_and_restore(self, local_state_path: Path, remote_state_path: Path) -> RestoreDecision:
        with self._lock:
            if self._decision is not None:
                return self._decision
            self._decision = self._decide_and_restore_locked(Path(local_state_path), Path(remote_state_path))
            return self._decision

    def reconcile(self, local_state_path: Path, remote_state_path: Path) -> RestoreDecision:
        """Decide again when the settled decision never compared against the remote.

        A boot that degraded to local state, or whose restore failed, is
        re-decided once the remote is reachable. Any other decision is kept.
        """
        with self._lock:
            decision = self._decision
            if (
                decision is not None
                and decision.freshness != FRESHNESS_REMOTE_UNAVAILABLE
                and decision.outcome != RESTORE_OUTCOME_FAILED
            ):
                return decision
            self._last_error = None
            self._decision = self._decide_and_restore_locked(Path(local_state_path), Path(remote_state_path))
            return self._decision

    def record_remote_unavailable(self) -> RestoreDecision:
        """Settle the one-shot decision when no remote mount is available."""
        with self._lock:
            if self._decision is None:
                self._decision = RestoreDecision(
                    remote_exists=False,
                    freshness=FRESHNESS_REMOTE_UNAVAILABLE,
                    action=RESTORE_ACTION_SKIP,
                    outcome=RESTORE_OUTCOME_SKIPPED,
                    decided_at=self.clock(),
                )
            return self._decision

    def _decide_and_restore_locked(self, local_state_path: Path, remote_state_path: Path) -> RestoreDecision:
        assessment = self.assess(local_state_path, remote_state_path)
        log_extra = {"component": "restore", "operation": "decide_and_restore"}
        if assessment.action == RESTORE_ACTION_SKIP:
            LOGGER.info(
                "Restore skipped: freshness=%s remote=%s",
                assessment.freshness,
                remote_state_path,
                extra={**log_extra, "result": "skipped"},
            )
            return RestoreDecision(
                remote_exists=assessment.remote_exists,
                freshness=assessment.freshness,
                action=assessment.action,
                outcome=RESTORE_OUTCOME_SKIPPED,
                remote_marker=assessment.remote_marker,
                local_marker=assessment.local_marker,
                decided_at=self.clock(),
            )

        excludes = (*self.excludes, self.marker_store.marker_file_name)
        restored_entries = 0
        try:
            result = self.transfer.transfer(remote_state_path, local_state_path, excludes=excludes)
            restored_entries += result.entries
            for companion_local, companion_remote in self.companions:
                if not _has_entries(Path(companion_remote)):
                    continue
                result = self.transfer.transfer(Path(companion_remote), Path(companion_local), excludes=excludes)
                restored_entries += result.entries
            if assessment.remote_marker is not None:
                self.marker_store.write(local_state_path, assessment.remote_marker)
        except (TransferError, OSError) as exc:
            error = RestoreError(f"Restore from {remote_state_path} failed: {exc}")
            self._last_error = error
            LOGGER.warning(
                "Restore failed, continuing with existing local state: %s",
                exc,
                extra={**log_extra, "result": "failed", "error_class": error.error_code},
            )
            return RestoreDecision(
                remote_exists=True,
                freshness=assessment.freshness,
                action=assessment.action,
                outcome=RESTORE_OUTCOME_FAILED,
                remote_marker=assessment.remote_marker,
                local_marker=assessment.local_marker,
                restored_entries=restored_entries,
                decided_at=self.clock(),
                error=error.metadata(),
            )

        LOGGER.info(
            "Restored state from remote: freshness=%s entries=%s",
            assessment.freshness,
            restored_entries,
            extra={**log_extra, "result": "restored"},
        )
        return RestoreDecision(
            remote_exists=True,
            freshness=assessment.freshness,
            action=assessment.action,
            outcome=RESTORE_OUTCOME_RESTORED,
            remote_marker=assessment.remote_marker,
            local_marker=assessment.local_marker,
            restored_entries=restored_entries,
            decided_at=self.clock(),
        )
