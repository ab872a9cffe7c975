from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any

from claw_core.config import SyncConfig
from claw_core.errors import SyncError, TypedKeeperError
from claw_keeper.storage.restore_policy import Transfer
from claw_keeper.storage.transfer import TransferError
from claw_keeper.store import SyncMarker, SyncMarkerStore


LOGGER = logging.getLogger("claw_keeper.sync")

SYNC_TRIGGER_PERIODIC = "periodic"
SYNC_TRIGGER_MANUAL = "manual"
SYNC_TRIGGERS = (SYNC_TRIGGER_PERIODIC, SYNC_TRIGGER_MANUAL)

SYNC_OUTCOME_SUCCESS = "success"
SYNC_OUTCOME_FAILURE = "failure"
SYNC_OUTCOME_SKIPPED = "skipped-due-to-concurrent-run"


def _iso_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class SyncRun:
    trigger: str
    started_at: float
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    outcome: str = ""
    finished_at: float | None = None
    transferred_entries: int = 0
    duration_ms: int = 0
    marker: SyncMarker | None = None
    error: dict[str, str] | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == SYNC_OUTCOME_SUCCESS

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "trigger": self.trigger,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "outcome": self.outcome,
            "transferred_entries": self.transferred_entries,
            "duration_ms": self.duration_ms,
            "marker": self.marker.to_payload() if self.marker else None,
            "error": self.error,
        }


class SyncEngine:
    """Pushes local state to the mounted bucket, one run at a time.

    A run that finds another in progress returns immediately with
    ``skipped-due-to-concurrent-run``. Failures are recorded on the returned
    run and never raised.
    """

    def __init__(
        self,
        *,
        config: SyncConfig,
        mount_path: Path,
        transfer: Transfer,
        marker_store: SyncMarkerStore,
        ensure_remote: Callable[[], Any],
        clock: Callable[[], float] = time.time,
        iso_now: Callable[[], str] = _iso_now,
    ) -> None:
        self._config = config
        self._mount_path = Path(mount_path)
        self._transfer = transfer
        self._marker_store = marker_store
        self._ensure_remote = ensure_remote
        self._clock = clock
        self._iso_now = iso_now
        self._lease = Lock()
        self._state_lock = Lock()
        self._active_run: SyncRun | None = None
        self._last_run: SyncRun | None = None
        self._last_success: SyncRun | None = None

    @property
    def in_progress(self) -> bool:
        return self._lease.locked()

    @property
    def last_run(self) -> SyncRun | None:
        with self._state_lock:
            return self._last_run

    @property
    def last_success(self) -> SyncRun | None:
        with self._state_lock:
            return self._last_success

    def remote_path_for(self, remote: str) -> Path:
        return self._mount_path / remote

    @contextmanager
    def _sync_lease(self) -> Iterator[bool]:
        acquired = self._lease.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                self._lease.release()

    def run_sync(self, trigger: str) -> SyncRun:
        normalized_trigger = str(trigger or "").strip().lower()
        if normalized_trigger not in SYNC_TRIGGERS:
            raise ValueError(f"Unknown sync trigger: {trigger!r}")
        run = SyncRun(trigger=normalized_trigger, started_at=self._clock())
        with self._sync_lease() as acquired:
            if not acquired:
                run.outcome = SYNC_OUTCOME_SKIPPED
                run.finished_at = self._clock()
                LOGGER.info(
                    "Sync skipped: another run is in progress",
                    extra={
                        "component": "sync",
                        "operation": "run_sync",
                        "trigger": normalized_trigger,
                        "result": SYNC_OUTCOME_SKIPPED,
                    },
                )
                return run
            with self._state_lock:
                self._active_run = run
            try:
                self._execute(run)
            finally:
                with self._state_lock:
                    self._active_run = None
                    self._last_run = run
                    if run.succeeded:
                        self._last_success = run
        return run

    def _check_local_state(self) -> None:
        primary = self._config.primary_target
        if not primary.local.is_dir():
            raise SyncError(f"Local state directory does not exist: {primary.local}")
        missing = [name for name in self._config.required_files if not (primary.local / name).exists()]
        if missing:
            raise SyncError(
                f"Local state in {primary.local} is missing {', '.join(missing)}; refusing to overwrite remote state."
            )

    def _next_marker(self) -> SyncMarker:
        primary = self._config.primary_target
        sequences = [
            marker.sequence
            for marker in (
                self._marker_store.read(primary.local),
                self._marker_store.read(self.remote_path_for(primary.remote)),
            )
            if marker is not None
        ]
        return SyncMarker(sequence=max(sequences, default=0) + 1, synced_at=self._iso_now())

    def _execute(self, run: SyncRun) -> None:
        started_at = time.monotonic()
        log_extra = {"component": "sync", "operation": "run_sync", "trigger": run.trigger}
        try:
            self._ensure_remote()
            self._check_local_state()
            excludes = (*self._config.excludes, self._marker_store.marker_file_name)
            transferred = 0
            for target in self._config.targets:
                if not target.local.is_dir():
                    LOGGER.debug(
                        "Sync target %s skipped: %s does not exist",
                        target.name,
                        target.local,
                        extra={**log_extra, "result": "target_missing"},
                    )
                    continue
                result = self._transfer.transfer(
                    target.local,
                    self.remote_path_for(target.remote),
                    excludes=excludes,
                    delete=self._config.mirror_deletes,
                )
                transferred += result.entries
            primary = self._config.primary_target
            marker = self._next_marker()
            self._marker_store.write(self.remote_path_for(primary.remote), marker)
            self._marker_store.write(primary.local, marker)
        except (TypedKeeperError, TransferError, OSError) as exc:
            error = exc if isinstance(exc, SyncError) else SyncError(str(exc))
            run.outcome = SYNC_OUTCOME_FAILURE
            run.error = error.metadata()
            run.finished_at = self._clock()
            run.duration_ms = int((time.monotonic() - started_at) * 1000)
            LOGGER.warning(
                "Sync failed: %s",
                exc,
                extra={
                    **log_extra,
                    "result": SYNC_OUTCOME_FAILURE,
                    "duration_ms": run.duration_ms,
                    "error_class": type(exc).__name__,
                },
            )
            return

        run.outcome = SYNC_OUTCOME_SUCCESS
        run.transferred_entries = transferred
        run.marker = marker
        run.finished_at = self._clock()
        run.duration_ms = int((time.monotonic() - started_at) * 1000)
        LOGGER.info(
            "Sync completed: entries=%s sequence=%s",
            transferred,
            marker.sequence,
            extra={**log_extra, "result": SYNC_OUTCOME_SUCCESS, "duration_ms": run.duration_ms},
        )

    def status_payload(self) -> dict[str, Any]:
        with self._state_lock:
            last_run = self._last_run
            last_success = self._last_success
            active_run = self._active_run
        return {
            "in_progress": active_run is not None,
            "active_run": active_run.to_payload() if active_run else None,
            "last_run": last_run.to_payload() if last_run else None,
            "last_success_at": last_success.finished_at if last_success else None,
            "interval_seconds": self._config.interval_seconds,
        }
