from __future__ import annotations

import logging
import os
import subprocess
import time
from collections.abc import Callable, Mapping, Sequence
from datetime import datetime, timezone
from pathlib import Path
from threading import Event, Lock, Thread
from typing import Any

from claw_core.config import KeeperConfig
from claw_core.errors import MountError, SyncError, TypedKeeperError
from claw_core.paths import keeper_paths, resolve_keeper_data_dir
from claw_keeper.domains import GatewayLifecycleManager, GatewayProcess
from claw_keeper.integrations import run_command
from claw_keeper.runtime import ContainerProcessRegistry, ProcessRegistry, ReadinessResult, tcp_probe, wait_until_ready
from claw_keeper.runtime.provider_config import ASSISTANT_CONFIG_FILE_NAME, configure_ai_gateway_providers
from claw_keeper.services.gateway_service import GatewayService
from claw_keeper.services.status_service import StatusService
from claw_keeper.services.storage_service import StorageService
from claw_keeper.storage import (
    SYNC_OUTCOME_FAILURE,
    SYNC_TRIGGER_MANUAL,
    SYNC_TRIGGER_PERIODIC,
    MountManager,
    PeriodicSyncScheduler,
    RestoreDecision,
    RestorePolicy,
    RsyncTransfer,
    SyncEngine,
    SyncRun,
)
from claw_keeper.storage.mount_manager import read_mount_points
from claw_keeper.storage.restore_policy import FRESHNESS_REMOTE_UNAVAILABLE, RESTORE_OUTCOME_FAILED, Transfer
from claw_keeper.store import SyncMarkerStore


LOGGER = logging.getLogger("claw_keeper.sandbox")

FAILURE_CATEGORY_MOUNT = "mount"
FAILURE_CATEGORY_RESTORE = "restore"
FAILURE_CATEGORY_SYNC = "sync"
FAILURE_CATEGORY_GATEWAY = "gateway"


def _iso_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class SandboxState:
    """Owns the keeper components and the order they run in.

    Boot order is mount, restore, gateway start, readiness, periodic sync.
    Mount and restore run once per container lifetime; the periodic sync
    scheduler only starts after the gateway first reports ready.
    """

    def __init__(
        self,
        *,
        config: KeeperConfig,
        secrets: Mapping[str, str] | None = None,
        data_dir: Path | None = None,
        registry: ProcessRegistry | None = None,
        transfer: Transfer | None = None,
        read_mount_table: Callable[[], set[str]] = read_mount_points,
        command_runner: Callable[..., subprocess.CompletedProcess[str]] = run_command,
        probe_factory: Callable[[str, int], Callable[[], bool]] = tcp_probe,
        wait: Callable[..., ReadinessResult] = wait_until_ready,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self._secrets: Mapping[str, str] = dict(os.environ) if secrets is None else secrets
        self.data_dir = Path(data_dir) if data_dir is not None else resolve_keeper_data_dir(config.runtime.values)
        self.paths = keeper_paths(self.data_dir, gateway_log_file=config.gateway.log_file)
        self._clock = clock

        sync_config = config.sync
        mount_path = config.storage.mount_path
        self.marker_store = SyncMarkerStore(marker_file_name=sync_config.marker_file_name)
        self.transfer = transfer or RsyncTransfer(
            timeout_seconds=sync_config.transfer_timeout_seconds,
            command_runner=command_runner,
        )
        self.mount_manager = MountManager(
            config=config.storage,
            secrets=self._secrets,
            read_mount_table=read_mount_table,
            command_runner=command_runner,
            clock=clock,
        )
        self.restore_policy = RestorePolicy(
            marker_store=self.marker_store,
            transfer=self.transfer,
            required_files=sync_config.required_files,
            companions=tuple((target.local, mount_path / target.remote) for target in sync_config.targets[1:]),
            excludes=sync_config.excludes,
            clock=clock,
        )
        self.sync_engine = SyncEngine(
            config=sync_config,
            mount_path=mount_path,
            transfer=self.transfer,
            marker_store=self.marker_store,
            ensure_remote=self._ensure_remote_for_sync,
            clock=clock,
        )
        self.gateway = GatewayLifecycleManager(
            config=config.gateway,
            registry=registry or ContainerProcessRegistry(),
            secrets=self._secrets,
            log_file=self.paths.gateway_log_file,
            probe_factory=probe_factory,
            wait=wait,
            prepare_start=self._prepare_gateway_config,
            command_runner=command_runner,
        )
        self.scheduler = PeriodicSyncScheduler(
            interval_seconds=sync_config.interval_seconds,
            run_periodic=self.run_periodic_sync,
        )

        self._storage_lock = Lock()
        self._storage_prepared = False
        self._failures_lock = Lock()
        self._failures: dict[str, dict[str, str]] = {}
        self._startup_boot_lock = Lock()
        self._startup_boot_thread: Thread | None = None
        self._startup_boot_scheduled = False

        self.gateway_service = GatewayService(state=self)
        self.storage_service = StorageService(state=self)
        self.status_service = StatusService(state=self)

    def _record_failure(self, category: str, metadata: Mapping[str, str]) -> None:
        entry = {
            "error_code": str(metadata.get("error_code") or ""),
            "failure_class": str(metadata.get("failure_class") or ""),
            "user_message": str(metadata.get("user_message") or ""),
            "at": _iso_now(),
        }
        with self._failures_lock:
            self._failures[category] = entry

    def _clear_failure(self, category: str) -> None:
        with self._failures_lock:
            self._failures.pop(category, None)

    def failures_payload(self) -> dict[str, dict[str, str]]:
        with self._failures_lock:
            return {category: dict(entry) for category, entry in self._failures.items()}

    def prepare_storage(self) -> RestoreDecision | None:
        """Mount the bucket and run the one-shot restore decision.

        A mount failure degrades to local-only state when
        ``storage.tolerate_unmounted`` is set and is raised otherwise.
        """
        with self._storage_lock:
            if self._storage_prepared:
                return self.restore_policy.decision
            try:
                self.mount_manager.ensure_mounted()
            except MountError as exc:
                self._record_failure(FAILURE_CATEGORY_MOUNT, exc.metadata())
                if not self.config.storage.tolerate_unmounted:
                    raise
                LOGGER.warning(
                    "Continuing without durable storage: %s",
                    exc,
                    extra={"component": "sandbox", "operation": "prepare_storage", "result": "degraded"},
                )
                decision = self.restore_policy.record_remote_unavailable()
            else:
                self._clear_failure(FAILURE_CATEGORY_MOUNT)
                primary = self.config.sync.primary_target
                decision = self.restore_policy.decide_and_restore(
                    primary.local,
                    self.config.storage.mount_path / primary.remote,
                )
                if decision.outcome == RESTORE_OUTCOME_FAILED and self.restore_policy.last_error is not None:
                    self._record_failure(FAILURE_CATEGORY_RESTORE, self.restore_policy.last_error.metadata())
            self._storage_prepared = True
            return decision

    def _ensure_remote_for_sync(self) -> None:
        """Mount the bucket and make sure a restore decision covers it.

        Local state is never pushed before it has been compared against the
        remote. A boot that ran without the mount restores here, the first
        time a sync finds the mount available.
        """
        with self._storage_lock:
            decision = self.restore_policy.decision
            if decision is None:
                raise SyncError("No restore decision has been made yet; refusing to overwrite remote state.")
            self.mount_manager.ensure_mounted()
            if decision.freshness != FRESHNESS_REMOTE_UNAVAILABLE and decision.outcome != RESTORE_OUTCOME_FAILED:
                return
            self._clear_failure(FAILURE_CATEGORY_MOUNT)
            LOGGER.info(
                "Remote storage available after boot; deciding restore before the first push",
                extra={"component": "sandbox", "operation": "reconcile_restore", "result": "started"},
            )
            primary = self.config.sync.primary_target
            decision = self.restore_policy.reconcile(
                primary.local,
                self.config.storage.mount_path / primary.remote,
            )
            if decision.outcome == RESTORE_OUTCOME_FAILED:
                if self.restore_policy.last_error is not None:
                    self._record_failure(FAILURE_CATEGORY_RESTORE, self.restore_policy.last_error.metadata())
                raise SyncError("Restore from remote storage failed; refusing to overwrite remote state.")
            self._clear_failure(FAILURE_CATEGORY_RESTORE)

    def _prepare_gateway_config(self) -> bool:
        config_path = self.config.sync.primary_target.local / ASSISTANT_CONFIG_FILE_NAME
        return configure_ai_gateway_providers(config_path, self._secrets)

    def ensure_gateway_running(
        self,
        *,
        timeout: float | None = None,
        cancel_event: Event | None = None,
    ) -> GatewayProcess:
        self.prepare_storage()
        try:
            process = self.gateway.ensure_gateway_running(timeout=timeout, cancel_event=cancel_event)
        except TypedKeeperError as exc:
            self._record_failure(FAILURE_CATEGORY_GATEWAY, exc.metadata())
            raise
        self._clear_failure(FAILURE_CATEGORY_GATEWAY)
        self.scheduler.start()
        return process

    def _record_sync_run(self, run: SyncRun) -> SyncRun:
        if run.outcome == SYNC_OUTCOME_FAILURE and run.error is not None:
            self._record_failure(FAILURE_CATEGORY_SYNC, run.error)
        elif run.succeeded:
            self._clear_failure(FAILURE_CATEGORY_SYNC)
        return run

    def trigger_manual_sync(self) -> SyncRun:
        return self._record_sync_run(self.sync_engine.run_sync(SYNC_TRIGGER_MANUAL))

    def run_periodic_sync(self) -> SyncRun:
        return self._record_sync_run(self.sync_engine.run_sync(SYNC_TRIGGER_PERIODIC))

    def gateway_output_tail(self, lines: int = 100) -> str:
        return self.gateway.output_tail(lines=lines)

    def run_gateway_cli(self, args: Sequence[str], *, timeout: float | None = None) -> subprocess.CompletedProcess[str]:
        self.prepare_storage()
        return self.gateway.run_cli(args, timeout=timeout)

    def status_payload(self) -> dict[str, Any]:
        decision = self.restore_policy.decision
        sync_payload = self.sync_engine.status_payload()
        sync_payload["scheduler_running"] = self.scheduler.running
        return {
            "mount": self.mount_manager.status_payload(),
            "restore": decision.to_payload() if decision else None,
            "sync": sync_payload,
            "gateway": self.gateway.status_payload(),
            "failures": self.failures_payload(),
        }

    def _startup_boot_worker(self) -> None:
        started_at = time.monotonic()
        try:
            process = self.ensure_gateway_running()
        except TypedKeeperError as exc:
            LOGGER.error(
                "Startup boot failed: %s",
                exc,
                extra={
                    "component": "sandbox",
                    "operation": "startup_boot",
                    "result": "failed",
                    "duration_ms": int((time.monotonic() - started_at) * 1000),
                    "error_class": exc.error_code,
                },
            )
            return
        LOGGER.info(
            "Startup boot completed: gateway pid=%s",
            process.pid,
            extra={
                "component": "sandbox",
                "operation": "startup_boot",
                "result": "ready",
                "duration_ms": int((time.monotonic() - started_at) * 1000),
            },
        )

    def schedule_startup_boot(self) -> None:
        with self._startup_boot_lock:
            if self._startup_boot_scheduled:
                return
            self._startup_boot_scheduled = True
            worker = Thread(target=self._startup_boot_worker, daemon=True, name="claw-keeper-startup-boot")
            self._startup_boot_thread = worker
            worker.start()

    def shutdown(self) -> dict[str, bool]:
        was_running = self.scheduler.running
        self.scheduler.stop()
        return {"scheduler_stopped": was_running}
