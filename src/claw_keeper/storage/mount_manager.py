from __future__ import annotations

import logging
import os
import subprocess
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any

from claw_core import shared as core_shared
from claw_core.config import StorageConfig
from claw_core.errors import (
    MOUNT_REASON_BINARY_MISSING,
    MOUNT_REASON_CREDENTIALS,
    MOUNT_REASON_MOUNT_FAILED,
    MOUNT_REASON_TIMEOUT,
    MountError,
)
from claw_keeper.integrations import run_command


LOGGER = logging.getLogger("claw_keeper.storage")

MOUNT_STATUS_UNMOUNTED = "unmounted"
MOUNT_STATUS_MOUNTING = "mounting"
MOUNT_STATUS_MOUNTED = "mounted"
MOUNT_STATUS_FAILED = "mount-failed"

R2_ACCESS_KEY_ID_ENV = "R2_ACCESS_KEY_ID"
R2_SECRET_ACCESS_KEY_ENV = "R2_SECRET_ACCESS_KEY"
CF_ACCOUNT_ID_ENV = "CF_ACCOUNT_ID"
PROC_MOUNTS_PATH = Path("/proc/mounts")


@dataclass(frozen=True)
class MountResult:
    mount_path: Path
    already_mounted: bool


def _decode_mount_field(value: str) -> str:
    # /proc/mounts escapes whitespace and backslashes as octal sequences.
    return (
        value.replace("\\040", " ")
        .replace("\\011", "\t")
        .replace("\\012", "\n")
        .replace("\\134", "\\")
    )


def read_mount_points(mounts_file: Path = PROC_MOUNTS_PATH) -> set[str]:
    try:
        raw = mounts_file.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return set()
    points: set[str] = set()
    for line in raw.splitlines():
        fields = line.split()
        if len(fields) < 2:
            continue
        points.add(os.path.normpath(_decode_mount_field(fields[1])))
    return points


def r2_endpoint_url(config: StorageConfig, secrets: Mapping[str, str]) -> str:
    if config.endpoint_url:
        return config.endpoint_url
    account_id = core_shared.env_value(secrets, CF_ACCOUNT_ID_ENV)
    if not account_id:
        return ""
    return f"https://{account_id}.r2.cloudflarestorage.com"


def compile_mount_command(config: StorageConfig, *, endpoint_url: str) -> list[str]:
    return [
        config.mount_command,
        config.bucket_name,
        str(config.mount_path),
        "-o",
        f"url={endpoint_url}",
        "-o",
        "use_path_request_style",
        "-o",
        "allow_other",
    ]


class MountManager:
    """Mounts the remote bucket at a fixed local path at most once.

    Whether work is needed is decided from the kernel mount table, never from
    the mount tool's output: a tool reporting "already mounted" is treated the
    same as any other failure until the mount table says otherwise.
    """

    def __init__(
        self,
        *,
        config: StorageConfig,
        secrets: Mapping[str, str],
        read_mount_table: Callable[[], set[str]] = read_mount_points,
        command_runner: Callable[..., subprocess.CompletedProcess[str]] = run_command,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._secrets = secrets
        self._read_mount_table = read_mount_table
        self._command_runner = command_runner
        self._clock = clock
        self._lock = Lock()
        self._status = MOUNT_STATUS_UNMOUNTED
        self._mount_attempts = 0
        self._mounted_at: float | None = None
        self._last_error: MountError | None = None

    @property
    def mount_path(self) -> Path:
        return self._config.mount_path

    @property
    def status(self) -> str:
        return self._status

    @property
    def mount_attempts(self) -> int:
        return self._mount_attempts

    @property
    def last_error(self) -> MountError | None:
        return self._last_error

    def is_mounted(self) -> bool:
        return os.path.normpath(str(self._config.mount_path)) in self._read_mount_table()

    def ensure_mounted(self) -> MountResult:
        with self._lock:
            if self.is_mounted():
                self._status = MOUNT_STATUS_MOUNTED
                self._last_error = None
                if self._mounted_at is None:
                    self._mounted_at = self._clock()
                return MountResult(mount_path=self._config.mount_path, already_mounted=True)
            self._status = MOUNT_STATUS_MOUNTING
            try:
                self._mount_locked()
            except MountError as exc:
                self._status = MOUNT_STATUS_FAILED
                self._last_error = exc
                LOGGER.warning(
                    "Bucket mount failed: bucket=%s mount_path=%s reason=%s detail=%s",
                    self._config.bucket_name,
                    self._config.mount_path,
                    exc.reason,
                    exc,
                    extra={
                        "component": "mount",
                        "operation": "ensure_mounted",
                        "result": "failed",
                        "error_class": exc.error_code,
                    },
                )
                raise
            self._status = MOUNT_STATUS_MOUNTED
            self._last_error = None
            self._mounted_at = self._clock()
            return MountResult(mount_path=self._config.mount_path, already_mounted=False)

    def _mount_env(self) -> dict[str, str]:
        access_key = core_shared.env_value(self._secrets, R2_ACCESS_KEY_ID_ENV)
        secret_key = core_shared.env_value(self._secrets, R2_SECRET_ACCESS_KEY_ENV)
        if not access_key or not secret_key:
            raise MountError(
                f"{R2_ACCESS_KEY_ID_ENV} and {R2_SECRET_ACCESS_KEY_ENV} are required to mount the bucket.",
                reason=MOUNT_REASON_CREDENTIALS,
            )
        return {"AWSACCESSKEYID": access_key, "AWSSECRETACCESSKEY": secret_key}

    def _mount_locked(self) -> None:
        env = self._mount_env()
        endpoint_url = r2_endpoint_url(self._config, self._secrets)
        if not endpoint_url:
            raise MountError(
                f"storage.endpoint_url or {CF_ACCOUNT_ID_ENV} is required to mount the bucket.",
                reason=MOUNT_REASON_CREDENTIALS,
            )

        # Only ever create the mount point; an existing directory may already hold bucket contents.
        self._config.mount_path.mkdir(parents=True, exist_ok=True)
        cmd = compile_mount_command(self._config, endpoint_url=endpoint_url)
        self._mount_attempts += 1
        started_at = time.monotonic()
        try:
            result = self._command_runner(cmd, env=env, timeout=self._config.mount_timeout_seconds)
        except FileNotFoundError as exc:
            raise MountError(
                f"Mount binary not found: {self._config.mount_command}",
                reason=MOUNT_REASON_BINARY_MISSING,
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise MountError(
                f"Mount command timed out after {self._config.mount_timeout_seconds:g}s",
                reason=MOUNT_REASON_TIMEOUT,
            ) from exc
        elapsed_ms = int((time.monotonic() - started_at) * 1000)

        if self.is_mounted():
            LOGGER.info(
                "Bucket mounted: bucket=%s mount_path=%s exit_code=%s",
                self._config.bucket_name,
                self._config.mount_path,
                result.returncode,
                extra={
                    "component": "mount",
                    "operation": "ensure_mounted",
                    "result": "mounted",
                    "duration_ms": elapsed_ms,
                },
            )
            return
        output = ((result.stdout or "") + (result.stderr or "")).strip()
        raise MountError(
            f"Mount command exited with code {result.returncode} and {self._config.mount_path} "
            f"is not in the mount table: {output[:500]}",
            reason=MOUNT_REASON_MOUNT_FAILED,
        )

    def status_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "bucket_name": self._config.bucket_name,
            "mount_path": str(self._config.mount_path),
            "status": self._status,
            "mount_attempts": self._mount_attempts,
            "mounted_at": self._mounted_at,
        }
        if self._last_error is not None:
            payload["error"] = self._last_error.metadata()
        return payload
