from __future__ import annotations

import logging
import subprocess
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from claw_keeper.integrations import run_command


LOGGER = logging.getLogger("claw_keeper.storage")


class TransferError(RuntimeError):
    """The file transfer utility failed."""


@dataclass(frozen=True)
class TransferResult:
    source: Path
    destination: Path
    entries: int
    duration_ms: int


def compile_rsync_command(
    source: Path,
    destination: Path,
    *,
    excludes: Sequence[str] = (),
    delete: bool = False,
    rsync_binary: str = "rsync",
) -> list[str]:
    # The bucket mount cannot store modification times, so quick-check by
    # size+mtime would never match; compare content instead.
    cmd = [
        rsync_binary,
        "--recursive",
        "--no-times",
        "--omit-dir-times",
        "--checksum",
        "--out-format=%n",
    ]
    for pattern in excludes:
        cmd.append(f"--exclude={pattern}")
    if delete:
        cmd.append("--delete")
    cmd.extend([f"{Path(source)}/", f"{Path(destination)}/"])
    return cmd


def count_transferred_entries(output: str) -> int:
    return sum(1 for line in str(output or "").splitlines() if line.strip() and line.strip() != "./")


class RsyncTransfer:
    """One-directional, recursive copy between two directory trees."""

    def __init__(
        self,
        *,
        timeout_seconds: float,
        rsync_binary: str = "rsync",
        command_runner: Callable[..., subprocess.CompletedProcess[str]] = run_command,
    ) -> None:
        self._timeout_seconds = float(timeout_seconds)
        self._rsync_binary = rsync_binary
        self._command_runner = command_runner

    def transfer(
        self,
        source: Path,
        destination: Path,
        *,
        excludes: Sequence[str] = (),
        delete: bool = False,
    ) -> TransferResult:
        source = Path(source)
        destination = Path(destination)
        if not source.is_dir():
            raise TransferError(f"Transfer source is not a directory: {source}")
        destination.mkdir(parents=True, exist_ok=True)
        cmd = compile_rsync_command(
            source,
            destination,
            excludes=excludes,
            delete=delete,
            rsync_binary=self._rsync_binary,
        )
        started_at = time.monotonic()
        try:
            result = self._command_runner(cmd, timeout=self._timeout_seconds)
        except FileNotFoundError as exc:
            raise TransferError(f"Transfer binary not found: {self._rsync_binary}") from exc
        except subprocess.TimeoutExpired as exc:
            raise TransferError(f"Transfer timed out after {self._timeout_seconds:g}s") from exc
        duration_ms = int((time.monotonic() - started_at) * 1000)
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise TransferError(f"{self._rsync_binary} exited with code {result.returncode}: {stderr[:500]}")
        entries = count_transferred_entries(result.stdout or "")
        LOGGER.debug(
            "Transfer completed: source=%s destination=%s entries=%s",
            source,
            destination,
            entries,
            extra={"component": "transfer", "operation": "rsync", "result": "ok", "duration_ms": duration_ms},
        )
        return TransferResult(source=source, destination=destination, entries=entries, duration_ms=duration_ms)
