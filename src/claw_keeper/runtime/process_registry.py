from __future__ import annotations

import os
import signal
import subprocess
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock
from typing import Protocol, Sequence


PROC_ROOT = Path("/proc")


@dataclass(frozen=True)
class ProcessSignature:
    match_patterns: tuple[str, ...]
    exclude_patterns: tuple[str, ...] = ()

    def matches(self, command_line: str) -> bool:
        text = " ".join(str(command_line or "").split())
        if not text:
            return False
        if any(pattern in text for pattern in self.exclude_patterns):
            return False
        return any(pattern in text for pattern in self.match_patterns)


@dataclass(frozen=True)
class ProcessSpec:
    command: tuple[str, ...]
    env: dict[str, str] = field(default_factory=dict)
    cwd: Path | None = None
    log_file: Path | None = None


@dataclass(frozen=True)
class ProcessHandle:
    pid: int
    command_line: str
    started_at: float | None = None
    log_file: Path | None = None


class ProcessRegistry(Protocol):
    def list_matching(self, signature: ProcessSignature) -> list[ProcessHandle]: ...

    def start(self, spec: ProcessSpec) -> ProcessHandle: ...

    def is_running(self, handle: ProcessHandle) -> bool: ...

    def exit_code(self, handle: ProcessHandle) -> int | None: ...

    def terminate(self, handle: ProcessHandle, *, timeout_seconds: float = 4.0) -> None: ...

    def output_tail(self, handle: ProcessHandle, *, lines: int = 50) -> str: ...


def is_process_running(pid: int | None) -> bool:
    if pid is None:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return False


def read_tail_lines(path: Path | None, lines: int) -> str:
    if path is None or lines <= 0:
        return ""
    try:
        with Path(path).open("r", encoding="utf-8", errors="ignore") as handle:
            return "".join(deque(handle, maxlen=int(lines)))
    except OSError:
        return ""


class ContainerProcessRegistry:
    """Process registry backed by the container's /proc table.

    Started children are tracked until they are known to have exited: a
    completed terminate() drops its child, and start() drops any other child
    that has exited since.
    """

    def __init__(self, *, proc_root: Path = PROC_ROOT) -> None:
        self._proc_root = Path(proc_root)
        self._lock = Lock()
        self._children: dict[int, subprocess.Popen[bytes]] = {}
        self._log_files: dict[int, Path] = {}

    def _command_line(self, pid_dir: Path) -> str:
        try:
            raw = (pid_dir / "cmdline").read_bytes()
        except OSError:
            return ""
        return raw.replace(b"\x00", b" ").decode("utf-8", errors="replace").strip()

    def _is_zombie(self, pid_dir: Path) -> bool:
        try:
            stat_text = (pid_dir / "stat").read_text(encoding="utf-8", errors="replace")
        except OSError:
            return True
        # Field 3 follows the parenthesised command name, which may contain spaces.
        _, _, remainder = stat_text.rpartition(")")
        fields = remainder.split()
        return bool(fields) and fields[0] in {"Z", "X"}

    def list_matching(self, signature: ProcessSignature) -> list[ProcessHandle]:
        own_pid = os.getpid()
        handles: list[ProcessHandle] = []
        try:
            entries = list(self._proc_root.iterdir())
        except OSError:
            return handles
        for entry in entries:
            if not entry.name.isdigit():
                continue
            pid = int(entry.name)
            if pid == own_pid:
                continue
            command_line = self._command_line(entry)
            if not signature.matches(command_line) or self._is_zombie(entry):
                continue
            with self._lock:
                log_file = self._log_files.get(pid)
            handles.append(ProcessHandle(pid=pid, command_line=command_line, log_file=log_file))
        return sorted(handles, key=lambda handle: handle.pid)

    def start(self, spec: ProcessSpec) -> ProcessHandle:
        env = dict(os.environ)
        env.update({str(key): str(value) for key, value in spec.env.items()})
        log_handle = None
        if spec.log_file is not None:
            spec.log_file.parent.mkdir(parents=True, exist_ok=True)
            log_handle = spec.log_file.open("ab")
        try:
            process = subprocess.Popen(
                list(spec.command),
                cwd=str(spec.cwd) if spec.cwd else None,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log_handle if log_handle is not None else subprocess.DEVNULL,
                stderr=subprocess.STDOUT,
                close_fds=True,
                start_new_session=True,
            )
        finally:
            if log_handle is not None:
                log_handle.close()
        with self._lock:
            self._prune_exited_locked()
            self._children[process.pid] = process
            if spec.log_file is not None:
                self._log_files[process.pid] = spec.log_file
        return ProcessHandle(
            pid=process.pid,
            command_line=command_line_for(spec.command),
            started_at=time.time(),
            log_file=spec.log_file,
        )

    def _prune_exited_locked(self) -> None:
        for pid, child in list(self._children.items()):
            if child.poll() is not None:
                del self._children[pid]
                self._log_files.pop(pid, None)

    def _forget_exited(self, pid: int) -> None:
        with self._lock:
            child = self._children.get(pid)
            if child is not None and child.poll() is None:
                return
            self._children.pop(pid, None)
            self._log_files.pop(pid, None)

    def _child(self, pid: int) -> subprocess.Popen[bytes] | None:
        with self._lock:
            return self._children.get(pid)

    def is_running(self, handle: ProcessHandle) -> bool:
        child = self._child(handle.pid)
        if child is not None:
            return child.poll() is None
        return is_process_running(handle.pid)

    def exit_code(self, handle: ProcessHandle) -> int | None:
        child = self._child(handle.pid)
        if child is None:
            return None
        return child.poll()

    def terminate(self, handle: ProcessHandle, *, timeout_seconds: float = 4.0) -> None:
        pid = handle.pid
        if not self.is_running(handle):
            self._forget_exited(pid)
            return
        try:
            pgid = os.getpgid(pid)
        except (ProcessLookupError, OSError):
            pgid = None

        try:
            if pgid:
                os.killpg(pgid, signal.SIGTERM)
            else:
                os.kill(pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError, OSError):
            try:
                os.kill(pid, signal.SIGTERM)
            except (ProcessLookupError, PermissionError, OSError):
                self._forget_exited(pid)
                return

        deadline = time.monotonic() + max(0.1, float(timeout_seconds))
        while time.monotonic() < deadline:
            if not self.is_running(handle):
                self._forget_exited(pid)
                return
            time.sleep(0.1)

        try:
            if pgid:
                os.killpg(pgid, signal.SIGKILL)
            else:
                os.kill(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError, OSError):
            return
        child = self._child(pid)
        if child is not None:
            try:
                child.wait(timeout=1.0)
            except subprocess.TimeoutExpired:
                return
        self._forget_exited(pid)

    def output_tail(self, handle: ProcessHandle, *, lines: int = 50) -> str:
        log_file = handle.log_file
        if log_file is None:
            with self._lock:
                log_file = self._log_files.get(handle.pid)
        return read_tail_lines(log_file, lines)


def command_line_for(command: Sequence[str]) -> str:
    return " ".join(str(part) for part in command)
