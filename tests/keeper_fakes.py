from __future__ import annotations

import fnmatch
import shutil
import subprocess
import sys
from pathlib import Path
from threading import Event, Lock
from typing import Any, Callable, Sequence

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from claw_keeper.runtime import ProcessHandle, ProcessSignature, ProcessSpec
from claw_keeper.storage.transfer import TransferError, TransferResult


class FakeClock:
    def __init__(self, start: float = 0.0) -> None:
        self.now = float(start)
        self.sleeps: list[float] = []
        self.on_sleep: Callable[[float], None] | None = None

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep is not None:
            self.on_sleep(self.now)


class FakePort:
    """Stands in for the gateway's TCP port."""

    def __init__(self, *, open_: bool = False) -> None:
        self.open = open_
        self.probes = 0
        self.release: Event | None = None

    def probe(self) -> bool:
        self.probes += 1
        if self.release is not None and not self.release.is_set():
            return False
        return self.open

    def factory(self, host: str, port: int) -> Callable[[], bool]:
        del host, port
        return self.probe


class FakeTransfer:
    """Copies directory trees in-process, honoring fnmatch-style excludes."""

    def __init__(self, *, events: list[str] | None = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self.fail_with: Exception | None = None
        self.started = Event()
        self.release: Event | None = None
        self.events = events
        self._lock = Lock()

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
        with self._lock:
            self.calls.append(
                {"source": source, "destination": destination, "excludes": tuple(excludes), "delete": delete}
            )
            if self.events is not None:
                self.events.append(f"transfer:{source.name}->{destination.name}")
        self.started.set()
        if self.release is not None:
            self.release.wait(5)
        if self.fail_with is not None:
            raise self.fail_with
        if not source.is_dir():
            raise TransferError(f"Transfer source is not a directory: {source}")
        destination.mkdir(parents=True, exist_ok=True)
        entries = 0
        for path in sorted(source.rglob("*")):
            relative = path.relative_to(source)
            if any(fnmatch.fnmatch(part, pattern) for part in relative.parts for pattern in excludes):
                continue
            target = destination / relative
            if path.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(path, target)
            entries += 1
        return TransferResult(source=source, destination=destination, entries=entries, duration_ms=0)


class FakeProcessRegistry:
    """In-memory container process table."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._next_pid = 4100
        self.processes: dict[int, dict[str, Any]] = {}
        self.started: list[ProcessSpec] = []
        self.terminated: list[int] = []
        self.on_start: Callable[[ProcessHandle], None] | None = None
        self.events: list[str] | None = None

    def _allocate(self, command_line: str, *, running: bool = True, output: str = "") -> ProcessHandle:
        with self._lock:
            pid = self._next_pid
            self._next_pid += 1
            self.processes[pid] = {
                "command_line": command_line,
                "running": running,
                "exit_code": None,
                "output": output,
            }
        return ProcessHandle(pid=pid, command_line=command_line, started_at=0.0)

    def add_existing(self, command_line: str, *, running: bool = True) -> ProcessHandle:
        return self._allocate(command_line, running=running)

    def exit(self, pid: int, code: int, *, output: str = "") -> None:
        with self._lock:
            entry = self.processes[pid]
            entry["running"] = False
            entry["exit_code"] = code
            if output:
                entry["output"] += output

    def list_matching(self, signature: ProcessSignature) -> list[ProcessHandle]:
        with self._lock:
            items = list(self.processes.items())
        return [
            ProcessHandle(pid=pid, command_line=entry["command_line"], started_at=0.0)
            for pid, entry in items
            if entry["running"] and signature.matches(entry["command_line"])
        ]

    def start(self, spec: ProcessSpec) -> ProcessHandle:
        handle = self._allocate(" ".join(spec.command))
        with self._lock:
            self.started.append(spec)
            if self.events is not None:
                self.events.append("start")
        if self.on_start is not None:
            self.on_start(handle)
        return handle

    def is_running(self, handle: ProcessHandle) -> bool:
        with self._lock:
            entry = self.processes.get(handle.pid)
            return bool(entry and entry["running"])

    def exit_code(self, handle: ProcessHandle) -> int | None:
        with self._lock:
            entry = self.processes.get(handle.pid)
            return entry["exit_code"] if entry else None

    def terminate(self, handle: ProcessHandle, *, timeout_seconds: float = 4.0) -> None:
        del timeout_seconds
        with self._lock:
            entry = self.processes.get(handle.pid)
            if entry is None or not entry["running"]:
                return
            entry["running"] = False
            entry["exit_code"] = -15
            self.terminated.append(handle.pid)

    def output_tail(self, handle: ProcessHandle, *, lines: int = 50) -> str:
        with self._lock:
            entry = self.processes.get(handle.pid)
            output = entry["output"] if entry else ""
        return "".join(output.splitlines(keepends=True)[-lines:])


class FakeMountRunner:
    """Mount command runner that adds the mount point to a fake mount table."""

    def __init__(self, mount_table: set[str], *, returncode: int = 0, mounts: bool = True) -> None:
        self.mount_table = mount_table
        self.returncode = returncode
        self.mounts = mounts
        self.calls: list[dict[str, Any]] = []
        self.events: list[str] | None = None

    def __call__(self, cmd: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        self.calls.append({"cmd": list(cmd), **kwargs})
        if self.events is not None:
            self.events.append("mount")
        if self.mounts:
            self.mount_table.add(str(cmd[2]))
        return subprocess.CompletedProcess(cmd, self.returncode, stdout="", stderr="")
