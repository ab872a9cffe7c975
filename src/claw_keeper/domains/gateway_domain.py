from __future__ import annotations

import concurrent.futures
import logging
import subprocess
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from threading import Event, Lock
from typing import Any, Sequence

from claw_core.config import HALF_STARTED_POLICY_RESTART, GatewayConfig
from claw_core.errors import ProcessStartError, ReadinessTimeoutError, TypedKeeperError
from claw_keeper.integrations import run_command
from claw_keeper.runtime import (
    READINESS_ABORTED,
    READINESS_CANCELLED,
    READINESS_TIMED_OUT,
    ProcessHandle,
    ProcessRegistry,
    ProcessSignature,
    ProcessSpec,
    ReadinessResult,
    tcp_probe,
    wait_until_ready,
)
from claw_keeper.runtime.gateway_launch import (
    GATEWAY_TOKEN_ENV,
    build_gateway_env,
    compile_gateway_cli_command,
    compile_gateway_command,
    gateway_launch_spec,
)


LOGGER = logging.getLogger("claw_keeper.gateway")

GATEWAY_NOT_STARTED = "not-started"
GATEWAY_STARTING = "starting"
GATEWAY_READY = "ready"
GATEWAY_CRASHED = "crashed"

OUTPUT_TAIL_LINES_ON_FAILURE = 20


@dataclass
class GatewayProcess:
    pid: int
    host: str
    port: int
    args: tuple[str, ...]
    started_at: float | None
    readiness: str = GATEWAY_STARTING
    adopted: bool = False
    handle: ProcessHandle | None = field(default=None, repr=False)

    def to_payload(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "host": self.host,
            "port": self.port,
            "started_at": self.started_at,
            "readiness": self.readiness,
            "adopted": self.adopted,
        }


def _wait_seconds(config: GatewayConfig, timeout: float | None) -> float:
    if timeout is None:
        return config.startup_timeout_seconds
    return min(float(timeout), config.startup_timeout_seconds)


class GatewayLifecycleManager:
    """Finds or starts the single gateway process of this container.

    Concurrent callers share one in-flight attempt: the first caller discovers
    or starts the process and waits for readiness, later callers block on that
    attempt's result instead of starting a second process.
    """

    def __init__(
        self,
        *,
        config: GatewayConfig,
        registry: ProcessRegistry,
        secrets: Mapping[str, str],
        log_file: Path | None = None,
        probe_factory: Callable[[str, int], Callable[[], bool]] = tcp_probe,
        wait: Callable[..., ReadinessResult] = wait_until_ready,
        prepare_start: Callable[[], Any] | None = None,
        command_runner: Callable[..., subprocess.CompletedProcess[str]] = run_command,
    ) -> None:
        self._config = config
        self._registry = registry
        self._secrets = secrets
        self._log_file = log_file
        self._probe_factory = probe_factory
        self._wait = wait
        self._prepare_start = prepare_start
        self._command_runner = command_runner
        self._lock = Lock()
        self._inflight: concurrent.futures.Future[GatewayProcess] | None = None
        self._current: GatewayProcess | None = None
        self._start_count = 0
        self._last_error: TypedKeeperError | None = None

    @property
    def current(self) -> GatewayProcess | None:
        return self._current

    @property
    def start_count(self) -> int:
        return self._start_count

    @property
    def last_error(self) -> TypedKeeperError | None:
        return self._last_error

    def _signature(self, config: GatewayConfig) -> ProcessSignature:
        return ProcessSignature(match_patterns=config.match_patterns, exclude_patterns=config.exclude_patterns)

    def _probe(self, config: GatewayConfig) -> Callable[[], bool]:
        return self._probe_factory(config.host, config.port)

    def ensure_gateway_running(
        self,
        config: GatewayConfig | None = None,
        *,
        timeout: float | None = None,
        cancel_event: Event | None = None,
    ) -> GatewayProcess:
        """Return a ready gateway, starting one if none is running.

        ``timeout`` bounds how long this caller waits, whether it joins someone
        else's in-flight attempt or owns the attempt itself; it never extends
        the configured startup timeout. When it expires first, or
        ``cancel_event`` is set, the started process is left running for the
        next call to discover.
        """
        resolved = config or self._config
        with self._lock:
            future = self._inflight
            owner = future is None
            if owner:
                future = concurrent.futures.Future()
                self._inflight = future

        if not owner:
            try:
                return future.result(timeout=timeout)
            except concurrent.futures.TimeoutError as exc:
                raise ReadinessTimeoutError(
                    f"Timed out after {timeout}s waiting for an in-flight gateway start."
                ) from exc

        try:
            process = self._ensure(resolved, wait_seconds=_wait_seconds(resolved, timeout), cancel_event=cancel_event)
        except BaseException as exc:
            if isinstance(exc, TypedKeeperError):
                self._last_error = exc
            future.set_exception(exc)
            raise
        finally:
            with self._lock:
                self._inflight = None
        self._last_error = None
        future.set_result(process)
        return process

    def _ensure(self, config: GatewayConfig, *, wait_seconds: float, cancel_event: Event | None) -> GatewayProcess:
        current = self._current
        if current is not None and current.handle is not None:
            if not self._registry.is_running(current.handle):
                current.readiness = GATEWAY_CRASHED
                LOGGER.warning(
                    "Gateway process exited: pid=%s exit_code=%s",
                    current.pid,
                    self._registry.exit_code(current.handle),
                    extra={"component": "gateway", "operation": "ensure_running", "result": "crashed"},
                )

        probe = self._probe(config)
        for handle in self._registry.list_matching(self._signature(config)):
            adopted = self._adopt_existing(config, handle, probe, wait_seconds=wait_seconds, cancel_event=cancel_event)
            if adopted is not None:
                return adopted

        if probe():
            raise ProcessStartError(
                f"Port {config.port} is already bound by a process that does not match the gateway signature."
            )
        return self._start(config, probe, wait_seconds=wait_seconds, cancel_event=cancel_event)

    def _adopt_existing(
        self,
        config: GatewayConfig,
        handle: ProcessHandle,
        probe: Callable[[], bool],
        *,
        wait_seconds: float,
        cancel_event: Event | None,
    ) -> GatewayProcess | None:
        log_extra = {"component": "gateway", "operation": "ensure_running"}
        if probe():
            return self._remember(config, handle, adopted=True)

        if config.half_started_policy != HALF_STARTED_POLICY_RESTART:
            LOGGER.info(
                "Gateway process pid=%s found but port %s not responding; waiting",
                handle.pid,
                config.port,
                extra={**log_extra, "result": "waiting"},
            )
            result = self._wait(
                probe,
                timeout_seconds=wait_seconds,
                interval_seconds=config.ready_poll_interval_seconds,
                cancel_event=cancel_event,
                should_abort=lambda: not self._registry.is_running(handle),
            )
            if result.ready:
                return self._remember(config, handle, adopted=True)
            if result.outcome == READINESS_CANCELLED:
                raise ReadinessTimeoutError(f"Readiness wait for existing gateway pid={handle.pid} was cancelled.")
            if result.outcome == READINESS_TIMED_OUT and wait_seconds < config.startup_timeout_seconds:
                raise ReadinessTimeoutError(
                    f"Existing gateway pid={handle.pid} was not ready within the caller timeout of {wait_seconds:g}s."
                )

        LOGGER.warning(
            "Terminating unresponsive gateway process pid=%s",
            handle.pid,
            extra={**log_extra, "result": "restarting"},
        )
        self._registry.terminate(handle)
        return None

    def _remember(self, config: GatewayConfig, handle: ProcessHandle, *, adopted: bool) -> GatewayProcess:
        current = self._current
        if current is not None and current.pid == handle.pid:
            current.readiness = GATEWAY_READY
            return current
        process = GatewayProcess(
            pid=handle.pid,
            host=config.host,
            port=config.port,
            args=tuple(handle.command_line.split()),
            started_at=handle.started_at,
            readiness=GATEWAY_READY,
            adopted=adopted,
            handle=handle,
        )
        self._current = process
        return process

    def _start(
        self,
        config: GatewayConfig,
        probe: Callable[[], bool],
        *,
        wait_seconds: float,
        cancel_event: Event | None,
    ) -> GatewayProcess:
        log_extra = {"component": "gateway", "operation": "start"}
        if self._prepare_start is not None:
            try:
                self._prepare_start()
            except OSError as exc:
                LOGGER.warning(
                    "Gateway pre-start configuration failed: %s",
                    exc,
                    extra={**log_extra, "result": "prepare_failed"},
                )

        env = build_gateway_env(config, self._secrets)
        command = compile_gateway_command(gateway_launch_spec(config, env))
        started_at = time.monotonic()
        try:
            handle = self._registry.start(ProcessSpec(command=tuple(command), env=env, log_file=self._log_file))
        except OSError as exc:
            raise ProcessStartError(f"Unable to start gateway command {config.command!r}: {exc}") from exc
        self._start_count += 1
        process = GatewayProcess(
            pid=handle.pid,
            host=config.host,
            port=config.port,
            args=tuple(command),
            started_at=handle.started_at,
            readiness=GATEWAY_STARTING,
            handle=handle,
        )
        self._current = process
        LOGGER.info(
            "Gateway process started: pid=%s port=%s",
            handle.pid,
            config.port,
            extra={**log_extra, "result": "started"},
        )

        result = self._wait(
            probe,
            timeout_seconds=wait_seconds,
            interval_seconds=config.ready_poll_interval_seconds,
            cancel_event=cancel_event,
            should_abort=lambda: not self._registry.is_running(handle),
        )
        elapsed_ms = int((time.monotonic() - started_at) * 1000)
        if result.ready:
            process.readiness = GATEWAY_READY
            LOGGER.info(
                "Gateway ready: pid=%s attempts=%s",
                handle.pid,
                result.attempts,
                extra={**log_extra, "result": "ready", "duration_ms": elapsed_ms},
            )
            return process

        if result.outcome == READINESS_CANCELLED:
            raise ReadinessTimeoutError(f"Readiness wait for gateway pid={handle.pid} was cancelled.")
        if result.outcome == READINESS_TIMED_OUT and wait_seconds < config.startup_timeout_seconds:
            LOGGER.warning(
                "Caller timeout of %ss expired before gateway pid=%s became ready; leaving it running",
                wait_seconds,
                handle.pid,
                extra={**log_extra, "result": "caller_timeout", "duration_ms": elapsed_ms},
            )
            raise ReadinessTimeoutError(
                f"Gateway pid={handle.pid} was not ready within the caller timeout of {wait_seconds:g}s."
            )

        tail = self._registry.output_tail(handle, lines=OUTPUT_TAIL_LINES_ON_FAILURE).strip()
        process.readiness = GATEWAY_CRASHED
        if result.outcome == READINESS_ABORTED:
            exit_code = self._registry.exit_code(handle)
            LOGGER.error(
                "Gateway exited before becoming ready: pid=%s exit_code=%s",
                handle.pid,
                exit_code,
                extra={**log_extra, "result": "exited", "duration_ms": elapsed_ms, "error_class": "PROCESS_START_FAILURE"},
            )
            raise ProcessStartError(
                f"Gateway process pid={handle.pid} exited with code {exit_code} before becoming ready. {tail}".strip()
            )

        self._registry.terminate(handle)
        LOGGER.error(
            "Gateway did not become ready within %ss: pid=%s",
            config.startup_timeout_seconds,
            handle.pid,
            extra={**log_extra, "result": "timed_out", "duration_ms": elapsed_ms, "error_class": "READINESS_TIMEOUT"},
        )
        raise ReadinessTimeoutError(
            f"Gateway pid={handle.pid} did not accept connections on port {config.port} "
            f"within {config.startup_timeout_seconds:g}s. {tail}".strip()
        )

    def run_cli(self, args: Sequence[str], *, timeout: float | None = None) -> subprocess.CompletedProcess[str]:
        """Run a one-shot gateway CLI command against the live gateway."""
        config = self._config
        self.ensure_gateway_running(config)
        result = self._wait(
            self._probe(config),
            timeout_seconds=config.cli_ready_timeout_seconds,
            interval_seconds=config.ready_poll_interval_seconds,
        )
        if not result.ready:
            raise ReadinessTimeoutError(
                f"Gateway control endpoint {config.ws_url} did not respond within {config.cli_ready_timeout_seconds:g}s."
            )
        env = build_gateway_env(config, self._secrets)
        cmd = compile_gateway_cli_command(config, args, token=env.get(GATEWAY_TOKEN_ENV, ""))
        return self._command_runner(cmd, env=env, timeout=timeout or config.cli_ready_timeout_seconds)

    def output_tail(self, *, lines: int = 100) -> str:
        current = self._current
        if current is None or current.handle is None:
            return ""
        return self._registry.output_tail(current.handle, lines=lines)

    def status_payload(self) -> dict[str, Any]:
        current = self._current
        if current is not None and current.handle is not None and current.readiness == GATEWAY_READY:
            if not self._registry.is_running(current.handle):
                current.readiness = GATEWAY_CRASHED
        payload: dict[str, Any] = {
            "readiness": current.readiness if current else GATEWAY_NOT_STARTED,
            "process": current.to_payload() if current else None,
            "start_count": self._start_count,
            "starting": self._inflight is not None,
        }
        if self._last_error is not None:
            payload["error"] = self._last_error.metadata()
        return payload
