from __future__ import annotations

import socket
import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Event


READINESS_READY = "ready"
READINESS_TIMED_OUT = "timed_out"
READINESS_CANCELLED = "cancelled"
READINESS_ABORTED = "aborted"

DEFAULT_READY_TIMEOUT_SECONDS = 15.0
DEFAULT_READY_POLL_INTERVAL_SECONDS = 0.5
DEFAULT_PROBE_CONNECT_TIMEOUT_SECONDS = 1.0


@dataclass(frozen=True)
class ReadinessResult:
    outcome: str
    attempts: int
    elapsed_seconds: float

    @property
    def ready(self) -> bool:
        return self.outcome == READINESS_READY


def tcp_probe(host: str, port: int, *, connect_timeout: float = DEFAULT_PROBE_CONNECT_TIMEOUT_SECONDS) -> Callable[[], bool]:
    def probe() -> bool:
        try:
            with socket.create_connection((host, int(port)), timeout=connect_timeout):
                return True
        except OSError:
            return False

    return probe


def _probe_once(probe: Callable[[], bool]) -> bool:
    try:
        return bool(probe())
    except OSError:
        return False


def wait_until_ready(
    probe: Callable[[], bool],
    *,
    timeout_seconds: float = DEFAULT_READY_TIMEOUT_SECONDS,
    interval_seconds: float = DEFAULT_READY_POLL_INTERVAL_SECONDS,
    cancel_event: Event | None = None,
    should_abort: Callable[[], bool] | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] | None = None,
) -> ReadinessResult:
    """Poll ``probe`` until it succeeds or ``timeout_seconds`` elapse.

    ``timed_out`` is only returned once the deadline has actually passed.
    ``cancel_event`` ends the wait early with ``cancelled``; ``should_abort``
    returning True (for example when the watched process exited) ends it with
    ``aborted``. Between polls the waiter sleeps for ``interval_seconds``,
    clipped to the time remaining.
    """
    started_at = clock()
    deadline = started_at + max(0.0, float(timeout_seconds))
    interval = max(0.01, float(interval_seconds))
    attempts = 0

    def result(outcome: str) -> ReadinessResult:
        return ReadinessResult(outcome=outcome, attempts=attempts, elapsed_seconds=clock() - started_at)

    while True:
        if cancel_event is not None and cancel_event.is_set():
            return result(READINESS_CANCELLED)
        attempts += 1
        if _probe_once(probe):
            return result(READINESS_READY)
        if should_abort is not None and should_abort():
            return result(READINESS_ABORTED)
        now = clock()
        if now >= deadline:
            return result(READINESS_TIMED_OUT)
        delay = min(interval, deadline - now)
        if sleep is not None:
            sleep(delay)
        elif cancel_event is not None:
            cancel_event.wait(delay)
        else:
            time.sleep(delay)
