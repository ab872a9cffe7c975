from __future__ import annotations

import logging
from collections.abc import Callable
from threading import Event, Lock, Thread
from typing import Any


LOGGER = logging.getLogger("claw_keeper.sync")


class PeriodicSyncScheduler:
    def __init__(self, *, interval_seconds: float, run_periodic: Callable[[], Any]) -> None:
        self._interval_seconds = max(0.01, float(interval_seconds))
        self._run_periodic = run_periodic
        self._lock = Lock()
        self._stop_event = Event()
        self._thread: Thread | None = None

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self) -> bool:
        with self._lock:
            if self.running:
                return False
            self._stop_event.clear()
            worker = Thread(target=self._loop, daemon=True, name="claw-keeper-periodic-sync")
            self._thread = worker
            worker.start()
        LOGGER.info(
            "Periodic sync scheduled every %ss",
            self._interval_seconds,
            extra={"component": "sync", "operation": "schedule", "result": "started"},
        )
        return True

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            worker = self._thread
            self._stop_event.set()
        if worker is not None:
            worker.join(timeout=timeout)

    def _loop(self) -> None:
        while not self._stop_event.wait(self._interval_seconds):
            try:
                self._run_periodic()
            except Exception:
                LOGGER.exception(
                    "Periodic sync tick raised",
                    extra={"component": "sync", "operation": "periodic_tick", "result": "error"},
                )
