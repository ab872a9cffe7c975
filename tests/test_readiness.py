from __future__ import annotations

import socket
import threading
import unittest
from unittest.mock import Mock

from keeper_fakes import FakeClock

from claw_keeper.runtime import (
    READINESS_ABORTED,
    READINESS_CANCELLED,
    READINESS_READY,
    READINESS_TIMED_OUT,
    tcp_probe,
    wait_until_ready,
)


class WaitUntilReadyTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()

    def _wait(self, probe, **kwargs):
        kwargs.setdefault("timeout_seconds", 2.0)
        kwargs.setdefault("interval_seconds", 0.5)
        return wait_until_ready(probe, clock=self.clock, sleep=self.clock.sleep, **kwargs)

    def test_ready_probe_returns_immediately(self) -> None:
        result = self._wait(Mock(return_value=True))

        self.assertTrue(result.ready)
        self.assertEqual(result.attempts, 1)
        self.assertEqual(self.clock.sleeps, [])

    def test_polls_until_probe_succeeds(self) -> None:
        result = self._wait(Mock(side_effect=[False, False, True]))

        self.assertEqual(result.outcome, READINESS_READY)
        self.assertEqual(result.attempts, 3)
        self.assertEqual(self.clock.sleeps, [0.5, 0.5])

    def test_timeout_is_only_reported_after_the_deadline(self) -> None:
        probe = Mock(return_value=False)

        result = self._wait(probe)

        self.assertEqual(result.outcome, READINESS_TIMED_OUT)
        self.assertGreaterEqual(result.elapsed_seconds, 2.0)
        self.assertEqual(result.attempts, 5)
        self.assertTrue(all(0 < delay <= 0.5 for delay in self.clock.sleeps))

    def test_last_sleep_is_clipped_to_the_deadline(self) -> None:
        result = self._wait(Mock(return_value=False), timeout_seconds=1.2)

        self.assertEqual(result.outcome, READINESS_TIMED_OUT)
        self.assertAlmostEqual(self.clock.now, 1.2)
        self.assertAlmostEqual(self.clock.sleeps[-1], 0.2)

    def test_probe_succeeding_at_the_deadline_counts_as_ready(self) -> None:
        result = self._wait(lambda: self.clock.now >= 2.0)

        self.assertEqual(result.outcome, READINESS_READY)

    def test_probe_errors_count_as_not_ready(self) -> None:
        result = self._wait(Mock(side_effect=[ConnectionRefusedError(), True]))

        self.assertTrue(result.ready)
        self.assertEqual(result.attempts, 2)

    def test_cancel_before_first_probe(self) -> None:
        cancel = threading.Event()
        cancel.set()
        probe = Mock(return_value=True)

        result = self._wait(probe, cancel_event=cancel)

        self.assertEqual(result.outcome, READINESS_CANCELLED)
        probe.assert_not_called()

    def test_cancel_during_wait(self) -> None:
        cancel = threading.Event()
        self.clock.on_sleep = lambda now: cancel.set()

        result = self._wait(Mock(return_value=False), cancel_event=cancel)

        self.assertEqual(result.outcome, READINESS_CANCELLED)
        self.assertEqual(result.attempts, 1)

    def test_abort_when_watched_process_exits(self) -> None:
        result = self._wait(Mock(return_value=False), should_abort=Mock(return_value=True))

        self.assertEqual(result.outcome, READINESS_ABORTED)
        self.assertEqual(self.clock.sleeps, [])

    def test_real_sleep_is_interrupted_by_cancel(self) -> None:
        cancel = threading.Event()
        timer = threading.Timer(0.05, cancel.set)
        timer.start()
        self.addCleanup(timer.cancel)

        result = wait_until_ready(
            Mock(return_value=False),
            timeout_seconds=30,
            interval_seconds=10,
            cancel_event=cancel,
        )

        self.assertEqual(result.outcome, READINESS_CANCELLED)
        self.assertLess(result.elapsed_seconds, 5)


class TcpProbeTests(unittest.TestCase):
    def test_probe_reflects_listening_socket(self) -> None:
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.bind(("127.0.0.1", 0))
        server.listen(1)
        port = server.getsockname()[1]
        probe = tcp_probe("127.0.0.1", port, connect_timeout=1.0)
        try:
            self.assertTrue(probe())
        finally:
            server.close()

        self.assertFalse(probe())


if __name__ == "__main__":
    unittest.main()
