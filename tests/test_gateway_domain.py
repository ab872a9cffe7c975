from __future__ import annotations

import functools
import subprocess
import threading
import unittest
from unittest.mock import Mock

from keeper_fakes import FakeClock, FakePort, FakeProcessRegistry

from claw_core.config import HALF_STARTED_POLICY_RESTART, GatewayConfig
from claw_core.errors import ProcessStartError, ReadinessTimeoutError
from claw_keeper.domains import (
    GATEWAY_CRASHED,
    GATEWAY_NOT_STARTED,
    GATEWAY_READY,
    GatewayLifecycleManager,
)
from claw_keeper.runtime import wait_until_ready


SECRETS = {
    "MOLTBOT_GATEWAY_TOKEN": "gw-token",
    "ANTHROPIC_API_KEY": "sk-ant",
    "OPENAI_API_KEY": "   ",
}


class GatewayLifecycleManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.registry = FakeProcessRegistry()
        self.port = FakePort()
        self.clock = FakeClock()
        self.config = GatewayConfig(startup_timeout_seconds=2.0, ready_poll_interval_seconds=0.5)

    def _open_port_on_start(self) -> None:
        def on_start(handle) -> None:
            self.port.open = True

        self.registry.on_start = on_start

    def _manager(self, *, config: GatewayConfig | None = None, fake_time: bool = True, **kwargs) -> GatewayLifecycleManager:
        wait = wait_until_ready
        if fake_time:
            wait = functools.partial(wait_until_ready, clock=self.clock, sleep=self.clock.sleep)
        return GatewayLifecycleManager(
            config=config or self.config,
            registry=self.registry,
            secrets=SECRETS,
            probe_factory=self.port.factory,
            wait=wait,
            **kwargs,
        )

    def test_starts_gateway_with_mapped_environment(self) -> None:
        self._open_port_on_start()
        manager = self._manager()
        self.assertEqual(manager.status_payload()["readiness"], GATEWAY_NOT_STARTED)

        process = manager.ensure_gateway_running()

        self.assertEqual(process.readiness, GATEWAY_READY)
        self.assertFalse(process.adopted)
        self.assertEqual(process.port, 18789)
        self.assertEqual(manager.start_count, 1)
        spec = self.registry.started[0]
        self.assertEqual(
            list(spec.command),
            [
                "openclaw",
                "gateway",
                "--port",
                "18789",
                "--verbose",
                "--allow-unconfigured",
                "--bind",
                "lan",
                "--token",
                "gw-token",
            ],
        )
        self.assertEqual(spec.env, {"OPENCLAW_GATEWAY_TOKEN": "gw-token", "ANTHROPIC_API_KEY": "sk-ant"})
        self.assertEqual(manager.status_payload()["readiness"], GATEWAY_READY)

    def test_ready_existing_process_is_adopted(self) -> None:
        existing = self.registry.add_existing("openclaw gateway --port 18789 --bind lan")
        self.port.open = True
        manager = self._manager()

        process = manager.ensure_gateway_running()

        self.assertEqual(process.pid, existing.pid)
        self.assertTrue(process.adopted)
        self.assertEqual(self.registry.started, [])

    def test_repeated_calls_do_not_start_twice(self) -> None:
        self._open_port_on_start()
        manager = self._manager()

        first = manager.ensure_gateway_running()
        second = manager.ensure_gateway_running()

        self.assertEqual(first.pid, second.pid)
        self.assertEqual(manager.start_count, 1)

    def test_concurrent_callers_share_one_start(self) -> None:
        self._open_port_on_start()
        self.port.release = threading.Event()
        config = GatewayConfig(startup_timeout_seconds=10.0, ready_poll_interval_seconds=0.01)
        manager = self._manager(config=config, fake_time=False)
        barrier = threading.Barrier(8)
        results = []
        errors = []

        def call() -> None:
            barrier.wait()
            try:
                results.append(manager.ensure_gateway_running(timeout=10))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=call) for _ in range(8)]
        for thread in threads:
            thread.start()
        threading.Timer(0.2, self.port.release.set).start()
        for thread in threads:
            thread.join(15)

        self.assertEqual(errors, [])
        self.assertEqual(len(results), 8)
        self.assertEqual(len(self.registry.started), 1)
        self.assertEqual({process.pid for process in results}, {results[0].pid})

    def test_joiner_timeout_raises_readiness_timeout(self) -> None:
        self._open_port_on_start()
        self.port.release = threading.Event()
        config = GatewayConfig(startup_timeout_seconds=10.0, ready_poll_interval_seconds=0.01)
        manager = self._manager(config=config, fake_time=False)
        owner = threading.Thread(target=manager.ensure_gateway_running)
        owner.start()
        self.addCleanup(owner.join, 15)
        self.addCleanup(self.port.release.set)
        while not self.registry.started:
            threading.Event().wait(0.01)

        with self.assertRaises(ReadinessTimeoutError):
            manager.ensure_gateway_running(timeout=0.05)

        self.port.release.set()
        owner.join(15)
        self.assertEqual(manager.start_count, 1)

    def test_crashed_gateway_is_restarted(self) -> None:
        self._open_port_on_start()
        manager = self._manager()
        first = manager.ensure_gateway_running()

        self.registry.exit(first.pid, 1)
        self.port.open = False
        self.assertEqual(manager.status_payload()["readiness"], GATEWAY_CRASHED)
        second = manager.ensure_gateway_running()

        self.assertNotEqual(first.pid, second.pid)
        self.assertEqual(manager.start_count, 2)
        self.assertEqual(second.readiness, GATEWAY_READY)

    def test_half_started_process_is_awaited_under_wait_policy(self) -> None:
        existing = self.registry.add_existing("openclaw gateway --port 18789")
        self.clock.on_sleep = lambda now: setattr(self.port, "open", now >= 1.0)
        manager = self._manager()

        process = manager.ensure_gateway_running()

        self.assertEqual(process.pid, existing.pid)
        self.assertTrue(process.adopted)
        self.assertEqual(self.registry.started, [])
        self.assertEqual(self.registry.terminated, [])

    def test_half_started_process_is_replaced_after_wait_times_out(self) -> None:
        existing = self.registry.add_existing("openclaw gateway --port 18789")
        self._open_port_on_start()
        manager = self._manager()

        process = manager.ensure_gateway_running()

        self.assertEqual(self.registry.terminated, [existing.pid])
        self.assertNotEqual(process.pid, existing.pid)
        self.assertEqual(manager.start_count, 1)
        self.assertGreaterEqual(self.clock.now, 2.0)

    def test_half_started_process_is_replaced_immediately_under_restart_policy(self) -> None:
        existing = self.registry.add_existing("openclaw gateway --port 18789")
        self._open_port_on_start()
        config = GatewayConfig(
            startup_timeout_seconds=2.0,
            ready_poll_interval_seconds=0.5,
            half_started_policy=HALF_STARTED_POLICY_RESTART,
        )
        manager = self._manager(config=config)

        process = manager.ensure_gateway_running()

        self.assertEqual(self.registry.terminated, [existing.pid])
        self.assertNotEqual(process.pid, existing.pid)
        self.assertEqual(self.clock.now, 0.0)

    def test_cli_subcommands_are_not_mistaken_for_the_gateway(self) -> None:
        self.registry.add_existing("openclaw devices list --url ws://127.0.0.1:18789")
        self._open_port_on_start()
        manager = self._manager()

        process = manager.ensure_gateway_running()

        self.assertFalse(process.adopted)
        self.assertEqual(manager.start_count, 1)
        self.assertEqual(self.registry.terminated, [])

    def test_port_bound_by_unrelated_process_fails_without_starting(self) -> None:
        self.port.open = True
        manager = self._manager()

        with self.assertRaises(ProcessStartError):
            manager.ensure_gateway_running()

        self.assertEqual(self.registry.started, [])
        self.assertEqual(manager.last_error.error_code, "PROCESS_START_FAILURE")

    def test_gateway_exiting_before_ready_is_a_start_failure(self) -> None:
        def on_start(handle) -> None:
            self.registry.exit(handle.pid, 1, output="Error: missing config\n")

        self.registry.on_start = on_start
        manager = self._manager()

        with self.assertRaises(ProcessStartError) as raised:
            manager.ensure_gateway_running()

        self.assertIn("code 1", str(raised.exception))
        self.assertIn("missing config", str(raised.exception))
        self.assertEqual(manager.status_payload()["readiness"], GATEWAY_CRASHED)
        self.assertEqual(manager.status_payload()["error"]["error_code"], "PROCESS_START_FAILURE")

    def test_readiness_timeout_terminates_the_started_process(self) -> None:
        manager = self._manager()

        with self.assertRaises(ReadinessTimeoutError):
            manager.ensure_gateway_running()

        pid = manager.current.pid
        self.assertEqual(self.registry.terminated, [pid])
        self.assertEqual(manager.current.readiness, GATEWAY_CRASHED)
        self.assertGreaterEqual(self.clock.now, 2.0)

    def test_cancelled_wait_leaves_process_for_next_call(self) -> None:
        cancel = threading.Event()
        self.clock.on_sleep = lambda now: cancel.set()
        manager = self._manager()

        with self.assertRaises(ReadinessTimeoutError):
            manager.ensure_gateway_running(cancel_event=cancel)

        self.assertEqual(self.registry.terminated, [])
        self.port.open = True
        process = manager.ensure_gateway_running()
        self.assertEqual(manager.start_count, 1)
        self.assertEqual(process.readiness, GATEWAY_READY)

    def test_owner_timeout_caps_readiness_wait_and_leaves_process_running(self) -> None:
        manager = self._manager()

        with self.assertRaises(ReadinessTimeoutError):
            manager.ensure_gateway_running(timeout=1.0)

        self.assertLess(self.clock.now, 2.0)
        self.assertEqual(self.registry.terminated, [])
        self.assertNotEqual(manager.current.readiness, GATEWAY_CRASHED)
        self.port.open = True
        process = manager.ensure_gateway_running()
        self.assertEqual(manager.start_count, 1)
        self.assertEqual(process.readiness, GATEWAY_READY)

    def test_owner_timeout_does_not_replace_half_started_process(self) -> None:
        existing = self.registry.add_existing("openclaw gateway --port 18789")
        manager = self._manager()

        with self.assertRaises(ReadinessTimeoutError):
            manager.ensure_gateway_running(timeout=0.5)

        self.assertLess(self.clock.now, 2.0)
        self.assertEqual(self.registry.terminated, [])
        self.assertEqual(self.registry.started, [])
        self.assertTrue(self.registry.is_running(existing))

    def test_timeout_longer_than_startup_keeps_configured_limit(self) -> None:
        manager = self._manager()

        with self.assertRaises(ReadinessTimeoutError):
            manager.ensure_gateway_running(timeout=60.0)

        self.assertEqual(self.registry.terminated, [manager.current.pid])
        self.assertLess(self.clock.now, 60.0)

    def test_start_oserror_is_a_start_failure(self) -> None:
        self.registry.start = Mock(side_effect=FileNotFoundError("openclaw"))
        manager = self._manager()

        with self.assertRaises(ProcessStartError):
            manager.ensure_gateway_running()

    def test_prepare_start_runs_before_launch_and_tolerates_io_errors(self) -> None:
        events = []
        self.registry.events = events
        self._open_port_on_start()

        def prepare() -> None:
            events.append("prepare")
            raise PermissionError("read-only config")

        manager = self._manager(prepare_start=prepare)
        manager.ensure_gateway_running()

        self.assertEqual(events, ["prepare", "start"])

    def test_run_cli_targets_the_live_gateway(self) -> None:
        self._open_port_on_start()
        runner = Mock(return_value=subprocess.CompletedProcess([], 0, stdout="[]", stderr=""))
        manager = self._manager(command_runner=runner)

        result = manager.run_cli(["devices", "list", "--json"])

        self.assertEqual(result.stdout, "[]")
        cmd = runner.call_args.args[0]
        self.assertEqual(
            cmd,
            ["openclaw", "devices", "list", "--json", "--url", "ws://127.0.0.1:18789", "--token", "gw-token"],
        )
        self.assertEqual(runner.call_args.kwargs["timeout"], 15.0)

    def test_output_tail_reads_current_process_output(self) -> None:
        def on_start(handle) -> None:
            self.registry.processes[handle.pid]["output"] = "line1\nline2\nline3\n"
            self.port.open = True

        self.registry.on_start = on_start
        manager = self._manager()
        self.assertEqual(manager.output_tail(lines=2), "")

        manager.ensure_gateway_running()

        self.assertEqual(manager.output_tail(lines=2), "line2\nline3\n")


if __name__ == "__main__":
    unittest.main()
