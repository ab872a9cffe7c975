from __future__ import annotations

import tempfile
import threading
import unittest
from pathlib import Path
from unittest.mock import Mock

from keeper_fakes import FakeTransfer

from claw_core.config import SyncConfig, SyncTargetConfig
from claw_core.errors import MountError
from claw_keeper.storage import (
    SYNC_OUTCOME_FAILURE,
    SYNC_OUTCOME_SKIPPED,
    SYNC_OUTCOME_SUCCESS,
    SYNC_TRIGGER_MANUAL,
    SYNC_TRIGGER_PERIODIC,
    PeriodicSyncScheduler,
    SyncEngine,
)
from claw_keeper.storage.transfer import TransferError
from claw_keeper.store import SyncMarker, SyncMarkerStore


class SyncEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        root = Path(tmp.name)
        self.local = root / "local" / ".openclaw"
        self.skills = root / "local" / "skills"
        self.mount = root / "bucket"
        self.local.mkdir(parents=True)
        (self.local / "openclaw.json").write_text("{}", encoding="utf-8")
        (self.local / "gateway.lock").write_text("pid", encoding="utf-8")
        self.skills.mkdir(parents=True)
        (self.skills / "weather.md").write_text("skill", encoding="utf-8")
        self.marker_store = SyncMarkerStore(marker_file_name=".last-sync")
        self.transfer = FakeTransfer()
        self.ensure_remote = Mock()
        self.config = SyncConfig(
            targets=(
                SyncTargetConfig(name="openclaw", local=self.local, remote="openclaw"),
                SyncTargetConfig(name="skills", local=self.skills, remote="skills"),
            )
        )

    def _engine(self, config: SyncConfig | None = None) -> SyncEngine:
        return SyncEngine(
            config=config or self.config,
            mount_path=self.mount,
            transfer=self.transfer,
            marker_store=self.marker_store,
            ensure_remote=self.ensure_remote,
            iso_now=lambda: "2026-03-01T12:00:00Z",
        )

    def test_successful_run_pushes_targets_and_writes_marker(self) -> None:
        engine = self._engine()

        run = engine.run_sync(SYNC_TRIGGER_MANUAL)

        self.assertEqual(run.outcome, SYNC_OUTCOME_SUCCESS)
        self.assertEqual(run.trigger, SYNC_TRIGGER_MANUAL)
        self.assertEqual(run.transferred_entries, 2)
        self.assertTrue((self.mount / "openclaw" / "openclaw.json").exists())
        self.assertFalse((self.mount / "openclaw" / "gateway.lock").exists())
        self.assertTrue((self.mount / "skills" / "weather.md").exists())
        self.assertEqual(run.marker, SyncMarker(sequence=1, synced_at="2026-03-01T12:00:00Z"))
        self.assertEqual(self.marker_store.read(self.mount / "openclaw"), run.marker)
        self.assertEqual(self.marker_store.read(self.local), run.marker)
        self.assertIs(engine.last_success, run)
        self.ensure_remote.assert_called_once()
        for call in self.transfer.calls:
            self.assertIn(".last-sync", call["excludes"])
            self.assertFalse(call["delete"])

    def test_marker_sequence_continues_from_the_highest_seen(self) -> None:
        self.marker_store.write(self.mount / "openclaw", SyncMarker(sequence=9, synced_at="2020-01-01T00:00:00Z"))
        engine = self._engine()

        first = engine.run_sync(SYNC_TRIGGER_PERIODIC)
        second = engine.run_sync(SYNC_TRIGGER_PERIODIC)

        self.assertEqual(first.marker.sequence, 10)
        self.assertEqual(second.marker.sequence, 11)

    def test_overlapping_run_is_skipped(self) -> None:
        self.transfer.release = threading.Event()
        engine = self._engine()
        results = []
        worker = threading.Thread(target=lambda: results.append(engine.run_sync(SYNC_TRIGGER_PERIODIC)))
        worker.start()
        self.assertTrue(self.transfer.started.wait(5))

        skipped = engine.run_sync(SYNC_TRIGGER_MANUAL)
        self.assertTrue(engine.in_progress)
        self.transfer.release.set()
        worker.join(5)

        self.assertEqual(skipped.outcome, SYNC_OUTCOME_SKIPPED)
        self.assertEqual(results[0].outcome, SYNC_OUTCOME_SUCCESS)
        self.assertFalse(engine.in_progress)
        self.assertIs(engine.last_run, results[0])

    def test_transfer_failure_is_reported_not_raised(self) -> None:
        engine = self._engine()
        previous = engine.run_sync(SYNC_TRIGGER_MANUAL)
        self.transfer.fail_with = TransferError("rsync exited with code 11")

        run = engine.run_sync(SYNC_TRIGGER_PERIODIC)

        self.assertEqual(run.outcome, SYNC_OUTCOME_FAILURE)
        self.assertEqual(run.error["error_code"], "SYNC_FAILURE")
        self.assertIsNone(run.marker)
        self.assertIs(engine.last_success, previous)
        self.assertEqual(self.marker_store.read(self.local).sequence, 1)

    def test_unavailable_remote_fails_without_transfer(self) -> None:
        self.ensure_remote.side_effect = MountError("not mounted")
        engine = self._engine()

        run = engine.run_sync(SYNC_TRIGGER_MANUAL)

        self.assertEqual(run.outcome, SYNC_OUTCOME_FAILURE)
        self.assertEqual(self.transfer.calls, [])

    def test_local_state_without_required_files_is_not_pushed(self) -> None:
        (self.local / "openclaw.json").unlink()
        engine = self._engine()

        run = engine.run_sync(SYNC_TRIGGER_PERIODIC)

        self.assertEqual(run.outcome, SYNC_OUTCOME_FAILURE)
        self.assertEqual(self.transfer.calls, [])
        self.assertFalse((self.mount / "openclaw").exists())

    def test_missing_secondary_target_is_skipped(self) -> None:
        for path in self.skills.iterdir():
            path.unlink()
        self.skills.rmdir()
        engine = self._engine()

        run = engine.run_sync(SYNC_TRIGGER_MANUAL)

        self.assertEqual(run.outcome, SYNC_OUTCOME_SUCCESS)
        self.assertEqual(len(self.transfer.calls), 1)

    def test_mirror_deletes_is_passed_to_transfer(self) -> None:
        config = SyncConfig(
            mirror_deletes=True,
            targets=(SyncTargetConfig(name="openclaw", local=self.local, remote="openclaw"),),
        )
        engine = self._engine(config)

        engine.run_sync(SYNC_TRIGGER_MANUAL)

        self.assertTrue(self.transfer.calls[0]["delete"])

    def test_unknown_trigger_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            self._engine().run_sync("nightly")

    def test_status_payload_reports_last_run(self) -> None:
        engine = self._engine()
        run = engine.run_sync(SYNC_TRIGGER_MANUAL)

        payload = engine.status_payload()

        self.assertFalse(payload["in_progress"])
        self.assertEqual(payload["last_run"]["id"], run.id)
        self.assertEqual(payload["last_run"]["marker"]["sequence"], 1)
        self.assertEqual(payload["last_success_at"], run.finished_at)


class PeriodicSyncSchedulerTests(unittest.TestCase):
    def test_runs_periodically_and_survives_errors(self) -> None:
        ticks = []
        done = threading.Event()

        def tick() -> None:
            ticks.append(1)
            if len(ticks) == 1:
                raise RuntimeError("first tick fails")
            done.set()

        scheduler = PeriodicSyncScheduler(interval_seconds=0.01, run_periodic=tick)
        self.assertTrue(scheduler.start())
        self.assertFalse(scheduler.start())
        try:
            self.assertTrue(done.wait(5))
        finally:
            scheduler.stop()

        self.assertGreaterEqual(len(ticks), 2)
        self.assertFalse(scheduler.running)


if __name__ == "__main__":
    unittest.main()
