"""Tests for Event Listeners."""

import json
import tempfile
import threading
import unittest
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import MagicMock

from dropcatch import (
    AcquisitionResult,
    AttemptOutcome,
    AttemptRecord,
    DropEventListener,
    FileLoggingListener,
    MetricsListener,
    RunSummary,
)
from dropcatch._event_listeners import notify_listeners
from dropcatch._retry import DeadlineExceededError


def make_record(outcome: AttemptOutcome = AttemptOutcome.RETRYABLE_FAILURE, target: str = "a.se") -> AttemptRecord:
    return AttemptRecord(
        target=target,
        attempt_number=1,
        started_at=datetime(2026, 3, 1, 4, 0, tzinfo=UTC),
        outcome=outcome,
        duration=0.05,
    )


class TestNotifyListeners(unittest.TestCase):

    def test_calls_event_on_every_listener(self):
        first, second = MagicMock(), MagicMock()

        notify_listeners([first, second], "on_quota_reset", previous_calls=60)

        first.on_quota_reset.assert_called_once_with(previous_calls=60)
        second.on_quota_reset.assert_called_once_with(previous_calls=60)

    def test_listener_exception_is_logged_and_swallowed(self):
        failing, healthy = MagicMock(), MagicMock()
        failing.on_target_finished.side_effect = RuntimeError("boom")
        result = AcquisitionResult(target="a.se", success=True, attempts=1)

        with self.assertLogs("dropcatch._event_listeners", level="WARNING") as logs:
            notify_listeners([failing, healthy], "on_target_finished", result=result)

        healthy.on_target_finished.assert_called_once_with(result=result)
        self.assertIn("boom", logs.output[0])

    def test_base_listener_hooks_are_no_ops(self):
        listener = DropEventListener()
        listener.on_quota_reset(previous_calls=1)
        listener.on_quota_exceeded(method="getDomain", calls_this_hour=60, quota=60)
        listener.on_latch_engaged(method="orderDomain", reason="AUTH_ERROR")
        listener.on_attempt_start(target="a.se", attempt_number=1)
        listener.on_attempt_end(record=make_record())
        listener.on_target_finished(result=AcquisitionResult(target="a.se", success=True))
        listener.on_run_finished(summary=RunSummary())


class TestMetricsListener(unittest.TestCase):

    def test_counts_events(self):
        metrics = MetricsListener()

        metrics.on_attempt_start(target="a.se", attempt_number=1)
        metrics.on_attempt_start(target="a.se", attempt_number=2)
        metrics.on_attempt_start(target="b.se", attempt_number=1)
        metrics.on_attempt_end(record=make_record(AttemptOutcome.RETRYABLE_FAILURE))
        metrics.on_attempt_end(record=make_record(AttemptOutcome.SUCCESS))
        metrics.on_quota_reset(previous_calls=12)
        metrics.on_quota_exceeded(method="getDomain", calls_this_hour=60, quota=60)
        metrics.on_latch_engaged(method="orderDomain", reason="RATE_LIMITED")

        self.assertEqual(metrics.attempts, 3)
        self.assertEqual(metrics.attempts_per_target, {"a.se": 2, "b.se": 1})
        self.assertEqual(metrics.outcomes[AttemptOutcome.SUCCESS], 1)
        self.assertEqual(metrics.outcomes[AttemptOutcome.RETRYABLE_FAILURE], 1)
        self.assertEqual(metrics.quota_resets, 1)
        self.assertEqual(metrics.quota_exceeded, 1)
        self.assertEqual(metrics.latch_reasons, ["RATE_LIMITED"])

    def test_is_thread_safe(self):
        metrics = MetricsListener()

        def worker():
            for i in range(500):
                metrics.on_attempt_start(target="a.se", attempt_number=i)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(metrics.attempts, 4000)


class TestFileLoggingListener(unittest.TestCase):

    def test_init_creates_output_directory_if_not_exists(self):
        with tempfile.TemporaryDirectory() as tmp:
            output_dir = Path(tmp) / "nested" / "output"

            listener = FileLoggingListener(str(output_dir))

            self.assertTrue(output_dir.is_dir())
            self.assertEqual(listener.output_dir, output_dir)

    def test_init_fails_when_output_dir_is_empty_string(self):
        with self.assertRaises(AssertionError):
            FileLoggingListener("")

    def test_writes_target_result(self):
        with tempfile.TemporaryDirectory() as tmp:
            listener = FileLoggingListener(tmp)
            result = AcquisitionResult(
                target="a.se", success=False, attempts=7,
                error=DeadlineExceededError(window=3600.0),
            )

            listener.on_target_finished(result)

            data = json.loads((Path(tmp) / "a.se-result.json").read_text(encoding="utf-8"))
            self.assertEqual(data["target"], "a.se")
            self.assertFalse(data["success"])
            self.assertEqual(data["attempts"], 7)
            self.assertTrue(data["error"].startswith("DeadlineExceededError"))

    def test_writes_run_summary(self):
        with tempfile.TemporaryDirectory() as tmp:
            listener = FileLoggingListener(tmp)
            summary = RunSummary(results=[
                AcquisitionResult(target="a.se", success=True, attempts=1),
                AcquisitionResult(target="b.se", success=False, attempts=3, error=RuntimeError("x")),
            ])

            listener.on_run_finished(summary)

            files = list(Path(tmp).glob("summary-*.json"))
            self.assertEqual(len(files), 1)
            data = json.loads(files[0].read_text(encoding="utf-8"))
            self.assertEqual(data["total"], 2)
            self.assertEqual(data["succeeded"], 1)
            self.assertEqual(data["failed"], 1)
            self.assertEqual([r["target"] for r in data["results"]], ["a.se", "b.se"])


if __name__ == "__main__":
    unittest.main()
