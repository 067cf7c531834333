"""Tests for the append-only event log."""
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from sightline.events import EventLog, parse_event_name


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestEventLog(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.clock = FakeClock()
        self.log = EventLog(Path(self.tmp.name), clock=self.clock)

    def tearDown(self):
        self.tmp.cleanup()

    def test_parse_event_name(self):
        self.assertEqual(parse_event_name("analysis/vision.started"), ("analysis", "vision", "started"))
        self.assertEqual(
            parse_event_name("group-analysis/job.created"), ("group-analysis", "job", "created")
        )

    def test_completed_event_derives_timing_from_start(self):
        self.log.append("job-1", "analysis/vision.started", status="processing")
        self.clock.advance(2.5)
        event = self.log.append("job-1", "analysis/vision.completed", status="processing")
        self.assertEqual(event.started_at, 1_000_000)
        self.assertEqual(event.ended_at, 1_002_500)
        self.assertEqual(event.duration_ms, 2500)

    def test_timing_is_null_without_start(self):
        event = self.log.append("job-1", "analysis/ai.failed", status="failed")
        self.assertIsNone(event.started_at)
        self.assertIsNone(event.ended_at)
        self.assertIsNone(event.duration_ms)
        timing = self.log.derive_timing("job-1", "ai")
        self.assertIsNone(timing.duration_ms)

    def test_provider_timing_uses_matching_provider_start(self):
        self.log.append("job-1", "analysis/vision.started", metadata={"provider": "google-vision"})
        self.clock.advance(1)
        self.log.append("job-1", "analysis/vision.started", metadata={"provider": "gpt-4o-vision"})
        self.clock.advance(3)
        event = self.log.append("job-1", "analysis/vision.completed", metadata={"provider": "google-vision"})
        self.assertEqual(event.duration_ms, 4000)

    def test_most_recent_start_wins(self):
        self.log.append("job-1", "analysis/vision.started")
        self.clock.advance(10)
        self.log.append("job-1", "analysis/vision.started")
        self.clock.advance(1)
        event = self.log.append("job-1", "analysis/vision.completed")
        self.assertEqual(event.duration_ms, 1000)

    def test_provider_outcomes_take_latest_terminal_phase(self):
        start = self.log.append("job-1", "analysis/vision.started")
        self.log.append("job-1", "analysis/vision.failed", metadata={"provider": "a"})
        self.log.append("job-1", "analysis/vision.completed", metadata={"provider": "b"})
        self.log.append("job-1", "analysis/vision.completed", metadata={"provider": "a"})
        outcomes = self.log.provider_outcomes("job-1", "vision", start.id)
        self.assertEqual(outcomes, {"a": "completed", "b": "completed"})

    def test_events_are_append_only_and_ordered(self):
        names = ["analysis/job.created", "analysis/vision.started", "analysis/vision.completed"]
        for name in names:
            self.log.append("job-1", name)
        self.assertEqual([e.event_name for e in self.log.events_for("job-1")], names)

    def test_append_swallows_write_failures(self):
        with patch("builtins.open", side_effect=OSError("disk full")):
            result = self.log.append("job-1", "analysis/vision.started")
        self.assertIsNone(result)


if __name__ == "__main__":
    unittest.main()
