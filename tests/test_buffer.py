"""Tests for the on-disk event buffer."""

import json
import tempfile
import unittest
from pathlib import Path

from telepool._buffer import EventBuffer
from telepool._events import InvalidEventError, new_event


class TestEventBuffer(unittest.TestCase):
    """Tests for EventBuffer."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.directory = Path(self.temp_dir.name) / "buffer"
        self.buffer = EventBuffer(self.directory)

    def tearDown(self):
        self.temp_dir.cleanup()

    def _write_raw(self, name, content):
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / name
        path.write_text(content)
        return path

    def test_empty_when_directory_missing(self):
        self.assertEqual(self.buffer.count(), 0)
        self.assertEqual(self.buffer.read(), [])

    def test_append_writes_one_file_per_event(self):
        first = self.buffer.append(new_event("session_start", session_id="s-1"))
        self.buffer.append(new_event("tool_call", session_id="s-1"))

        self.assertEqual(self.buffer.count(), 2)
        self.assertEqual(first.path.name, f"{first.event_id}.json")
        self.assertEqual(json.loads(first.path.read_text())["type"], "session_start")

    def test_append_rejects_invalid_event(self):
        with self.assertRaises(InvalidEventError):
            self.buffer.append({"type": "tool_call"})

        self.assertEqual(self.buffer.count(), 0)

    def test_read_is_fifo_by_file_name(self):
        for name in ("003.json", "001.json", "002.json"):
            self._write_raw(name, json.dumps({"type": name, "timestamp": "t", "sessionId": "s"}))

        events = self.buffer.read()

        self.assertEqual([e.event_id for e in events], ["001", "002", "003"])
        self.assertEqual(events[0].payload["type"], "001.json")

    def test_rapid_appends_read_back_in_append_order(self):
        appended = [self.buffer.append(new_event("tool_call", session_id="s-1", seq=i)) for i in range(300)]

        events = self.buffer.read()

        self.assertEqual([e.event_id for e in events], [e.event_id for e in appended])
        self.assertEqual([e.payload["seq"] for e in events], list(range(300)))

    def test_read_respects_limit(self):
        for i in range(5):
            self.buffer.append(new_event("tool_call", session_id="s-1", seq=i))

        self.assertEqual(len(self.buffer.read(limit=3)), 3)

    def test_ignores_non_json_files(self):
        self.buffer.append(new_event("tool_call", session_id="s-1"))
        self._write_raw("notes.txt", "hello")
        self._write_raw(".config.json.abc.tmp", "{}")

        self.assertEqual(self.buffer.count(), 1)

    def test_corrupt_file_is_quarantined_not_sent(self):
        good = self.buffer.append(new_event("tool_call", session_id="s-1"))
        bad = self._write_raw("000.json", "{truncated")

        with self.assertLogs("telepool._buffer", level="WARNING"):
            events = self.buffer.read()

        self.assertEqual([e.event_id for e in events], [good.event_id])
        self.assertFalse(bad.exists())
        self.assertTrue((self.directory / "000.json.corrupt").exists())
        self.assertEqual(self.buffer.count(), 1)

    def test_invalid_event_file_is_quarantined(self):
        self._write_raw("000.json", json.dumps({"type": "tool_call"}))

        with self.assertLogs("telepool._buffer", level="WARNING"):
            self.assertEqual(self.buffer.read(), [])

        self.assertTrue((self.directory / "000.json.corrupt").exists())

    def test_remove_deletes_acknowledged_events(self):
        events = [self.buffer.append(new_event("tool_call", session_id="s-1")) for _ in range(3)]

        removed = self.buffer.remove(events[:2])

        self.assertEqual(removed, 2)
        self.assertEqual([e.event_id for e in self.buffer.read()], [events[2].event_id])

    def test_remove_tolerates_files_already_gone(self):
        event = self.buffer.append(new_event("tool_call", session_id="s-1"))
        event.path.unlink()

        self.assertEqual(self.buffer.remove([event]), 0)

    def test_clear_keeps_quarantined_files(self):
        self.buffer.append(new_event("tool_call", session_id="s-1"))
        self._write_raw("000.json.corrupt", "{")

        self.assertEqual(self.buffer.clear(), 1)
        self.assertEqual(self.buffer.count(), 0)
        self.assertTrue((self.directory / "000.json.corrupt").exists())


if __name__ == "__main__":
    unittest.main()
