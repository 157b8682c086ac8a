import json
import logging
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from presence.autonomy.state import load_json_state, parse_iso, save_json_state, to_iso


def _default():
    return {"items": [], "last_cleanup": None}


class JsonStateTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = Path(self.tmp.name) / "memory" / "state.json"
        self.logger = logging.getLogger("presence.test.state")

    def tearDown(self):
        self.tmp.cleanup()

    def test_missing_file_yields_default(self):
        self.assertEqual(load_json_state(self.path, _default, self.logger), _default())

    def test_corrupt_file_resets_to_default_and_logs(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json", encoding="utf-8")
        with self.assertLogs("presence.test.state", level="WARNING") as logs:
            data = load_json_state(self.path, _default, self.logger, label="unit")
        self.assertEqual(data, _default())
        self.assertIn("state_corrupt label=unit", logs.output[0])

    def test_non_object_document_resets_to_default(self):
        self.path.parent.mkdir(parents=True)
        self.path.write_text("[1, 2]", encoding="utf-8")
        with self.assertLogs("presence.test.state", level="WARNING"):
            self.assertEqual(load_json_state(self.path, _default, self.logger), _default())

    def test_save_then_load_fills_missing_keys(self):
        self.assertTrue(save_json_state(self.path, {"items": [1]}, self.logger))
        data = load_json_state(self.path, _default, self.logger)
        self.assertEqual(data["items"], [1])
        self.assertIsNone(data["last_cleanup"])
        self.assertEqual(json.loads(self.path.read_text(encoding="utf-8")), {"items": [1]})

    def test_save_failure_returns_false(self):
        blocker = Path(self.tmp.name) / "blocker"
        blocker.write_text("x", encoding="utf-8")
        with self.assertLogs("presence.test.state", level="WARNING") as logs:
            ok = save_json_state(blocker / "state.json", {"a": 1}, self.logger)
        self.assertFalse(ok)
        self.assertIn("state_save_failed", logs.output[0])

    def test_none_path_is_memory_only(self):
        self.assertTrue(save_json_state(None, {"a": 1}, self.logger))
        self.assertEqual(load_json_state(None, _default, self.logger), _default())

    def test_iso_helpers_handle_zulu_and_naive(self):
        parsed = parse_iso("2026-03-01T10:00:00Z")
        self.assertEqual(parsed, datetime(2026, 3, 1, 10, tzinfo=timezone.utc))
        self.assertEqual(parse_iso("2026-03-01T10:00:00").tzinfo, timezone.utc)
        self.assertIsNone(parse_iso("yesterday"))
        self.assertEqual(to_iso(datetime(2026, 3, 1, 10)), "2026-03-01T10:00:00+00:00")


if __name__ == "__main__":
    unittest.main()
