from __future__ import annotations

import unittest
from datetime import datetime, timezone

from hashtag_importer.pump import STATUS_FATAL, STATUS_SHUTDOWN, PumpResult
from hashtag_importer.records import ImportState
from hashtag_importer.summary import build_summary, format_summary


class TestSummary(unittest.TestCase):
    def test_shutdown_summary(self) -> None:
        state = ImportState(
            cursor="250",
            cursor_version=2,
            last_success_at=datetime(2025, 12, 1, tzinfo=timezone.utc),
            cycles=2,
            records_fetched=250,
            entities_written=20,
            dropped=3,
            drop_reasons={"invalid_metric": 1, "empty_tag": 2},
        )
        summary = build_summary(PumpResult(status=STATUS_SHUTDOWN, state=state))

        self.assertEqual(summary["status"], "shutdown")
        self.assertEqual(summary["records_processed"], 250)
        self.assertEqual(list(summary["drop_reasons"]), ["empty_tag", "invalid_metric"])
        self.assertIsNone(summary["error"])

        lines = format_summary(summary).splitlines()
        self.assertIn("status=shutdown", lines)
        self.assertIn("cycles=2", lines)
        self.assertIn("last_cursor=250", lines)
        self.assertIn("last_success_at=2025-12-01T00:00:00+00:00", lines)
        self.assertFalse(any(line.startswith("error=") for line in lines))

    def test_fatal_summary_carries_error(self) -> None:
        summary = build_summary(PumpResult(status=STATUS_FATAL, state=ImportState(), error="HTTP 401"))

        self.assertIn("HTTP 401", summary["summary"])
        lines = format_summary(summary).splitlines()
        self.assertIn("status=halted_fatal", lines)
        self.assertIn("last_cursor=", lines)
        self.assertEqual(lines[-1], "error=HTTP 401")


if __name__ == "__main__":
    unittest.main()
