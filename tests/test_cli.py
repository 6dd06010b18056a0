import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stdout
from unittest import mock

import touchpoint_gap_audit as audit

CSV_DATA = (
    "scholar_id,contact_date,channel,program,status\n"
    "S-1,2026-01-01,Email,Alpha,Reached\n"
    "S-1,2026-01-01,SMS,Alpha,Reached\n"
    "S-1,2026-01-10,Call,Alpha,Reached\n"
    "S-2,2025-10-01,Email,Beta,No Response\n"
    "S-3,2026-05-01,Email,Beta,Reached\n"
    ",2026-01-10,Email,Beta,Reached\n"
)


class MainTest(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmpdir.cleanup)
        self.input_path = self.path("touchpoints.csv")
        with open(self.input_path, "w", encoding="utf-8") as handle:
            handle.write(CSV_DATA)

    def path(self, name):
        return os.path.join(self.tmpdir.name, name)

    def run_main(self, *extra):
        output = io.StringIO()
        with redirect_stdout(output):
            audit.main(["--input", self.input_path, "--as-of", "2026-02-01", *extra])
        return output.getvalue()

    def test_prints_report_and_writes_outputs(self):
        json_path = self.path("report.json")
        alerts_path = self.path("alerts.csv")
        due_path = self.path("due.csv")
        output = self.run_main("--dedupe-day", "--json", json_path, "--alerts", alerts_path, "--due-csv", due_path)

        self.assertIn("Group Scholar Touchpoint Gap Audit", output)
        self.assertIn("Total scholars: 2", output)
        self.assertIn("Invalid rows skipped: 1", output)
        self.assertIn("Future-dated rows ignored: 1", output)
        self.assertIn("S-2 | Beta | gap 123 days | critical", output)
        self.assertIn("Due buckets: overdue 1 | due_8_14 1", output)

        with open(json_path, encoding="utf-8") as handle:
            payload = json.load(handle)
        self.assertEqual(payload["summary"]["cadence_days"], 30)
        self.assertEqual(payload["summary"]["due_window_days"], 15)
        s1 = next(item for item in payload["scholars"] if item["scholar_id"] == "S-1")
        self.assertEqual(s1["contact_count"], 2)
        self.assertEqual(s1["avg_interval_days"], 9.0)
        self.assertTrue(os.path.exists(alerts_path))
        self.assertTrue(os.path.exists(due_path))

    def test_policy_errors_exit(self):
        with self.assertRaises(SystemExit) as ctx:
            self.run_main("--cadence", "0")
        self.assertIn("cadence must be positive", str(ctx.exception.code))

        with self.assertRaises(SystemExit) as ctx:
            self.run_main("--alerts", self.path("alerts.csv"), "--min-tier", "urgent")
        self.assertIn("invalid tier", str(ctx.exception.code))

        with self.assertRaises(SystemExit):
            audit.main(["--input", self.input_path, "--as-of", "Feb 1"])

    def test_structural_error_exits(self):
        bad_path = self.path("bad.csv")
        with open(bad_path, "w", encoding="utf-8") as handle:
            handle.write("name,contact_date\nAvery,2026-01-01\n")
        with self.assertRaises(SystemExit) as ctx:
            audit.main(["--input", bad_path])
        self.assertIn("missing scholar_id column", str(ctx.exception.code))

    def test_db_flag_requires_dsn(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            with self.assertRaises(SystemExit) as ctx:
                self.run_main("--db")
        self.assertIn("Database URL missing", str(ctx.exception.code))

    def test_seed_then_skip_duplicate_insert(self):
        with mock.patch.dict(os.environ, {"TOUCHPOINT_GAP_AUDIT_DB_URL": "postgresql://db"}, clear=True), \
                mock.patch.object(audit, "seed_database", return_value="run-1") as seed, \
                mock.patch.object(audit, "write_report_to_db") as write:
            output = self.run_main("--db", "--init-db", "--db-tag", "weekly")
        seed.assert_called_once()
        config = seed.call_args[0][1]
        self.assertEqual(config, audit.DBConfig(dsn="postgresql://db", schema="touchpoint_gap_audit", tag="weekly"))
        write.assert_not_called()
        self.assertIn("run_id=run-1", output)
        self.assertIn("Skipped duplicate insert", output)


if __name__ == "__main__":
    unittest.main()
