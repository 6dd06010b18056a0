import unittest
from datetime import date

import touchpoint_gap_audit as audit

AS_OF = date(2026, 2, 1)


def row(scholar_id, contact_date, channel="", program="", status=""):
    return audit.TouchpointRow(
        scholar_id=scholar_id,
        contact_date=contact_date,
        channel=channel,
        program=program,
        status=status,
    )


class IngestRowsTest(unittest.TestCase):
    def test_dedupe_by_day_keeps_one_contact_per_day(self):
        rows = [
            row("S1", "2026-01-01", "Email", "Alpha", "Reached"),
            row("S1", "2026-01-01", "SMS", "Alpha", "Reached"),
            row("S1", "2026-01-10", "Call", "Alpha", "Reached"),
        ]
        scholar = audit.ingest_rows(rows, AS_OF, dedupe_by_day=True).scholars["S1"]
        self.assertEqual(scholar.contact_count, 2)
        self.assertEqual(scholar.contacts, [date(2026, 1, 1), date(2026, 1, 10)])
        self.assertEqual(scholar.channels, {"Email": 1, "Call": 1})
        self.assertEqual(scholar.first_contact, date(2026, 1, 1))
        self.assertEqual(scholar.last_contact, date(2026, 1, 10))
        self.assertEqual(scholar.last_channel, "Call")

        raw = audit.ingest_rows(rows, AS_OF, dedupe_by_day=False).scholars["S1"]
        self.assertEqual(raw.contact_count, 3)
        self.assertEqual(raw.channels, {"Email": 1, "SMS": 1, "Call": 1})
        self.assertIsNone(raw.contact_dates)

    def test_same_day_duplicate_refreshes_last_status_only_when_deduping(self):
        rows = [
            row("S1", "2026-01-10", "Call", status="Reached"),
            row("S1", "2026-01-10", "SMS", status="Left Message"),
        ]
        deduped = audit.ingest_rows(rows, AS_OF, dedupe_by_day=True).scholars["S1"]
        self.assertEqual(deduped.contact_count, 1)
        self.assertEqual(deduped.last_channel, "SMS")
        self.assertEqual(deduped.last_status, "Left Message")

        raw = audit.ingest_rows(rows, AS_OF, dedupe_by_day=False).scholars["S1"]
        self.assertEqual(raw.contact_count, 2)
        self.assertEqual(raw.last_channel, "Call")
        self.assertEqual(raw.last_status, "Reached")

    def test_earlier_duplicate_day_does_not_replace_last_contact(self):
        rows = [
            row("S1", "2026-01-01", "Email", status="Reached"),
            row("S1", "2026-01-10", "Call", status="Reached"),
            row("S1", "2026-01-01", "SMS", status="Bounced"),
        ]
        scholar = audit.ingest_rows(rows, AS_OF, dedupe_by_day=True).scholars["S1"]
        self.assertEqual(scholar.contact_count, 2)
        self.assertEqual(scholar.last_contact, date(2026, 1, 10))
        self.assertEqual(scholar.last_channel, "Call")
        self.assertEqual(scholar.last_status, "Reached")

    def test_out_of_order_rows(self):
        rows = [
            row("S1", "2026-01-20", "Call", status="Reached"),
            row("S1", "2026-01-05", "Email", status="No Response"),
        ]
        scholar = audit.ingest_rows(rows, AS_OF, dedupe_by_day=False).scholars["S1"]
        self.assertEqual(scholar.first_contact, date(2026, 1, 5))
        self.assertEqual(scholar.last_contact, date(2026, 1, 20))
        self.assertEqual(scholar.last_status, "Reached")

    def test_first_non_empty_program_sticks(self):
        rows = [
            row("S1", "2026-01-01"),
            row("S1", "2026-01-02", program="Alpha"),
            row("S1", "2026-01-03", program="Beta"),
        ]
        scholar = audit.ingest_rows(rows, AS_OF, dedupe_by_day=False).scholars["S1"]
        self.assertEqual(scholar.program, "Alpha")

    def test_invalid_and_future_rows_are_counted_and_skipped(self):
        rows = [
            row("", "2026-01-01"),
            row("   ", "2026-01-01"),
            row("S1", ""),
            row("S1", "someday"),
            row("S1", "2026-02-02"),
            row("S2", "2026-03-15"),
            row("S1", "2026-01-15", "Email"),
        ]
        result = audit.ingest_rows(rows, AS_OF, dedupe_by_day=False)
        self.assertEqual(result.invalid_rows, 4)
        self.assertEqual(result.future_rows, 2)
        self.assertEqual(list(result.scholars), ["S1"])
        self.assertEqual(result.scholars["S1"].contact_count, 1)

    def test_unpadded_dates_are_invalid_rows(self):
        rows = [row("S1", "1/5/2026"), row("S1", "2026-1-5"), row("S1", "01/05/2026", "Email")]
        result = audit.ingest_rows(rows, AS_OF, dedupe_by_day=False)
        self.assertEqual(result.invalid_rows, 2)
        self.assertEqual(result.scholars["S1"].contact_count, 1)
        self.assertEqual(result.scholars["S1"].last_contact, date(2026, 1, 5))

    def test_as_of_day_with_time_is_not_future(self):
        rows = [row("S1", "2026-02-01T23:00:00")]
        result = audit.ingest_rows(rows, AS_OF, dedupe_by_day=False)
        self.assertEqual(result.future_rows, 0)
        self.assertEqual(result.scholars["S1"].last_contact, AS_OF)

    def test_scholars_keep_first_seen_order(self):
        rows = [row("B", "2026-01-01"), row("A", "2026-01-02"), row("B", "2026-01-03")]
        result = audit.ingest_rows(rows, AS_OF, dedupe_by_day=False)
        self.assertEqual(list(result.scholars), ["B", "A"])


class CheckRowTest(unittest.TestCase):
    def test_row_errors(self):
        with self.assertRaises(audit.MissingScholarId):
            audit.check_row(row("", "2026-01-01"), AS_OF)
        with self.assertRaises(audit.InvalidDate):
            audit.check_row(row("S1", ""), AS_OF)
        with self.assertRaises(audit.FutureDatedRow):
            audit.check_row(row("S1", "2026-02-02"), AS_OF)
        self.assertEqual(audit.check_row(row("S1", "01/15/2026"), AS_OF), date(2026, 1, 15))


class FoldRowTest(unittest.TestCase):
    def test_channel_histogram_ignores_blank_channel(self):
        scholar = audit.ScholarAccumulator(scholar_id="S1")
        audit.fold_row(scholar, date(2026, 1, 1), "", "", "", dedupe_by_day=False)
        audit.fold_row(scholar, date(2026, 1, 2), "Email", "", "", dedupe_by_day=False)
        self.assertEqual(scholar.channels, {"Email": 1})
        self.assertEqual(scholar.contact_count, 2)


if __name__ == "__main__":
    unittest.main()
