import base64
import unittest
from datetime import datetime

from errors import ReportDecodeError
from header_phrases import AGENT_SENTINEL
from metrics import SourceRows, aggregate
from report_parser import (
    extract_non_converted,
    extract_report,
    extract_rows,
    find_header_row,
    load_grid,
)
from report_samples import SAMPLE_REPORTS, workbook_bytes


class TestExtractRows(unittest.TestCase):
    def test_grouped_owner_column_is_filled_down(self):
        grid = [
            ["Trips Report", None, None, None, None],
            ["Owner contains Jane", None, None, None, None],
            ["Owner Name", "Trip Name", "Trip: Created Date", "Repeat/New", "Passthrough to Sales Date"],
            ["Jane Doe", "Smith - Italy", "2024-03-04", "New", None],
            [None, "Lee - Peru", "2024-03-05", "Repeat", "2024-03-06"],
            ["Subtotal", None, None, None, None],
            ["John Roe", "Kim - Japan", "2024-03-05", None, None],
            ["Grand Total", None, None, None, None],
        ]
        rows = extract_rows(grid)
        self.assertEqual([r["owner name"] for r in rows], ["Jane Doe", "Jane Doe", "John Roe"])
        self.assertEqual(rows[1]["trip name"], "Lee - Peru")
        self.assertEqual(rows[1]["passthrough to sales date"], "2024-03-06")
        self.assertEqual(rows[0]["passthrough to sales date"], "")

    def test_group_label_rows_attach_sentinel(self):
        grid = [
            ["Trip Name", "Created Date", "Quote First Sent", "Stage"],
            ["Jane Doe", None, None, None],
            ["Smith - Italy", "2024-03-04", "2024-03-05", "Sent"],
            ["Lee - Peru", "2024-03-04", "2024-03-06", "Sent"],
            ["John Roe", None, None, None],
            ["Kim - Japan", "2024-03-05", "2024-03-07", "Sent"],
        ]
        rows = extract_rows(grid)
        self.assertEqual([r[AGENT_SENTINEL] for r in rows], ["Jane Doe", "Jane Doe", "John Roe"])
        self.assertEqual(rows[2]["trip name"], "Kim - Japan")

    def test_summary_rows_do_not_change_current_agent(self):
        grid = [
            ["Trip Name", "Created Date", "Quote First Sent", "Stage"],
            ["Jane Doe", None, None, None],
            ["Smith - Italy", "2024-03-04", "2024-03-05", "Sent"],
            ["Total", "1", None, None],
            ["Lee - Peru", "2024-03-04", "2024-03-06", "Sent"],
        ]
        rows = extract_rows(grid)
        self.assertEqual(len(rows), 2)
        self.assertEqual(rows[1][AGENT_SENTINEL], "Jane Doe")

    def test_filter_rows_are_not_headers(self):
        grid = [
            ["Owner Name contains Jane", "Created Date equals THIS MONTH", "x", "y"],
            ["Owner Name", "Trip Name", "Created Date", "Stage"],
            ["Jane Doe", "Smith - Italy", "2024-03-04", "Open"],
        ]
        self.assertEqual(find_header_row(grid), 1)
        self.assertEqual(extract_rows(grid)[0]["owner name"], "Jane Doe")

    def test_plain_owner_headers(self):
        for owner in ("Owner", "Sales Agent", "Assigned Agent"):
            grid = [
                [owner, "Trip Name", "Created Date", "Stage"],
                ["Jane Doe", "Smith - Italy", "2024-03-04", "Open"],
                [None, "Lee - Peru", "2024-03-05", "Open"],
            ]
            rows = extract_rows(grid)
            key = owner.lower()
            self.assertEqual([r[key] for r in rows], ["Jane Doe", "Jane Doe"], owner)
            self.assertNotIn(AGENT_SENTINEL, rows[0])

            result = aggregate(SourceRows(trips=rows))
            self.assertEqual([m.agent_name for m in result.metrics], ["Jane Doe"], owner)
            self.assertEqual(result.time_series["2024-03-04"]["trips"]["Jane Doe"], 1)

    def test_repeat_column_is_not_an_owner(self):
        grid = [
            ["Trip Name", "Created Date", "Repeat/New", "Stage"],
            ["Jane Doe", None, None, None],
            ["Smith - Italy", "2024-03-04", "Repeat", "Open"],
        ]
        rows = extract_rows(grid)
        self.assertEqual(rows[0][AGENT_SENTINEL], "Jane Doe")
        self.assertEqual(rows[0]["repeat/new"], "Repeat")

    def test_fallback_header_is_first_non_empty_row(self):
        grid = [
            [None, None, None],
            ["Agent", "When", "What"],
            ["Jane Doe", "2024-03-04", "Call"],
        ]
        self.assertIsNone(find_header_row(grid))
        rows = extract_rows(grid)
        self.assertEqual(rows, [{"agent": "Jane Doe", "when": "2024-03-04", "what": "Call"}])

    def test_duplicate_and_blank_headers(self):
        grid = [
            ["Owner Name", "Created Date", "Created Date", None, "Stage"],
            ["Jane Doe", "2024-03-04", "2024-03-05", "x", "Open"],
        ]
        row = extract_rows(grid)[0]
        self.assertEqual(row["created date"], "2024-03-04")
        self.assertEqual(row["created date_1"], "2024-03-05")
        self.assertEqual(row["column_3"], "x")

    def test_cell_values_are_stringified(self):
        grid = [
            ["Owner Name", "Trip Name", "Created Date", "Travellers"],
            ["Jane Doe", "Smith - Italy", datetime(2024, 3, 4), 4.0],
            ["Jane Doe", "Lee - Peru", datetime(2024, 3, 4, 9, 30), 2],
        ]
        rows = extract_rows(grid)
        self.assertEqual(rows[0]["created date"], "2024-03-04")
        self.assertEqual(rows[0]["travellers"], "4")
        self.assertEqual(rows[1]["created date"], "2024-03-04 09:30:00")

    def test_empty_grid(self):
        self.assertEqual(extract_rows([]), [])
        self.assertEqual(extract_rows([[None, None]]), [])


class TestNonConverted(unittest.TestCase):
    def test_counts_rows_with_reason(self):
        grid = [
            ["Non Converted Leads", None, None, None],
            ["Lead Owner", "Non Validated Reason", "Trip Name", "Created Date"],
            ["Jane Doe", "No response", "Smith - Italy", "2024-03-04"],
            ["Jane Doe", None, "Lee - Peru", "2024-03-05"],
            ["John Roe", "Budget", "Kim - Japan", None],
            ["Total", None, None, None],
        ]
        report = extract_non_converted(grid)
        self.assertEqual(report.owner_column, "lead owner")
        self.assertEqual(report.reason_column, "non validated reason")
        self.assertEqual(len(report.rows), 3)
        self.assertEqual(report.counts, {"Jane Doe": 1, "John Roe": 1})

    def test_two_cell_rows_are_records_not_labels(self):
        grid = [
            ["Lead Owner", "Non Validated Reason", "Trip Name", "Created Date"],
            ["Jane Doe", "No response", None, None],
            ["Sam Lee", "Wrong number", None, None],
        ]
        report = extract_non_converted(grid)
        self.assertEqual(report.counts, {"Jane Doe": 1, "Sam Lee": 1})


class TestLoadGrid(unittest.TestCase):
    def test_xlsx_bytes(self):
        data = workbook_bytes(SAMPLE_REPORTS["quotes"])
        grid = load_grid(data, filename="quotes.xlsx")
        self.assertEqual(grid[0][0], "Owner Name")
        self.assertEqual(len(grid), 4)

    def test_base64_data_url(self):
        data = workbook_bytes(SAMPLE_REPORTS["quotes"])
        b64 = "data:application/octet-stream;base64," + base64.b64encode(data).decode("utf-8")
        rows = extract_report(b64, filename="quotes.xlsx").rows
        self.assertEqual(rows[0]["quote first sent"], "2024-03-05")

    def test_csv(self):
        data = b"Owner Name,Trip Name,Created Date,Stage\nJane Doe,Smith - Italy,2024-03-04,Open\n"
        rows = extract_report(data, filename="trips.csv").rows
        self.assertEqual(rows, [{
            "owner name": "Jane Doe",
            "trip name": "Smith - Italy",
            "created date": "2024-03-04",
            "stage": "Open",
        }])

    def test_csv_with_title_line_and_quoted_commas(self):
        data = (
            b"Trips Report\n"
            b"\n"
            b"Owner Name,Trip Name,Created Date,Stage\n"
            b"Jane Doe,\"Smith, Italy\",2024-03-04,NA\n"
            b"John Roe,Kim - Japan,,Open\n"
        )
        grid = load_grid(data, filename="trips.csv")
        self.assertEqual(len(grid[0]), 4)
        self.assertEqual(grid[0][0], "Trips Report")
        self.assertIsNone(grid[0][1])

        rows = extract_rows(grid)
        self.assertEqual(rows[0]["trip name"], "Smith, Italy")
        self.assertEqual(rows[0]["stage"], "NA")
        self.assertEqual(rows[1]["created date"], "")

    def test_undecodable_file(self):
        with self.assertRaises(ReportDecodeError) as ctx:
            load_grid(b"definitely not a workbook", filename="trips.xlsx")
        self.assertIn("trips.xlsx", ctx.exception.user_message)

    def test_non_converted_kind(self):
        data = workbook_bytes(SAMPLE_REPORTS["non_converted"])
        report = extract_report(data, filename="nc.xlsx", kind="non_converted")
        self.assertEqual(report.counts, {"Jane Doe": 1})


if __name__ == "__main__":
    unittest.main()
