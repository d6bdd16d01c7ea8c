import unittest
from datetime import date, datetime

import pandas as pd

from date_normalizer import normalize_date, parse_iso, to_iso


class TestNormalizeDate(unittest.TestCase):
    def test_serial_number(self):
        self.assertEqual(normalize_date(44197), date(2021, 1, 1))
        self.assertEqual(normalize_date(44197.75), date(2021, 1, 1))

    def test_serial_number_as_text(self):
        self.assertEqual(normalize_date("44197"), date(2021, 1, 1))

    def test_numeric_cells_outside_serial_window_are_not_dates(self):
        self.assertIsNone(normalize_date(12))
        self.assertIsNone(normalize_date(3.0))
        self.assertIsNone(normalize_date(250000))

    def test_numeric_text_outside_serial_window_is_parsed_as_calendar_text(self):
        self.assertEqual(normalize_date("20240304"), date(2024, 3, 4))

    def test_thousands_separator_is_not_a_serial(self):
        # serial day 1234 would be 1903-05-18
        self.assertNotEqual(normalize_date("1,234"), date(1903, 5, 18))
        self.assertEqual(normalize_date("1234"), date(1903, 5, 18))

    def test_blank_values(self):
        for blank in (None, "", "   ", float("nan"), pd.NaT, "NaT", "null"):
            self.assertIsNone(normalize_date(blank), blank)

    def test_iso_strings(self):
        self.assertEqual(normalize_date("2024-03-15"), date(2024, 3, 15))
        self.assertEqual(normalize_date("2024-03-15T10:30:00"), date(2024, 3, 15))
        self.assertEqual(normalize_date("2024-03-15 23:59:59"), date(2024, 3, 15))

    def test_slash_dates_are_month_first(self):
        self.assertEqual(normalize_date("3/15/2024"), date(2024, 3, 15))
        self.assertEqual(normalize_date("03/04/2024"), date(2024, 3, 4))

    def test_datetime_cells(self):
        self.assertEqual(normalize_date(datetime(2024, 3, 4, 17, 45)), date(2024, 3, 4))
        self.assertEqual(normalize_date(pd.Timestamp("2024-03-04 08:00")), date(2024, 3, 4))
        self.assertEqual(normalize_date(date(2024, 3, 4)), date(2024, 3, 4))

    def test_garbage_never_raises(self):
        self.assertIsNone(normalize_date("Jane Doe"))


class TestIsoHelpers(unittest.TestCase):
    def test_to_iso(self):
        self.assertEqual(to_iso(44197), "2021-01-01")
        self.assertIsNone(to_iso(""))

    def test_parse_iso(self):
        self.assertEqual(parse_iso("2024-03-01"), date(2024, 3, 1))
        self.assertIsNone(parse_iso(None))
        self.assertIsNone(parse_iso("  "))

    def test_parse_iso_rejects_garbage(self):
        with self.assertRaises(ValueError):
            parse_iso("03/01/2024")


if __name__ == "__main__":
    unittest.main()
