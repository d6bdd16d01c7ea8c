import unittest

from trends import DEPARTMENT, date_span, fill_gaps, group_daily, rolling_average

SERIES = {
    "2024-03-04": {
        "trips": {"Jane Doe": 2, "John Roe": 2, "seniors": 2, "others": 2},
        "quotes": {"Jane Doe": 1, "seniors": 1},
    },
    "2024-03-07": {
        "trips": {"John Roe": 1, "others": 1},
    },
}


class TestFillGaps(unittest.TestCase):
    def test_every_day_present(self):
        dense = fill_gaps(SERIES)
        self.assertEqual(list(dense), ["2024-03-04", "2024-03-05", "2024-03-06", "2024-03-07"])
        self.assertEqual(dense["2024-03-05"], {})

    def test_explicit_bounds(self):
        dense = fill_gaps(SERIES, "2024-03-03", "2024-03-04")
        self.assertEqual(list(dense), ["2024-03-03", "2024-03-04"])

    def test_does_not_mutate_input(self):
        fill_gaps(SERIES)["2024-03-04"]["trips"]["Jane Doe"] = 99
        self.assertEqual(SERIES["2024-03-04"]["trips"]["Jane Doe"], 2)

    def test_empty(self):
        self.assertEqual(fill_gaps({}), {})
        self.assertIsNone(date_span({}))

    def test_reversed_bounds(self):
        self.assertEqual(fill_gaps(SERIES, "2024-03-05", "2024-03-04"), {})

    def test_crosses_month_end(self):
        dense = fill_gaps({}, "2024-02-28", "2024-03-01")
        self.assertEqual(list(dense), ["2024-02-28", "2024-02-29", "2024-03-01"])


class TestGroupDaily(unittest.TestCase):
    def test_department_sums_agents_only(self):
        points = group_daily(SERIES, DEPARTMENT)
        self.assertEqual(points[0]["trips"], 4)
        self.assertEqual(points[0]["quotes"], 1)
        self.assertEqual(points[0]["tq"], 25.0)

    def test_cohort(self):
        points = group_daily(SERIES, "seniors")
        self.assertEqual(points[0]["trips"], 2)
        self.assertEqual(points[0]["tq"], 50.0)
        self.assertEqual(points[1]["trips"], 0)
        self.assertEqual(points[1]["tq"], 0.0)

    def test_unknown_group(self):
        with self.assertRaises(ValueError):
            group_daily(SERIES, "Jane Doe")


class TestRollingAverage(unittest.TestCase):
    def test_trailing_window(self):
        points = group_daily(fill_gaps(SERIES), DEPARTMENT)
        avg = rolling_average(points, "trips", window=2)
        self.assertEqual([p["trips"] for p in avg], [4.0, 2.0, 0.0, 0.5])

    def test_window_longer_than_series(self):
        points = group_daily(SERIES, DEPARTMENT)
        avg = rolling_average(points, "trips", window=7)
        self.assertEqual(avg, [{"date": "2024-03-04", "trips": 4.0}, {"date": "2024-03-07", "trips": 2.5}])
        self.assertEqual(rolling_average([], "trips"), [])

    def test_bad_window(self):
        with self.assertRaises(ValueError):
            rolling_average([], "trips", window=0)


if __name__ == "__main__":
    unittest.main()
