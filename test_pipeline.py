import unittest
from datetime import datetime, timezone

from db import MemoryStore
from errors import PipelineError, ReportDecodeError, SourceShapeError, StorageError
from metrics import DateRange
from pipeline import (
    METRICS_KEY,
    ROWSETS_KEY,
    SUMMARY_KEY,
    TIMESERIES_KEY,
    clear_snapshot,
    persist,
    process_files,
    reaggregate,
    run_pipeline,
)
from records import RECORDS_KEY
from report_samples import report_files

NOW = datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc)


class FlakyStore(MemoryStore):
    """Refuses writes once broken, the way PostgresStore reports a lost database."""

    broken = False

    def set_many(self, items):
        if self.broken:
            return False
        return super().set_many(items)


class TestProcessFiles(unittest.TestCase):
    def test_reports_every_file(self):
        seen = []
        sources = process_files(report_files(), progress=lambda stage, pct: seen.append((stage, pct)))
        self.assertEqual(len(sources.trips), 3)
        self.assertEqual(len(sources.quotes), 3)
        self.assertEqual(sources.non_converted_counts, {"Jane Doe": 1})
        self.assertIsNone(sources.quotes_started)
        self.assertEqual(seen[0], ("Parsing trips...", 0))
        self.assertEqual(seen[-1], ("Complete!", 100))
        self.assertEqual(len(seen), 7)

    def test_missing_required_report(self):
        with self.assertRaises(SourceShapeError) as ctx:
            process_files(report_files(omit=("bookings",)))
        self.assertEqual(ctx.exception.source, "bookings")

    def test_unknown_report_kind(self):
        files = report_files()
        files["invoices"] = ("invoices.xlsx", b"")
        with self.assertRaises(PipelineError):
            process_files(files)

    def test_decode_error_names_the_source(self):
        files = report_files()
        files["quotes"] = ("quotes.xlsx", b"not a workbook")
        with self.assertRaises(ReportDecodeError) as ctx:
            process_files(files)
        self.assertEqual(ctx.exception.source, "quotes")
        self.assertIn("quotes report 'quotes.xlsx'", ctx.exception.user_message)

    def test_broken_progress_listener_is_ignored(self):
        def explode(stage, pct):
            raise RuntimeError("listener gone")
        sources = process_files(report_files(), progress=explode)
        self.assertEqual(len(sources.bookings), 1)


class TestRunPipeline(unittest.TestCase):
    def setUp(self):
        self.kv = MemoryStore()
        self.blob = MemoryStore()

    def test_full_run(self):
        result = run_pipeline(report_files(), seniors=["Jane Doe"], kv_store=self.kv, blob_store=self.blob, now=NOW)
        metrics = {m.agent_name: m for m in result.aggregation.metrics}

        jane = metrics["Jane Doe"]
        self.assertEqual((jane.trips, jane.quotes, jane.passthroughs, jane.hot_passes), (2, 2, 1, 1))
        self.assertEqual(jane.non_converted_leads, 1)
        self.assertEqual(jane.quotes_from_trips, 100.0)
        self.assertEqual(jane.passthroughs_from_trips, 50.0)
        self.assertEqual(jane.quotes_from_passthroughs, 200.0)
        self.assertEqual(jane.repeat_trips, 1)
        self.assertEqual(jane.repeat_tp_rate, 0.0)

        john = metrics["John Roe"]
        self.assertEqual((john.trips, john.bookings, john.repeat_passthroughs), (1, 1, 1))
        self.assertEqual(john.repeat_tp_rate, 100.0)

        ts = result.aggregation.time_series
        self.assertEqual(ts["2024-03-04"]["trips"], {"Jane Doe": 2, "seniors": 2})
        self.assertEqual(ts["2024-03-04"]["non_converted"], {"Jane Doe": 1, "seniors": 1})
        self.assertEqual(ts["2024-03-08"]["bookings"], {"John Roe": 1, "others": 1})

        self.assertEqual(self.kv.get(METRICS_KEY)[0]["agent_name"], "Jane Doe")
        self.assertEqual(self.kv.get(TIMESERIES_KEY), ts)
        self.assertEqual(self.kv.get(RECORDS_KEY)["Jane Doe"]["trips"]["best_value"], 2)
        self.assertEqual(len(self.blob.get(ROWSETS_KEY)["trips"]), 3)
        self.assertTrue(result.new_records)

    def test_failed_run_leaves_stores_untouched(self):
        run_pipeline(report_files(), kv_store=self.kv, blob_store=self.blob, now=NOW)
        before = (self.kv.get(METRICS_KEY), self.kv.get(RECORDS_KEY), self.blob.get(ROWSETS_KEY))

        with self.assertRaises(SourceShapeError):
            run_pipeline(report_files(omit=("trips",)), kv_store=self.kv, blob_store=self.blob)

        after = (self.kv.get(METRICS_KEY), self.kv.get(RECORDS_KEY), self.blob.get(ROWSETS_KEY))
        self.assertEqual(before, after)

    def test_second_identical_run_has_no_new_records(self):
        run_pipeline(report_files(), kv_store=self.kv, blob_store=self.blob, now=NOW)
        result = run_pipeline(report_files(), kv_store=self.kv, blob_store=self.blob, now=NOW)
        self.assertEqual(result.new_records, [])

    def test_without_stores(self):
        result = run_pipeline(report_files())
        self.assertEqual(len(result.aggregation.metrics), 2)


class TestPersist(unittest.TestCase):
    def test_failed_write_leaves_snapshot_untouched(self):
        kv, blob = FlakyStore(), MemoryStore()
        run_pipeline(report_files(), kv_store=kv, blob_store=blob, now=NOW)
        before = (kv.get(METRICS_KEY), kv.get(TIMESERIES_KEY), kv.get(RECORDS_KEY))

        kv.broken = True
        with self.assertRaises(StorageError):
            run_pipeline(report_files(), seniors=["Jane Doe"], kv_store=kv, blob_store=blob,
                         date_range=DateRange.from_strings("2024-03-05", None), now=NOW)
        self.assertEqual((kv.get(METRICS_KEY), kv.get(TIMESERIES_KEY), kv.get(RECORDS_KEY)), before)

    def test_records_not_written_when_metrics_fail(self):
        kv = FlakyStore()
        kv.broken = True
        result = run_pipeline(report_files(), now=NOW)
        with self.assertRaises(StorageError) as ctx:
            persist(result, kv)
        self.assertIn("Could not save results", ctx.exception.user_message)
        self.assertIsNone(kv.get(METRICS_KEY))
        self.assertIsNone(kv.get(RECORDS_KEY))

    def test_blob_failure_stops_before_metrics(self):
        kv, blob = MemoryStore(), FlakyStore()
        blob.broken = True
        with self.assertRaises(StorageError):
            run_pipeline(report_files(), kv_store=kv, blob_store=blob, now=NOW)
        self.assertIsNone(kv.get(METRICS_KEY))
        self.assertIsNone(kv.get(RECORDS_KEY))


class TestReaggregate(unittest.TestCase):
    def setUp(self):
        self.kv = MemoryStore()
        self.blob = MemoryStore()

    def test_new_date_range(self):
        run_pipeline(report_files(), kv_store=self.kv, blob_store=self.blob, now=NOW)
        result = reaggregate(self.kv, self.blob, date_range=DateRange.from_strings("2024-03-05", "2024-03-31"))
        jane = {m.agent_name: m for m in result.aggregation.metrics}["Jane Doe"]
        self.assertEqual(jane.trips, 0)
        self.assertEqual(jane.quotes, 2)
        self.assertEqual(jane.quotes_from_trips, 0.0)
        self.assertEqual(self.kv.get(SUMMARY_KEY)["date_range"], {"start": "2024-03-05", "end": "2024-03-31"})

    def test_nothing_uploaded(self):
        with self.assertRaises(PipelineError):
            reaggregate(self.kv, self.blob)

    def test_clear_snapshot(self):
        run_pipeline(report_files(), kv_store=self.kv, blob_store=self.blob, now=NOW)
        clear_snapshot(self.kv, self.blob)
        self.assertIsNone(self.kv.get(METRICS_KEY))
        self.assertIsNone(self.blob.get(ROWSETS_KEY))
        self.assertIsNotNone(self.kv.get(RECORDS_KEY))


if __name__ == "__main__":
    unittest.main()
