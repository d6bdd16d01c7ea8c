"""
pipeline.py — One aggregation run, end to end
==============================================
raw file buffers → report_parser → normalised row sets → metrics.aggregate
→ records.update_records → (optionally) persisted snapshot.

``process_files`` and ``compute`` are pure and safe to run in a worker
process; ``persist`` is the only step with side effects and runs last, so a
failed or cancelled run never leaves the stores half-written.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from errors import PipelineError, ReportDecodeError, SourceShapeError, StorageError
from metrics import AggregationOptions, AggregationResult, DateRange, SourceRows, aggregate
from records import RECORDS_KEY, RecordEvent, RecordsStore, load_store, update_records
from report_parser import extract_report

logger = logging.getLogger(__name__)

SOURCE_KINDS: Tuple[str, ...] = (
    "trips", "quotes", "passthroughs", "hot_passes", "bookings", "non_converted", "quotes_started",
)
OPTIONAL_KINDS: Tuple[str, ...] = ("quotes_started",)
REQUIRED_KINDS: Tuple[str, ...] = tuple(k for k in SOURCE_KINDS if k not in OPTIONAL_KINDS)

STAGE_LABELS: Dict[str, str] = {
    "trips": "Parsing trips...",
    "quotes": "Parsing quotes...",
    "passthroughs": "Parsing passthroughs...",
    "hot_passes": "Parsing hot passes...",
    "bookings": "Parsing bookings...",
    "non_converted": "Parsing non-converted...",
    "quotes_started": "Parsing quotes started...",
}

# kv store keys
METRICS_KEY = "kpi-metrics"
TIMESERIES_KEY = "kpi-timeseries"
SUMMARY_KEY = "kpi-summary"
# blob store key
ROWSETS_KEY = "kpi-row-sets"

ProgressCallback = Callable[[str, int], None]
# kind → (filename, payload); payload is bytes, BytesIO, a path or base64 text
UploadedFiles = Mapping[str, Tuple[str, Any]]


@dataclass
class PipelineResult:
    aggregation: AggregationResult
    records: RecordsStore
    new_records: List[RecordEvent] = field(default_factory=list)
    date_range: Optional[DateRange] = None

    def to_dict(self) -> Dict:
        out = self.aggregation.to_dict()
        out["records"] = self.records
        out["new_records"] = [e.to_dict() for e in self.new_records]
        out["date_range"] = (self.date_range or DateRange()).to_dict()
        return out


def _notify(progress: Optional[ProgressCallback], stage: str, percent: int) -> None:
    if progress is None:
        return
    try:
        progress(stage, percent)
    except Exception:
        # progress is advisory; a broken listener must not fail the run
        logger.exception("Progress callback failed at %s", stage)


def process_files(files: UploadedFiles, progress: Optional[ProgressCallback] = None) -> SourceRows:
    """Decode and extract every provided report. One progress event per file."""
    for kind in files:
        if kind not in SOURCE_KINDS:
            raise PipelineError(f"Unknown report type '{kind}'")
    for kind in REQUIRED_KINDS:
        if kind not in files:
            raise SourceShapeError(kind, "file was not provided")

    kinds = [k for k in SOURCE_KINDS if k in files]
    sources = SourceRows()
    for i, kind in enumerate(kinds):
        _notify(progress, STAGE_LABELS[kind], int(i * 100 / len(kinds)))
        filename, payload = files[kind]
        try:
            extracted = extract_report(payload, filename=filename, kind=kind)
        except ReportDecodeError as e:
            raise ReportDecodeError(e.filename, e.detail, source=kind)
        logger.info("Extracted %d %s row(s) from '%s'", len(extracted.rows), kind, filename)

        setattr(sources, kind, extracted.rows)
        if kind == "non_converted":
            sources.non_converted_counts = extracted.counts

    _notify(progress, "Complete!", 100)
    return sources


def compute(
    sources: SourceRows,
    date_range: Optional[DateRange] = None,
    seniors: Iterable[str] = (),
    prior_records: Optional[RecordsStore] = None,
    options: Optional[AggregationOptions] = None,
    now: Optional[datetime] = None,
) -> PipelineResult:
    aggregation = aggregate(sources, date_range=date_range, seniors=seniors, options=options)
    records, events = update_records(aggregation.time_series, prior_records or {}, now=now)
    return PipelineResult(aggregation=aggregation, records=records, new_records=events, date_range=date_range)


def persist(result: PipelineResult, kv_store, blob_store=None, sources: Optional[SourceRows] = None) -> None:
    """Write the run's snapshot. Call only after a successful compute.

    Metrics, series, summary and records go to the kv store in one
    ``set_many`` call, so either all of them change or none do. Raises
    StorageError when a store reports a failed write.
    """
    agg = result.aggregation
    if blob_store is not None and sources is not None:
        if not blob_store.set(ROWSETS_KEY, sources.to_dict()):
            raise StorageError("the uploaded row sets were not stored")
    snapshot = {
        METRICS_KEY: [m.to_dict() for m in agg.metrics],
        TIMESERIES_KEY: agg.time_series,
        SUMMARY_KEY: {
            "date_range": (result.date_range or DateRange()).to_dict(),
            "quotes_started_total": agg.quotes_started_total,
            "segment_series": agg.segment_series,
            "warnings": agg.warnings,
            "new_records": [e.to_dict() for e in result.new_records],
        },
        RECORDS_KEY: result.records,
    }
    if not kv_store.set_many(snapshot):
        raise StorageError("metrics and records were left unchanged")
    logger.info("Persisted snapshot: %d agent(s), %d date(s)", len(agg.metrics), len(agg.time_series))


def run_pipeline(
    files: UploadedFiles,
    date_range: Optional[DateRange] = None,
    seniors: Iterable[str] = (),
    options: Optional[AggregationOptions] = None,
    kv_store=None,
    blob_store=None,
    progress: Optional[ProgressCallback] = None,
    now: Optional[datetime] = None,
) -> PipelineResult:
    """Full atomic run; stores are only touched once everything succeeded."""
    prior = load_store(kv_store) if kv_store is not None else {}
    sources = process_files(files, progress=progress)
    result = compute(sources, date_range, seniors, prior, options, now)
    if kv_store is not None:
        persist(result, kv_store, blob_store, sources)
    return result


def load_sources(blob_store) -> SourceRows:
    stored = blob_store.get(ROWSETS_KEY) if blob_store is not None else None
    if not stored:
        raise PipelineError("No stored report data; upload the report files first.")
    return SourceRows.from_dict(stored)


def reaggregate(
    kv_store,
    blob_store,
    date_range: Optional[DateRange] = None,
    seniors: Iterable[str] = (),
    options: Optional[AggregationOptions] = None,
    now: Optional[datetime] = None,
) -> PipelineResult:
    """Recompute from the row sets stored by the last upload."""
    sources = load_sources(blob_store)
    result = compute(sources, date_range, seniors, load_store(kv_store), options, now)
    persist(result, kv_store)
    return result


def clear_snapshot(kv_store, blob_store=None) -> None:
    for key in (METRICS_KEY, TIMESERIES_KEY, SUMMARY_KEY):
        kv_store.clear(key)
    if blob_store is not None:
        blob_store.clear(ROWSETS_KEY)
