"""
metrics.py — Per-agent funnel metrics and daily time series
============================================================
Consumes the normalised row sets of every report and produces:

  • one ``AgentMetrics`` per agent (funnel counts, conversion ratios,
    repeat-client / B2B segment counts)
  • a sparse ``TimeSeries``: ISO date → metric → agent | "seniors" | "others"
  • daily repeat-client and B2B passthrough series straight from trips

Everything is recomputed from source rows on every call; nothing here keeps
state between runs. Counting is commutative, so row order never matters.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from column_resolver import resolve_in_rows
from date_normalizer import normalize_date, parse_iso
from errors import SourceShapeError
from header_phrases import B2B_VALUES, REPEAT_VALUES, Target

logger = logging.getLogger(__name__)

Row = Mapping[str, str]
TimeSeries = Dict[str, Dict[str, Dict[str, int]]]

METRIC_NAMES: Tuple[str, ...] = (
    "trips", "quotes", "passthroughs", "hot_passes", "bookings", "non_converted",
)
SENIORS_KEY = "seniors"
OTHERS_KEY = "others"
GROUP_KEYS = (SENIORS_KEY, OTHERS_KEY)

# date column candidates per report
SOURCE_DATE_TARGETS: Dict[str, Target] = {
    "trips": Target.CREATED_DATE,
    "quotes": Target.QUOTE_SENT_DATE,
    "passthroughs": Target.PASSTHROUGH_DATE,
    "hot_passes": Target.HOT_PASS_DATE,
    "bookings": Target.BOOKING_DATE,
    "non_converted": Target.NON_CONVERTED_DATE,
    "quotes_started": Target.QUOTE_STARTED_DATE,
}

DATING_OWN_FIRST = "own_date_first"
DATING_TRIP_LINK_FIRST = "trip_link_first"
DATING_OWN_ONLY = "own_date_only"
DATING_CHOICES = (DATING_OWN_FIRST, DATING_TRIP_LINK_FIRST, DATING_OWN_ONLY)


# ══════════════════════════════════════════════════════════════════════════════
# Inputs / outputs
# ══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar range; either bound may be open."""
    start: Optional[date] = None
    end: Optional[date] = None

    @classmethod
    def from_strings(cls, start: Optional[str] = None, end: Optional[str] = None) -> "DateRange":
        return cls(parse_iso(start), parse_iso(end))

    @property
    def active(self) -> bool:
        return self.start is not None or self.end is not None

    def contains(self, day: date) -> bool:
        # comparing calendar days makes the end bound cover its whole final day
        if self.start is not None and day < self.start:
            return False
        if self.end is not None and day > self.end:
            return False
        return True

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
        }


@dataclass
class SourceRows:
    trips: List[Dict[str, str]] = field(default_factory=list)
    quotes: List[Dict[str, str]] = field(default_factory=list)
    passthroughs: List[Dict[str, str]] = field(default_factory=list)
    hot_passes: List[Dict[str, str]] = field(default_factory=list)
    bookings: List[Dict[str, str]] = field(default_factory=list)
    non_converted: List[Dict[str, str]] = field(default_factory=list)
    quotes_started: Optional[List[Dict[str, str]]] = None
    non_converted_counts: Optional[Dict[str, int]] = None

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping) -> "SourceRows":
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class AggregationOptions:
    # precedence between a row's own date and its trip-name linkage
    non_converted_dating: str = DATING_OWN_FIRST

    def __post_init__(self):
        if self.non_converted_dating not in DATING_CHOICES:
            raise ValueError(f"non_converted_dating must be one of {DATING_CHOICES}")


@dataclass
class CountResult:
    total: Dict[str, int] = field(default_factory=dict)
    by_date: Dict[str, Dict[str, int]] = field(default_factory=dict)   # agent → iso → n

    def add(self, agent: str, day: Optional[date]) -> None:
        self.total[agent] = self.total.get(agent, 0) + 1
        if day is not None:
            dates = self.by_date.setdefault(agent, {})
            iso = day.isoformat()
            dates[iso] = dates.get(iso, 0) + 1


@dataclass
class AgentMetrics:
    agent_name: str
    trips: int = 0
    quotes: int = 0
    passthroughs: int = 0
    hot_passes: int = 0
    bookings: int = 0
    non_converted_leads: int = 0
    total_leads: int = 0
    quotes_from_trips: float = 0.0
    passthroughs_from_trips: float = 0.0
    quotes_from_passthroughs: float = 0.0
    hot_pass_rate: float = 0.0
    non_converted_rate: float = 0.0
    repeat_trips: int = 0
    repeat_passthroughs: int = 0
    repeat_tp_rate: float = 0.0
    b2b_trips: int = 0
    b2b_passthroughs: int = 0
    b2b_tp_rate: float = 0.0
    quotes_started: int = 0
    potential_tq: float = 0.0

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class AggregationResult:
    metrics: List[AgentMetrics]
    time_series: TimeSeries
    quotes_started_total: int = 0
    segment_series: Dict[str, List[Dict]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "metrics": [m.to_dict() for m in self.metrics],
            "time_series": self.time_series,
            "quotes_started_total": self.quotes_started_total,
            "segment_series": self.segment_series,
            "warnings": list(self.warnings),
        }


# ══════════════════════════════════════════════════════════════════════════════
# Counting primitives
# ══════════════════════════════════════════════════════════════════════════════


def ratio(numerator: float, denominator: float) -> float:
    """Percentage; 0.0 whenever the denominator is 0."""
    if not denominator:
        return 0.0
    return (numerator / denominator) * 100


def _cell(row: Row, col: Optional[str]) -> str:
    if not col:
        return ""
    return (row.get(col) or "").strip()


def _row_date(row: Row, col: Optional[str]) -> Optional[date]:
    v = _cell(row, col)
    return normalize_date(v) if v else None


def _in_range(day: Optional[date], date_range: Optional[DateRange]) -> bool:
    """Undated rows always pass; dated rows must fall inside an active range."""
    if day is None or date_range is None or not date_range.active:
        return True
    return date_range.contains(day)


def count_by_agent(
    rows: Iterable[Row],
    agent_col: Optional[str],
    date_col: Optional[str],
    date_range: Optional[DateRange] = None,
) -> CountResult:
    result = CountResult()
    if not agent_col:
        return result
    for row in rows:
        agent = _cell(row, agent_col)
        if not agent:
            continue
        day = _row_date(row, date_col)
        if not _in_range(day, date_range):
            continue
        result.add(agent, day)
    return result


def build_trip_date_map(
    trips: Iterable[Row],
    trip_name_col: Optional[str],
    date_col: Optional[str],
) -> Dict[str, str]:
    """Lowercase trip name → ISO creation date."""
    out: Dict[str, str] = {}
    if not trip_name_col or not date_col:
        return out
    for row in trips:
        name = _cell(row, trip_name_col).lower()
        day = _row_date(row, date_col)
        if name and day:
            out[name] = day.isoformat()
    return out


def _non_converted_date(
    row: Row,
    date_col: Optional[str],
    trip_name_col: Optional[str],
    trip_dates: Mapping[str, str],
    dating: str,
) -> Optional[date]:
    own = _row_date(row, date_col)
    if dating == DATING_OWN_ONLY:
        return own
    linked: Optional[date] = None
    name = _cell(row, trip_name_col).lower()
    if name and name in trip_dates:
        linked = normalize_date(trip_dates[name])
    if dating == DATING_TRIP_LINK_FIRST:
        return linked or own
    return own or linked


def count_non_converted(
    rows: Sequence[Row],
    date_range: Optional[DateRange] = None,
    trip_dates: Optional[Mapping[str, str]] = None,
    options: Optional[AggregationOptions] = None,
) -> CountResult:
    """
    Count non-converted leads per agent. When the report has a validation
    reason column only rows carrying a reason count; otherwise every row does.
    """
    options = options or AggregationOptions()
    result = CountResult()
    if not rows:
        return result
    agent_col = resolve_in_rows(rows, Target.LEAD_OWNER) or resolve_in_rows(rows, Target.AGENT)
    reason_col = resolve_in_rows(rows, Target.NON_VALIDATED_REASON, strict=True)
    date_col = resolve_in_rows(rows, SOURCE_DATE_TARGETS["non_converted"])
    trip_name_col = resolve_in_rows(rows, Target.TRIP_NAME)
    trip_dates = trip_dates or {}

    for row in rows:
        agent = _cell(row, agent_col)
        if not agent:
            continue
        if reason_col and not _cell(row, reason_col):
            continue
        day = _non_converted_date(row, date_col, trip_name_col, trip_dates, options.non_converted_dating)
        if not _in_range(day, date_range):
            continue
        result.add(agent, day)
    return result


def _matches_segment(value: str, segment: str) -> bool:
    v = value.strip().lower()
    if segment == "repeat":
        return v in REPEAT_VALUES
    return "b2b" in v or v in B2B_VALUES


def _segment_column(rows: Sequence[Row], segment: str) -> Optional[str]:
    target = Target.REPEAT_SEGMENT if segment == "repeat" else Target.B2B_SEGMENT
    return resolve_in_rows(rows, target)


def count_segments(
    trips: Sequence[Row],
    agent_col: Optional[str],
    date_col: Optional[str],
    date_range: Optional[DateRange],
    segment: str,
) -> Tuple[Dict[str, int], Dict[str, int]]:
    """Segment trips and passthroughs per agent for 'repeat' or 'b2b'."""
    seg_trips: Dict[str, int] = {}
    seg_passes: Dict[str, int] = {}
    seg_col = _segment_column(trips, segment)
    if not seg_col or not agent_col:
        return seg_trips, seg_passes
    pass_col = resolve_in_rows(trips, Target.TRIP_PASSTHROUGH_FLAG)

    for row in trips:
        agent = _cell(row, agent_col)
        if not agent or not _matches_segment(_cell(row, seg_col), segment):
            continue
        if not _in_range(_row_date(row, date_col), date_range):
            continue
        seg_trips[agent] = seg_trips.get(agent, 0) + 1
        if _cell(row, pass_col):
            seg_passes[agent] = seg_passes.get(agent, 0) + 1
    return seg_trips, seg_passes


def count_quotes_started(
    rows: Optional[Sequence[Row]],
    date_range: Optional[DateRange] = None,
) -> Tuple[int, Dict[str, int]]:
    """Flat total, plus a per-agent split when the report has an owner column."""
    if not rows:
        return 0, {}
    agent_col = resolve_in_rows(rows, Target.AGENT, strict=True)
    date_col = resolve_in_rows(rows, SOURCE_DATE_TARGETS["quotes_started"])
    total = 0
    per_agent: Dict[str, int] = {}
    for row in rows:
        if not _in_range(_row_date(row, date_col), date_range):
            continue
        total += 1
        agent = _cell(row, agent_col)
        if agent:
            per_agent[agent] = per_agent.get(agent, 0) + 1
    return total, per_agent


def segment_daily(
    trips: Sequence[Row],
    segment: str,
    date_range: Optional[DateRange] = None,
) -> List[Dict]:
    """Daily trips / passthroughs / T>P% for one trip segment, dated rows only."""
    if not trips:
        return []
    seg_col = _segment_column(trips, segment)
    date_col = resolve_in_rows(trips, SOURCE_DATE_TARGETS["trips"])
    if not seg_col or not date_col:
        return []
    pass_col = resolve_in_rows(trips, Target.TRIP_PASSTHROUGH_FLAG)

    daily: Dict[str, List[int]] = {}
    for row in trips:
        if not _matches_segment(_cell(row, seg_col), segment):
            continue
        day = _row_date(row, date_col)
        if day is None or not _in_range(day, date_range):
            continue
        stats = daily.setdefault(day.isoformat(), [0, 0])
        stats[0] += 1
        if _cell(row, pass_col):
            stats[1] += 1

    return [
        {"date": d, "trips": t, "passthroughs": p, "tp": ratio(p, t)}
        for d, (t, p) in sorted(daily.items())
    ]


# ══════════════════════════════════════════════════════════════════════════════
# Agent name reconciliation
# ══════════════════════════════════════════════════════════════════════════════


def _name_key(name: str) -> str:
    return " ".join(name.split()).lower()


def canonical_names(trip_agents: Iterable[str], other_agents: Iterable[str]) -> Dict[str, str]:
    """
    Map every spelling to one canonical agent name. Reports disagree on case
    ("JANE DOE" vs "Jane Doe"); the trips spelling wins, otherwise the
    lexicographically smallest one so the choice is order-independent.
    """
    trip_spellings: Dict[str, str] = {}
    for name in sorted(trip_agents):
        trip_spellings.setdefault(_name_key(name), name)
    other_spellings: Dict[str, str] = {}
    for name in sorted(other_agents):
        other_spellings.setdefault(_name_key(name), name)

    mapping: Dict[str, str] = {}
    for name in list(trip_agents) + list(other_agents):
        key = _name_key(name)
        mapping[name] = trip_spellings.get(key) or other_spellings[key]
    return mapping


def _remap_counts(counts: Mapping[str, int], names: Mapping[str, str]) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for agent, n in counts.items():
        canon = names.get(agent, agent)
        out[canon] = out.get(canon, 0) + n
    return out


def _remap_result(result: CountResult, names: Mapping[str, str]) -> CountResult:
    out = CountResult(total=_remap_counts(result.total, names))
    for agent, dates in result.by_date.items():
        target = out.by_date.setdefault(names.get(agent, agent), {})
        for iso, n in dates.items():
            target[iso] = target.get(iso, 0) + n
    return out


# ══════════════════════════════════════════════════════════════════════════════
# Time series
# ══════════════════════════════════════════════════════════════════════════════


def build_time_series(results: Mapping[str, CountResult], seniors: Iterable[str]) -> TimeSeries:
    """
    date → metric → agent / "seniors" / "others" → count.

    Sparse: only dates, metrics and agents with at least one counted row
    appear. Senior matching is exact and case-sensitive.
    """
    senior_set = set(seniors)
    buckets: Dict[str, Dict[str, Dict[str, int]]] = {}
    for metric in METRIC_NAMES:
        res = results.get(metric)
        if res is None:
            continue
        for agent, dates in res.by_date.items():
            group = SENIORS_KEY if agent in senior_set else OTHERS_KEY
            for iso, n in dates.items():
                per_agent = buckets.setdefault(iso, {}).setdefault(metric, {})
                per_agent[agent] = per_agent.get(agent, 0) + n
                per_agent[group] = per_agent.get(group, 0) + n

    ordered: TimeSeries = {}
    for iso in sorted(buckets):
        day = buckets[iso]
        ordered[iso] = {}
        for metric in METRIC_NAMES:
            if metric not in day:
                continue
            counts = day[metric]
            agents = sorted(k for k in counts if k not in GROUP_KEYS)
            ordered[iso][metric] = {a: counts[a] for a in agents}
            for g in GROUP_KEYS:
                if g in counts:
                    ordered[iso][metric][g] = counts[g]
    return ordered


# ══════════════════════════════════════════════════════════════════════════════
# Main aggregation
# ══════════════════════════════════════════════════════════════════════════════


def _count_source(
    name: str,
    rows: Sequence[Row],
    date_range: Optional[DateRange],
    warnings: List[str],
) -> CountResult:
    if not rows:
        warnings.append(f"{name} report is empty")
        return CountResult()
    agent_col = resolve_in_rows(rows, Target.AGENT)
    date_col = resolve_in_rows(rows, SOURCE_DATE_TARGETS[name])
    if not agent_col:
        warnings.append(f"{name} report has no agent column")
        return CountResult()
    if not date_col:
        warnings.append(f"{name} report has no date column; rows are not date-filtered")
    return count_by_agent(rows, agent_col, date_col, date_range)


def aggregate(
    sources: SourceRows,
    date_range: Optional[DateRange] = None,
    seniors: Iterable[str] = (),
    options: Optional[AggregationOptions] = None,
) -> AggregationResult:
    """Compute per-agent funnel metrics and the daily time series."""
    options = options or AggregationOptions()
    seniors = list(seniors)
    warnings: List[str] = []

    trips = sources.trips
    if not trips:
        raise SourceShapeError("trips", "the report has no data rows")
    trips_agent = resolve_in_rows(trips, Target.AGENT)
    if not trips_agent:
        raise SourceShapeError("trips", "no agent / owner column could be identified")
    if not any(_cell(row, trips_agent) for row in trips):
        raise SourceShapeError("trips", f"the agent column '{trips_agent}' is empty on every row")
    trips_date = resolve_in_rows(trips, SOURCE_DATE_TARGETS["trips"])
    if not trips_date:
        warnings.append("trips report has no created date column; rows are not date-filtered")

    results: Dict[str, CountResult] = {
        "trips": count_by_agent(trips, trips_agent, trips_date, date_range),
        "quotes": _count_source("quotes", sources.quotes, date_range, warnings),
        "passthroughs": _count_source("passthroughs", sources.passthroughs, date_range, warnings),
        "hot_passes": _count_source("hot_passes", sources.hot_passes, date_range, warnings),
        "bookings": _count_source("bookings", sources.bookings, date_range, warnings),
    }

    if sources.non_converted:
        trip_dates = build_trip_date_map(trips, resolve_in_rows(trips, Target.TRIP_NAME), trips_date)
        results["non_converted"] = count_non_converted(sources.non_converted, date_range, trip_dates, options)
    elif sources.non_converted_counts:
        warnings.append("non_converted rows unavailable; using undated extractor counts")
        results["non_converted"] = CountResult(total=dict(sources.non_converted_counts))
    else:
        warnings.append("non_converted report is empty")
        results["non_converted"] = CountResult()

    repeat_trips, repeat_passes = count_segments(trips, trips_agent, trips_date, date_range, "repeat")
    b2b_trips, b2b_passes = count_segments(trips, trips_agent, trips_date, date_range, "b2b")
    qs_total, qs_per_agent = count_quotes_started(sources.quotes_started, date_range)

    trip_agents = list(results["trips"].total)
    other_agents = [a for m, r in results.items() if m != "trips" for a in r.total]
    other_agents += list(qs_per_agent)
    names = canonical_names(trip_agents, other_agents)
    results = {m: _remap_result(r, names) for m, r in results.items()}
    repeat_trips, repeat_passes = _remap_counts(repeat_trips, names), _remap_counts(repeat_passes, names)
    b2b_trips, b2b_passes = _remap_counts(b2b_trips, names), _remap_counts(b2b_passes, names)
    qs_per_agent = _remap_counts(qs_per_agent, names)

    agents = sorted({a for r in results.values() for a in r.total})
    metrics: List[AgentMetrics] = []
    for agent in agents:
        n_trips = results["trips"].total.get(agent, 0)
        n_quotes = results["quotes"].total.get(agent, 0)
        n_passes = results["passthroughs"].total.get(agent, 0)
        n_hot = results["hot_passes"].total.get(agent, 0)
        n_nc = results["non_converted"].total.get(agent, 0)
        r_trips, r_passes = repeat_trips.get(agent, 0), repeat_passes.get(agent, 0)
        b_trips, b_passes = b2b_trips.get(agent, 0), b2b_passes.get(agent, 0)
        started = qs_per_agent.get(agent, 0)
        metrics.append(AgentMetrics(
            agent_name=agent,
            trips=n_trips,
            quotes=n_quotes,
            passthroughs=n_passes,
            hot_passes=n_hot,
            bookings=results["bookings"].total.get(agent, 0),
            non_converted_leads=n_nc,
            total_leads=n_trips,
            quotes_from_trips=ratio(n_quotes, n_trips),
            passthroughs_from_trips=ratio(n_passes, n_trips),
            quotes_from_passthroughs=ratio(n_quotes, n_passes),
            hot_pass_rate=ratio(n_hot, n_passes),
            non_converted_rate=ratio(n_nc, n_trips),
            repeat_trips=r_trips,
            repeat_passthroughs=r_passes,
            repeat_tp_rate=ratio(r_passes, r_trips),
            b2b_trips=b_trips,
            b2b_passthroughs=b_passes,
            b2b_tp_rate=ratio(b_passes, b_trips),
            quotes_started=started,
            potential_tq=ratio(n_quotes + started, n_trips),
        ))

    for w in warnings:
        logger.info("Aggregation: %s", w)

    return AggregationResult(
        metrics=metrics,
        time_series=build_time_series(results, seniors),
        quotes_started_total=qs_total,
        segment_series={
            "repeat": segment_daily(trips, "repeat", date_range),
            "b2b": segment_daily(trips, "b2b", date_range),
        },
        warnings=warnings,
    )
