"""
trends.py — Consumer-side shaping of the sparse daily time series
==================================================================
The aggregator never invents zero-activity days. Anything that needs a
contiguous axis (averages, charts) fills the gaps here, explicitly.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple

import pandas as pd

from date_normalizer import parse_iso
from metrics import GROUP_KEYS, METRIC_NAMES, OTHERS_KEY, SENIORS_KEY, TimeSeries, ratio

DEPARTMENT = "department"


def date_span(time_series: TimeSeries) -> Optional[Tuple[str, str]]:
    if not time_series:
        return None
    dates = sorted(time_series)
    return dates[0], dates[-1]


def fill_gaps(
    time_series: TimeSeries,
    start: Optional[str] = None,
    end: Optional[str] = None,
) -> TimeSeries:
    """Dense copy: every calendar day in [start, end] present, empty when idle."""
    span = date_span(time_series)
    if span is None and (start is None or end is None):
        return {}
    first = parse_iso(start) if start else parse_iso(span[0])
    last = parse_iso(end) if end else parse_iso(span[1])
    dense: TimeSeries = {}
    for ts in pd.date_range(first, last, freq="D"):
        iso = ts.strftime("%Y-%m-%d")
        day = time_series.get(iso, {})
        dense[iso] = {m: dict(v) for m, v in day.items()}
    return dense


def _group_total(per_agent: Dict[str, int], group: str) -> int:
    if group == DEPARTMENT:
        return sum(n for k, n in per_agent.items() if k not in GROUP_KEYS)
    return per_agent.get(group, 0)


def group_daily(time_series: TimeSeries, group: str = DEPARTMENT) -> List[Dict]:
    """
    Per-date counts and ratios (tq, tp, pq, hp, nc) for a cohort:
    "seniors", "others" or "department" (every agent).
    """
    if group not in (DEPARTMENT, SENIORS_KEY, OTHERS_KEY):
        raise ValueError(f"unknown group {group!r}")
    points: List[Dict] = []
    for iso, day in time_series.items():
        totals = {m: _group_total(day.get(m, {}), group) for m in METRIC_NAMES}
        points.append({
            "date": iso,
            **totals,
            "tq": ratio(totals["quotes"], totals["trips"]),
            "tp": ratio(totals["passthroughs"], totals["trips"]),
            "pq": ratio(totals["quotes"], totals["passthroughs"]),
            "hp": ratio(totals["hot_passes"], totals["passthroughs"]),
            "nc": ratio(totals["non_converted"], totals["trips"]),
        })
    return points


def rolling_average(points: List[Dict], key: str, window: int = 7) -> List[Dict]:
    """Trailing mean of ``key``; feed it a gap-filled series."""
    if window < 1:
        raise ValueError("window must be >= 1")
    if not points:
        return []
    values = pd.Series([float(p.get(key, 0) or 0) for p in points])
    means = values.rolling(window, min_periods=1).mean()
    return [{"date": p["date"], key: float(m)} for p, m in zip(points, means)]
