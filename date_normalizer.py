"""
date_normalizer.py — Tolerant cell → calendar date conversion
==============================================================
Report exports deliver dates as spreadsheet serial numbers, ISO strings,
US-style slash dates or real datetime cells depending on who exported them.
``normalize_date`` accepts all of them and never raises.
"""

from __future__ import annotations

import re
import warnings
from datetime import date, datetime, timedelta
from typing import Any, Optional

import pandas as pd

# Spreadsheet serial day 0 (accounts for the 1900 leap-year bug)
SERIAL_EPOCH = datetime(1899, 12, 30)
SERIAL_MIN = 1000
SERIAL_MAX = 100000

_MDY_RE = re.compile(r"^\s*(\d{1,2})/(\d{1,2})/(\d{2,4})")


def _is_blank(v: Any) -> bool:
    if v is None:
        return True
    if isinstance(v, float) and v != v:          # NaN
        return True
    if v is pd.NaT:
        return True
    return isinstance(v, str) and not v.strip()


def _as_number(v: Any) -> Optional[float]:
    if isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        return None if v != v else float(v)
    try:
        return float(str(v).strip())
    except ValueError:
        return None


def _from_serial(n: float) -> Optional[date]:
    if not (SERIAL_MIN <= n <= SERIAL_MAX):
        return None
    return (SERIAL_EPOCH + timedelta(days=int(n))).date()


def _from_general(s: str) -> Optional[date]:
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            ts = pd.to_datetime(s)
    except (ValueError, TypeError, OverflowError):
        return None
    if ts is None or ts is pd.NaT or pd.isna(ts):
        return None
    return ts.date()


def _from_mdy(s: str) -> Optional[date]:
    m = _MDY_RE.match(s)
    if not m:
        return None
    month, day, year = (int(g) for g in m.groups())
    if year < 100:
        year += 2000
    try:
        return date(year, month, day)
    except ValueError:
        return None


def normalize_date(value: Any) -> Optional[date]:
    """Convert a raw cell value to a ``date``, or None when nothing parses.

    Resolution order: spreadsheet serial number, general calendar parsing,
    explicit month/day/year.
    """
    if _is_blank(value):
        return None
    if isinstance(value, pd.Timestamp):
        return None if pd.isna(value) else value.date()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    n = _as_number(value)
    if n is not None:
        day = _from_serial(n)
        if day is not None or not isinstance(value, str):
            # numeric cells outside the serial window are counts, not dates
            return day

    s = str(value).strip()
    if s.lower() in ("nat", "nan", "none", "null"):
        return None
    return _from_general(s) or _from_mdy(s)


def to_iso(value: Any) -> Optional[str]:
    d = normalize_date(value)
    return d.isoformat() if d else None


def parse_iso(text: Optional[str]) -> Optional[date]:
    """Parse a 'YYYY-MM-DD' filter bound; blank → None, garbage → ValueError."""
    if text is None or not str(text).strip():
        return None
    return datetime.strptime(str(text).strip()[:10], "%Y-%m-%d").date()
