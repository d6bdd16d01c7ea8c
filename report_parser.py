"""
report_parser.py — Tolerant extractor for exported sales-pipeline reports
=========================================================================
Handles the report family produced by the CRM's report builder:
  • trips / quotes / passthroughs / hot passes / bookings / quotes started
  • non-converted leads (lead owner + non validated reason)

Design principles
-----------------
  1. NEVER crash on a malformed grid; worst case is an empty row list.
  2. NEVER hard-code column positions; the header row is discovered.
  3. NEVER trust cell types: dates arrive as datetime | str | float | None.
  4. Grouped reports print the agent once per block; carry it forward.
  5. Report-generated Total / Subtotal / Grand Total rows are not records.

Usage
-----
    from report_parser import load_grid, extract_rows

    grid = load_grid(file_bytes, filename="Trips.xlsx")
    rows = extract_rows(grid)
"""

from __future__ import annotations

import base64
import binascii
import io
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time
from functools import reduce
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Union

import numpy as np
import pandas as pd

from column_resolver import resolve_column
from errors import ReportDecodeError
from header_phrases import (
    AGENT_SENTINEL,
    FILTER_ROW_MARKERS,
    GRAND_TOTAL_MARKER,
    HEADER_MIN_CELLS,
    HEADER_ROW_PHRASES,
    HEADER_SCAN_ROWS,
    NON_CONVERTED_HEADER_PHRASES,
    NON_CONVERTED_SCAN_ROWS,
    SUMMARY_AGENT_VALUES,
    Target,
)

logger = logging.getLogger(__name__)

Cell = Union[str, int, float, datetime, date, None]
RawGrid = List[List[Cell]]
NormalizedRow = Dict[str, str]

_EXCEL_EXTS = (".xlsx", ".xls", ".xlsb", ".xlsm")
_CSV_EXTS = (".csv",)

# ══════════════════════════════════════════════════════════════════════════════
# Primitive helpers
# ══════════════════════════════════════════════════════════════════════════════


def _is_blank(v: Any) -> bool:
    if v is None:
        return True
    if isinstance(v, float) and v != v:              # NaN fast-path
        return True
    if v is pd.NaT:
        return True
    return isinstance(v, str) and not v.strip()


def _cell_text(v: Any) -> str:
    """Stringify a decoded cell; '' when None/NaN."""
    if _is_blank(v):
        return ""
    # xlrd / pyxlsb hand back numpy scalars through object columns
    if isinstance(v, np.bool_):
        v = bool(v)
    elif isinstance(v, np.integer):
        v = int(v)
    elif isinstance(v, np.floating):
        v = float(v)
        if v != v:
            return ""
    if isinstance(v, bool):
        return str(v)
    if isinstance(v, (datetime, pd.Timestamp)):
        if v.time() == time(0, 0):
            return v.strftime("%Y-%m-%d")
        return v.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(v, date):
        return v.isoformat()
    if isinstance(v, float) and v.is_integer():
        return str(int(v))
    return re.sub(r"\s+", " ", str(v)).strip()


def _row_texts(row: Sequence[Cell]) -> List[str]:
    return [_cell_text(v) for v in row]


def _header_names(row: Sequence[Cell]) -> List[str]:
    """Lowercase header names; blanks become column_<idx>, duplicates get _<n>."""
    names: List[str] = []
    seen: Dict[str, int] = {}
    for idx, cell in enumerate(row):
        name = _cell_text(cell).lower() or f"column_{idx}"
        if name in seen:
            seen[name] += 1
            name = f"{name}_{seen[name]}"
        else:
            seen[name] = 0
        names.append(name)
    return names


def _is_summary_value(value: str) -> bool:
    v = value.strip().lower()
    return v in SUMMARY_AGENT_VALUES or GRAND_TOTAL_MARKER in v


def _looks_like_group_label(values: List[str]) -> bool:
    """A lone agent name printed above its block in grouped reports."""
    if not values:
        return False
    non_empty = sum(1 for v in values if v)
    first = values[0]
    return (
        non_empty <= 2
        and len(first) > 3
        and (" " in first or "," in first)
        and not first[0].isdigit()
        and "total" not in first.lower()
    )


# ══════════════════════════════════════════════════════════════════════════════
# Spreadsheet decoder: accepts path, bytes, BytesIO, or base64 string
# ══════════════════════════════════════════════════════════════════════════════


def _to_buffer(source: Union[str, bytes, bytearray, io.BytesIO], filename: str) -> Union[str, io.BytesIO]:
    if isinstance(source, io.BytesIO):
        source.seek(0)
        return source
    if isinstance(source, (bytes, bytearray)):
        return io.BytesIO(bytes(source))
    if isinstance(source, str):
        if source.lower().endswith(_EXCEL_EXTS + _CSV_EXTS):
            return source                            # file path
        payload = source.split(",", 1)[1] if source.startswith("data:") else source
        try:
            return io.BytesIO(base64.b64decode(payload, validate=True))
        except (binascii.Error, ValueError) as e:
            raise ReportDecodeError(filename, f"base64 decode failed: {e}")
    raise ReportDecodeError(filename, f"unsupported source type {type(source).__name__}")


def _read_csv(buf: Union[str, io.BytesIO]) -> pd.DataFrame:
    if isinstance(buf, str):
        with open(buf, "rb") as fh:
            data = fh.read()
    else:
        data = buf.getvalue()
    text = data.decode("utf-8-sig", errors="replace")
    if not text.strip():
        return pd.DataFrame()
    # a one-cell title line above the table must not fix the column count
    width = max(line.count(",") + 1 for line in text.splitlines())
    df = pd.read_csv(
        io.StringIO(text), header=None, names=list(range(width)), dtype=object,
        skip_blank_lines=False, keep_default_na=False, na_values=[""],
    )
    # quoted commas overcount the width; drop the empty tail they leave
    while len(df.columns) > 1 and df[df.columns[-1]].isna().all():
        df = df.drop(columns=df.columns[-1])
    return df


def load_grid(source: Union[str, bytes, bytearray, io.BytesIO], filename: str = "") -> RawGrid:
    """
    Decode the FIRST sheet of a workbook (or a CSV file) into a raw grid.
    No header is applied; every row is kept as decoded. Empty cells → None.
    Raises ReportDecodeError when the file cannot be read.
    """
    buf = _to_buffer(source, filename)
    name = (filename or (buf if isinstance(buf, str) else "")).lower()
    try:
        if name.endswith(_CSV_EXTS):
            df = _read_csv(buf)
        else:
            xl = pd.ExcelFile(buf)
            if not xl.sheet_names:
                return []
            df = xl.parse(xl.sheet_names[0], header=None, dtype=object)
    except ReportDecodeError:
        raise
    except Exception as e:
        logger.error("Failed to load workbook '%s': %s", filename, e)
        raise ReportDecodeError(filename, str(e))

    return [
        [None if _is_blank(v) else v for v in row]
        for row in df.itertuples(index=False, name=None)
    ]


# ══════════════════════════════════════════════════════════════════════════════
# Header discovery
# ══════════════════════════════════════════════════════════════════════════════


def _is_filter_row(joined: str) -> bool:
    return any(m in joined for m in FILTER_ROW_MARKERS)


def find_header_row(grid: RawGrid) -> Optional[int]:
    """Index of the first row that looks like the table header, else None."""
    for i, row in enumerate(grid[:HEADER_SCAN_ROWS]):
        texts = _row_texts(row)
        joined = "|".join(texts).lower()
        if _is_filter_row(joined):
            continue
        if sum(1 for t in texts if t) < HEADER_MIN_CELLS:
            continue
        if any(p in joined for p in HEADER_ROW_PHRASES):
            return i
    return None


def _fallback_header_row(grid: RawGrid) -> Optional[int]:
    for i, row in enumerate(grid):
        if any(_row_texts(row)):
            return i
    return None


def _discover_header(grid: RawGrid) -> Optional[int]:
    idx = find_header_row(grid)
    if idx is None:
        idx = _fallback_header_row(grid)
        if idx is not None:
            logger.warning("No recognised header row; falling back to row %d", idx)
    return idx


# ══════════════════════════════════════════════════════════════════════════════
# Row fold: carries the current agent left to right
# ══════════════════════════════════════════════════════════════════════════════


class _ExtractState(NamedTuple):
    current_agent: str
    rows: List[NormalizedRow]


def _step(
    header: List[str],
    owner_key: Optional[str],
    group_labels: bool,
    state: _ExtractState,
    raw: Sequence[Cell],
) -> _ExtractState:
    values = [_cell_text(raw[j]) if j < len(raw) else "" for j in range(len(header))]
    if not any(values):
        return state

    if group_labels and _looks_like_group_label(values):
        return state._replace(current_agent=values[0])

    row: NormalizedRow = dict(zip(header, values))
    agent = state.current_agent
    if owner_key:
        if row[owner_key]:
            agent = row[owner_key]
        else:
            row[owner_key] = agent
        agent_value = row[owner_key]
    else:
        row[AGENT_SENTINEL] = agent
        agent_value = agent

    if _is_summary_value(agent_value) or _is_summary_value(values[0]):
        # aggregate rows never become the carried agent
        return state
    state.rows.append(row)
    return state._replace(current_agent=agent)


def _fold_rows(
    grid: RawGrid,
    header_idx: int,
    header: List[str],
    owner_key: Optional[str],
    group_labels: bool = True,
) -> List[NormalizedRow]:
    initial = _ExtractState(current_agent="", rows=[])
    final = reduce(
        lambda st, raw: _step(header, owner_key, group_labels, st, raw),
        grid[header_idx + 1:],
        initial,
    )
    return final.rows


# ══════════════════════════════════════════════════════════════════════════════
# Public extractors
# ══════════════════════════════════════════════════════════════════════════════


def extract_rows(grid: RawGrid) -> List[NormalizedRow]:
    """Normalise a raw report grid into row dicts keyed by lowercase header."""
    if not grid:
        return []
    hdr_idx = _discover_header(grid)
    if hdr_idx is None:
        return []
    header = _header_names(grid[hdr_idx])
    owner_key = resolve_column(header, Target.AGENT, strict=True)
    logger.debug("Header row %d, owner column %r", hdr_idx, owner_key)
    return _fold_rows(grid, hdr_idx, header, owner_key)


@dataclass
class ExtractedReport:
    rows: List[NormalizedRow] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    owner_column: Optional[str] = None
    reason_column: Optional[str] = None


def _find_non_converted_header(grid: RawGrid) -> Optional[int]:
    for i, row in enumerate(grid[:NON_CONVERTED_SCAN_ROWS]):
        joined = "|".join(_row_texts(row)).lower()
        if all(p in joined for p in NON_CONVERTED_HEADER_PHRASES):
            return i
    return None


def extract_non_converted(grid: RawGrid) -> ExtractedReport:
    """
    Non-converted lead report: the lead-owner / reason columns are the only
    reliable signal, so besides the rows we count, per agent, the rows that
    carry a non-validated reason.
    """
    if not grid:
        return ExtractedReport()
    hdr_idx = _find_non_converted_header(grid)
    if hdr_idx is None:
        hdr_idx = _discover_header(grid)
    if hdr_idx is None:
        return ExtractedReport()

    header = _header_names(grid[hdr_idx])
    owner_key = (
        resolve_column(header, Target.LEAD_OWNER, strict=True)
        or resolve_column(header, Target.AGENT, strict=True)
    )
    reason_key = resolve_column(header, Target.NON_VALIDATED_REASON, strict=True)
    rows = _fold_rows(grid, hdr_idx, header, owner_key, group_labels=False)

    counts: Dict[str, int] = {}
    if reason_key:
        agent_key = owner_key or AGENT_SENTINEL
        for row in rows:
            agent = row.get(agent_key, "")
            if agent and row.get(reason_key):
                counts[agent] = counts.get(agent, 0) + 1
    else:
        logger.warning("Non-converted report has no reason column; counts left empty")

    return ExtractedReport(rows=rows, counts=counts, owner_column=owner_key, reason_column=reason_key)


def extract_report(
    source: Union[str, bytes, bytearray, io.BytesIO],
    filename: str = "",
    kind: str = "",
) -> ExtractedReport:
    """Decode + extract in one call; ``kind='non_converted'`` uses the lead variant."""
    grid = load_grid(source, filename)
    if kind == "non_converted":
        return extract_non_converted(grid)
    return ExtractedReport(rows=extract_rows(grid))
