"""Small in-memory report workbooks shared by the test modules."""

import base64
import io
from datetime import datetime

from openpyxl import Workbook

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

SAMPLE_REPORTS = {
    "trips": [
        ["Trips by Owner", None, None, None, None],
        ["Owner Name", "Trip Name", "Trip: Created Date", "Repeat/New", "Passthrough to Sales Date"],
        ["Jane Doe", "Smith - Italy", datetime(2024, 3, 4), "New", datetime(2024, 3, 6)],
        [None, "Lee - Peru", datetime(2024, 3, 4), "Repeat", None],
        ["John Roe", "Kim - Japan", datetime(2024, 3, 5), "Repeat", datetime(2024, 3, 7)],
        ["Grand Total", None, None, None, None],
    ],
    "quotes": [
        ["Owner Name", "Trip Name", "Quote First Sent", "Stage"],
        ["Jane Doe", "Smith - Italy", datetime(2024, 3, 5), "Sent"],
        ["Jane Doe", "Lee - Peru", datetime(2024, 3, 5), "Sent"],
        ["John Roe", "Kim - Japan", datetime(2024, 3, 6), "Sent"],
    ],
    "passthroughs": [
        ["Owner Name", "Trip Name", "Passthrough to Sales Date", "Stage"],
        ["Jane Doe", "Smith - Italy", datetime(2024, 3, 6), "Passed"],
        ["John Roe", "Kim - Japan", datetime(2024, 3, 7), "Passed"],
    ],
    "hot_passes": [
        ["Owner Name", "Trip Name", "Hot Pass Date", "Stage"],
        ["Jane Doe", "Smith - Italy", datetime(2024, 3, 6), "Hot"],
    ],
    "bookings": [
        ["Owner Name", "Trip Name", "Booking Date", "Stage"],
        ["John Roe", "Kim - Japan", datetime(2024, 3, 8), "Booked"],
    ],
    "non_converted": [
        ["Non Converted Leads", None, None, None],
        ["Lead Owner", "Non Validated Reason", "Trip Name", "Created Date"],
        ["Jane Doe", "No response", "Lee - Peru", None],
        ["John Roe", None, "Other trip", datetime(2024, 3, 5)],
    ],
}


def workbook_bytes(rows, title="Report"):
    wb = Workbook()
    ws = wb.active
    ws.title = title
    for row in rows:
        ws.append(row)
    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def report_files(omit=(), extra=None):
    """{kind: (filename, xlsx bytes)} for every sample report."""
    files = {
        kind: (f"{kind}.xlsx", workbook_bytes(rows))
        for kind, rows in SAMPLE_REPORTS.items()
        if kind not in omit
    }
    for kind, rows in (extra or {}).items():
        files[kind] = (f"{kind}.xlsx", workbook_bytes(rows))
    return files


def b64_payload(files):
    """JSON upload body in the dashboard's base64 format."""
    return {
        kind: {
            "name": fname,
            "data": f"data:{XLSX_MIME};base64," + base64.b64encode(data).decode("utf-8"),
        }
        for kind, (fname, data) in files.items()
    }
