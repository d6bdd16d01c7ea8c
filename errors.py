"""Failure types surfaced by a pipeline run.

Every error carries a ``user_message`` naming the file or column at fault so
callers can show it without a stack trace.
"""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    def __init__(self, user_message: str):
        super().__init__(user_message)
        self.user_message = user_message


class SourceShapeError(PipelineError):
    """A required report is missing, empty, or has no usable agent column."""

    def __init__(self, source: str, detail: str):
        self.source = source
        self.detail = detail
        super().__init__(f"{source} report: {detail}")


class ReportDecodeError(PipelineError):
    """The spreadsheet decoder could not read an uploaded file."""

    def __init__(self, filename: str, detail: str, source: Optional[str] = None):
        self.filename = filename
        self.detail = detail
        self.source = source
        label = f"'{filename}'" if filename else "uploaded file"
        if source:
            label = f"{source} report {label}"
        super().__init__(f"Could not read {label}: {detail}")


class PipelineCancelled(PipelineError):
    def __init__(self):
        super().__init__("Processing cancelled")


class StorageError(PipelineError):
    """The run finished but its snapshot could not be written."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Could not save results: {detail}")
