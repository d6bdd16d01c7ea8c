"""
worker.py — Off-process aggregation runs
=========================================
A ``PipelineWorker`` runs decode + extract + aggregate in a child process
and reports back through a queue of plain message dicts:

    {"type": "progress", "stage": "Parsing trips...", "progress": 0}
    {"type": "success", "data": {"result": PipelineResult, "sources": SourceRows}}
    {"type": "error", "error": "trips report: file was not provided"}

Exactly one terminal message (success or error) ends a run. The worker never
touches the stores; whoever collects the result persists it.
"""

from __future__ import annotations

import logging
import multiprocessing
import queue
import threading
import time
import uuid
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from errors import PipelineCancelled, PipelineError
from metrics import AggregationOptions, DateRange, SourceRows
from pipeline import PipelineResult, UploadedFiles, compute, process_files
from records import RecordsStore

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"
STATUS_CANCELLED = "cancelled"

_POLL_SECONDS = 0.2


def _run_job(files, date_range, seniors, prior_records, options, now, out) -> None:
    """Child-process entry point. Anything raised becomes an error message."""
    def progress(stage: str, percent: int) -> None:
        out.put({"type": "progress", "stage": stage, "progress": percent})

    try:
        sources = process_files(files, progress=progress)
        result = compute(sources, date_range, seniors, prior_records, options, now)
    except PipelineError as e:
        out.put({"type": "error", "error": e.user_message})
    except Exception as e:
        logger.exception("Aggregation worker failed")
        out.put({"type": "error", "error": f"Unexpected error while processing reports: {e}"})
    else:
        out.put({"type": "success", "data": {"result": result, "sources": sources}})


class PipelineWorker:
    """One aggregation run in a child process."""

    def __init__(
        self,
        files: UploadedFiles,
        date_range: Optional[DateRange] = None,
        seniors=(),
        prior_records: Optional[RecordsStore] = None,
        options: Optional[AggregationOptions] = None,
        now: Optional[datetime] = None,
    ):
        self.job_id = uuid.uuid4().hex
        self._args = (dict(files), date_range, list(seniors), prior_records or {}, options, now)
        self._queue = multiprocessing.Queue()
        self._process: Optional[multiprocessing.Process] = None
        self._terminal: Optional[Dict] = None
        self.cancelled = False
        self.persisted = False
        self.stage = ""
        self.progress = 0

    def start(self) -> "PipelineWorker":
        if self._process is not None:
            raise RuntimeError("worker already started")
        self._process = multiprocessing.Process(
            target=_run_job, args=self._args + (self._queue,), daemon=True,
        )
        self._process.start()
        # the child holds its own copy of the uploads now
        self._args = None
        logger.info("Started aggregation job %s (pid %s)", self.job_id, self._process.pid)
        return self

    # ─────────────────────────────────────────────────────────────
    # message pump
    # ─────────────────────────────────────────────────────────────

    def _handle(self, msg: Dict) -> Dict:
        if msg.get("type") == "progress":
            self.stage = msg.get("stage", "")
            self.progress = msg.get("progress", 0)
        else:
            self._terminal = msg
            if msg.get("type") == "success":
                self.stage, self.progress = "Complete!", 100
        return msg

    def _next(self, timeout: Optional[float]) -> Optional[Dict]:
        """Next message, or None on timeout. Synthesises an error if the child died silently."""
        try:
            return self._handle(self._queue.get(timeout=timeout))
        except queue.Empty:
            pass
        if self._process is not None and not self._process.is_alive():
            # the child may have flushed its last message while we waited
            try:
                return self._handle(self._queue.get(timeout=_POLL_SECONDS))
            except queue.Empty:
                code = self._process.exitcode
                return self._handle({"type": "error", "error": f"Worker exited unexpectedly (code {code})"})
        return None

    def messages(self) -> Iterator[Dict]:
        """Yield every message until the terminal one (inclusive)."""
        if self._process is None:
            raise RuntimeError("worker not started")
        while self._terminal is None and not self.cancelled:
            msg = self._next(_POLL_SECONDS)
            if msg is not None:
                yield msg

    def poll(self) -> List[Dict]:
        """Drain whatever is queued without blocking."""
        drained: List[Dict] = []
        while self._process is not None and self._terminal is None and not self.cancelled:
            msg = self._next(0)
            if msg is None:
                break
            drained.append(msg)
        return drained

    @property
    def status(self) -> str:
        if self.cancelled:
            return STATUS_CANCELLED
        if self._terminal is not None:
            return self._terminal["type"]
        if self._process is None:
            return STATUS_PENDING
        return STATUS_RUNNING

    @property
    def done(self) -> bool:
        return self.status in (STATUS_SUCCESS, STATUS_ERROR, STATUS_CANCELLED)

    @property
    def error(self) -> Optional[str]:
        if self._terminal is not None and self._terminal.get("type") == STATUS_ERROR:
            return self._terminal.get("error")
        return None

    def result(self, timeout: Optional[float] = None) -> PipelineResult:
        """Block until the run ends; raises PipelineError / PipelineCancelled."""
        if self._process is None and not self.cancelled:
            raise RuntimeError("worker not started")
        deadline = time.monotonic() + timeout if timeout is not None else None
        while self._terminal is None and not self.cancelled:
            if deadline is not None and time.monotonic() > deadline:
                raise TimeoutError(f"aggregation job {self.job_id} still running")
            self._next(_POLL_SECONDS)
        if self.cancelled:
            raise PipelineCancelled()
        if self._terminal["type"] == STATUS_ERROR:
            raise PipelineError(self._terminal["error"])
        self._join()
        return self._terminal["data"]["result"]

    @property
    def sources(self) -> Optional[SourceRows]:
        if self._terminal is not None and self._terminal.get("type") == STATUS_SUCCESS:
            return self._terminal["data"]["sources"]
        return None

    def cancel(self) -> None:
        """Stop the run. Nothing was persisted, so nothing needs undoing."""
        if self.done:
            return
        self.cancelled = True
        if self._process is not None and self._process.is_alive():
            self._process.terminate()
        self._join()
        logger.info("Cancelled aggregation job %s", self.job_id)

    def _join(self) -> None:
        if self._process is not None:
            self._process.join(timeout=5)


class JobRegistry:
    """Tracks worker runs; at most one may be in flight.

    Finished runs are kept until their owner collects them, but never more
    than ``keep_finished`` of them: the oldest are dropped on each submit.
    """

    def __init__(self, keep_finished: int = 5):
        self._jobs: Dict[str, PipelineWorker] = {}
        self._lock = threading.Lock()
        self.keep_finished = keep_finished

    def submit(self, worker: PipelineWorker) -> PipelineWorker:
        with self._lock:
            for job in self._jobs.values():
                job.poll()
                if not job.done:
                    raise PipelineError("An aggregation run is already in progress")
            finished = list(self._jobs)
            for job_id in finished[:max(len(finished) - self.keep_finished, 0)]:
                del self._jobs[job_id]
            self._jobs[worker.job_id] = worker
            worker.start()
        return worker

    def get(self, job_id: str) -> Optional[PipelineWorker]:
        with self._lock:
            return self._jobs.get(job_id)

    def remove(self, job_id: str) -> Optional[PipelineWorker]:
        with self._lock:
            return self._jobs.pop(job_id, None)
