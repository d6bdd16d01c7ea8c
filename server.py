"""
Sales Funnel KPI — Metrics Server
==================================
Flask API backend for the agent performance dashboard.
Handles report upload, extraction, aggregation, record tracking and
background aggregation jobs.
Reports: Trips, Quotes, Passthroughs, Hot Passes, Bookings, Non-Converted,
Quotes Started (optional).

Usage:
    python server.py
    Then POST the report files to http://localhost:5000/api/process
"""

import base64
import binascii
import logging
import os
from functools import wraps

from flask import Flask, jsonify, redirect, request, session, url_for
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

import db
from errors import PipelineError, ReportDecodeError, StorageError
from metrics import DateRange
from pipeline import (
    METRICS_KEY,
    SOURCE_KINDS,
    SUMMARY_KEY,
    TIMESERIES_KEY,
    clear_snapshot,
    persist,
    reaggregate,
    run_pipeline,
)
from records import clear_store, load_store
from settings import configure_logging, get_settings
from trends import DEPARTMENT, fill_gaps, group_daily, rolling_average
from worker import STATUS_SUCCESS, JobRegistry, PipelineWorker

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────────────────────
# APP SETUP
# ─────────────────────────────────────────────────────────────

settings = get_settings()

app = Flask(__name__)
app.secret_key = settings.secret_key
app.config["MAX_CONTENT_LENGTH"] = settings.max_upload_mb * 1024 * 1024
app.config["KPI_SETTINGS"] = settings
# time series dicts are already ordered (agents first, cohorts last)
app.json.sort_keys = False

CORS(app)

jobs = JobRegistry()


def current_settings():
    return app.config["KPI_SETTINGS"]


def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not session.get("authenticated"):
            return redirect(url_for("login"))
        return f(*args, **kwargs)
    return decorated_function


@app.errorhandler(PipelineError)
def handle_pipeline_error(e):
    return jsonify({"error": e.user_message}), 400


@app.errorhandler(StorageError)
def handle_storage_error(e):
    logger.error("Snapshot not saved: %s", e.detail)
    return jsonify({"error": e.user_message}), 503


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    if isinstance(e, HTTPException):
        return e
    logger.exception("Unhandled error on %s", request.path)
    return jsonify({"error": "Internal server error"}), 500


# ─────────────────────────────────────────────────────────────
# REQUEST HELPERS
# ─────────────────────────────────────────────────────────────

def _decode_b64(kind, fname, fdata):
    # Strip "data:...;base64," header if present
    if "," in fdata:
        _, fdata = fdata.split(",", 1)
    try:
        return base64.b64decode(fdata, validate=True)
    except (binascii.Error, ValueError):
        raise ReportDecodeError(fname, "invalid base64 payload", source=kind)


def _collect_uploads():
    """Gather report files as {kind: (filename, bytes)} from JSON Base64 or multipart."""
    files = {}

    # JSON Base64 upload: {"files": {"trips": {"name": ..., "data": ...}}}
    if request.is_json:
        data = request.get_json(silent=True) or {}
        entries = data.get("files") or {}
        if isinstance(entries, list):
            entries = {e.get("kind"): e for e in entries if isinstance(e, dict)}
        for kind, f in entries.items():
            if not isinstance(f, dict):
                continue
            fname = f.get("name") or f"{kind}.xlsx"
            fdata = f.get("data")
            if kind and fdata:
                files[kind] = (fname, _decode_b64(kind, fname, fdata))

    # Multipart upload: one field per report kind
    for kind in SOURCE_KINDS:
        f = request.files.get(kind)
        if f and f.filename and kind not in files:
            files[kind] = (f.filename, f.read())

    return files


def _request_params():
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form


def _date_range(params):
    try:
        return DateRange.from_strings(params.get("start_date"), params.get("end_date"))
    except ValueError:
        raise PipelineError("Dates must be formatted as YYYY-MM-DD")


def _seniors(params):
    requested = params.get("seniors") if request.is_json else None
    if isinstance(requested, list):
        return [str(s) for s in requested]
    return current_settings().seniors


def _log_progress(stage, percent):
    logger.debug("%3d%% %s", percent, stage)


# ─────────────────────────────────────────────────────────────
# ROUTES
# ─────────────────────────────────────────────────────────────

@app.route("/")
@login_required
def index():
    """Service banner."""
    return jsonify({"service": "sales-funnel-kpi", "reports": list(SOURCE_KINDS)})


@app.route("/login", methods=["GET", "POST"])
def login():
    """Handle authentication."""
    if request.method == "POST":
        params = _request_params()
        password = params.get("password")
        if password == current_settings().app_password:
            session["authenticated"] = True
            return jsonify({"status": "ok"})
        return jsonify({"error": "Invalid access code"}), 401

    return jsonify({"error": "Login required"}), 401


@app.route("/logout")
def logout():
    """Clear session and logout."""
    session.clear()
    return redirect(url_for("login"))


@app.route("/api/process", methods=["POST"])
@login_required
def process_reports():
    """Upload all reports, aggregate, track records and persist in one run."""
    files = _collect_uploads()
    if not files:
        return jsonify({"error": "No files provided"}), 400

    params = _request_params()
    kv, blob = db.get_stores()
    result = run_pipeline(
        files,
        date_range=_date_range(params),
        seniors=_seniors(params),
        options=current_settings().aggregation_options(),
        kv_store=kv,
        blob_store=blob,
        progress=_log_progress,
    )
    logger.info("Processed %d report(s): %d agent(s), %d new record(s)",
                len(files), len(result.aggregation.metrics), len(result.new_records))
    return jsonify(result.to_dict())


@app.route("/api/reaggregate", methods=["POST"])
@login_required
def reaggregate_reports():
    """Recompute from the last uploaded row sets, e.g. for a new date range."""
    params = _request_params()
    kv, blob = db.get_stores()
    result = reaggregate(
        kv, blob,
        date_range=_date_range(params),
        seniors=_seniors(params),
        options=current_settings().aggregation_options(),
    )
    return jsonify(result.to_dict())


@app.route("/api/metrics", methods=["GET"])
@login_required
def get_metrics():
    kv, _ = db.get_stores()
    return jsonify({
        "metrics": kv.get(METRICS_KEY) or [],
        "summary": kv.get(SUMMARY_KEY) or {},
    })


@app.route("/api/timeseries", methods=["GET"])
@login_required
def get_timeseries():
    """
    Raw sparse series by default. ``?group=department|seniors|others`` returns
    gap-filled daily totals and ratios for that cohort; ``&window=7`` adds a
    trailing average of ``&key=`` (default trips).
    """
    kv, _ = db.get_stores()
    ts = kv.get(TIMESERIES_KEY) or {}
    group = request.args.get("group")
    if not group:
        return jsonify({"time_series": ts})

    if group not in (DEPARTMENT, "seniors", "others"):
        return jsonify({"error": f"Unknown group '{group}'"}), 400
    points = group_daily(fill_gaps(ts), group)
    out = {"group": group, "daily": points}
    window = request.args.get("window", type=int)
    if window:
        if window < 1:
            return jsonify({"error": "window must be a positive integer"}), 400
        key = request.args.get("key", "trips")
        out["rolling"] = rolling_average(points, key, window)
    return jsonify(out)


@app.route("/api/records", methods=["GET"])
@login_required
def get_records():
    kv, _ = db.get_stores()
    return jsonify({"records": load_store(kv)})


@app.route("/api/records", methods=["DELETE"])
@login_required
def reset_records():
    kv, _ = db.get_stores()
    clear_store(kv)
    logger.info("Agent records cleared")
    return jsonify({"message": "Records cleared"})


@app.route("/api/data", methods=["DELETE"])
@login_required
def clear_data():
    """Drop the stored snapshot and row sets; records survive."""
    kv, blob = db.get_stores()
    clear_snapshot(kv, blob)
    return jsonify({"message": "Stored data cleared"})


@app.route("/api/roster", methods=["GET"])
@login_required
def get_roster():
    s = current_settings()
    return jsonify({"seniors": s.seniors, "new_hires": s.new_hires})


# ─────────────────────────────────────────────────────────────
# BACKGROUND JOBS
# ─────────────────────────────────────────────────────────────

def _job_payload(worker):
    payload = {
        "job_id": worker.job_id,
        "status": worker.status,
        "stage": worker.stage,
        "progress": worker.progress,
    }
    if worker.error:
        payload["error"] = worker.error
    return payload


@app.route("/api/jobs", methods=["POST"])
@login_required
def submit_job():
    """Start an aggregation run in a worker process; poll GET /api/jobs/<id>."""
    files = _collect_uploads()
    if not files:
        return jsonify({"error": "No files provided"}), 400

    params = _request_params()
    kv, _ = db.get_stores()
    worker = PipelineWorker(
        files,
        date_range=_date_range(params),
        seniors=_seniors(params),
        prior_records=load_store(kv),
        options=current_settings().aggregation_options(),
    )
    try:
        jobs.submit(worker)
    except PipelineError as e:
        return jsonify({"error": e.user_message}), 409
    return jsonify(_job_payload(worker)), 202


@app.route("/api/jobs/<job_id>", methods=["GET"])
@login_required
def get_job(job_id):
    worker = jobs.get(job_id)
    if worker is None:
        return jsonify({"error": "Job not found"}), 404

    worker.poll()
    payload = _job_payload(worker)
    if worker.status == STATUS_SUCCESS:
        result = worker.result()
        if not worker.persisted:
            kv, blob = db.get_stores()
            persist(result, kv, blob, worker.sources)
            worker.persisted = True
        payload["data"] = result.to_dict()
    if worker.done:
        # the outcome is delivered; the job is not kept around
        jobs.remove(job_id)
    return jsonify(payload)


@app.route("/api/jobs/<job_id>", methods=["DELETE"])
@login_required
def cancel_job(job_id):
    worker = jobs.get(job_id)
    if worker is None:
        return jsonify({"error": "Job not found"}), 404
    worker.cancel()
    jobs.remove(job_id)
    return jsonify(_job_payload(worker))


# ─────────────────────────────────────────────────────────────
# RUN
# ─────────────────────────────────────────────────────────────

if __name__ == "__main__":
    configure_logging(settings.log_level)

    # Initialize DB (create tables if needed); falls back to memory
    logger.info("Initializing stores...")
    db.get_stores()

    port = int(os.environ.get("PORT", 5000))
    logger.info("Sales Funnel KPI server on http://localhost:%d", port)

    app.run(host="0.0.0.0", port=port, debug=False, use_reloader=False)
