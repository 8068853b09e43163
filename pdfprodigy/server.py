"""
HTTP Microservice
=================
Flask-based HTTP API for the job engine.

Endpoints:
    POST   /documents                    → Upload PDF(s) (multipart "files")
    GET    /documents                    → List stored documents
    GET    /documents/<id>               → Download document bytes
    GET    /documents/<id>/info          → Document info
    DELETE /documents/<id>               → Remove a document
    GET    /documents/validate/<name>    → Check a filename's format
    POST   /jobs                         → Submit a job
    GET    /jobs                         → List in-memory jobs
    GET    /jobs/<id>                    → Job status, result or error
    DELETE /jobs/<id>                    → Request cancellation
    GET    /jobs/<id>/audit              → Audit trail (redact/repair)
    GET    /health                       → Health check
    GET    /info                         → Version and capabilities

Every engine error is returned as ``{"error": {"kind", "message"}}`` with
the status code of its kind.
"""

from __future__ import annotations

import io
import logging
import time

from flask import Flask, jsonify, request, send_file, url_for
from flask_cors import CORS

from .config import EngineConfig
from .engine import ProdigyEngine
from .errors import DocumentNotFound, InvalidSettings, ProdigyError
from .models import Job, JobState

logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)


def create_app(config: dict = None, engine: ProdigyEngine = None) -> Flask:
    """Create and configure the Flask app."""
    if config:
        app.config.update(config)

    engine_config = app.config.get("ENGINE_CONFIG") or EngineConfig.from_env()
    if not app.config.get("MAX_CONTENT_LENGTH"):
        app.config["MAX_CONTENT_LENGTH"] = engine_config.max_upload_mb * 1024 * 1024

    if engine is None:
        engine = ProdigyEngine(engine_config)
    app.config["PRODIGY_ENGINE"] = engine
    logger.info(f"HTTP API bound to engine with {engine.config.workers} workers")
    return app


def _engine() -> ProdigyEngine:
    engine = app.config.get("PRODIGY_ENGINE")
    if engine is None:
        create_app()
        engine = app.config["PRODIGY_ENGINE"]
    return engine


def _job_json(job: Job) -> dict:
    payload = job.to_json_dict()
    payload["jobId"] = payload.pop("id")
    return payload


@app.errorhandler(ProdigyError)
def handle_engine_error(error: ProdigyError):
    if error.status_code >= 500:
        logger.error(f"{request.method} {request.path}: [{error.kind}] {error.message}")
    else:
        logger.info(f"{request.method} {request.path}: [{error.kind}] {error.message}")
    return jsonify({"error": error.to_dict()}), error.status_code


# ─── Health Check ─────────────────────────────────────────────────────────────


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    payload = _engine().health()
    payload["timestamp"] = time.time()
    return jsonify(payload)


@app.route("/info", methods=["GET"])
def info():
    return jsonify(ProdigyEngine.info())


# ─── Documents ────────────────────────────────────────────────────────────────


def _document_json(doc) -> dict:
    payload = doc.info()
    payload["mimeType"] = "application/pdf"
    payload["fileUrl"] = url_for("download_document", document_id=doc.id)
    return payload


@app.route("/documents", methods=["POST"])
def upload_documents():
    """
    Upload one or more PDFs.

    Accepts multipart/form-data with one or more "files" parts (a single
    "file" part is accepted too).

    Returns:
        {"success": true, "message": str, "files": [document info, ...]}
    """
    uploads = request.files.getlist("files") or request.files.getlist("file")
    if not uploads:
        raise InvalidSettings("No file provided; send multipart field 'files'")

    engine = _engine()
    stored = []
    for upload in uploads:
        if not upload.filename:
            raise InvalidSettings("No file selected")
        check = engine.validate_filename(upload.filename)
        if not check["isValid"]:
            raise InvalidSettings(check["message"], detail={"filename": upload.filename})
        doc = engine.upload(upload.read(), upload.filename)
        stored.append(_document_json(doc))

    logger.info(f"Uploaded {len(stored)} documents")
    return jsonify({
        "success": True,
        "message": f"{len(stored)} file(s) uploaded",
        "files": stored,
    }), 201


@app.route("/documents", methods=["GET"])
def list_documents():
    docs = sorted(_engine().documents(), key=lambda d: d.created_at)
    return jsonify({"documents": [_document_json(d) for d in docs]})


@app.route("/documents/validate/<path:filename>", methods=["GET"])
def validate_document(filename: str):
    return jsonify(ProdigyEngine.validate_filename(filename))


@app.route("/documents/<document_id>", methods=["GET"])
def download_document(document_id: str):
    """Stream document bytes; ?download=1 sends it as an attachment."""
    doc = _engine().document(document_id)
    return send_file(
        io.BytesIO(doc.data),
        mimetype="application/pdf",
        as_attachment=request.args.get("download") in ("1", "true"),
        download_name=doc.filename,
    )


@app.route("/documents/<document_id>/info", methods=["GET"])
def document_info(document_id: str):
    return jsonify(_document_json(_engine().document(document_id)))


@app.route("/documents/<document_id>", methods=["DELETE"])
def delete_document(document_id: str):
    if not _engine().delete_document(document_id):
        raise DocumentNotFound(f"Document {document_id} not found")
    return jsonify({"success": True, "message": f"Document {document_id} deleted"})


# ─── Jobs ─────────────────────────────────────────────────────────────────────


@app.route("/jobs", methods=["POST"])
def submit_job():
    """
    Submit a job.

    Body:
        {"kind": "redact", "documentId": "...", "compareDocumentId": "...",
         "settings": {...}}

    Returns 202 with {"jobId", "state"}.
    """
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise InvalidSettings("Request body must be a JSON object")
    if not body.get("kind") or not body.get("documentId"):
        raise InvalidSettings("Both 'kind' and 'documentId' are required")
    settings = body.get("settings") or {}
    if not isinstance(settings, dict):
        raise InvalidSettings("'settings' must be an object")

    engine = _engine()
    job_id = engine.submit(
        body["kind"],
        body["documentId"],
        settings,
        compare_document_id=body.get("compareDocumentId"),
    )
    job = engine.status(job_id)
    return jsonify({"jobId": job_id, "state": job.state.value}), 202


@app.route("/jobs", methods=["GET"])
def list_jobs():
    """List in-memory jobs, optionally filtered with ?state=."""
    raw_state = request.args.get("state")
    state = None
    if raw_state:
        try:
            state = JobState(raw_state)
        except ValueError:
            raise InvalidSettings(f"Unknown job state '{raw_state}'") from None
    jobs = _engine().jobs(state)
    return jsonify({"jobs": [_job_json(j) for j in jobs], "total": len(jobs)})


@app.route("/jobs/<job_id>", methods=["GET"])
def get_job(job_id: str):
    return jsonify(_job_json(_engine().status(job_id)))


@app.route("/jobs/<job_id>", methods=["DELETE"])
def cancel_job(job_id: str):
    """Request cancellation; returns the job's state at the time of the call."""
    job = _engine().cancel(job_id)
    return jsonify({"jobId": job.id, "state": job.state.value})


@app.route("/jobs/<job_id>/audit", methods=["GET"])
def job_audit(job_id: str):
    entries = _engine().audit_entries(job_id)
    return jsonify({
        "jobId": job_id,
        "entries": [e.to_json_dict() for e in entries],
        "total": len(entries),
    })


# ─── Run Server ──────────────────────────────────────────────────────────────


def run_server(
    host: str = "0.0.0.0",
    port: int = 5000,
    debug: bool = False,
    engine_config: EngineConfig = None,
):
    """Start the microservice server."""
    create_app({"ENGINE_CONFIG": engine_config} if engine_config else None)
    app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)


if __name__ == "__main__":
    run_server(debug=True)
