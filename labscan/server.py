"""
HTTP Microservice
=================
Flask-based HTTP transport for the scan manager.

Clients open the event stream, then start or cancel scans; events are
pushed as Server-Sent Events in the same order the session emits them.

Endpoints:
    POST   /api/scan          → Start a scan (fire-and-forget)
    POST   /api/scan/cancel   → Cancel the running scan
    GET    /api/events        → SSE stream of scan events
    POST   /api/biomarkers    → Parse already-recognized text
    GET    /api/health        → Health check
    GET    /api/info          → Service version info
"""

from __future__ import annotations

import logging
from typing import Optional

from flask import Flask, Response, jsonify, request
from flask_cors import CORS

from . import __version__
from .biomarkers import BiomarkerParser
from .channel import QueueEventListener, format_sse
from .config import ScanConfig
from .engine import ScanEngine

logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)

_EXTENSION_KEY = "labscan"


def create_app(
    config: Optional[dict] = None,
    engine: Optional[ScanEngine] = None,
) -> Flask:
    """Create and configure the Flask app."""
    if config:
        app.config.update(config)

    # Seconds between keep-alive comments on idle event streams
    app.config.setdefault("SSE_KEEPALIVE", 15.0)
    app.config.setdefault("LOG_LEVEL", "INFO")

    if engine is None:
        engine = ScanEngine(ScanConfig(log_level=app.config["LOG_LEVEL"]))

    app.extensions[_EXTENSION_KEY] = engine
    return app


def _get_engine() -> ScanEngine:
    engine = app.extensions.get(_EXTENSION_KEY)
    if engine is None:
        create_app()
        engine = app.extensions[_EXTENSION_KEY]
    return engine


# ─── Health Check ─────────────────────────────────────────────────────────────


@app.route("/api/health", methods=["GET"])
def health():
    """Health check endpoint."""
    manager = _get_engine().manager
    session = manager.current_session
    return jsonify({
        "status": "healthy",
        "service": "labscan",
        "version": __version__,
        "listener_attached": manager.has_listener,
        "scan_pending": manager.has_pending_start,
        "scan_running": bool(session and session.is_running),
    })


@app.route("/api/info", methods=["GET"])
def info():
    """Scanner version and capability info."""
    return jsonify({
        "version": __version__,
        "renderer": "PyMuPDF",
        "ocr": "Tesseract",
        "capabilities": [
            "pdf_scanning",
            "image_scanning",
            "biomarker_extraction",
            "cancellation",
        ],
        "supported_sources": ["pdf", "images"],
    })


# ─── Scan Control ─────────────────────────────────────────────────────────────


@app.route("/api/scan", methods=["POST"])
def start_scan():
    """
    Start a scan.

    The JSON body is passed to the scan manager as-is, e.g.
        {"source": "pdf", "uri": "/data/report.pdf"}
        {"source": "images", "uri": "/data/p1.jpg", "imageUris": [...]}

    Malformed arguments are reported on the event stream as an
    ``invalid_request`` error, like any other scan outcome.
    """
    arguments = request.get_json(silent=True)
    session = _get_engine().manager.start_scan(arguments)

    if session is None:
        return jsonify({
            "status": "pending",
            "message": "No event listener attached; scan will start on connect",
        }), 202

    return jsonify({
        "status": "accepted",
        "session_id": session.session_id,
    }), 202


@app.route("/api/scan/cancel", methods=["POST"])
def cancel_scan():
    """Cancel the running scan (no-op if none)."""
    _get_engine().manager.cancel_scan()
    return jsonify({"status": "cancelled"})


@app.route("/api/events", methods=["GET"])
def events():
    """
    Server-Sent Events stream of scan events.

    The connection is the listener: opening it replays a buffered start,
    closing it cancels the running scan.
    """
    manager = _get_engine().manager
    keepalive = float(app.config["SSE_KEEPALIVE"])

    listener = QueueEventListener()
    manager.attach_listener(listener)

    def stream():
        try:
            yield ": connected\n\n"
            while True:
                event = listener.get(timeout=keepalive)
                if event is None:
                    yield ": keep-alive\n\n"
                    continue
                yield format_sse(event)
        finally:
            manager.detach_listener(listener)
            logger.info("Event stream closed")

    return Response(
        stream(),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ─── Text Parsing ─────────────────────────────────────────────────────────────


@app.route("/api/biomarkers", methods=["POST"])
def parse_biomarkers():
    """Parse biomarkers from a JSON body {"text": "..."}."""
    data = request.get_json(silent=True) or {}
    text = data.get("text") if isinstance(data, dict) else None

    if not isinstance(text, str):
        return jsonify({"error": "JSON body with a 'text' string is required"}), 400

    records = BiomarkerParser().parse(text)
    return jsonify({
        "biomarkers": [
            r.model_dump(by_alias=True, exclude_none=True) for r in records
        ],
    })


# ─── Run Server ──────────────────────────────────────────────────────────────


def run_server(
    host: str = "0.0.0.0",
    port: int = 5000,
    debug: bool = False,
):
    """Start the microservice server."""
    create_app()
    app.run(host=host, port=port, debug=debug, threaded=True)


if __name__ == "__main__":
    run_server(debug=True)
