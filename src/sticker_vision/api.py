"""api.py — review HTTP surface for the calibration pipeline
==========================================================

A small Flask app the review UI talks to while calibration runs. The
pipeline keeps producing rounds; the UI polls assignments, pulls Converged
pixels from the review queue and answers with a decision.

Endpoints
- GET  /health                -> liveness JSON
- GET  /assignments           -> every pixel's current assignment snapshot
- GET  /assignments/<pixel>   -> one pixel (404 when unknown)
- GET  /status                -> counts per state / outcome
- GET  /reviews               -> open review tickets
- GET  /reviews/next          -> next ticket from the queue (204 when none)
- POST /reviews/<pixel>       -> {"decision": "accept" | "reject" | "cancel"}
- POST /override/<pixel>      -> {"tile_id": "..."} manual finalization

Threading model / shared state
- Reads go through `AssignmentRefiner.snapshot()`, an immutable mapping, so
  request threads never block the refiner.
- Decisions go through the refiner's locked transition methods.
- `ReviewServer` runs Werkzeug `make_server` in a daemon thread so the CLI
  can stop it on shutdown.

------------------------------------------------------------------

Copyright (c) 2025 Facundo Gauna & Ulises Carnevale. MIT License.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.serving import make_server

from sticker_vision.app_types import Decision
from sticker_vision.errors import InvalidTransition, UnknownPixel
from sticker_vision.pipeline import CalibrationPipeline

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def _error(message: str, status: int):
    return jsonify({"ok": False, "error": message}), status


def create_app(pipeline: CalibrationPipeline) -> Flask:
    app = Flask(__name__)

    # local review UI; restrict origins before exposing on a network
    CORS(app, resources={r"/*": {"origins": "*"}})

    refiner = pipeline.refiner

    @app.route("/health")
    def _health():
        return jsonify({"ok": True})

    @app.route("/status")
    def _status():
        return jsonify(pipeline.status())

    @app.route("/assignments")
    def _assignments():
        snap = refiner.snapshot()
        return jsonify({str(p): a.to_dict() for p, a in sorted(snap.items())})

    @app.route("/assignments/<int:pixel_id>")
    def _assignment(pixel_id: int):
        try:
            return jsonify(refiner.query_assignment(pixel_id).to_dict())
        except UnknownPixel:
            return _error(f"unknown pixel {pixel_id}", 404)

    @app.route("/reviews")
    def _reviews():
        return jsonify([t.to_dict() for t in refiner.open_tickets()])

    @app.route("/reviews/next")
    def _next_review():
        ticket = refiner.next_review(timeout=pipeline.config.review_timeout)
        if ticket is None:
            return "", 204
        return jsonify(ticket.to_dict())

    @app.route("/reviews/<int:pixel_id>", methods=["POST"])
    def _decide(pixel_id: int):
        body = request.get_json(silent=True) or {}
        try:
            decision = Decision(str(body.get("decision", "")).lower())
        except ValueError:
            return _error("decision must be one of accept, reject, cancel", 400)
        try:
            if decision is Decision.ACCEPT:
                after = refiner.confirm(pixel_id, True)
            elif decision is Decision.REJECT:
                after = refiner.confirm(pixel_id, False)
            else:
                after = refiner.cancel_review(pixel_id)
        except UnknownPixel:
            return _error(f"unknown pixel {pixel_id}", 404)
        except InvalidTransition as e:
            return _error(str(e), 409)
        return jsonify({"ok": True, "assignment": after.to_dict()})

    @app.route("/override/<int:pixel_id>", methods=["POST"])
    def _override(pixel_id: int):
        body = request.get_json(silent=True) or {}
        tile_id = body.get("tile_id")
        if not tile_id:
            return _error("tile_id is required", 400)
        try:
            after = refiner.override(pixel_id, str(tile_id))
        except UnknownPixel:
            return _error(f"unknown pixel {pixel_id}", 404)
        except InvalidTransition as e:
            return _error(str(e), 409)
        return jsonify({"ok": True, "assignment": after.to_dict()})

    return app


# ---------- Server wrapper ----------
class ReviewServer(threading.Thread):
    """Run the review app on a background Werkzeug server."""

    def __init__(self, pipeline: CalibrationPipeline, host: Optional[str] = None, port: Optional[int] = None):
        super().__init__(daemon=True)
        self.app = create_app(pipeline)
        self.host = host or pipeline.config.review_host
        self.port = port if port is not None else pipeline.config.review_port
        self._server = None
        self._ready = threading.Event()

    def run(self):
        try:
            self._server = make_server(self.host, self.port, self.app, threaded=True)
            self._ready.set()
            logger.info("[ReviewServer] listening on http://%s:%s", self.host, self.port)
            self._server.serve_forever()
        except Exception as e:
            self._ready.set()
            logger.exception("[ReviewServer] stopped with error: %s", e)

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        return self._ready.wait(timeout) and self._server is not None

    def shutdown(self):
        if self._server is not None:
            self._server.shutdown()
            logger.info("[ReviewServer] stopped")
