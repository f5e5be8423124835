"""
Application factory for SweepWatch Web.

Wires together blueprints, error mapping, and request middleware around a
running SweepEngine.
"""
from __future__ import annotations

import traceback as tb
from datetime import datetime, timezone
from time import perf_counter
from typing import Callable, Optional

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from sweepwatch.device import DeviceProbe, probe_hackrf
from sweepwatch.errors import AlreadyRunningError, CallerError, SpawnError, SweepWatchError
from sweepwatch.sweep.engine import SweepEngine
from sweepwatch_web.config import API_TOKEN, ERROR_RING_MAX


def _status_for(exc: SweepWatchError) -> int:
    if isinstance(exc, AlreadyRunningError):
        return 409
    if isinstance(exc, CallerError):
        return 400
    if isinstance(exc, SpawnError):
        return 502
    return 500


def create_app(
    engine: SweepEngine,
    *,
    token: Optional[str] = None,
    prober: Optional[Callable[[], DeviceProbe]] = None,
) -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # ------------------------------------------------------------------
    # App-level state
    # ------------------------------------------------------------------
    app.config["API_TOKEN"] = API_TOKEN if token is None else token
    app.extensions["sweep_engine"] = engine
    app.extensions["device_prober"] = prober or probe_hackrf

    # ------------------------------------------------------------------
    # Error ring buffer (exposed via api_debug blueprint)
    # ------------------------------------------------------------------
    app._error_ring = []
    app._error_ring_max = ERROR_RING_MAX

    def _capture(exc: BaseException) -> None:
        entry = {
            "ts": datetime.now(timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "path": request.path,
            "method": request.method,
            "error": str(exc),
            "type": type(exc).__name__,
            "traceback": tb.format_exc(),
        }
        app._error_ring.append(entry)
        while len(app._error_ring) > app._error_ring_max:
            app._error_ring.pop(0)

    # ------------------------------------------------------------------
    # Request timing middleware
    # ------------------------------------------------------------------

    @app.before_request
    def log_request_start():
        request._start_time = perf_counter()

    @app.after_request
    def log_request_end(response):
        if hasattr(request, "_start_time"):
            duration_ms = (perf_counter() - request._start_time) * 1000
            # Log slow requests (>500ms) or errors at debug level
            if duration_ms > 500 or response.status_code >= 400:
                app.logger.debug(
                    "%s %s -> %d (%.1fms)",
                    request.method,
                    request.path,
                    response.status_code,
                    duration_ms,
                )
        return response

    # ------------------------------------------------------------------
    # Error mapping -> JSON + ring buffer
    # ------------------------------------------------------------------

    @app.errorhandler(SweepWatchError)
    def handle_sweep_error(exc: SweepWatchError):
        _capture(exc)
        return jsonify({"error": str(exc), "type": type(exc).__name__}), _status_for(exc)

    @app.errorhandler(Exception)
    def capture_error_to_ring(exc: Exception):
        if isinstance(exc, HTTPException):
            return exc
        _capture(exc)
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "internal error", "type": type(exc).__name__}), 500

    # ------------------------------------------------------------------
    # Register blueprints
    # ------------------------------------------------------------------
    from sweepwatch_web.blueprints.api_debug import bp as api_debug_bp
    from sweepwatch_web.blueprints.api_device import bp as api_device_bp
    from sweepwatch_web.blueprints.api_sweep import bp as api_sweep_bp

    app.register_blueprint(api_debug_bp)
    app.register_blueprint(api_device_bp)
    app.register_blueprint(api_sweep_bp)

    return app
