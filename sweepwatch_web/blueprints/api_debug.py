"""
Debug and observability API blueprint for SweepWatch Web.

Provides endpoints for the request error ring buffer and the effective
engine settings.
"""
from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, List

from flask import Blueprint, current_app, jsonify

from sweepwatch_web.auth import require_auth

bp = Blueprint("api_debug", __name__, url_prefix="/api/debug")


def get_error_ring() -> List[Dict[str, Any]]:
    """Get a copy of the error ring buffer."""
    return list(current_app._error_ring)


@bp.route("/errors", methods=["GET"])
def errors():
    require_auth()
    ring = get_error_ring()
    return jsonify({"count": len(ring), "errors": ring})


@bp.route("/errors", methods=["DELETE"])
def clear_errors():
    require_auth()
    current_app._error_ring.clear()
    return jsonify({"count": 0, "errors": []})


@bp.route("/settings", methods=["GET"])
def settings():
    require_auth()
    engine = current_app.extensions["sweep_engine"]
    return jsonify(asdict(engine.settings))
