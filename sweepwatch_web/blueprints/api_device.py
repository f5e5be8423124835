"""Receiver probe endpoint."""
from __future__ import annotations

from flask import Blueprint, current_app, jsonify

from sweepwatch_web.auth import require_auth

bp = Blueprint("api_device", __name__)


@bp.route("/api/device", methods=["GET"])
def device():
    require_auth()
    probe = current_app.extensions["device_prober"]()
    return jsonify(probe.to_dict())
