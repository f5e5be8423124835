"""
Sweep control API blueprint for SweepWatch Web.

Provides endpoints for starting and stopping sweep cycles, reading status,
health and buffered samples, and streaming the live feed as server-sent
events.
"""
from __future__ import annotations

import json
import queue
from typing import Any, Dict, Iterator, Optional

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from sweepwatch.errors import InvalidConfigError
from sweepwatch.events import FeedEvent, event_to_dict
from sweepwatch.sweep.engine import SweepEngine
from sweepwatch.sweep.types import GainParams
from sweepwatch_web.auth import require_auth
from sweepwatch_web.config import SAMPLE_LIMIT_DEFAULT, SAMPLE_LIMIT_MAX, STREAM_KEEPALIVE_S, STREAM_QUEUE_SIZE

bp = Blueprint("api_sweep", __name__, url_prefix="/api/sweep")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def get_engine() -> SweepEngine:
    return current_app.extensions["sweep_engine"]


def _gain_from_payload(engine: SweepEngine, raw: Any) -> Optional[GainParams]:
    """Merge a partial gain mapping over the engine defaults."""
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise InvalidConfigError("gain must be an object")
    base = engine.default_gain().to_dict()
    unknown = set(raw) - set(base)
    if unknown:
        raise InvalidConfigError(f"unknown gain fields: {', '.join(sorted(unknown))}")
    merged: Dict[str, Any] = dict(base)
    try:
        for key in ("lna_gain_db", "vga_gain_db", "bin_width_hz"):
            if key in raw:
                merged[key] = int(raw[key])
    except (TypeError, ValueError) as exc:
        raise InvalidConfigError(f"invalid gain value: {exc}") from exc
    for key in ("amp_enable", "antenna_enable"):
        if key in raw:
            if not isinstance(raw[key], bool):
                raise InvalidConfigError(f"{key} must be true or false, got {raw[key]!r}")
            merged[key] = raw[key]
    return GainParams(**merged)


def _limit_arg(default: int) -> int:
    raw = request.args.get("limit")
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise InvalidConfigError(f"limit must be an integer, got {raw!r}") from exc
    return max(0, min(value, SAMPLE_LIMIT_MAX))


def format_sse(event: FeedEvent) -> str:
    payload = event_to_dict(event)
    return f"event: {payload['type']}\ndata: {json.dumps(payload)}\n\n"


def iter_sse(engine: SweepEngine, *, replay: int = 0, max_events: Optional[int] = None) -> Iterator[str]:
    """Yield SSE frames until the client disconnects or ``max_events`` are sent."""
    sub = engine.subscribe(STREAM_QUEUE_SIZE, name="sse")
    sent = 0
    try:
        yield f"event: status\ndata: {json.dumps(engine.get_status().to_dict())}\n\n"
        for sample in engine.replay(replay) if replay else []:
            if max_events is not None and sent >= max_events:
                return
            yield format_sse(sample)
            sent += 1
        while max_events is None or sent < max_events:
            try:
                event = sub.get(timeout=STREAM_KEEPALIVE_S)
            except queue.Empty:
                if sub.closed:
                    return
                yield ": keepalive\n\n"
                continue
            yield format_sse(event)
            sent += 1
    finally:
        engine.unsubscribe(sub)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@bp.route("/start", methods=["POST"])
def start():
    require_auth()
    engine = get_engine()
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise InvalidConfigError("expected a JSON object body")
    if "bands" not in body or "dwell_ms" not in body:
        raise InvalidConfigError("'bands' and 'dwell_ms' are required")
    status = engine.start_cycle(
        body["bands"],
        body["dwell_ms"],
        _gain_from_payload(engine, body.get("gain")),
        replace=bool(body.get("replace", False)),
    )
    return jsonify({"status": status.to_dict(), "health": engine.snapshot()})


@bp.route("/stop", methods=["POST"])
def stop():
    require_auth()
    engine = get_engine()
    status = engine.stop_sweep()
    return jsonify({"status": status.to_dict()})


@bp.route("/emergency-stop", methods=["POST"])
def emergency_stop():
    require_auth()
    engine = get_engine()
    status = engine.emergency_stop()
    return jsonify({"status": status.to_dict()})


@bp.route("/status", methods=["GET"])
def status():
    require_auth()
    return jsonify(get_engine().get_status().to_dict())


@bp.route("/health", methods=["GET"])
def health():
    require_auth()
    return jsonify(get_engine().snapshot())


@bp.route("/samples", methods=["GET"])
def samples():
    require_auth()
    limit = _limit_arg(SAMPLE_LIMIT_DEFAULT)
    items = get_engine().replay(limit)
    return jsonify({"count": len(items), "samples": [event_to_dict(s) for s in items]})


@bp.route("/stream", methods=["GET"])
def stream():
    require_auth()
    engine = get_engine()
    replay = min(request.args.get("replay", default=0, type=int) or 0, SAMPLE_LIMIT_MAX)
    max_events = request.args.get("max_events", default=None, type=int)
    resp = Response(
        stream_with_context(iter_sse(engine, replay=max(0, replay), max_events=max_events)),
        mimetype="text/event-stream",
    )
    resp.headers["Cache-Control"] = "no-cache"
    resp.headers["X-Accel-Buffering"] = "no"
    return resp
