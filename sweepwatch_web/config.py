"""
Configuration constants and environment parsing for SweepWatch Web.

All SWEEPWATCH_* web variables are parsed here and exported as module-level
constants. Blueprints and helpers import from this module rather than reading
os.environ directly.
"""
from __future__ import annotations

import os


def _int_env(name: str, default: int) -> int:
    """Positive integer variable, or ``default`` when unset or malformed."""
    val = os.getenv(name)
    if not val:
        return default
    try:
        return max(1, int(float(val)))
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    """Float variable, or ``default`` when unset or malformed."""
    val = os.getenv(name)
    if not val:
        return default
    try:
        return float(val)
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Authentication & binding
# ---------------------------------------------------------------------------
API_TOKEN: str = os.getenv("SWEEPWATCH_TOKEN", "")
"""Optional bearer token protecting /api/* endpoints."""

HOST: str = os.getenv("SWEEPWATCH_HOST", "127.0.0.1")
"""Interface the control server binds to."""

PORT: int = _int_env("SWEEPWATCH_PORT", 8765)
"""TCP port of the control server."""


# ---------------------------------------------------------------------------
# Feed
# ---------------------------------------------------------------------------
SAMPLE_LIMIT_DEFAULT: int = _int_env("SWEEPWATCH_SAMPLE_LIMIT", 100)
"""Samples returned by /api/sweep/samples when no limit is given."""

SAMPLE_LIMIT_MAX: int = _int_env("SWEEPWATCH_SAMPLE_LIMIT_MAX", 1000)
"""Upper bound on the ?limit= parameter."""

STREAM_KEEPALIVE_S: float = _float_env("SWEEPWATCH_STREAM_KEEPALIVE_S", 15.0)
"""Seconds of silence before the event stream sends a keepalive comment."""

STREAM_QUEUE_SIZE: int = _int_env("SWEEPWATCH_STREAM_QUEUE", 256)
"""Per-client event queue; the oldest events are dropped when a client lags."""


# ---------------------------------------------------------------------------
# Error tracking
# ---------------------------------------------------------------------------
ERROR_RING_MAX: int = _int_env("SWEEPWATCH_ERROR_RING_MAX", 100)
"""Recent request errors retained for /api/debug/errors."""
