"""Human duration strings (``500ms``, ``10s``, ``5m``, ``2h``, ``1d``) for CLI options."""

from __future__ import annotations

import argparse
import re
from typing import Any, Optional

_DURATION_RE = re.compile(r"^\s*(?P<value>\d+(?:\.\d*)?|\.\d+)\s*(?P<unit>ms|[smhd])?\s*$", re.IGNORECASE)

_SECONDS_PER_UNIT = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}


def parse_duration_to_seconds(spec: Optional[Any]) -> Optional[float]:
    """Seconds for ``spec``; a bare number is seconds, ``None`` or blank gives ``None``.

    Raises argparse.ArgumentTypeError so it can be used directly as an
    argparse ``type=``.
    """
    if spec is None:
        return None
    if isinstance(spec, (int, float)) and not isinstance(spec, bool):
        return float(spec)
    text = str(spec)
    if not text.strip():
        return None
    match = _DURATION_RE.match(text)
    if match is None:
        raise argparse.ArgumentTypeError(f"Invalid duration '{spec}' (expected e.g. 500ms, 10s, 5m, 2h)")
    unit = (match.group("unit") or "s").lower()
    return float(match.group("value")) * _SECONDS_PER_UNIT[unit]


def parse_duration_to_millis(spec: Optional[Any]) -> Optional[int]:
    seconds = parse_duration_to_seconds(spec)
    return None if seconds is None else int(round(seconds * 1000.0))
